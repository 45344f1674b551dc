# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Capacity ledgers: the authoritative per-(event, tier) counters."""

from .manager import CapacityManager

__all__ = ["CapacityManager"]
