# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Automatic waitlist promotion when capacity frees up."""

from .coordinator import PromotionCoordinator, ReconciliationReport

__all__ = ["PromotionCoordinator", "ReconciliationReport"]
