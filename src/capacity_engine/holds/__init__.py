# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Time-boxed reservation holds against capacity ledgers."""

from .manager import CapacityReleasedHandler, HoldManager, ticket_for

__all__ = ["CapacityReleasedHandler", "HoldManager", "ticket_for"]
