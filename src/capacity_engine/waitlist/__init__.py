# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""FIFO waitlist queues with contiguous positions."""

from .queue import WaitlistQueue, close_gap, live_entries

__all__ = ["WaitlistQueue", "close_gap", "live_entries"]
