# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Type definitions and constants."""

from .audit import AuditAction, AuditRecord
from .hold import HoldStatus, ReleaseReason, ReservationHold
from .keys import (
    ANY_TIER,
    DEFAULT_TIER,
    hold_lock_key,
    ledger_lock_key,
    pair_key,
    promotion_lock_key,
    waitlist_lock_key,
)
from .ledger import CapacityLedger, CapacityStatus, HoldTicket, TicketOutcome
from .versioning import next_version
from .waitlist import LIVE_STATUSES, WaitlistEntry, WaitlistStats, WaitlistStatus

__all__ = [
    "ANY_TIER",
    "DEFAULT_TIER",
    "LIVE_STATUSES",
    # Audit
    "AuditAction",
    "AuditRecord",
    # Ledger
    "CapacityLedger",
    "CapacityStatus",
    "HoldStatus",
    "HoldTicket",
    "ReleaseReason",
    # Holds
    "ReservationHold",
    "TicketOutcome",
    # Waitlist
    "WaitlistEntry",
    "WaitlistStats",
    "WaitlistStatus",
    # Keys
    "hold_lock_key",
    "ledger_lock_key",
    "next_version",
    "pair_key",
    "promotion_lock_key",
    "waitlist_lock_key",
]
