# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Waitlist entry models."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, model_validator


class WaitlistStatus(Enum):
    """Lifecycle of a waitlist entry."""

    ACTIVE = "ACTIVE"
    NOTIFIED = "NOTIFIED"
    CONFIRMED = "CONFIRMED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self not in LIVE_STATUSES


LIVE_STATUSES = frozenset({WaitlistStatus.ACTIVE, WaitlistStatus.NOTIFIED})
"""Statuses that occupy a queue position."""


class WaitlistEntry(BaseModel):
    """
    A queued request for slots, ordered by arrival.

    ``tier`` is ``None`` for entries that accept any tier; such an entry
    records the tier it was eventually offered in ``offered_tier``.
    """

    id: str
    event_id: str
    tier: str | None
    user_id: str
    quantity: int = Field(default=1, ge=1)
    position: int = Field(ge=1)
    status: WaitlistStatus = WaitlistStatus.ACTIVE
    joined_at: datetime
    notified_at: datetime | None = None
    confirm_expires_at: datetime | None = None
    confirmed_at: datetime | None = None
    cancelled_at: datetime | None = None
    expired_at: datetime | None = None
    hold_id: str | None = None
    offered_tier: str | None = None
    version: int = 1

    @model_validator(mode="after")
    def _validate_window(self) -> "WaitlistEntry":
        """Validate that the confirmation window ends after notification."""
        if (
            self.notified_at is not None
            and self.confirm_expires_at is not None
            and self.confirm_expires_at <= self.notified_at
        ):
            raise ValueError("confirm_expires_at must be after notified_at")
        return self

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    def window_elapsed(self, now: datetime) -> bool:
        """Check whether a NOTIFIED entry's confirmation window has passed."""
        return (
            self.status is WaitlistStatus.NOTIFIED
            and self.confirm_expires_at is not None
            and now >= self.confirm_expires_at
        )

    def seconds_to_expire(self, now: datetime) -> float | None:
        """Remaining confirmation time for a NOTIFIED entry."""
        if self.status is not WaitlistStatus.NOTIFIED or self.confirm_expires_at is None:
            return None
        return max(0.0, (self.confirm_expires_at - now).total_seconds())


@dataclass
class WaitlistStats:
    """Per-status entry counts for one waitlist queue."""

    total: int = 0
    active: int = 0
    notified: int = 0
    confirmed: int = 0
    expired: int = 0
    cancelled: int = 0

    @property
    def queued(self) -> int:
        """Entries still holding a position."""
        return self.active + self.notified
