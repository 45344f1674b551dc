# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Reservation hold models."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, model_validator


class HoldStatus(Enum):
    """Lifecycle of a reservation hold. Everything but ACTIVE is terminal."""

    ACTIVE = "active"
    CONFIRMED = "confirmed"
    RELEASED = "released"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not HoldStatus.ACTIVE


class ReleaseReason(Enum):
    """Why an active hold was explicitly released."""

    CANCELLED = "cancelled"
    """The holder abandoned checkout."""

    DECLINED = "declined"
    """A waitlist user declined the offered slot."""

    CONFIRMATION_EXPIRED = "confirmation_expired"
    """A waitlist offer window elapsed unclaimed."""

    PROMOTION_ABORTED = "promotion_aborted"
    """The promoted entry changed before the offer could be recorded."""


class ReservationHold(BaseModel):
    """
    A time-boxed exclusive claim on slots of one ledger.

    The hold id doubles as the ledger ticket id, so a hold and the capacity
    it reserves are always settled together.
    """

    id: str
    event_id: str
    tier: str
    quantity: int = Field(ge=1)
    holder_id: str
    created_at: datetime
    expires_at: datetime
    status: HoldStatus = HoldStatus.ACTIVE
    release_reason: ReleaseReason | None = None
    confirmed_at: datetime | None = None
    released_at: datetime | None = None
    version: int = 1

    @model_validator(mode="after")
    def _validate_expiration(self) -> "ReservationHold":
        """Validate that expires_at is after created_at."""
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be after created_at")
        return self

    @property
    def is_active(self) -> bool:
        return self.status is HoldStatus.ACTIVE

    def is_overdue(self, now: datetime) -> bool:
        """Check whether an active hold has passed its deadline."""
        return self.is_active and now >= self.expires_at
