# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Capacity ledger models.

A ledger holds the authoritative counters for one (event, tier) capacity
pool. The backend stores it as a single versioned record so that every
mutation is a compare-and-set.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator

from ..config import AlertLevel


class TicketOutcome(Enum):
    """How a ledger ticket was settled."""

    CONFIRMED = "confirmed"
    RELEASED = "released"


@dataclass(frozen=True)
class HoldTicket:
    """
    Proof of a successful ``try_reserve``.

    Attributes:
        ticket_id: Unique identifier, shared with the hold that owns it
        event_id: Event the capacity belongs to
        tier: Access tier of the ledger
        quantity: Number of slots reserved
    """

    ticket_id: str
    event_id: str
    tier: str
    quantity: int


class CapacityLedger(BaseModel):
    """
    Authoritative counters for one (event, tier) capacity pool.

    ``open_tickets`` maps every outstanding ticket to its quantity, so
    ``held`` is always their sum. ``settled_tickets`` is a bounded,
    insertion-ordered history used to make confirm and release idempotent
    under at-least-once delivery.
    """

    event_id: str
    tier: str
    total: int = Field(ge=0)
    confirmed: int = Field(default=0, ge=0)
    held: int = Field(default=0, ge=0)
    waitlist_enabled: bool = True
    open_tickets: dict[str, int] = Field(default_factory=dict)
    settled_tickets: dict[str, TicketOutcome] = Field(default_factory=dict)
    version: int = 1
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def _validate_counters(self) -> "CapacityLedger":
        """Reject any state that would oversell the pool."""
        if self.confirmed + self.held > self.total:
            raise ValueError(
                f"confirmed ({self.confirmed}) + held ({self.held}) exceeds total ({self.total})"
            )
        if sum(self.open_tickets.values()) != self.held:
            raise ValueError("held must equal the sum of open tickets")
        return self

    @property
    def available_slots(self) -> int:
        """Sellable slots right now, never negative."""
        return max(0, self.total - self.confirmed - self.held)

    @property
    def utilization(self) -> float:
        """Confirmed slots as a percentage of the total."""
        return (self.confirmed / self.total) * 100 if self.total > 0 else 0.0

    def outcome_of(self, ticket_id: str) -> TicketOutcome | None:
        """Return how a ticket was settled, if it is still remembered."""
        return self.settled_tickets.get(ticket_id)


@dataclass
class CapacityStatus:
    """
    Point-in-time view of a ledger and its waitlist for reporting.

    Attributes:
        event_id: Event identifier
        tier: Access tier
        total: Maximum sellable slots
        confirmed: Permanently allocated slots
        held: Slots locked by active holds
        available: Slots that can be reserved now
        waitlist_count: ACTIVE and NOTIFIED entries queued for this tier
        utilization_percentage: Confirmed share of the total
        alert_level: Utilization alert, if a threshold was crossed
        waitlist_enabled: Whether new waitlist joins are accepted
    """

    event_id: str
    tier: str
    total: int
    confirmed: int
    held: int
    available: int
    waitlist_count: int
    utilization_percentage: float
    alert_level: AlertLevel | None
    waitlist_enabled: bool

    @property
    def is_full(self) -> bool:
        return self.available <= 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dict."""
        return {
            "event_id": self.event_id,
            "tier": self.tier,
            "total": self.total,
            "confirmed": self.confirmed,
            "held": self.held,
            "available": self.available,
            "waitlist_count": self.waitlist_count,
            "utilization_percentage": self.utilization_percentage,
            "alert_level": self.alert_level.value if self.alert_level else None,
            "waitlist_enabled": self.waitlist_enabled,
            "is_full": self.is_full,
        }
