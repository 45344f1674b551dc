# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Audit trail records emitted for every state transition."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class AuditAction(Enum):
    """Transitions that produce an audit record."""

    HOLD_CREATED = "hold_created"
    HOLD_RENEWED = "hold_renewed"
    HOLD_CONFIRMED = "hold_confirmed"
    HOLD_RELEASED = "hold_released"
    HOLD_EXPIRED = "hold_expired"
    WAITLIST_JOINED = "waitlist_joined"
    WAITLIST_NOTIFIED = "waitlist_notified"
    WAITLIST_CONFIRMED = "waitlist_confirmed"
    WAITLIST_EXPIRED = "waitlist_expired"
    WAITLIST_CANCELLED = "waitlist_cancelled"
    CAPACITY_CONFIGURED = "capacity_configured"
    CAPACITY_RETURNED = "capacity_returned"


@dataclass(frozen=True)
class AuditRecord:
    """
    A single before/after snapshot of one entity.

    Attributes:
        action: The transition that happened
        entity_type: "hold", "waitlist_entry" or "ledger"
        entity_id: Identifier of the changed entity
        event_id: Event the entity belongs to
        tier: Access tier, None for any-tier waitlist entries
        actor: User that caused the change, None for timers and the system
        before: Serialized state before the change, None on creation
        after: Serialized state after the change
        at: Clock time of the transition
        details: Extra context such as a release reason
    """

    action: AuditAction
    entity_type: str
    entity_id: str
    event_id: str
    tier: str | None
    actor: str | None
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    at: datetime
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "event_id": self.event_id,
            "tier": self.tier,
            "actor": self.actor,
            "before": self.before,
            "after": self.after,
            "at": self.at.isoformat(),
            "details": self.details,
        }
