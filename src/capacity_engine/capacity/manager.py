# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Capacity ledger management.

CapacityManager is the sole mutator of a ledger's ``held`` and ``confirmed``
counters. Every mutation runs inside the per-ledger lock and is written with a
version check, so concurrent reservations against one (event, tier) pair are
linearizable and the pool is never oversold.
"""

import logging
import uuid
from collections.abc import Callable

from ..audit import dispatch_audit, snapshot
from ..backends.base import BaseBackend
from ..config import EngineConfig
from ..exceptions import (
    ConfigurationError,
    HoldNotFoundError,
    InsufficientCapacityError,
    LedgerNotFoundError,
)
from ..observability.collector import UnifiedMetricsCollector
from ..observability.constants import AVAILABLE_SLOTS
from ..protocols.audit import AuditRecorderProtocol
from ..protocols.clock import ClockProtocol
from ..retry import retry_on_conflict
from ..types.audit import AuditAction, AuditRecord
from ..types.keys import ledger_lock_key
from ..types.ledger import CapacityLedger, HoldTicket, TicketOutcome
from ..types.versioning import next_version

logger = logging.getLogger(__name__)


class CapacityManager:
    """
    Authoritative counters per (event, tier) capacity pool.

    Tickets returned by :meth:`try_reserve` are settled exactly once by
    :meth:`confirm` or :meth:`release`. Settling the same ticket the same way
    again is a no-op, so callers may replay under at-least-once delivery.
    """

    def __init__(
        self,
        backend: BaseBackend,
        clock: ClockProtocol,
        config: EngineConfig | None = None,
        audit: AuditRecorderProtocol | None = None,
        metrics: UnifiedMetricsCollector | None = None,
    ):
        self._backend = backend
        self._clock = clock
        self._config = config or EngineConfig()
        self._audit = audit
        self._metrics = metrics

    async def _mutate(
        self,
        name: str,
        event_id: str,
        tier: str,
        change: Callable[[CapacityLedger], CapacityLedger],
    ) -> tuple[CapacityLedger, CapacityLedger]:
        """
        Apply ``change`` to the stored ledger under its lock.

        ``change`` returns the ledger it was given to signal a no-op.

        Returns:
            Tuple of (ledger before, ledger after)
        """

        async def attempt() -> tuple[CapacityLedger, CapacityLedger]:
            async with self._backend.lock(ledger_lock_key(event_id, tier)):
                before = await self._backend.get_ledger(event_id, tier)
                if before is None:
                    raise LedgerNotFoundError(event_id, tier)
                after = change(before)
                if after is not before:
                    await self._backend.put_ledger(after)
                return before, after

        before, after = await retry_on_conflict(
            attempt, self._config, name=name, metrics=self._metrics
        )
        self._publish(after)
        return before, after

    def _publish(self, ledger: CapacityLedger) -> None:
        if self._metrics is not None:
            self._metrics.set_gauge(
                AVAILABLE_SLOTS,
                ledger.available_slots,
                labels={"event_id": ledger.event_id, "tier": ledger.tier},
            )

    def _settle(
        self, ledger: CapacityLedger, ticket_id: str, outcome: TicketOutcome
    ) -> dict[str, TicketOutcome]:
        """Append to the bounded settled-ticket history."""
        settled = dict(ledger.settled_tickets)
        settled[ticket_id] = outcome
        while len(settled) > self._config.settled_ticket_history:
            del settled[next(iter(settled))]
        return settled

    # === Configuration ===

    async def configure(
        self,
        event_id: str,
        tier: str,
        total: int,
        *,
        waitlist_enabled: bool | None = None,
        actor: str | None = None,
    ) -> CapacityLedger:
        """
        Create the ledger of an (event, tier) pair, or resize it.

        ``waitlist_enabled`` defaults to True for a new ledger; a resize keeps
        the stored flag unless one is given.

        Raises:
            ConfigurationError: If ``total`` is negative or below the slots
                already confirmed or held
        """
        if total < 0:
            raise ConfigurationError(f"total must be non-negative, got {total}")

        async def attempt() -> tuple[CapacityLedger | None, CapacityLedger]:
            async with self._backend.lock(ledger_lock_key(event_id, tier)):
                now = self._clock.now()
                before = await self._backend.get_ledger(event_id, tier)
                if before is None:
                    after = CapacityLedger(
                        event_id=event_id,
                        tier=tier,
                        total=total,
                        waitlist_enabled=(
                            True if waitlist_enabled is None else waitlist_enabled
                        ),
                        created_at=now,
                        updated_at=now,
                    )
                else:
                    committed = before.confirmed + before.held
                    if total < committed:
                        raise ConfigurationError(
                            f"Cannot resize {event_id}/{tier} to {total}: "
                            f"{committed} slots are confirmed or held"
                        )
                    after = next_version(
                        before,
                        total=total,
                        waitlist_enabled=(
                            before.waitlist_enabled
                            if waitlist_enabled is None
                            else waitlist_enabled
                        ),
                        updated_at=now,
                    )
                await self._backend.put_ledger(after)
                return before, after

        before, after = await retry_on_conflict(
            attempt, self._config, name="configure", metrics=self._metrics
        )
        logger.info(
            f"Configured capacity {event_id}/{tier}: total={after.total} "
            f"(was {before.total if before else None})"
        )
        self._publish(after)
        await dispatch_audit(
            self._audit,
            [
                AuditRecord(
                    action=AuditAction.CAPACITY_CONFIGURED,
                    entity_type="ledger",
                    entity_id=f"{event_id}/{tier}",
                    event_id=event_id,
                    tier=tier,
                    actor=actor,
                    before=snapshot(before),
                    after=snapshot(after),
                    at=after.updated_at,
                )
            ],
            self._metrics,
        )
        return after

    async def get_ledger(self, event_id: str, tier: str) -> CapacityLedger:
        """
        Raises:
            LedgerNotFoundError: If capacity is not configured
        """
        ledger = await self._backend.get_ledger(event_id, tier)
        if ledger is None:
            raise LedgerNotFoundError(event_id, tier)
        return ledger

    async def available_slots(self, event_id: str, tier: str) -> int:
        return (await self.get_ledger(event_id, tier)).available_slots

    # === Reservation ===

    async def try_reserve(
        self,
        event_id: str,
        tier: str,
        quantity: int,
        ticket_id: str | None = None,
    ) -> HoldTicket:
        """
        Atomically check ``confirmed + held + quantity <= total`` and hold the slots.

        Args:
            event_id: Event to reserve against
            tier: Access tier of the ledger
            quantity: Slots to hold, at least 1
            ticket_id: Identifier for the ticket; generated when omitted

        Raises:
            InsufficientCapacityError: If the ledger cannot cover ``quantity``
            LedgerNotFoundError: If capacity is not configured
        """
        if quantity < 1:
            raise ValueError(f"quantity must be at least 1, got {quantity}")
        ticket_id = ticket_id or uuid.uuid4().hex

        def reserve(ledger: CapacityLedger) -> CapacityLedger:
            if ticket_id in ledger.open_tickets or ticket_id in ledger.settled_tickets:
                raise ValueError(f"ticket id {ticket_id} was already used")
            if ledger.available_slots < quantity:
                raise InsufficientCapacityError(
                    f"Only {ledger.available_slots} slots left in "
                    f"{event_id}/{tier}, {quantity} requested",
                    event_id=event_id,
                    tier=tier,
                    requested=quantity,
                    available=ledger.available_slots,
                )
            open_tickets = dict(ledger.open_tickets)
            open_tickets[ticket_id] = quantity
            return next_version(
                ledger,
                held=ledger.held + quantity,
                open_tickets=open_tickets,
                updated_at=self._clock.now(),
            )

        await self._mutate("try_reserve", event_id, tier, reserve)
        logger.debug(f"Reserved {quantity} in {event_id}/{tier} (ticket={ticket_id})")
        return HoldTicket(
            ticket_id=ticket_id, event_id=event_id, tier=tier, quantity=quantity
        )

    async def confirm(self, ticket: HoldTicket) -> CapacityLedger:
        """
        Move a ticket's slots from held to confirmed.

        Confirming an already confirmed ticket is a no-op.

        Raises:
            HoldNotFoundError: If the ticket was released or is unknown
        """

        def confirm(ledger: CapacityLedger) -> CapacityLedger:
            quantity = ledger.open_tickets.get(ticket.ticket_id)
            if quantity is None:
                if ledger.outcome_of(ticket.ticket_id) is TicketOutcome.CONFIRMED:
                    logger.debug(f"Ticket {ticket.ticket_id} already confirmed")
                    return ledger
                raise HoldNotFoundError(ticket.ticket_id)
            open_tickets = dict(ledger.open_tickets)
            del open_tickets[ticket.ticket_id]
            return next_version(
                ledger,
                held=ledger.held - quantity,
                confirmed=ledger.confirmed + quantity,
                open_tickets=open_tickets,
                settled_tickets=self._settle(
                    ledger, ticket.ticket_id, TicketOutcome.CONFIRMED
                ),
                updated_at=self._clock.now(),
            )

        _, after = await self._mutate("confirm", ticket.event_id, ticket.tier, confirm)
        return after

    async def release(self, ticket: HoldTicket) -> CapacityLedger:
        """
        Return a ticket's held slots to the pool.

        Releasing an already released ticket is a no-op.

        Raises:
            HoldNotFoundError: If the ticket was confirmed or is unknown
        """

        def release(ledger: CapacityLedger) -> CapacityLedger:
            quantity = ledger.open_tickets.get(ticket.ticket_id)
            if quantity is None:
                if ledger.outcome_of(ticket.ticket_id) is TicketOutcome.RELEASED:
                    logger.debug(f"Ticket {ticket.ticket_id} already released")
                    return ledger
                raise HoldNotFoundError(ticket.ticket_id)
            open_tickets = dict(ledger.open_tickets)
            del open_tickets[ticket.ticket_id]
            return next_version(
                ledger,
                held=ledger.held - quantity,
                open_tickets=open_tickets,
                settled_tickets=self._settle(
                    ledger, ticket.ticket_id, TicketOutcome.RELEASED
                ),
                updated_at=self._clock.now(),
            )

        _, after = await self._mutate("release", ticket.event_id, ticket.tier, release)
        return after

    async def return_confirmed(
        self,
        event_id: str,
        tier: str,
        quantity: int,
        *,
        actor: str | None = None,
    ) -> CapacityLedger:
        """
        Give back confirmed slots after a registration was cancelled or refunded.

        Raises:
            ValueError: If more slots are returned than are confirmed
        """
        if quantity < 1:
            raise ValueError(f"quantity must be at least 1, got {quantity}")

        def give_back(ledger: CapacityLedger) -> CapacityLedger:
            if quantity > ledger.confirmed:
                raise ValueError(
                    f"Cannot return {quantity} slots to {event_id}/{tier}: "
                    f"only {ledger.confirmed} confirmed"
                )
            return next_version(
                ledger,
                confirmed=ledger.confirmed - quantity,
                updated_at=self._clock.now(),
            )

        before, after = await self._mutate("return_confirmed", event_id, tier, give_back)
        logger.info(f"Returned {quantity} confirmed slots to {event_id}/{tier}")
        await dispatch_audit(
            self._audit,
            [
                AuditRecord(
                    action=AuditAction.CAPACITY_RETURNED,
                    entity_type="ledger",
                    entity_id=f"{event_id}/{tier}",
                    event_id=event_id,
                    tier=tier,
                    actor=actor,
                    before=snapshot(before),
                    after=snapshot(after),
                    at=after.updated_at,
                    details={"quantity": quantity},
                )
            ],
            self._metrics,
        )
        return after


__all__ = ["CapacityManager"]
