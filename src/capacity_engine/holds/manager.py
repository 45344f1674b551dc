# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Reservation hold management.

A hold is a time-boxed claim on ledger slots. It ends in exactly one of
CONFIRMED, RELEASED or EXPIRED. Each transition runs under the hold's lock and
is written with a version check, so a confirm racing an expiry timer has a
single winner and the loser observes a no-op or HoldNotFoundError.

Lock order is hold, then ledger. Audit records and the capacity-released
handler run only after every lock is released.
"""

import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from ..audit import dispatch_audit, snapshot
from ..backends.base import BaseBackend
from ..capacity.manager import CapacityManager
from ..config import EngineConfig
from ..exceptions import ForbiddenError, HoldNotFoundError, InsufficientCapacityError
from ..observability.collector import UnifiedMetricsCollector
from ..observability.constants import (
    HOLDS_CONFIRMED_TOTAL,
    HOLDS_CREATED_TOTAL,
    HOLDS_EXPIRED_TOTAL,
    HOLDS_REJECTED_TOTAL,
    HOLDS_RELEASED_TOTAL,
)
from ..protocols.audit import AuditRecorderProtocol
from ..protocols.clock import ClockProtocol
from ..retry import retry_on_conflict
from ..types.audit import AuditAction, AuditRecord
from ..types.hold import HoldStatus, ReleaseReason, ReservationHold
from ..types.keys import hold_lock_key
from ..types.ledger import HoldTicket
from ..types.versioning import next_version

logger = logging.getLogger(__name__)

CapacityReleasedHandler = Callable[[str, str], Awaitable[Any]]
"""Called with ``(event_id, tier)`` after a hold returns slots to its ledger."""


class _Outcome(Enum):
    CHANGED = "changed"
    NOOP = "noop"
    EXPIRED = "expired"


@dataclass
class _Transition:
    outcome: _Outcome
    before: ReservationHold | None
    after: ReservationHold
    records: list[AuditRecord] = field(default_factory=list)


def ticket_for(hold: ReservationHold) -> HoldTicket:
    """The ledger ticket a hold owns; ticket id and hold id are the same."""
    return HoldTicket(
        ticket_id=hold.id, event_id=hold.event_id, tier=hold.tier, quantity=hold.quantity
    )


class HoldManager:
    """
    Issues, renews, confirms, releases and expires reservation holds.

    Expiry is driven by the clock: every active hold has one pending timer
    calling :meth:`expire_hold`. Timers are hints; :meth:`sweep_expired`
    recovers holds whose timers were lost.
    """

    def __init__(
        self,
        capacity: CapacityManager,
        backend: BaseBackend,
        clock: ClockProtocol,
        config: EngineConfig | None = None,
        audit: AuditRecorderProtocol | None = None,
        metrics: UnifiedMetricsCollector | None = None,
        on_capacity_released: CapacityReleasedHandler | None = None,
    ):
        """
        Initialize the hold manager.

        Args:
            capacity: Ledger manager the holds reserve against
            backend: Storage for hold records
            clock: Time source and expiry scheduler
            config: Engine configuration
            audit: Optional sink for transition records
            metrics: Optional metrics collector
            on_capacity_released: Handler invoked after a release or expiry
                returned slots. Normally installed by PromotionCoordinator.
        """
        self._capacity = capacity
        self._backend = backend
        self._clock = clock
        self._config = config or EngineConfig()
        self._audit = audit
        self._metrics = metrics
        self._on_capacity_released = on_capacity_released
        self._timers: dict[str, Any] = {}

    def set_capacity_released_handler(
        self, handler: CapacityReleasedHandler | None
    ) -> None:
        self._on_capacity_released = handler

    @property
    def pending_timers(self) -> int:
        return len(self._timers)

    # === Internals ===

    def _count(self, name: str, hold: ReservationHold, **labels: str) -> None:
        if self._metrics is not None:
            self._metrics.inc_counter(name, labels={"tier": hold.tier, **labels})

    def _record(
        self,
        action: AuditAction,
        before: ReservationHold | None,
        after: ReservationHold,
        actor: str | None,
        **details: Any,
    ) -> AuditRecord:
        return AuditRecord(
            action=action,
            entity_type="hold",
            entity_id=after.id,
            event_id=after.event_id,
            tier=after.tier,
            actor=actor,
            before=snapshot(before),
            after=snapshot(after),
            at=self._clock.now(),
            details=details,
        )

    def _schedule_expiry(self, hold: ReservationHold) -> None:
        self._cancel_timer(hold.id)
        hold_id = hold.id
        self._timers[hold_id] = self._clock.schedule_at(
            hold.expires_at, lambda: self.expire_hold(hold_id)
        )

    def _cancel_timer(self, hold_id: str) -> None:
        handle = self._timers.pop(hold_id, None)
        if handle is not None:
            self._clock.cancel(handle)

    async def _load(self, hold_id: str) -> ReservationHold:
        hold = await self._backend.get_hold(hold_id)
        if hold is None:
            raise HoldNotFoundError(hold_id)
        return hold

    @staticmethod
    def _check_holder(hold: ReservationHold, holder_id: str | None) -> None:
        if holder_id is not None and holder_id != hold.holder_id:
            raise ForbiddenError(hold.id, holder_id)

    async def _expire_locked(
        self, hold: ReservationHold, now: datetime
    ) -> _Transition:
        """ACTIVE -> EXPIRED; caller holds the hold lock."""
        await self._capacity.release(ticket_for(hold))
        expired = next_version(hold, status=HoldStatus.EXPIRED, released_at=now)
        await self._backend.put_hold(expired)
        return _Transition(
            _Outcome.EXPIRED,
            hold,
            expired,
            [self._record(AuditAction.HOLD_EXPIRED, hold, expired, None)],
        )

    async def _finish(self, transition: _Transition, cascade: bool = True) -> None:
        """Post-lock side effects of a transition."""
        after = transition.after
        if transition.outcome is _Outcome.NOOP:
            return

        if after.status.is_terminal:
            self._cancel_timer(after.id)

        if transition.outcome is _Outcome.EXPIRED:
            logger.info(f"Hold {after.id} expired ({after.event_id}/{after.tier})")
            self._count(HOLDS_EXPIRED_TOTAL, after)
        elif after.status is HoldStatus.CONFIRMED:
            self._count(HOLDS_CONFIRMED_TOTAL, after)
        elif after.status is HoldStatus.RELEASED:
            reason = after.release_reason.value if after.release_reason else "unknown"
            self._count(HOLDS_RELEASED_TOTAL, after, reason=reason)

        await dispatch_audit(self._audit, transition.records, self._metrics)

        returned_slots = after.status in (HoldStatus.RELEASED, HoldStatus.EXPIRED)
        if returned_slots and cascade and self._on_capacity_released is not None:
            await self._on_capacity_released(after.event_id, after.tier)

    async def _transition(
        self,
        name: str,
        hold_id: str,
        step: Callable[[ReservationHold, datetime], Awaitable[_Transition]],
        now: datetime | None = None,
    ) -> _Transition:
        """Run ``step`` on the stored hold under its lock, with conflict retry."""

        async def attempt() -> _Transition:
            async with self._backend.lock(hold_lock_key(hold_id)):
                hold = await self._load(hold_id)
                return await step(hold, now or self._clock.now())

        return await retry_on_conflict(
            attempt, self._config, name=name, metrics=self._metrics
        )

    # === Public API ===

    async def create_hold(
        self,
        event_id: str,
        tier: str,
        quantity: int,
        holder_id: str,
        ttl: float | None = None,
    ) -> ReservationHold:
        """
        Reserve ``quantity`` slots for ``holder_id`` until ``now + ttl``.

        Args:
            event_id: Event to reserve against
            tier: Access tier of the ledger
            quantity: Slots to hold
            holder_id: User or session owning the hold
            ttl: Lifetime in seconds; defaults to ``EngineConfig.hold_ttl``

        Raises:
            InsufficientCapacityError: If the ledger cannot cover ``quantity``.
                Never retried; the caller decides whether to offer the waitlist.
            LedgerNotFoundError: If capacity is not configured
        """
        ttl = self._config.hold_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")
        hold_id = uuid.uuid4().hex

        async with self._backend.lock(hold_lock_key(hold_id)):
            try:
                ticket = await self._capacity.try_reserve(
                    event_id, tier, quantity, ticket_id=hold_id
                )
            except InsufficientCapacityError:
                if self._metrics is not None:
                    self._metrics.inc_counter(HOLDS_REJECTED_TOTAL, labels={"tier": tier})
                raise

            now = self._clock.now()
            hold = ReservationHold(
                id=hold_id,
                event_id=event_id,
                tier=tier,
                quantity=quantity,
                holder_id=holder_id,
                created_at=now,
                expires_at=now + timedelta(seconds=ttl),
            )
            try:
                await self._backend.put_hold(hold)
            except BaseException:
                # Do not strand the reserved slots without a hold record
                await self._capacity.release(ticket)
                raise

        self._schedule_expiry(hold)
        self._count(HOLDS_CREATED_TOTAL, hold)
        logger.debug(
            f"Created hold {hold.id} for {holder_id}: {quantity} x {event_id}/{tier} "
            f"until {hold.expires_at.isoformat()}"
        )
        await dispatch_audit(
            self._audit,
            [self._record(AuditAction.HOLD_CREATED, None, hold, holder_id)],
            self._metrics,
        )
        return hold

    async def get_hold(self, hold_id: str) -> ReservationHold:
        """
        Raises:
            HoldNotFoundError: If no hold has this id
        """
        return await self._load(hold_id)

    async def list_active_holds(self, event_id: str | None = None) -> list[ReservationHold]:
        return await self._backend.list_holds_by_status(HoldStatus.ACTIVE, event_id)

    async def renew(
        self, hold_id: str, extra_ttl: float, *, holder_id: str | None = None
    ) -> ReservationHold:
        """
        Push an active hold's deadline forward by ``extra_ttl`` seconds.

        A hold already past its deadline is expired instead of renewed.

        Raises:
            HoldNotFoundError: If the hold is unknown, terminal or overdue
            ForbiddenError: If ``holder_id`` does not own the hold
        """
        if extra_ttl <= 0:
            raise ValueError(f"extra_ttl must be positive, got {extra_ttl}")

        async def step(hold: ReservationHold, now: datetime) -> _Transition:
            self._check_holder(hold, holder_id)
            if hold.status is not HoldStatus.ACTIVE:
                raise HoldNotFoundError(hold_id, f"Hold {hold_id} is {hold.status.value}")
            if hold.is_overdue(now):
                return await self._expire_locked(hold, now)
            renewed = next_version(
                hold, expires_at=hold.expires_at + timedelta(seconds=extra_ttl)
            )
            await self._backend.put_hold(renewed)
            return _Transition(
                _Outcome.CHANGED,
                hold,
                renewed,
                [
                    self._record(
                        AuditAction.HOLD_RENEWED,
                        hold,
                        renewed,
                        holder_id,
                        extra_ttl=extra_ttl,
                    )
                ],
            )

        transition = await self._transition("renew", hold_id, step)
        await self._finish(transition)
        if transition.outcome is _Outcome.EXPIRED:
            raise HoldNotFoundError(hold_id, f"Hold {hold_id} expired before renewal")

        self._schedule_expiry(transition.after)
        logger.debug(
            f"Renewed hold {hold_id} until {transition.after.expires_at.isoformat()}"
        )
        return transition.after

    async def confirm_hold(
        self, hold_id: str, *, holder_id: str | None = None
    ) -> ReservationHold:
        """
        Convert an active hold into a confirmed allocation.

        Replaying on a confirmed hold is a no-op. A hold already past its
        deadline loses to expiry.

        Raises:
            HoldNotFoundError: If the hold is unknown, released, expired or overdue
            ForbiddenError: If ``holder_id`` does not own the hold
        """

        async def step(hold: ReservationHold, now: datetime) -> _Transition:
            self._check_holder(hold, holder_id)
            if hold.status is HoldStatus.CONFIRMED:
                return _Transition(_Outcome.NOOP, hold, hold)
            if hold.status is not HoldStatus.ACTIVE:
                raise HoldNotFoundError(hold_id, f"Hold {hold_id} is {hold.status.value}")
            if hold.is_overdue(now):
                return await self._expire_locked(hold, now)
            await self._capacity.confirm(ticket_for(hold))
            confirmed = next_version(
                hold, status=HoldStatus.CONFIRMED, confirmed_at=now
            )
            await self._backend.put_hold(confirmed)
            return _Transition(
                _Outcome.CHANGED,
                hold,
                confirmed,
                [self._record(AuditAction.HOLD_CONFIRMED, hold, confirmed, holder_id)],
            )

        transition = await self._transition("confirm_hold", hold_id, step)
        await self._finish(transition)
        if transition.outcome is _Outcome.EXPIRED:
            raise HoldNotFoundError(hold_id, f"Hold {hold_id} expired before confirmation")

        if transition.outcome is _Outcome.CHANGED:
            logger.debug(f"Confirmed hold {hold_id}")
        return transition.after

    async def release_hold(
        self,
        hold_id: str,
        reason: ReleaseReason = ReleaseReason.CANCELLED,
        *,
        cascade: bool = True,
        actor: str | None = None,
    ) -> ReservationHold:
        """
        Cancel an active hold and return its slots.

        Replaying on a released hold is a no-op and does not cascade again.

        Args:
            hold_id: Hold to release
            reason: Why the hold was released
            cascade: Invoke the capacity-released handler afterwards. Callers
                already inside a promotion cascade pass False.
            actor: User releasing the hold; must own it when given

        Raises:
            HoldNotFoundError: If the hold is unknown, confirmed or expired
            ForbiddenError: If ``actor`` does not own the hold
        """

        async def step(hold: ReservationHold, now: datetime) -> _Transition:
            self._check_holder(hold, actor)
            if hold.status is HoldStatus.RELEASED:
                return _Transition(_Outcome.NOOP, hold, hold)
            if hold.status is not HoldStatus.ACTIVE:
                raise HoldNotFoundError(hold_id, f"Hold {hold_id} is {hold.status.value}")
            await self._capacity.release(ticket_for(hold))
            released = next_version(
                hold,
                status=HoldStatus.RELEASED,
                release_reason=reason,
                released_at=now,
            )
            await self._backend.put_hold(released)
            return _Transition(
                _Outcome.CHANGED,
                hold,
                released,
                [
                    self._record(
                        AuditAction.HOLD_RELEASED,
                        hold,
                        released,
                        actor,
                        reason=reason.value,
                    )
                ],
            )

        transition = await self._transition("release_hold", hold_id, step)
        if transition.outcome is _Outcome.CHANGED:
            logger.debug(f"Released hold {hold_id} ({reason.value})")
        await self._finish(transition, cascade=cascade)
        return transition.after

    async def expire_hold(
        self, hold_id: str, now: datetime | None = None
    ) -> ReservationHold | None:
        """
        Clock callback: expire a hold whose deadline has passed.

        Stale callbacks (hold renewed, settled or unknown) are no-ops.

        Returns:
            The expired hold, or None if nothing changed
        """

        async def step(hold: ReservationHold, at: datetime) -> _Transition:
            if not hold.is_overdue(at):
                return _Transition(_Outcome.NOOP, hold, hold)
            return await self._expire_locked(hold, at)

        try:
            transition = await self._transition("expire_hold", hold_id, step, now)
        except HoldNotFoundError:
            logger.warning(f"Expiry fired for unknown hold {hold_id}")
            self._timers.pop(hold_id, None)
            return None

        if transition.outcome is _Outcome.NOOP:
            hold = transition.after
            if hold.status is HoldStatus.ACTIVE:
                # Fired early; keep exactly one timer on the live deadline
                self._schedule_expiry(hold)
            else:
                logger.debug(f"Ignoring stale expiry for hold {hold_id}")
            return None
        await self._finish(transition)
        return transition.after

    async def sweep_expired(self, now: datetime | None = None) -> int:
        """
        Expire every active hold past its deadline.

        Recovers holds whose timers were lost, e.g. after a restart.

        Returns:
            Number of holds expired
        """
        now = now or self._clock.now()
        expired = 0
        for hold in await self._backend.list_holds_by_status(HoldStatus.ACTIVE):
            if hold.is_overdue(now) and await self.expire_hold(hold.id, now) is not None:
                expired += 1
        if expired:
            logger.info(f"Hold sweep expired {expired} holds")
        return expired


__all__ = ["CapacityReleasedHandler", "HoldManager", "ticket_for"]
