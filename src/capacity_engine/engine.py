# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
ReservationEngine: the facade wiring ledgers, holds, waitlist and promotion.

Embedding applications normally only talk to this class. It owns one
instance of each component over a shared backend and clock, and adds the
checks the components leave to their caller: whether a ledger accepts
waitlist joins, and when freed capacity should be offered to the waitlist.
"""

import logging
from datetime import datetime
from typing import Any

from typing_extensions import Self

from .audit import LoggingAuditRecorder
from .backends.base import BaseBackend, HealthCheckResult
from .backends.memory import MemoryBackend
from .capacity.manager import CapacityManager
from .clock.asyncio_clock import AsyncioClock
from .config import EngineConfig
from .exceptions import LedgerNotFoundError, WaitlistDisabledError
from .holds.manager import HoldManager
from .notify import deliver
from .observability.collector import UnifiedMetricsCollector, get_metrics_collector
from .promotion.coordinator import PromotionCoordinator, ReconciliationReport
from .protocols.audit import AuditRecorderProtocol
from .protocols.clock import ClockProtocol
from .protocols.notifier import NotifierProtocol
from .types.hold import ReleaseReason, ReservationHold
from .types.keys import ANY_TIER, DEFAULT_TIER
from .types.ledger import CapacityLedger, CapacityStatus
from .types.waitlist import WaitlistEntry, WaitlistStats
from .waitlist.queue import WaitlistQueue

logger = logging.getLogger(__name__)


class ReservationEngine:
    """
    Capacity reservation and waitlist promotion for events.

    Example:
        >>> engine = create_engine(notifier=my_notifier)
        >>> async with engine:
        ...     await engine.configure_capacity("evt-1", "default", 100)
        ...     hold = await engine.checkout("evt-1", "default", 2, holder_id="u-1")
        ...     await engine.complete_checkout(hold.id, holder_id="u-1")

    Attributes:
        capacity: Ledger manager
        holds: Hold manager
        waitlist: Waitlist queue
        promotion: Promotion coordinator
    """

    def __init__(
        self,
        backend: BaseBackend | None = None,
        clock: ClockProtocol | None = None,
        notifier: NotifierProtocol | None = None,
        audit: AuditRecorderProtocol | None = None,
        config: EngineConfig | None = None,
        metrics: UnifiedMetricsCollector | None = None,
    ):
        """
        Initialize the engine.

        Args:
            backend: Storage backend (defaults to a new MemoryBackend)
            clock: Time source and scheduler (defaults to AsyncioClock)
            notifier: Optional user messaging
            audit: Audit sink (defaults to LoggingAuditRecorder)
            config: Engine configuration
            metrics: Metrics collector (defaults to the global collector
                when ``config.metrics_enabled``)
        """
        self.config = config or EngineConfig()
        self.backend = backend or MemoryBackend()
        self.clock = clock or AsyncioClock()
        self.notifier = notifier
        self.audit = audit or LoggingAuditRecorder()
        if metrics is None and self.config.metrics_enabled:
            metrics = get_metrics_collector()
        self.metrics = metrics

        self.capacity = CapacityManager(
            self.backend, self.clock, self.config, self.audit, self.metrics
        )
        self.holds = HoldManager(
            self.capacity, self.backend, self.clock, self.config, self.audit, self.metrics
        )
        self.waitlist = WaitlistQueue(
            self.backend, self.clock, self.config, self.audit, self.metrics
        )
        self.promotion = PromotionCoordinator(
            self.capacity,
            self.holds,
            self.waitlist,
            self.backend,
            self.clock,
            notifier=self.notifier,
            config=self.config,
            metrics=self.metrics,
        )

    # === Capacity ===

    async def configure_capacity(
        self,
        event_id: str,
        tier: str = DEFAULT_TIER,
        total: int = 0,
        *,
        waitlist_enabled: bool | None = None,
        actor: str | None = None,
    ) -> CapacityLedger:
        """
        Create or resize the ledger of an (event, tier) pair.

        Growing a ledger offers the new slots to its waitlist right away.

        Raises:
            ConfigurationError: If the total is negative or below the slots
                already confirmed or held
        """
        ledger = await self.capacity.configure(
            event_id, tier, total, waitlist_enabled=waitlist_enabled, actor=actor
        )
        if ledger.available_slots > 0:
            await self.promotion.on_capacity_released(event_id, tier)
            ledger = await self.capacity.get_ledger(event_id, tier)
        return ledger

    async def get_capacity_status(
        self, event_id: str, tier: str = DEFAULT_TIER
    ) -> CapacityStatus:
        """
        Raises:
            LedgerNotFoundError: If capacity is not configured
        """
        ledger = await self.capacity.get_ledger(event_id, tier)
        queued = await self.waitlist.list_entries(event_id, tier)
        return CapacityStatus(
            event_id=event_id,
            tier=tier,
            total=ledger.total,
            confirmed=ledger.confirmed,
            held=ledger.held,
            available=ledger.available_slots,
            waitlist_count=len(queued),
            utilization_percentage=round(ledger.utilization, 2),
            alert_level=self.config.alert_thresholds.level_for(ledger.utilization),
            waitlist_enabled=ledger.waitlist_enabled,
        )

    async def cancel_registration(
        self,
        event_id: str,
        tier: str = DEFAULT_TIER,
        quantity: int = 1,
        *,
        actor: str | None = None,
    ) -> CapacityLedger:
        """
        Return confirmed slots of a cancelled or refunded registration.

        The freed slots are offered to the waitlist.
        """
        await self.capacity.return_confirmed(event_id, tier, quantity, actor=actor)
        await self.promotion.on_capacity_released(event_id, tier)
        return await self.capacity.get_ledger(event_id, tier)

    # === Checkout ===

    async def checkout(
        self,
        event_id: str,
        tier: str = DEFAULT_TIER,
        quantity: int = 1,
        *,
        holder_id: str,
        ttl: float | None = None,
    ) -> ReservationHold:
        """
        Hold slots while the user completes checkout.

        Raises:
            InsufficientCapacityError: If the ledger cannot cover ``quantity``
            LedgerNotFoundError: If capacity is not configured
        """
        return await self.holds.create_hold(event_id, tier, quantity, holder_id, ttl)

    async def renew_hold(
        self, hold_id: str, extra_ttl: float, *, holder_id: str | None = None
    ) -> ReservationHold:
        return await self.holds.renew(hold_id, extra_ttl, holder_id=holder_id)

    async def complete_checkout(
        self, hold_id: str, *, holder_id: str | None = None
    ) -> ReservationHold:
        """Confirm a checkout hold into a permanent allocation."""
        return await self.holds.confirm_hold(hold_id, holder_id=holder_id)

    async def release_hold(
        self, hold_id: str, *, holder_id: str | None = None
    ) -> ReservationHold:
        """Abandon a checkout hold; its slots are offered to the waitlist."""
        return await self.holds.release_hold(
            hold_id, ReleaseReason.CANCELLED, actor=holder_id
        )

    async def get_hold(self, hold_id: str) -> ReservationHold:
        return await self.holds.get_hold(hold_id)

    # === Waitlist ===

    async def _waitlist_tiers(self, event_id: str, tier: str | None) -> list[str]:
        """Ledger tiers a join may be promoted into; checks they accept joins."""
        if tier is not None:
            ledger = await self.capacity.get_ledger(event_id, tier)
            if not ledger.waitlist_enabled:
                raise WaitlistDisabledError(event_id, tier)
            return [tier]

        ledgers = await self.backend.list_ledgers(event_id)
        if not ledgers:
            raise LedgerNotFoundError(event_id, ANY_TIER)
        tiers = [ledger.tier for ledger in ledgers if ledger.waitlist_enabled]
        if not tiers:
            raise WaitlistDisabledError(event_id, ANY_TIER)
        return sorted(tiers)

    async def join_waitlist(
        self,
        event_id: str,
        tier: str | None,
        user_id: str,
        quantity: int = 1,
    ) -> WaitlistEntry:
        """
        Queue a user for a sold-out tier, or for any tier when ``tier`` is None.

        If slots are free when the user joins, the queue is promoted at once,
        so the returned entry may be superseded by a NOTIFIED one.

        Raises:
            AlreadyQueuedError: If the user already has a live entry
            WaitlistDisabledError: If the ledger does not accept joins
            LedgerNotFoundError: If capacity is not configured
        """
        tiers = await self._waitlist_tiers(event_id, tier)
        entry = await self.waitlist.join(event_id, tier, user_id, quantity)

        if self.notifier is not None:
            await deliver(
                self.notifier.notify_joined(user_id, event_id, entry.position),
                description=f"join confirmation for waitlist entry {entry.id}",
                timeout=self.config.notifier_timeout,
                metrics=self.metrics,
            )

        for candidate_tier in tiers:
            if await self.capacity.available_slots(event_id, candidate_tier) > 0:
                await self.promotion.on_capacity_released(event_id, candidate_tier)
        return entry

    async def leave_waitlist(self, entry_id: str, user_id: str) -> WaitlistEntry:
        """Leave the queue, declining a pending offer if there is one."""
        return await self.promotion.on_user_declines(entry_id, user_id)

    async def confirm_waitlist_offer(self, entry_id: str, user_id: str) -> WaitlistEntry:
        return await self.promotion.on_user_confirms(entry_id, user_id)

    async def decline_waitlist_offer(self, entry_id: str, user_id: str) -> WaitlistEntry:
        return await self.promotion.on_user_declines(entry_id, user_id)

    async def get_waitlist_entry(self, entry_id: str) -> WaitlistEntry:
        return await self.waitlist.get_entry(entry_id)

    async def get_waitlist_position(
        self, event_id: str, tier: str | None, user_id: str
    ) -> tuple[int, int] | None:
        return await self.waitlist.get_position(event_id, tier, user_id)

    async def get_waitlist_stats(self, event_id: str, tier: str | None) -> WaitlistStats:
        return await self.waitlist.stats(event_id, tier)

    # === Maintenance ===

    async def reconcile(self, now: datetime | None = None) -> ReconciliationReport:
        """Run one repair pass; see :meth:`PromotionCoordinator.reconcile`."""
        return await self.promotion.reconcile(now)

    async def health_check(self) -> HealthCheckResult:
        return await self.backend.health_check()

    async def close(self) -> None:
        """Cancel pending timers and close the backend."""
        close_clock = getattr(self.clock, "close", None)
        if close_clock is not None:
            await close_clock()
        await self.backend.close()
        logger.debug("ReservationEngine closed")

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()


def create_engine(
    backend: BaseBackend | None = None,
    clock: ClockProtocol | None = None,
    notifier: NotifierProtocol | None = None,
    audit: AuditRecorderProtocol | None = None,
    config: EngineConfig | None = None,
    **config_overrides: Any,
) -> ReservationEngine:
    """
    Factory function to create a ReservationEngine.

    Args:
        backend: Storage backend (defaults to MemoryBackend)
        clock: Time source (defaults to AsyncioClock)
        notifier: Optional user messaging
        audit: Audit sink (defaults to LoggingAuditRecorder)
        config: Engine config (will create default if not provided)
        **config_overrides: EngineConfig fields to set, e.g. ``hold_ttl=600``

    Returns:
        Configured ReservationEngine instance

    Raises:
        ValueError: If an override names an unknown config field or fails validation
    """
    if config is None:
        try:
            config = EngineConfig(**config_overrides)
        except TypeError as e:
            raise ValueError(f"Unknown engine config option: {e}") from e
    elif config_overrides:
        raise ValueError("Pass either config or config overrides, not both")

    return ReservationEngine(
        backend=backend, clock=clock, notifier=notifier, audit=audit, config=config
    )


__all__ = ["ReservationEngine", "create_engine"]
