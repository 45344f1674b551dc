# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Waitlist promotion state machine.

PromotionCoordinator reacts to freed capacity by offering it to the head of
the waitlist, one entry at a time, until capacity or candidates run out::

    ACTIVE --(capacity released)--> NOTIFIED --(user confirms)--> CONFIRMED
                                        |
                                        +--(window elapsed)--> EXPIRED --> cascade
                                        +--(user declines)---> CANCELLED --> cascade

Each offer is backed by a real hold created through HoldManager, so an offer
never promises more than the ledger has. A cascade for one (event, tier) runs
under its promotion lock: two concurrent releases never offer the same slot
twice. Users are notified only after the lock is released.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ..backends.base import BaseBackend
from ..capacity.manager import CapacityManager
from ..config import EngineConfig
from ..exceptions import (
    ConfirmationExpiredError,
    EntryNotFoundError,
    ForbiddenError,
    HoldNotFoundError,
    InsufficientCapacityError,
    InvalidEntryStateError,
)
from ..holds.manager import HoldManager
from ..notify import deliver
from ..observability.collector import UnifiedMetricsCollector
from ..observability.constants import CASCADE_LENGTH, WAITLIST_PROMOTED_TOTAL
from ..protocols.clock import ClockProtocol
from ..protocols.notifier import NotifierProtocol
from ..types.hold import HoldStatus, ReleaseReason
from ..types.keys import ANY_TIER, promotion_lock_key
from ..types.waitlist import WaitlistEntry, WaitlistStatus
from ..waitlist.queue import WaitlistQueue

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    """Work done by one :meth:`PromotionCoordinator.reconcile` pass."""

    confirmations_completed: int = 0
    notifications_expired: int = 0
    holds_expired: int = 0
    entries_promoted: int = 0

    @property
    def changed(self) -> bool:
        return any(
            (
                self.confirmations_completed,
                self.notifications_expired,
                self.holds_expired,
                self.entries_promoted,
            )
        )


class PromotionCoordinator:
    """
    Drives waitlist entries through promotion, confirmation and expiry.

    Installs itself as the HoldManager's capacity-released handler, so every
    hold release or expiry cascades into the waitlist of the same ledger.
    """

    def __init__(
        self,
        capacity: CapacityManager,
        holds: HoldManager,
        waitlist: WaitlistQueue,
        backend: BaseBackend,
        clock: ClockProtocol,
        notifier: NotifierProtocol | None = None,
        config: EngineConfig | None = None,
        metrics: UnifiedMetricsCollector | None = None,
    ):
        """
        Initialize the coordinator.

        Args:
            capacity: Ledger manager
            holds: Hold manager that backs every offer
            waitlist: Queue storage and transitions
            backend: Storage used for locks and read-only lookups
            clock: Time source and confirmation-window scheduler
            notifier: Optional outbound messaging for offers
            config: Engine configuration
            metrics: Optional metrics collector
        """
        self._capacity = capacity
        self._holds = holds
        self._waitlist = waitlist
        self._backend = backend
        self._clock = clock
        self._notifier = notifier
        self._config = config or EngineConfig()
        self._metrics = metrics
        self._timers: dict[str, Any] = {}

        holds.set_capacity_released_handler(self.on_capacity_released)

    @property
    def pending_timers(self) -> int:
        return len(self._timers)

    # === Timers ===

    def _schedule_confirmation(self, entry: WaitlistEntry) -> None:
        if entry.confirm_expires_at is None:
            raise InvalidEntryStateError(
                entry.id, entry.status.value, WaitlistStatus.NOTIFIED.value
            )
        self._cancel_timer(entry.id)
        entry_id = entry.id
        self._timers[entry_id] = self._clock.schedule_at(
            entry.confirm_expires_at, lambda: self.on_confirmation_expired(entry_id)
        )

    def _cancel_timer(self, entry_id: str) -> None:
        handle = self._timers.pop(entry_id, None)
        if handle is not None:
            self._clock.cancel(handle)

    # === Promotion ===

    async def _next_candidate(self, event_id: str, tier: str) -> WaitlistEntry | None:
        """
        Head of the tier queue or of the any-tier queue, whichever joined first.

        Ties go to the tier queue.
        """
        tier_head = await self._waitlist.peek_next(event_id, tier)
        any_head = await self._waitlist.peek_next(event_id, None)
        if tier_head is None:
            return any_head
        if any_head is None or tier_head.joined_at <= any_head.joined_at:
            return tier_head
        return any_head

    async def on_capacity_released(self, event_id: str, tier: str) -> list[WaitlistEntry]:
        """
        Offer freed slots of a ledger to the waitlist in FIFO order.

        Stops at the first candidate the ledger cannot cover; a larger request
        at the head is never skipped for a smaller one behind it.

        Returns:
            Entries notified by this cascade, in promotion order
        """
        promoted: list[WaitlistEntry] = []
        confirm_ttl = self._config.confirm_window
        hold_ttl = confirm_ttl + self._config.hold_grace_period

        async with self._backend.lock(promotion_lock_key(event_id, tier)):
            ledger = await self._backend.get_ledger(event_id, tier)
            if ledger is None or not ledger.waitlist_enabled:
                return promoted

            while await self._capacity.available_slots(event_id, tier) > 0:
                candidate = await self._next_candidate(event_id, tier)
                if candidate is None:
                    break

                try:
                    hold = await self._holds.create_hold(
                        event_id, tier, candidate.quantity, candidate.user_id, ttl=hold_ttl
                    )
                except InsufficientCapacityError:
                    logger.debug(
                        f"Head of waitlist {event_id}/{tier} wants {candidate.quantity} "
                        f"slots, stopping cascade"
                    )
                    break

                try:
                    entry = await self._waitlist.mark_notified(
                        candidate.id, confirm_ttl, hold_id=hold.id, offered_tier=tier
                    )
                except (InvalidEntryStateError, EntryNotFoundError):
                    logger.warning(
                        f"Waitlist entry {candidate.id} changed during promotion, "
                        f"releasing hold {hold.id}"
                    )
                    await self._holds.release_hold(
                        hold.id, ReleaseReason.PROMOTION_ABORTED, cascade=False
                    )
                    continue
                except BaseException:
                    # Do not strand the offer hold without an entry pointing at it
                    await self._holds.release_hold(
                        hold.id, ReleaseReason.PROMOTION_ABORTED, cascade=False
                    )
                    raise

                self._schedule_confirmation(entry)
                promoted.append(entry)

        if self._metrics is not None:
            self._metrics.observe_histogram(
                CASCADE_LENGTH, len(promoted), labels={"tier": tier}
            )
            for entry in promoted:
                self._metrics.inc_counter(
                    WAITLIST_PROMOTED_TOTAL,
                    labels={"tier": entry.tier if entry.tier is not None else ANY_TIER},
                )
        if promoted:
            logger.info(f"Promoted {len(promoted)} waitlist entries for {event_id}/{tier}")

        for entry in promoted:
            await self._notify_offer(entry)
        return promoted

    async def _notify_offer(self, entry: WaitlistEntry) -> None:
        if self._notifier is None:
            return
        if entry.hold_id is None or entry.confirm_expires_at is None:
            logger.warning(f"Waitlist entry {entry.id} has no offer to announce")
            return
        await deliver(
            self._notifier.notify(
                entry.user_id, entry.event_id, entry.hold_id, entry.confirm_expires_at
            ),
            description=f"offer for waitlist entry {entry.id}",
            timeout=self._config.notifier_timeout,
            metrics=self._metrics,
        )

    # === User Responses ===

    async def _entry_for(self, entry_id: str, user_id: str | None) -> WaitlistEntry:
        entry = await self._waitlist.get_entry(entry_id)
        if user_id is not None and entry.user_id != user_id:
            raise ForbiddenError(entry_id, user_id)
        return entry

    async def _release_offer_hold(
        self, entry: WaitlistEntry, reason: ReleaseReason
    ) -> str | None:
        """
        Release the hold backing a NOTIFIED entry without cascading.

        Returns:
            The ledger tier whose capacity was freed, or None if nothing was
            freed. Raises nothing when the hold is already settled.
        """
        if entry.hold_id is None:
            return None
        try:
            hold = await self._holds.release_hold(entry.hold_id, reason, cascade=False)
        except HoldNotFoundError:
            return None
        return hold.tier

    async def _hold_confirmed(self, entry: WaitlistEntry) -> bool:
        if entry.hold_id is None:
            return False
        hold = await self._backend.get_hold(entry.hold_id)
        return hold is not None and hold.status is HoldStatus.CONFIRMED

    async def on_user_confirms(
        self, entry_id: str, user_id: str | None = None
    ) -> WaitlistEntry:
        """
        Claim the offer of a NOTIFIED entry.

        Replaying on a confirmed entry is a no-op. If the hold is confirmed
        but the entry update fails, the error propagates with the entry still
        NOTIFIED; a replay or :meth:`reconcile` finishes the transition.

        Raises:
            ConfirmationExpiredError: If the confirmation window has elapsed
            InvalidEntryStateError: If the entry was never offered or was cancelled
            ForbiddenError: If ``user_id`` does not own the entry
        """
        entry = await self._entry_for(entry_id, user_id)
        if entry.status is WaitlistStatus.CONFIRMED:
            return entry
        if entry.status is WaitlistStatus.EXPIRED:
            raise ConfirmationExpiredError(entry_id)
        if entry.status is not WaitlistStatus.NOTIFIED or entry.hold_id is None:
            raise InvalidEntryStateError(
                entry_id, entry.status.value, WaitlistStatus.NOTIFIED.value
            )

        if entry.window_elapsed(self._clock.now()):
            await self.on_confirmation_expired(entry_id)
            raise ConfirmationExpiredError(entry_id)

        try:
            await self._holds.confirm_hold(entry.hold_id)
        except HoldNotFoundError as e:
            # The backing hold lost a race with its own expiry
            await self.on_confirmation_expired(entry_id)
            raise ConfirmationExpiredError(entry_id) from e

        confirmed = await self._waitlist.mark_confirmed(entry_id)
        self._cancel_timer(entry_id)
        logger.debug(f"Waitlist entry {entry_id} confirmed by {entry.user_id}")
        return confirmed

    async def on_confirmation_expired(
        self, entry_id: str, now: datetime | None = None
    ) -> WaitlistEntry | None:
        """
        Clock callback: expire an unclaimed offer and cascade to the next entry.

        If the offer's hold was confirmed in the meantime the confirmation is
        completed instead. Stale and replayed callbacks are no-ops.

        Returns:
            The expired entry, or None if it was not expired by this call
        """
        try:
            entry = await self._waitlist.get_entry(entry_id)
        except EntryNotFoundError:
            logger.warning(f"Confirmation expiry fired for unknown entry {entry_id}")
            self._timers.pop(entry_id, None)
            return None

        if entry.status is not WaitlistStatus.NOTIFIED:
            self._timers.pop(entry_id, None)
            return None
        now = now or self._clock.now()
        if not entry.window_elapsed(now):
            logger.debug(f"Confirmation expiry for entry {entry_id} fired early")
            self._schedule_confirmation(entry)
            return None

        if await self._hold_confirmed(entry):
            await self._waitlist.mark_confirmed(entry_id)
            self._timers.pop(entry_id, None)
            return None

        freed_tier = await self._release_offer_hold(
            entry, ReleaseReason.CONFIRMATION_EXPIRED
        )
        if freed_tier is None and await self._hold_confirmed(entry):
            # Confirmed between the check above and the release attempt
            await self._waitlist.mark_confirmed(entry_id)
            self._timers.pop(entry_id, None)
            return None

        expired = await self._waitlist.mark_expired(entry_id, now)
        self._timers.pop(entry_id, None)
        if expired is not None:
            logger.debug(f"Waitlist offer {entry_id} expired unclaimed")

        cascade_tier = freed_tier or entry.offered_tier
        if cascade_tier is not None:
            await self.on_capacity_released(entry.event_id, cascade_tier)
        return expired

    async def on_user_declines(
        self, entry_id: str, user_id: str | None = None
    ) -> WaitlistEntry:
        """
        Turn down an offer, or leave the queue before one was made.

        A NOTIFIED entry releases its hold, becomes CANCELLED and cascades.
        An ACTIVE entry simply leaves the queue. Terminal entries are returned
        unchanged. If the offer was already confirmed, the confirmation stands.

        Raises:
            ForbiddenError: If ``user_id`` does not own the entry
        """
        entry = await self._entry_for(entry_id, user_id)
        if entry.status is WaitlistStatus.ACTIVE:
            try:
                return await self._waitlist.leave(
                    entry_id, user_id, expected_status=WaitlistStatus.ACTIVE
                )
            except InvalidEntryStateError:
                # Promoted after the read; decline the offer instead
                logger.debug(f"Waitlist entry {entry_id} was offered while leaving")
                entry = await self._entry_for(entry_id, user_id)
        if entry.status is not WaitlistStatus.NOTIFIED:
            return entry

        freed_tier = await self._release_offer_hold(entry, ReleaseReason.DECLINED)
        if freed_tier is None and await self._hold_confirmed(entry):
            self._cancel_timer(entry_id)
            return await self._waitlist.mark_confirmed(entry_id)

        cancelled = await self._waitlist.leave(entry_id, user_id)
        self._cancel_timer(entry_id)
        logger.debug(f"Waitlist entry {entry_id} declined its offer")

        cascade_tier = freed_tier or entry.offered_tier
        if cascade_tier is not None:
            await self.on_capacity_released(entry.event_id, cascade_tier)
        return cancelled

    # === Recovery ===

    async def sweep_expired_notifications(self, now: datetime | None = None) -> int:
        """
        Expire every NOTIFIED entry whose window has elapsed.

        Entry point for an external scheduler when clock timers were lost.

        Returns:
            Number of entries expired
        """
        expired = 0
        for entry in await self._waitlist.list_expired_notifications(now):
            if await self.on_confirmation_expired(entry.id, now) is not None:
                expired += 1
        if expired:
            logger.info(f"Notification sweep expired {expired} waitlist offers")
        return expired

    async def reconcile(self, now: datetime | None = None) -> ReconciliationReport:
        """
        Idempotent repair pass, safe to run periodically.

        Completes NOTIFIED entries whose hold was confirmed, expires overdue
        offers, expires overdue holds, and re-runs promotion for every ledger
        that has free capacity.
        """
        report = ReconciliationReport()

        for entry in await self._backend.list_entries_by_status(WaitlistStatus.NOTIFIED):
            if await self._hold_confirmed(entry):
                await self._waitlist.mark_confirmed(entry.id)
                self._cancel_timer(entry.id)
                report.confirmations_completed += 1

        report.notifications_expired = await self.sweep_expired_notifications(now)
        report.holds_expired = await self._holds.sweep_expired(now)

        for ledger in await self._backend.list_ledgers():
            if ledger.waitlist_enabled and ledger.available_slots > 0:
                promoted = await self.on_capacity_released(ledger.event_id, ledger.tier)
                report.entries_promoted += len(promoted)

        if report.changed:
            logger.info(f"Reconciliation finished: {report}")
        return report


__all__ = ["PromotionCoordinator", "ReconciliationReport"]
