# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
FIFO waitlist queues, one per (event, tier) plus one any-tier queue per event.

Live entries (ACTIVE or NOTIFIED) of a queue always hold positions ``1..N`` in
arrival order. Every transition that takes an entry out of the live set
shifts the entries behind it up by one in the same atomic batch write, so a
reader never observes a gap or a duplicate position.
"""

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from ..audit import dispatch_audit, snapshot
from ..backends.base import BaseBackend
from ..config import EngineConfig
from ..exceptions import (
    AlreadyQueuedError,
    EntryNotFoundError,
    ForbiddenError,
    InvalidEntryStateError,
)
from ..observability.collector import UnifiedMetricsCollector
from ..observability.constants import (
    WAITLIST_CANCELLED_TOTAL,
    WAITLIST_CONFIRMED_TOTAL,
    WAITLIST_DEPTH,
    WAITLIST_EXPIRED_TOTAL,
    WAITLIST_JOINED_TOTAL,
)
from ..protocols.audit import AuditRecorderProtocol
from ..protocols.clock import ClockProtocol
from ..retry import retry_on_conflict
from ..types.audit import AuditAction, AuditRecord
from ..types.keys import ANY_TIER, waitlist_lock_key
from ..types.versioning import next_version
from ..types.waitlist import WaitlistEntry, WaitlistStats, WaitlistStatus

logger = logging.getLogger(__name__)

_AUDIT_ACTIONS = {
    WaitlistStatus.NOTIFIED: AuditAction.WAITLIST_NOTIFIED,
    WaitlistStatus.CONFIRMED: AuditAction.WAITLIST_CONFIRMED,
    WaitlistStatus.EXPIRED: AuditAction.WAITLIST_EXPIRED,
    WaitlistStatus.CANCELLED: AuditAction.WAITLIST_CANCELLED,
}

_COUNTERS = {
    WaitlistStatus.CONFIRMED: WAITLIST_CONFIRMED_TOTAL,
    WaitlistStatus.EXPIRED: WAITLIST_EXPIRED_TOTAL,
    WaitlistStatus.CANCELLED: WAITLIST_CANCELLED_TOTAL,
}


def live_entries(entries: list[WaitlistEntry]) -> list[WaitlistEntry]:
    """Live entries of a queue in position order."""
    return sorted((e for e in entries if e.is_live), key=lambda e: e.position)


def close_gap(
    entries: list[WaitlistEntry], vacated: int, exclude: str
) -> list[WaitlistEntry]:
    """Shift every live entry behind ``vacated`` one position forward."""
    return [
        next_version(e, position=e.position - 1)
        for e in entries
        if e.is_live and e.id != exclude and e.position > vacated
    ]


class WaitlistQueue:
    """
    Strict-FIFO waitlist storage and transitions.

    Entries never jump the queue: a position only ever decreases, and there
    is no priority override. Terminal entries are kept for history and never
    reused; re-joining creates a new entry at the tail.
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

    # === Internals ===

    def _record(
        self,
        action: AuditAction,
        before: WaitlistEntry | None,
        after: WaitlistEntry,
        actor: str | None = None,
        **details: Any,
    ) -> AuditRecord:
        return AuditRecord(
            action=action,
            entity_type="waitlist_entry",
            entity_id=after.id,
            event_id=after.event_id,
            tier=after.tier,
            actor=actor,
            before=snapshot(before),
            after=snapshot(after),
            at=self._clock.now(),
            details=details,
        )

    def _publish_depth(self, event_id: str, tier: str | None, depth: int) -> None:
        if self._metrics is not None:
            self._metrics.set_gauge(
                WAITLIST_DEPTH,
                depth,
                labels={"event_id": event_id, "tier": tier if tier is not None else ANY_TIER},
            )

    async def _load(self, entry_id: str) -> WaitlistEntry:
        entry = await self._backend.get_entry(entry_id)
        if entry is None:
            raise EntryNotFoundError(entry_id)
        return entry

    async def _transition(
        self,
        name: str,
        entry_id: str,
        step: Callable[[WaitlistEntry, list[WaitlistEntry], datetime], WaitlistEntry | None],
        actor: str | None = None,
        now: datetime | None = None,
        **details: Any,
    ) -> tuple[WaitlistEntry, WaitlistEntry | None]:
        """
        Apply ``step`` to an entry under its queue lock.

        ``step`` receives the stored entry, the whole queue and the current
        time, and returns the new entry or None for a no-op. Leaving the live
        set closes the position gap in the same batch.

        Returns:
            Tuple of (entry before, entry after or None when unchanged)
        """
        # The queue an entry lives in never changes, so it is safe to read
        # the pair before taking the lock.
        current = await self._load(entry_id)
        event_id, tier = current.event_id, current.tier

        async def attempt() -> tuple[WaitlistEntry, WaitlistEntry | None, int]:
            async with self._backend.lock(waitlist_lock_key(event_id, tier)):
                before = await self._load(entry_id)
                queue = await self._backend.list_entries(event_id, tier)
                after = step(before, queue, now or self._clock.now())
                if after is None:
                    return before, None, len(live_entries(queue))
                batch = [after]
                left = before.is_live and not after.is_live
                if left:
                    batch.extend(close_gap(queue, before.position, exclude=before.id))
                await self._backend.put_entries(batch)
                depth = len(live_entries(queue)) - (1 if left else 0)
                return before, after, depth

        before, after, depth = await retry_on_conflict(
            attempt, self._config, name=name, metrics=self._metrics
        )
        if after is None:
            return before, None

        self._publish_depth(event_id, tier, depth)
        counter = _COUNTERS.get(after.status)
        if counter is not None and self._metrics is not None:
            self._metrics.inc_counter(
                counter, labels={"tier": tier if tier is not None else ANY_TIER}
            )
        logger.debug(
            f"Waitlist entry {entry_id} {before.status.value} -> {after.status.value}"
        )
        await dispatch_audit(
            self._audit,
            [self._record(_AUDIT_ACTIONS[after.status], before, after, actor, **details)],
            self._metrics,
        )
        return before, after

    # === Membership ===

    async def join(
        self,
        event_id: str,
        tier: str | None,
        user_id: str,
        quantity: int = 1,
    ) -> WaitlistEntry:
        """
        Append a user to the tail of a queue.

        Args:
            event_id: Event to wait for
            tier: Access tier, or None to accept any tier
            user_id: Joining user
            quantity: Slots wanted

        Raises:
            AlreadyQueuedError: If the user already has a live entry in this queue
        """
        if quantity < 1:
            raise ValueError(f"quantity must be at least 1, got {quantity}")

        async def attempt() -> tuple[WaitlistEntry, int]:
            async with self._backend.lock(waitlist_lock_key(event_id, tier)):
                live = live_entries(await self._backend.list_entries(event_id, tier))
                for entry in live:
                    if entry.user_id == user_id:
                        raise AlreadyQueuedError(entry)
                entry = WaitlistEntry(
                    id=uuid.uuid4().hex,
                    event_id=event_id,
                    tier=tier,
                    user_id=user_id,
                    quantity=quantity,
                    position=(live[-1].position if live else 0) + 1,
                    joined_at=self._clock.now(),
                )
                await self._backend.put_entries([entry])
                return entry, len(live) + 1

        entry, depth = await retry_on_conflict(
            attempt, self._config, name="waitlist_join", metrics=self._metrics
        )
        self._publish_depth(event_id, tier, depth)
        if self._metrics is not None:
            self._metrics.inc_counter(
                WAITLIST_JOINED_TOTAL,
                labels={"tier": tier if tier is not None else ANY_TIER},
            )
        logger.debug(
            f"User {user_id} joined waitlist {event_id}/{tier or ANY_TIER} "
            f"at position {entry.position}"
        )
        await dispatch_audit(
            self._audit,
            [self._record(AuditAction.WAITLIST_JOINED, None, entry, user_id)],
            self._metrics,
        )
        return entry

    async def leave(
        self,
        entry_id: str,
        user_id: str | None = None,
        *,
        expected_status: WaitlistStatus | None = None,
    ) -> WaitlistEntry:
        """
        Cancel a live entry and close its position gap.

        Leaving a terminal entry is a no-op that returns it unchanged.

        Args:
            entry_id: Entry to cancel
            user_id: Acting user; must own the entry when given
            expected_status: Cancel a live entry only while it has this status

        Raises:
            EntryNotFoundError: If the entry does not exist
            ForbiddenError: If ``user_id`` does not own the entry
            InvalidEntryStateError: If the live entry is not in ``expected_status``
        """

        def cancel(
            entry: WaitlistEntry, _queue: list[WaitlistEntry], now: datetime
        ) -> WaitlistEntry | None:
            if user_id is not None and entry.user_id != user_id:
                raise ForbiddenError(entry.id, user_id)
            if not entry.is_live:
                return None
            if expected_status is not None and entry.status is not expected_status:
                raise InvalidEntryStateError(
                    entry.id, entry.status.value, expected_status.value
                )
            return next_version(entry, status=WaitlistStatus.CANCELLED, cancelled_at=now)

        before, after = await self._transition("waitlist_leave", entry_id, cancel, user_id)
        return after or before

    # === Promotion Transitions ===

    async def peek_next(self, event_id: str, tier: str | None) -> WaitlistEntry | None:
        """Lowest-position ACTIVE entry of a queue, if any."""
        for entry in live_entries(await self._backend.list_entries(event_id, tier)):
            if entry.status is WaitlistStatus.ACTIVE:
                return entry
        return None

    async def mark_notified(
        self,
        entry_id: str,
        confirm_ttl: float,
        *,
        hold_id: str | None = None,
        offered_tier: str | None = None,
    ) -> WaitlistEntry:
        """
        ACTIVE -> NOTIFIED, opening a confirmation window of ``confirm_ttl`` seconds.

        The entry keeps its position until it is confirmed, expired or cancelled.

        Raises:
            InvalidEntryStateError: If the entry is not ACTIVE
        """
        if confirm_ttl <= 0:
            raise ValueError(f"confirm_ttl must be positive, got {confirm_ttl}")

        def notify(
            entry: WaitlistEntry, _queue: list[WaitlistEntry], now: datetime
        ) -> WaitlistEntry:
            if entry.status is not WaitlistStatus.ACTIVE:
                raise InvalidEntryStateError(
                    entry.id, entry.status.value, WaitlistStatus.ACTIVE.value
                )
            return next_version(
                entry,
                status=WaitlistStatus.NOTIFIED,
                notified_at=now,
                confirm_expires_at=now + timedelta(seconds=confirm_ttl),
                hold_id=hold_id,
                offered_tier=offered_tier or entry.tier,
            )

        before, after = await self._transition(
            "waitlist_mark_notified", entry_id, notify, hold_id=hold_id
        )
        if after is None:
            raise InvalidEntryStateError(
                entry_id, before.status.value, WaitlistStatus.ACTIVE.value
            )
        return after

    async def mark_confirmed(self, entry_id: str) -> WaitlistEntry:
        """
        NOTIFIED -> CONFIRMED. Replaying on a confirmed entry is a no-op.

        Raises:
            InvalidEntryStateError: If the entry is neither NOTIFIED nor CONFIRMED
        """

        def confirm(
            entry: WaitlistEntry, _queue: list[WaitlistEntry], now: datetime
        ) -> WaitlistEntry | None:
            if entry.status is WaitlistStatus.CONFIRMED:
                return None
            if entry.status is not WaitlistStatus.NOTIFIED:
                raise InvalidEntryStateError(
                    entry.id, entry.status.value, WaitlistStatus.NOTIFIED.value
                )
            return next_version(entry, status=WaitlistStatus.CONFIRMED, confirmed_at=now)

        before, after = await self._transition("waitlist_mark_confirmed", entry_id, confirm)
        return after or before

    async def mark_expired(
        self, entry_id: str, now: datetime | None = None
    ) -> WaitlistEntry | None:
        """
        NOTIFIED -> EXPIRED once the confirmation window has elapsed.

        Returns:
            The expired entry, or None when nothing changed: the entry is
            already terminal or its window is still open

        Raises:
            InvalidEntryStateError: If the entry is still ACTIVE
        """

        def expire(
            entry: WaitlistEntry, _queue: list[WaitlistEntry], now: datetime
        ) -> WaitlistEntry | None:
            if entry.status is WaitlistStatus.ACTIVE:
                raise InvalidEntryStateError(
                    entry.id, entry.status.value, WaitlistStatus.NOTIFIED.value
                )
            if not entry.window_elapsed(now):
                return None
            return next_version(entry, status=WaitlistStatus.EXPIRED, expired_at=now)

        _, after = await self._transition(
            "waitlist_mark_expired", entry_id, expire, now=now
        )
        return after

    async def list_expired_notifications(
        self, now: datetime | None = None
    ) -> list[WaitlistEntry]:
        """NOTIFIED entries whose confirmation window has elapsed, oldest first."""
        now = now or self._clock.now()
        notified = await self._backend.list_entries_by_status(WaitlistStatus.NOTIFIED)
        return sorted(
            (e for e in notified if e.window_elapsed(now)),
            key=lambda e: e.confirm_expires_at or now,
        )

    # === Queries ===

    async def get_entry(self, entry_id: str) -> WaitlistEntry:
        """
        Raises:
            EntryNotFoundError: If the entry does not exist
        """
        return await self._load(entry_id)

    async def list_entries(self, event_id: str, tier: str | None) -> list[WaitlistEntry]:
        """Live entries of a queue in position order."""
        return live_entries(await self._backend.list_entries(event_id, tier))

    async def get_position(
        self, event_id: str, tier: str | None, user_id: str
    ) -> tuple[int, int] | None:
        """
        Return ``(position, queue length)`` of a user's live entry, or None.
        """
        live = await self.list_entries(event_id, tier)
        for entry in live:
            if entry.user_id == user_id:
                return entry.position, len(live)
        return None

    async def stats(self, event_id: str, tier: str | None) -> WaitlistStats:
        stats = WaitlistStats()
        for entry in await self._backend.list_entries(event_id, tier):
            stats.total += 1
            field_name = entry.status.value.lower()
            setattr(stats, field_name, getattr(stats, field_name) + 1)
        return stats


__all__ = ["WaitlistQueue", "close_gap", "live_entries"]
