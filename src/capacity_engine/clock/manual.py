# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Simulated clock for deterministic tests and replays.

Time only moves when :meth:`ManualClock.advance` or
:meth:`ManualClock.set_time` is awaited. Due callbacks are awaited in
deadline order, with the clock pinned to each callback's deadline while it
runs, so timer-driven cascades behave exactly as they would in real time.
"""

import heapq
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from ..protocols.clock import TimerCallback

logger = logging.getLogger(__name__)


@dataclass(order=True)
class ManualTimer:
    """Handle for a callback scheduled on a :class:`ManualClock`."""

    when: datetime
    seq: int
    callback: TimerCallback = field(compare=False)
    cancelled: bool = field(default=False, compare=False)


class ManualClock:
    """
    Clock whose time is advanced explicitly.

    Callback exceptions are logged and collected in :attr:`errors` instead
    of aborting the advance, mirroring how :class:`AsyncioClock` isolates
    timer tasks.
    """

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        if self._now.tzinfo is None:
            raise ValueError("start must be timezone-aware")
        self._timers: list[ManualTimer] = []
        self._seq = itertools.count()
        self.errors: list[BaseException] = []

    def now(self) -> datetime:
        return self._now

    def schedule_at(self, when: datetime, callback: TimerCallback) -> ManualTimer:
        timer = ManualTimer(when=when, seq=next(self._seq), callback=callback)
        heapq.heappush(self._timers, timer)
        return timer

    def cancel(self, handle: ManualTimer) -> None:
        handle.cancelled = True

    @property
    def pending(self) -> int:
        """Number of timers that have neither fired nor been cancelled."""
        return sum(1 for t in self._timers if not t.cancelled)

    def next_deadline(self) -> datetime | None:
        live = [t.when for t in self._timers if not t.cancelled]
        return min(live) if live else None

    async def advance(self, seconds: float) -> int:
        """Move time forward and await every callback that falls due.

        Returns:
            Number of callbacks that ran
        """
        if seconds < 0:
            raise ValueError("cannot move a clock backwards")
        return await self.set_time(self._now + timedelta(seconds=seconds))

    async def set_time(self, target: datetime) -> int:
        """Move time to ``target``, firing due callbacks in deadline order."""
        if target < self._now:
            raise ValueError("cannot move a clock backwards")

        fired = 0
        # Callbacks may schedule new timers, so re-check the heap every round
        while self._timers and self._timers[0].when <= target:
            timer = heapq.heappop(self._timers)
            if timer.cancelled:
                continue
            self._now = max(self._now, timer.when)
            fired += 1
            try:
                await timer.callback()
            except Exception as e:
                logger.exception(f"Timer callback failed at {timer.when.isoformat()}")
                self.errors.append(e)

        self._now = target
        return fired

    async def run_due(self) -> int:
        """Fire callbacks already due without moving time."""
        return await self.set_time(self._now)


__all__ = ["ManualClock", "ManualTimer"]
