# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Wall-clock scheduler backed by the running asyncio event loop.

Timers are in-process only. After a restart, pending deadlines are recovered
by the sweep and reconcile entry points rather than by this clock.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from ..protocols.clock import TimerCallback

logger = logging.getLogger(__name__)


class AsyncioTimer:
    """Handle for a callback scheduled on an :class:`AsyncioClock`."""

    __slots__ = ("callback", "handle", "when")

    def __init__(self, when: datetime, callback: TimerCallback):
        self.when = when
        self.callback = callback
        self.handle: asyncio.TimerHandle | None = None


class AsyncioClock:
    """
    Clock using ``loop.call_later`` for deadlines.

    Each due callback runs in its own task. Task failures are logged so a
    faulty callback never surfaces as an unretrieved task exception.
    """

    def __init__(self) -> None:
        self._timers: set[AsyncioTimer] = set()
        self._tasks: set[asyncio.Task[Any]] = set()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def schedule_at(self, when: datetime, callback: TimerCallback) -> AsyncioTimer:
        loop = asyncio.get_running_loop()
        delay = max(0.0, (when - self.now()).total_seconds())
        timer = AsyncioTimer(when, callback)
        timer.handle = loop.call_later(delay, self._fire, timer)
        self._timers.add(timer)
        return timer

    def cancel(self, handle: AsyncioTimer) -> None:
        if handle.handle is not None:
            handle.handle.cancel()
        self._timers.discard(handle)

    @property
    def pending(self) -> int:
        return len(self._timers)

    def _fire(self, timer: AsyncioTimer) -> None:
        self._timers.discard(timer)
        task = asyncio.create_task(timer.callback())
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Timer callback failed: {exc!r}", exc_info=exc)

    async def close(self) -> None:
        """Cancel pending timers and running callbacks."""
        for timer in list(self._timers):
            self.cancel(timer)

        for task in list(self._tasks):
            if not task.done():
                task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()


__all__ = ["AsyncioClock", "AsyncioTimer"]
