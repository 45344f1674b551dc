# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Protocol for time sources and one-shot timers."""

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

TimerCallback = Callable[[], Awaitable[Any]]


@runtime_checkable
class ClockProtocol(Protocol):
    """
    Time source and scheduler for hold and confirmation deadlines.

    The engine never sleeps or spawns tasks on its own. Every deadline is
    handed to the clock, which later awaits the callback. Callbacks may be
    delivered late, more than once, or never (after a restart); the engine
    treats them as hints and re-checks the deadline itself.
    """

    def now(self) -> datetime:
        """Current time as a timezone-aware UTC datetime."""
        ...

    def schedule_at(self, when: datetime, callback: TimerCallback) -> Any:
        """Arrange for ``callback`` to be awaited at or after ``when``.

        Returns an opaque handle accepted by :meth:`cancel`.
        """
        ...

    def cancel(self, handle: Any) -> None:
        """Cancel a pending timer. Unknown or fired handles are ignored."""
        ...
