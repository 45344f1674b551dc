# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Clock implementations satisfying ClockProtocol."""

from .asyncio_clock import AsyncioClock, AsyncioTimer
from .manual import ManualClock, ManualTimer

__all__ = [
    "AsyncioClock",
    "AsyncioTimer",
    "ManualClock",
    "ManualTimer",
]
