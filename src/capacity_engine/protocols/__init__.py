# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Protocol definitions for engine collaborators.

This module provides Protocol classes that define the interfaces the
reservation engine calls out to.

Available protocols:
- ClockProtocol: Time source and one-shot timer scheduling
- NotifierProtocol: User messaging for waitlist offers and joins
- AuditRecorderProtocol: Sink for per-transition audit records
"""

from .audit import AuditRecorderProtocol
from .clock import ClockProtocol, TimerCallback
from .notifier import NotifierProtocol

__all__ = [
    "AuditRecorderProtocol",
    "ClockProtocol",
    "NotifierProtocol",
    "TimerCallback",
]
