# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Capacity Engine - Oversell-proof event capacity with automatic waitlists.

This library guarantees that a finite number of slots per event and access
tier is never oversold under concurrent checkouts, and promotes a FIFO
waitlist automatically whenever capacity frees up.

Key Features:
    - Atomic capacity ledgers with compare-and-set writes
    - Time-boxed checkout holds with clock-driven expiry
    - Strict-FIFO waitlists with contiguous positions
    - Cascading promotion with bounded confirmation windows
    - Multiple backend options (memory, Redis)
    - Pluggable clock, notifier and audit collaborators

Quick Start:
    >>> from capacity_engine import create_engine
    >>>
    >>> engine = create_engine(hold_ttl=600)
    >>> async with engine:
    ...     await engine.configure_capacity("evt-1", "default", 100)
    ...     hold = await engine.checkout("evt-1", "default", 2, holder_id="u-1")
    ...     await engine.complete_checkout(hold.id, holder_id="u-1")

Main Exports:
    - ReservationEngine, create_engine: The facade
    - CapacityManager, HoldManager, WaitlistQueue, PromotionCoordinator: Components
    - MemoryBackend, RedisBackend: Storage backends
    - ManualClock, AsyncioClock: Clock implementations
    - EngineConfig: Configuration options

Note: RedisBackend requires the 'redis' extra. Install with:
    pip install capacity-engine[redis]

Version: 1.0.0
"""

__version__ = "1.0.0"

from typing import TYPE_CHECKING

from .audit import LoggingAuditRecorder, MemoryAuditRecorder
from .backends import (
    BaseBackend,
    HealthCheckResult,
    MemoryBackend,
)
from .capacity import CapacityManager
from .clock import AsyncioClock, ManualClock
from .config import AlertLevel, AlertThresholds, EngineConfig
from .engine import ReservationEngine, create_engine
from .exceptions import (
    AlreadyQueuedError,
    BackendConnectionError,
    BackendOperationError,
    CapacityEngineError,
    ConcurrentModificationError,
    ConfigurationError,
    ConfirmationExpiredError,
    EntryNotFoundError,
    ForbiddenError,
    HoldNotFoundError,
    InsufficientCapacityError,
    InvalidEntryStateError,
    LedgerNotFoundError,
    WaitlistDisabledError,
)
from .holds import HoldManager
from .promotion import PromotionCoordinator, ReconciliationReport
from .protocols import (
    AuditRecorderProtocol,
    ClockProtocol,
    NotifierProtocol,
)
from .types import (
    DEFAULT_TIER,
    AuditAction,
    AuditRecord,
    CapacityLedger,
    CapacityStatus,
    HoldStatus,
    HoldTicket,
    ReleaseReason,
    ReservationHold,
    WaitlistEntry,
    WaitlistStats,
    WaitlistStatus,
)
from .waitlist import WaitlistQueue

# Lazy import for optional redis backend
if TYPE_CHECKING:
    from .backends import RedisBackend

__all__ = [
    "DEFAULT_TIER",
    "AlertLevel",
    "AlertThresholds",
    "AlreadyQueuedError",
    "AsyncioClock",
    "AuditAction",
    "AuditRecord",
    "AuditRecorderProtocol",
    "BackendConnectionError",
    "BackendOperationError",
    # Backends
    "BaseBackend",
    # Exceptions
    "CapacityEngineError",
    "CapacityLedger",
    # Components
    "CapacityManager",
    "CapacityStatus",
    # Protocols
    "ClockProtocol",
    "ConcurrentModificationError",
    "ConfigurationError",
    "ConfirmationExpiredError",
    # Config
    "EngineConfig",
    "EntryNotFoundError",
    "ForbiddenError",
    "HealthCheckResult",
    "HoldManager",
    "HoldNotFoundError",
    "HoldStatus",
    "HoldTicket",
    "InsufficientCapacityError",
    "InvalidEntryStateError",
    "LedgerNotFoundError",
    # Audit
    "LoggingAuditRecorder",
    # Clocks
    "ManualClock",
    "MemoryAuditRecorder",
    "MemoryBackend",
    "NotifierProtocol",
    "PromotionCoordinator",
    "ReconciliationReport",
    "RedisBackend",  # Lazy loaded - requires redis extra
    "ReleaseReason",
    # Facade
    "ReservationEngine",
    # Types
    "ReservationHold",
    "WaitlistDisabledError",
    "WaitlistEntry",
    "WaitlistQueue",
    "WaitlistStats",
    "WaitlistStatus",
    "create_engine",
]


def __getattr__(name: str) -> type:
    """Lazy import for optional redis backend."""
    if name == "RedisBackend":
        from .backends import RedisBackend

        return RedisBackend
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
