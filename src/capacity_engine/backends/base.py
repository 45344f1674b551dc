# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Base Backend for the Capacity Engine

This module provides the BaseBackend abstract class that defines the storage
contract shared by the in-memory and Redis implementations.

Contract:
- Records are pydantic models carrying an integer ``version``.
- A write succeeds only if the stored version equals ``record.version - 1``
  (a missing record counts as version 0). Otherwise the write raises
  ConcurrentModificationError and nothing is changed.
- ``lock(key)`` provides a named exclusive section. Failing to acquire it in
  time also raises ConcurrentModificationError.
- Reads return independent copies; mutating them never changes storage.
"""

import abc
import logging
from collections.abc import Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Any

from ..exceptions import ConcurrentModificationError
from ..types.hold import HoldStatus, ReservationHold
from ..types.keys import pair_key
from ..types.ledger import CapacityLedger
from ..types.waitlist import WaitlistEntry, WaitlistStatus

logger = logging.getLogger(__name__)


@dataclass
class HealthCheckResult:
    """
    Structured health check result for backend monitoring.

    Attributes:
        healthy: Whether the backend is operational
        backend_type: Type of backend (e.g., 'redis', 'memory')
        namespace: Backend namespace
        error: Error message if unhealthy
        metadata: Additional backend-specific information
    """

    healthy: bool
    backend_type: str
    namespace: str
    error: str | None = None
    metadata: dict[str, Any] | None = None


def check_expected_version(key: str, stored_version: int, record_version: int) -> None:
    """
    Raise ConcurrentModificationError unless ``record_version`` follows
    ``stored_version``.

    Args:
        key: Record key, for the error message
        stored_version: Version currently stored, 0 when absent
        record_version: Version of the record being written
    """
    if stored_version != record_version - 1:
        raise ConcurrentModificationError(
            f"Version conflict on {key}: stored {stored_version}, "
            f"write expects {record_version - 1}",
            key=key,
        )


def entry_batch_pair(entries: Sequence[WaitlistEntry]) -> str:
    """
    Return the queue pair shared by a batch of waitlist entries.

    Raises:
        ValueError: If the batch is empty or spans more than one queue
    """
    if not entries:
        raise ValueError("entry batch must not be empty")
    pairs = {pair_key(e.event_id, e.tier) for e in entries}
    if len(pairs) != 1:
        raise ValueError(f"entry batch spans several queues: {sorted(pairs)}")
    return pairs.pop()


class BaseBackend(abc.ABC):
    """
    An abstract base class that defines the common interface for all backend
    implementations in the capacity engine.

    Subclasses must implement all abstract methods to provide a concrete
    backend implementation.
    """

    def __init__(self, namespace: str = "capacity_engine"):
        """
        Initialize the backend with a namespace for isolation.

        Args:
            namespace: Namespace for isolating data across different instances
        """
        self.namespace = namespace

    # ==========================================================================
    # Exclusive Sections
    # ==========================================================================

    @abc.abstractmethod
    def lock(self, key: str) -> AbstractAsyncContextManager[None]:
        """
        Return an async context manager holding the named lock.

        Args:
            key: Lock name, built with the helpers in ``types.keys``

        Raises:
            ConcurrentModificationError: If the lock cannot be acquired in time
        """

    # ==========================================================================
    # Ledgers
    # ==========================================================================

    @abc.abstractmethod
    async def get_ledger(self, event_id: str, tier: str) -> CapacityLedger | None:
        """Get the ledger of an (event, tier) pair, if configured."""

    @abc.abstractmethod
    async def put_ledger(self, ledger: CapacityLedger) -> None:
        """
        Store a ledger with compare-and-set on its version.

        Raises:
            ConcurrentModificationError: If the stored version moved on
        """

    @abc.abstractmethod
    async def list_ledgers(self, event_id: str | None = None) -> list[CapacityLedger]:
        """List ledgers, optionally restricted to one event."""

    # ==========================================================================
    # Holds
    # ==========================================================================

    @abc.abstractmethod
    async def get_hold(self, hold_id: str) -> ReservationHold | None:
        """Get a hold by id, including terminal ones."""

    @abc.abstractmethod
    async def put_hold(self, hold: ReservationHold) -> None:
        """
        Store a hold with compare-and-set on its version.

        Raises:
            ConcurrentModificationError: If the stored version moved on
        """

    @abc.abstractmethod
    async def list_holds_by_status(
        self, status: HoldStatus, event_id: str | None = None
    ) -> list[ReservationHold]:
        """List holds in one status, optionally restricted to one event."""

    # ==========================================================================
    # Waitlist Entries
    # ==========================================================================

    @abc.abstractmethod
    async def get_entry(self, entry_id: str) -> WaitlistEntry | None:
        """Get a waitlist entry by id, including terminal ones."""

    @abc.abstractmethod
    async def put_entries(self, entries: Sequence[WaitlistEntry]) -> None:
        """
        Store a batch of entries of one queue atomically.

        Every entry is version-checked before any is written, so either the
        whole batch lands or none of it does.

        Raises:
            ConcurrentModificationError: If any stored version moved on
            ValueError: If the batch is empty or spans several queues
        """

    @abc.abstractmethod
    async def list_entries(
        self, event_id: str, tier: str | None
    ) -> list[WaitlistEntry]:
        """List every entry of one queue, in any status, ordered by join time."""

    @abc.abstractmethod
    async def list_entries_by_status(
        self, status: WaitlistStatus, event_id: str | None = None
    ) -> list[WaitlistEntry]:
        """List entries in one status across queues."""

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    @abc.abstractmethod
    async def health_check(self) -> HealthCheckResult:
        """
        Perform a health check on the backend.

        Returns:
            HealthCheckResult with health status and diagnostic information
        """

    @abc.abstractmethod
    async def clear(self) -> None:
        """Remove every record in this backend's namespace."""

    async def close(self) -> None:
        """Release connections or other resources. No-op by default."""
        logger.debug(f"Closing backend '{self.namespace}'")

    async def __aenter__(self) -> "BaseBackend":
        return self

    async def __aexit__(self, exc_type: Any, _exc_val: Any, _exc_tb: Any) -> None:
        await self.close()


__all__ = [
    "BaseBackend",
    "HealthCheckResult",
    "check_expected_version",
    "entry_batch_pair",
]
