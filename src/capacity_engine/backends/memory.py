# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
MemoryBackend for the Capacity Engine

This module provides an in-memory backend implementation that doesn't require Redis.
Perfect for testing, development, and single-process applications.
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager

from ..exceptions import ConcurrentModificationError
from ..types.hold import HoldStatus, ReservationHold
from ..types.keys import pair_key
from ..types.ledger import CapacityLedger
from ..types.waitlist import WaitlistEntry, WaitlistStatus
from .base import (
    BaseBackend,
    HealthCheckResult,
    check_expected_version,
    entry_batch_pair,
)

logger = logging.getLogger(__name__)


class MemoryBackend(BaseBackend):
    """
    An in-memory backend implementation for the capacity engine.

    This backend provides a simple, Redis-free implementation suitable for:
    - Testing and development
    - Single-process applications

    Key Features:
    - Pure in-memory dict-based storage
    - Per-key asyncio.Lock exclusive sections
    - Version-checked writes with all-or-nothing entry batches
    - Deep copies in and out, so callers never alias stored records

    Note:
        This backend is NOT suitable for:
        - Multi-process applications
        - Distributed systems
    """

    def __init__(
        self,
        namespace: str = "capacity_engine_memory",
        lock_blocking_timeout: float | None = None,
    ) -> None:
        """
        Initialize the in-memory backend.

        Args:
            namespace: Namespace for key isolation (for compatibility)
            lock_blocking_timeout: Seconds to wait for a lock before raising
                ConcurrentModificationError. None waits indefinitely.
        """
        super().__init__(namespace)
        self.lock_blocking_timeout = lock_blocking_timeout

        self._ledgers: dict[str, CapacityLedger] = {}
        self._holds: dict[str, ReservationHold] = {}
        self._entries: dict[str, WaitlistEntry] = {}
        # Queue pair -> entry ids in insertion order
        self._queues: dict[str, list[str]] = defaultdict(list)

        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        # Guards multi-record writes against interleaving with other writers
        self._write_lock = asyncio.Lock()

        logger.debug(f"Initialized MemoryBackend with namespace '{namespace}'")

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        lock = self._locks[key]
        if self.lock_blocking_timeout is None:
            await lock.acquire()
        else:
            try:
                await asyncio.wait_for(lock.acquire(), self.lock_blocking_timeout)
            except asyncio.TimeoutError as e:
                raise ConcurrentModificationError(
                    f"Timed out waiting for lock {key}", key=key
                ) from e
        try:
            yield
        finally:
            lock.release()

    # === Ledgers ===

    async def get_ledger(self, event_id: str, tier: str) -> CapacityLedger | None:
        ledger = self._ledgers.get(pair_key(event_id, tier))
        return ledger.model_copy(deep=True) if ledger else None

    async def put_ledger(self, ledger: CapacityLedger) -> None:
        key = pair_key(ledger.event_id, ledger.tier)
        async with self._write_lock:
            stored = self._ledgers.get(key)
            check_expected_version(
                f"ledger:{key}", stored.version if stored else 0, ledger.version
            )
            self._ledgers[key] = ledger.model_copy(deep=True)

    async def list_ledgers(self, event_id: str | None = None) -> list[CapacityLedger]:
        return [
            ledger.model_copy(deep=True)
            for ledger in self._ledgers.values()
            if event_id is None or ledger.event_id == event_id
        ]

    # === Holds ===

    async def get_hold(self, hold_id: str) -> ReservationHold | None:
        hold = self._holds.get(hold_id)
        return hold.model_copy(deep=True) if hold else None

    async def put_hold(self, hold: ReservationHold) -> None:
        async with self._write_lock:
            stored = self._holds.get(hold.id)
            check_expected_version(
                f"hold:{hold.id}", stored.version if stored else 0, hold.version
            )
            self._holds[hold.id] = hold.model_copy(deep=True)

    async def list_holds_by_status(
        self, status: HoldStatus, event_id: str | None = None
    ) -> list[ReservationHold]:
        return [
            hold.model_copy(deep=True)
            for hold in self._holds.values()
            if hold.status is status and (event_id is None or hold.event_id == event_id)
        ]

    # === Waitlist Entries ===

    async def get_entry(self, entry_id: str) -> WaitlistEntry | None:
        entry = self._entries.get(entry_id)
        return entry.model_copy(deep=True) if entry else None

    async def put_entries(self, entries: Sequence[WaitlistEntry]) -> None:
        pair = entry_batch_pair(entries)
        async with self._write_lock:
            # Check the whole batch before touching storage
            for entry in entries:
                stored = self._entries.get(entry.id)
                check_expected_version(
                    f"entry:{entry.id}", stored.version if stored else 0, entry.version
                )
            for entry in entries:
                if entry.id not in self._entries:
                    self._queues[pair].append(entry.id)
                self._entries[entry.id] = entry.model_copy(deep=True)

    async def list_entries(
        self, event_id: str, tier: str | None
    ) -> list[WaitlistEntry]:
        entries = [
            self._entries[entry_id].model_copy(deep=True)
            for entry_id in self._queues.get(pair_key(event_id, tier), [])
        ]
        # Stable sort keeps insertion order for equal join times
        return sorted(entries, key=lambda e: e.joined_at)

    async def list_entries_by_status(
        self, status: WaitlistStatus, event_id: str | None = None
    ) -> list[WaitlistEntry]:
        return [
            entry.model_copy(deep=True)
            for entry in self._entries.values()
            if entry.status is status
            and (event_id is None or entry.event_id == event_id)
        ]

    # === Lifecycle ===

    async def health_check(self) -> HealthCheckResult:
        return HealthCheckResult(
            healthy=True,
            backend_type="memory",
            namespace=self.namespace,
            metadata={
                "ledgers": len(self._ledgers),
                "holds": len(self._holds),
                "entries": len(self._entries),
                "locks": len(self._locks),
            },
        )

    async def clear(self) -> None:
        async with self._write_lock:
            self._ledgers.clear()
            self._holds.clear()
            self._entries.clear()
            self._queues.clear()
        logger.debug(f"Cleared MemoryBackend '{self.namespace}'")


__all__ = ["MemoryBackend"]
