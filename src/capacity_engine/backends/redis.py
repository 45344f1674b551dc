# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
RedisBackend for the Capacity Engine

This module provides the RedisBackend that shares ledgers, holds and waitlist
entries between processes, with an atomic Lua compare-and-set for every write.

Key Features:
- JSON records in three hashes per namespace (ledgers, holds, entries),
  each shadowed by a hash of record versions
- Per-queue index sets for waitlist entries
- Atomic multi-record compare-and-set Lua script
- Redis locks (``redis.asyncio.lock.Lock``) for exclusive sections
- Single hash tag per namespace for Redis Cluster slot consistency
"""

import asyncio
import logging
import os
from collections.abc import AsyncIterator, Iterator, Sequence
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import Any, ClassVar, TypeVar

from pydantic import BaseModel, ValidationError
from redis.asyncio import Redis
from redis.exceptions import (
    ConnectionError,
    LockNotOwnedError,
    NoScriptError,
    RedisError,
    TimeoutError,
)

from ..exceptions import (
    BackendConnectionError,
    BackendOperationError,
    ConcurrentModificationError,
)
from ..observability.collector import UnifiedMetricsCollector
from ..observability.constants import (
    BACKEND_CONNECTION_ERRORS_TOTAL,
    BACKEND_LUA_EXECUTIONS_TOTAL,
)
from ..types.hold import HoldStatus, ReservationHold
from ..types.keys import pair_key
from ..types.ledger import CapacityLedger
from ..types.waitlist import WaitlistEntry, WaitlistStatus
from .base import BaseBackend, HealthCheckResult, entry_batch_pair

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)

COMPARE_AND_SET = "compare_and_set"


class RedisBackend(BaseBackend):
    """
    A distributed Redis backend for the capacity engine.

    Every key of a namespace shares the ``{namespace}`` hash tag, so the
    multi-record script stays valid on Redis Cluster.

    Deployment Requirements:
    - Redis 2.6+ with Lua scripting
    """

    # Class-level Lua scripts loaded from files
    _lua_scripts: ClassVar[dict[str, str]] = {}

    @classmethod
    def _load_lua_scripts(cls) -> None:
        """Load Lua scripts from files at class level."""
        if cls._lua_scripts:
            return  # Already loaded

        lua_dir = Path(__file__).parent / "lua"
        for script_name in (COMPARE_AND_SET,):
            script_path = lua_dir / f"{script_name}.lua"
            cls._lua_scripts[script_name] = script_path.read_text(encoding="utf-8")

    def __init__(
        self,
        redis_url: str | None = None,
        redis_client: Any | None = None,
        namespace: str = "capacity_engine",
        max_connections: int = 10,
        lock_timeout: float = 30.0,
        lock_blocking_timeout: float = 5.0,
        lock_sleep: float = 0.01,
        metrics: UnifiedMetricsCollector | None = None,
    ) -> None:
        """
        Initialize the Redis backend.

        Args:
            redis_url: Redis connection URL. If not provided, falls back to REDIS_URL
                environment variable, then to "redis://localhost:6379".
            redis_client: Optional pre-configured client (must decode responses)
            namespace: Namespace embedded in every key as a hash tag
            max_connections: Maximum connections in the pool
            lock_timeout: Seconds after which an abandoned lock frees itself
            lock_blocking_timeout: Seconds to wait for a lock before raising
                ConcurrentModificationError
            lock_sleep: Polling interval while waiting for a lock
            metrics: Optional collector for script and connection metrics

        Environment Variables:
            REDIS_URL: Default Redis connection URL when redis_url parameter is not provided.
        """
        super().__init__(namespace)

        self.redis_url = (
            redis_url or os.environ.get("REDIS_URL") or "redis://localhost:6379"
        )
        self.max_connections = max_connections
        self.lock_timeout = lock_timeout
        self.lock_blocking_timeout = lock_blocking_timeout
        self.lock_sleep = lock_sleep
        self._metrics = metrics

        self._redis: Any | None = redis_client
        self._owned_redis = redis_client is None
        self._connected = False
        self._connection_lock = asyncio.Lock()

        # Lua script SHAs
        self._script_shas: dict[str, str] = {}

        tag = f"{{{namespace}}}"
        self.key_prefix = f"ce:{tag}"
        self.ledgers_key = f"{self.key_prefix}:ledgers"
        self.holds_key = f"{self.key_prefix}:holds"
        self.entries_key = f"{self.key_prefix}:entries"

    @staticmethod
    def _versions_key(hash_key: str) -> str:
        return f"{hash_key}:versions"

    def _queue_key(self, pair: str) -> str:
        """Get Redis key for the index set of one waitlist queue."""
        return f"{self.key_prefix}:queue:{pair}"

    def _lock_key(self, key: str) -> str:
        return f"{self.key_prefix}:lock:{key}"

    @contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        """Map redis-py exceptions onto the engine's backend errors."""
        try:
            yield
        except (ConnectionError, TimeoutError) as e:
            if self._metrics is not None:
                self._metrics.inc_counter(
                    BACKEND_CONNECTION_ERRORS_TOTAL,
                    labels={"error_type": type(e).__name__},
                )
            logger.error(f"Redis connection error during {operation}: {e}")
            raise BackendConnectionError(f"Redis unavailable during {operation}") from e
        except RedisError as e:
            logger.error(f"Redis error during {operation}: {e}")
            raise BackendOperationError(f"Redis {operation} failed: {e}") from e

    async def _ensure_connected(self) -> Any:
        """Create the client on first use, ping it and load scripts."""
        if self._redis is not None and self._connected:
            return self._redis

        async with self._connection_lock:
            if self._redis is not None and self._connected:
                return self._redis

            with self._translate_errors("connect"):
                if self._redis is None:
                    self._redis = Redis.from_url(
                        self.redis_url,
                        max_connections=self.max_connections,
                        decode_responses=True,
                    )
                await self._redis.ping()
                await self._load_scripts()
            self._connected = True
            logger.info(f"RedisBackend connected (namespace={self.namespace})")
            return self._redis

    async def _load_scripts(self) -> None:
        """Load Lua scripts into Redis."""
        if not self._redis:
            raise RuntimeError("Redis client not initialized")

        self.__class__._load_lua_scripts()

        for script_name, script_source in self._lua_scripts.items():
            self._script_shas[script_name] = await self._redis.script_load(
                script_source
            )

    async def _evalsha_with_reload(
        self,
        redis_client: Any,
        script_name: str,
        num_keys: int,
        *args: Any,
    ) -> Any:
        """
        Execute EVALSHA with automatic script reload on NoScriptError.

        When Redis nodes restart, all Lua scripts are lost. This method
        detects the NoScriptError and transparently reloads the scripts, then
        retries the operation once.
        """
        script_sha = self._script_shas.get(script_name)
        if not script_sha:
            await self._load_scripts()
            script_sha = self._script_shas[script_name]

        if self._metrics is not None:
            self._metrics.inc_counter(
                BACKEND_LUA_EXECUTIONS_TOTAL, labels={"script_name": script_name}
            )

        try:
            return await redis_client.evalsha(script_sha, num_keys, *args)
        except NoScriptError:
            logger.warning(
                f"Script '{script_name}' not found in Redis (SHA: {script_sha}). "
                f"Reloading all Lua scripts..."
            )
            self._script_shas.clear()
            await self._load_scripts()

            # Retry with new SHA (only once to prevent infinite loop)
            new_sha = self._script_shas[script_name]
            logger.info(f"Scripts reloaded. Retrying with new SHA: {new_sha}")
            return await redis_client.evalsha(new_sha, num_keys, *args)

    async def _compare_and_set(
        self,
        hash_key: str,
        records: Sequence[tuple[str, BaseModel, int]],
        index_key: str | None = None,
    ) -> None:
        """
        Write ``(field, record, version)`` triples atomically.

        Raises:
            ConcurrentModificationError: If any stored version is not
                ``version - 1``
        """
        args: list[Any] = [len(records)]
        for field, record, version in records:
            args.extend([field, version - 1, record.model_dump_json()])
        keys = [hash_key, self._versions_key(hash_key)]
        if index_key is not None:
            keys.append(index_key)

        redis_client = await self._ensure_connected()
        with self._translate_errors(COMPARE_AND_SET):
            result = await self._evalsha_with_reload(
                redis_client, COMPARE_AND_SET, len(keys), *keys, *args
            )

        if int(result[0]) != 1:
            field, stored = result[1], int(result[2])
            raise ConcurrentModificationError(
                f"Version conflict on {field}: stored {stored}", key=field
            )

    @staticmethod
    def _parse(model: type[RecordT], raw: str | None) -> RecordT | None:
        if raw is None:
            return None
        try:
            return model.model_validate_json(raw)
        except ValidationError as e:
            raise BackendOperationError(
                f"Corrupt {model.__name__} record in Redis: {e}"
            ) from e

    async def _values(self, model: type[RecordT], hash_key: str) -> list[RecordT]:
        redis_client = await self._ensure_connected()
        with self._translate_errors("hvals"):
            raws = await redis_client.hvals(hash_key)
        return [r for r in (self._parse(model, raw) for raw in raws) if r is not None]

    # === Exclusive Sections ===

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        redis_client = await self._ensure_connected()
        redis_lock = redis_client.lock(
            self._lock_key(key),
            timeout=self.lock_timeout,
            sleep=self.lock_sleep,
            blocking_timeout=self.lock_blocking_timeout,
        )
        with self._translate_errors("lock"):
            acquired = await redis_lock.acquire()
        if not acquired:
            raise ConcurrentModificationError(
                f"Timed out waiting for lock {key}", key=key
            )
        try:
            yield
        finally:
            try:
                await redis_lock.release()
            except LockNotOwnedError:
                # Lock outlived lock_timeout; writes stay guarded by versions
                logger.warning(f"Lock {key} expired before release")

    # === Ledgers ===

    async def get_ledger(self, event_id: str, tier: str) -> CapacityLedger | None:
        redis_client = await self._ensure_connected()
        with self._translate_errors("get_ledger"):
            raw = await redis_client.hget(self.ledgers_key, pair_key(event_id, tier))
        return self._parse(CapacityLedger, raw)

    async def put_ledger(self, ledger: CapacityLedger) -> None:
        field = pair_key(ledger.event_id, ledger.tier)
        await self._compare_and_set(self.ledgers_key, [(field, ledger, ledger.version)])

    async def list_ledgers(self, event_id: str | None = None) -> list[CapacityLedger]:
        ledgers = await self._values(CapacityLedger, self.ledgers_key)
        return [lg for lg in ledgers if event_id is None or lg.event_id == event_id]

    # === Holds ===

    async def get_hold(self, hold_id: str) -> ReservationHold | None:
        redis_client = await self._ensure_connected()
        with self._translate_errors("get_hold"):
            raw = await redis_client.hget(self.holds_key, hold_id)
        return self._parse(ReservationHold, raw)

    async def put_hold(self, hold: ReservationHold) -> None:
        await self._compare_and_set(self.holds_key, [(hold.id, hold, hold.version)])

    async def list_holds_by_status(
        self, status: HoldStatus, event_id: str | None = None
    ) -> list[ReservationHold]:
        holds = await self._values(ReservationHold, self.holds_key)
        return [
            h
            for h in holds
            if h.status is status and (event_id is None or h.event_id == event_id)
        ]

    # === Waitlist Entries ===

    async def get_entry(self, entry_id: str) -> WaitlistEntry | None:
        redis_client = await self._ensure_connected()
        with self._translate_errors("get_entry"):
            raw = await redis_client.hget(self.entries_key, entry_id)
        return self._parse(WaitlistEntry, raw)

    async def put_entries(self, entries: Sequence[WaitlistEntry]) -> None:
        pair = entry_batch_pair(entries)
        await self._compare_and_set(
            self.entries_key,
            [(e.id, e, e.version) for e in entries],
            index_key=self._queue_key(pair),
        )

    async def list_entries(
        self, event_id: str, tier: str | None
    ) -> list[WaitlistEntry]:
        redis_client = await self._ensure_connected()
        with self._translate_errors("list_entries"):
            ids = await redis_client.smembers(self._queue_key(pair_key(event_id, tier)))
            raws = await redis_client.hmget(self.entries_key, sorted(ids)) if ids else []
        entries = [
            e for e in (self._parse(WaitlistEntry, raw) for raw in raws) if e is not None
        ]
        return sorted(entries, key=lambda e: (e.joined_at, e.position))

    async def list_entries_by_status(
        self, status: WaitlistStatus, event_id: str | None = None
    ) -> list[WaitlistEntry]:
        entries = await self._values(WaitlistEntry, self.entries_key)
        return [
            e
            for e in entries
            if e.status is status and (event_id is None or e.event_id == event_id)
        ]

    # === Lifecycle ===

    async def health_check(self) -> HealthCheckResult:
        """Perform health check on the backend."""
        try:
            redis_client = await self._ensure_connected()
            with self._translate_errors("health_check"):
                info = await redis_client.info()
                ledgers = await redis_client.hlen(self.ledgers_key)
                holds = await redis_client.hlen(self.holds_key)
                entries = await redis_client.hlen(self.entries_key)
        except (BackendConnectionError, BackendOperationError) as e:
            return HealthCheckResult(
                healthy=False,
                backend_type="redis",
                namespace=self.namespace,
                error=str(e),
            )

        return HealthCheckResult(
            healthy=True,
            backend_type="redis",
            namespace=self.namespace,
            metadata={
                "redis_url": self.redis_url,
                "connected": self._connected,
                "redis_version": info.get("redis_version"),
                "used_memory": info.get("used_memory_human"),
                "ledgers": ledgers,
                "holds": holds,
                "entries": entries,
            },
        )

    async def clear(self) -> None:
        """Delete every key of this namespace, locks included."""
        redis_client = await self._ensure_connected()
        with self._translate_errors("clear"):
            keys_to_delete = []
            async for key in redis_client.scan_iter(
                match=f"{self.key_prefix}:*", count=100
            ):
                keys_to_delete.append(key)
                if len(keys_to_delete) >= 100:
                    await redis_client.delete(*keys_to_delete)
                    keys_to_delete = []
            if keys_to_delete:
                await redis_client.delete(*keys_to_delete)

    async def close(self) -> None:
        """Close the client if this backend created it."""
        if self._redis is not None and self._owned_redis:
            try:
                await asyncio.wait_for(self._redis.aclose(), timeout=2.5)
            except (asyncio.TimeoutError, RedisError, OSError) as e:
                logger.error(f"Error during cleanup: {e}")
            finally:
                self._redis = None
        self._connected = False


__all__ = ["COMPARE_AND_SET", "RedisBackend"]
