# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Backend implementations for ledger, hold and waitlist storage.

Available backends:
- BaseBackend: Abstract base class defining the backend interface
- MemoryBackend: In-memory backend for single-process deployments
- RedisBackend: Redis-based backend for distributed deployments (requires redis extra)

Supporting types:
- HealthCheckResult: Structured result from backend health checks

Note: RedisBackend is lazily imported to avoid requiring the redis package
when only using MemoryBackend.
"""

from typing import TYPE_CHECKING, cast

from capacity_engine.backends.base import (
    BaseBackend,
    HealthCheckResult,
    check_expected_version,
    entry_batch_pair,
)
from capacity_engine.backends.memory import MemoryBackend

# Lazy imports for optional redis backend
if TYPE_CHECKING:
    from capacity_engine.backends.redis import RedisBackend

__all__ = [
    # Base classes
    "BaseBackend",
    "HealthCheckResult",
    # Memory backend
    "MemoryBackend",
    # Redis backend (lazy loaded)
    "RedisBackend",
    "check_expected_version",
    "entry_batch_pair",
]


def __getattr__(name: str) -> type:
    """Lazy import for optional redis backend components."""
    if name == "RedisBackend":
        try:
            from capacity_engine.backends import redis as redis_module

            return cast(type, getattr(redis_module, name))
        except ImportError as e:  # pragma: no cover
            raise ImportError(  # pragma: no cover
                f"'{name}' requires the 'redis' extra. "
                "Install with: pip install capacity-engine[redis]"
            ) from e
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
