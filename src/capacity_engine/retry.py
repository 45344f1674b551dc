# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Bounded retry for operations that lose a compare-and-set race.

Every public mutation is a read-check-write sequence guarded by a lock and a
version check. When another writer wins, the sequence is replayed from a fresh
read after an exponential backoff with jitter.
"""

import asyncio
import logging
import random  # Used in get_backoff_delay()
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .config import EngineConfig
from .exceptions import ConcurrentModificationError
from .observability.collector import UnifiedMetricsCollector
from .observability.constants import VERSION_CONFLICTS_TOTAL

logger = logging.getLogger(__name__)

T = TypeVar("T")


def get_backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Calculate exponential backoff delay for a retry attempt.

    Uses exponential backoff with jitter: base_delay * 2^attempt + jitter
    """
    delay = min(base_delay * (2**attempt), max_delay)
    # Add up to 25% jitter to prevent thundering herd
    jitter: float = delay * 0.25 * random.random()  # noqa: S311  # nosec B311
    return float(delay + jitter)


async def retry_on_conflict(
    operation: Callable[[], Awaitable[T]],
    config: EngineConfig,
    *,
    name: str,
    metrics: UnifiedMetricsCollector | None = None,
) -> T:
    """
    Run ``operation``, replaying it when it raises ConcurrentModificationError.

    Args:
        operation: Zero-argument coroutine factory; each call must re-read state
        config: Supplies the attempt budget and backoff delays
        name: Operation name for logs and the conflict metric label
        metrics: Optional collector for the conflict counter

    Raises:
        ConcurrentModificationError: When every attempt lost the race
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except ConcurrentModificationError as e:
            attempt += 1
            if metrics is not None:
                metrics.inc_counter(VERSION_CONFLICTS_TOTAL, labels={"operation": name})
            if attempt >= config.max_conflict_retries:
                logger.warning(
                    f"{name} gave up after {attempt} conflicting attempts (key={e.key})"
                )
                raise
            delay = get_backoff_delay(
                attempt - 1, config.retry_base_delay, config.retry_max_delay
            )
            logger.debug(
                f"{name} conflicted on {e.key}, retrying in {delay:.3f}s "
                f"(attempt {attempt}/{config.max_conflict_retries})"
            )
            await asyncio.sleep(delay)


__all__ = ["get_backoff_delay", "retry_on_conflict"]
