# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Fault-isolated delivery of notifier calls."""

import asyncio
import logging
from collections.abc import Awaitable
from typing import Any

from .observability.collector import UnifiedMetricsCollector
from .observability.constants import NOTIFIER_FAILURES_TOTAL

logger = logging.getLogger(__name__)


async def deliver(
    call: Awaitable[Any],
    *,
    description: str,
    timeout: float,
    metrics: UnifiedMetricsCollector | None = None,
) -> bool:
    """
    Await a notifier call, bounded by ``timeout`` seconds.

    Failures are logged and counted, never raised: the state transition the
    notification describes has already been stored.

    Returns:
        True if the notifier completed
    """
    try:
        await asyncio.wait_for(call, timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Notifier timed out after {timeout}s: {description}")
        if metrics is not None:
            metrics.inc_counter(NOTIFIER_FAILURES_TOTAL, labels={"reason": "timeout"})
        return False
    except Exception:
        logger.exception(f"Notifier failed: {description}")
        if metrics is not None:
            metrics.inc_counter(NOTIFIER_FAILURES_TOTAL, labels={"reason": "error"})
        return False
    return True


__all__ = ["deliver"]
