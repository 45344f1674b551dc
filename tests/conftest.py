# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Shared fixtures: a simulated clock, memory storage and wired components."""

from __future__ import annotations

import asyncio
from datetime import datetime

import pytest
from prometheus_client import CollectorRegistry

from capacity_engine.audit import MemoryAuditRecorder
from capacity_engine.backends.memory import MemoryBackend
from capacity_engine.capacity import CapacityManager
from capacity_engine.clock import ManualClock
from capacity_engine.config import EngineConfig
from capacity_engine.engine import ReservationEngine
from capacity_engine.holds import HoldManager
from capacity_engine.observability.collector import UnifiedMetricsCollector
from capacity_engine.promotion import PromotionCoordinator
from capacity_engine.waitlist import WaitlistQueue


class RecordingNotifier:
    """Notifier double that remembers every call."""

    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.fail = fail
        self.delay = delay
        self.offers: list[tuple[str, str, str, datetime]] = []
        self.joins: list[tuple[str, str, int]] = []

    async def notify(
        self, user_id: str, event_id: str, hold_id: str, expires_at: datetime
    ) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("smtp down")
        self.offers.append((user_id, event_id, hold_id, expires_at))

    async def notify_joined(self, user_id: str, event_id: str, position: int) -> None:
        if self.fail:
            raise RuntimeError("smtp down")
        self.joins.append((user_id, event_id, position))

    @property
    def offered_users(self) -> list[str]:
        return [offer[0] for offer in self.offers]


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend(namespace="test")


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig(
        hold_ttl=900,
        confirm_window=900,
        hold_grace_period=60,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
    )


@pytest.fixture
def metrics() -> UnifiedMetricsCollector:
    return UnifiedMetricsCollector(registry=CollectorRegistry())


@pytest.fixture
def audit() -> MemoryAuditRecorder:
    return MemoryAuditRecorder()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def capacity(backend, clock, config, audit, metrics) -> CapacityManager:
    return CapacityManager(backend, clock, config, audit, metrics)


@pytest.fixture
def holds(capacity, backend, clock, config, audit, metrics) -> HoldManager:
    return HoldManager(capacity, backend, clock, config, audit, metrics)


@pytest.fixture
def waitlist(backend, clock, config, audit, metrics) -> WaitlistQueue:
    return WaitlistQueue(backend, clock, config, audit, metrics)


@pytest.fixture
def coordinator(
    capacity, holds, waitlist, backend, clock, notifier, config, metrics
) -> PromotionCoordinator:
    return PromotionCoordinator(
        capacity,
        holds,
        waitlist,
        backend,
        clock,
        notifier=notifier,
        config=config,
        metrics=metrics,
    )


@pytest.fixture
def engine(backend, clock, notifier, audit, config, metrics) -> ReservationEngine:
    return ReservationEngine(
        backend=backend,
        clock=clock,
        notifier=notifier,
        audit=audit,
        config=config,
        metrics=metrics,
    )
