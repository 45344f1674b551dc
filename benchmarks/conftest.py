"""
Shared fixtures for benchmark tests.
"""

import pytest
import pytest_asyncio

from capacity_engine.backends.memory import MemoryBackend
from capacity_engine.clock import ManualClock
from capacity_engine.config import EngineConfig
from capacity_engine.engine import ReservationEngine


class NullAuditRecorder:
    """Audit sink that drops records, so only engine work is measured."""

    async def record(self, record) -> None:
        return None


@pytest.fixture
def benchmark_config():
    """Configuration optimized for benchmarking."""
    return EngineConfig(
        metrics_enabled=False,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
    )


@pytest_asyncio.fixture
async def engine(benchmark_config):
    """Engine over a memory backend and a simulated clock."""
    engine = ReservationEngine(
        backend=MemoryBackend(),
        clock=ManualClock(),
        audit=NullAuditRecorder(),
        config=benchmark_config,
    )
    yield engine
    await engine.close()
