"""
Shared fixtures for integration tests.

Tests run against an in-process fakeredis server by default. Set REDIS_URL
to run the same tests against a real Redis instance instead.

Prerequisites:
    - fakeredis>=2.26.0
    - lupa>=2.0 (required for Lua script execution in fakeredis)
"""

import logging
import os
import uuid

import pytest
import pytest_asyncio

from capacity_engine.backends.memory import MemoryBackend

try:
    import fakeredis.aioredis as fakeredis
except ImportError:
    fakeredis = None

try:
    import lupa
except ImportError:
    lupa = None

logger = logging.getLogger(__name__)

REDIS_URL_ENV = "REDIS_URL"


def redis_available() -> bool:
    return bool(os.getenv(REDIS_URL_ENV)) or (fakeredis is not None and lupa is not None)


def make_client():
    """A decoded-responses client on REDIS_URL when set, else on fakeredis."""
    url = os.getenv(REDIS_URL_ENV)
    if url:
        from redis.asyncio import Redis

        return Redis.from_url(url, decode_responses=True)
    assert fakeredis is not None, "fakeredis not available"
    return fakeredis.FakeRedis(decode_responses=True)


def make_redis_backend(client):
    """RedisBackend in a namespace unique to one test."""
    from capacity_engine.backends.redis import RedisBackend

    return RedisBackend(
        redis_client=client,
        namespace=f"test-{uuid.uuid4().hex[:8]}",
        lock_blocking_timeout=2.0,
    )


@pytest_asyncio.fixture
async def redis_client():
    client = make_client()
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def redis_backend(redis_client):
    backend = make_redis_backend(redis_client)
    yield backend
    await backend.clear()
    logger.debug(f"Cleared namespace {backend.namespace}")


@pytest_asyncio.fixture(params=["memory", "redis"])
async def any_backend(request):
    """Run a test against every backend implementation."""
    if request.param == "memory":
        yield MemoryBackend(namespace="test")
        return
    if not redis_available():
        pytest.skip("fakeredis and lupa are required for the redis backend")

    client = make_client()
    backend = make_redis_backend(client)
    try:
        yield backend
    finally:
        await backend.clear()
        await client.aclose()
