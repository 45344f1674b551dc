"""
Integration tests for the compare-and-set Lua script using fakeredis.

Unlike the unit tests, which mock evalsha(), these run the real script
against a fake Redis instance.
"""

from pathlib import Path

import pytest
import pytest_asyncio

try:
    import fakeredis.aioredis as fakeredis
except ImportError:
    fakeredis = None

try:
    import lupa
except ImportError:
    lupa = None


pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(fakeredis is None, reason="fakeredis not installed"),
    pytest.mark.skipif(lupa is None, reason="lupa not installed (required for Lua)"),
]

LUA_DIR = Path(__file__).parent.parent.parent / "src/capacity_engine/backends/lua"
SCRIPT = (LUA_DIR / "compare_and_set.lua").read_text()

HASH = "ce:{t}:entries"
VERSIONS = "ce:{t}:entries:versions"
INDEX = "ce:{t}:queue:evt-1|vip"


@pytest_asyncio.fixture
async def redis():
    """Create a fresh fakeredis instance for each test."""
    r = fakeredis.FakeRedis(decode_responses=True)
    yield r
    await r.aclose()


async def cas(redis, *records, index=True):
    """Run the script for ``(field, expected, payload)`` triples."""
    keys = [HASH, VERSIONS, INDEX] if index else [HASH, VERSIONS]
    args = [len(records)]
    for field, expected, payload in records:
        args.extend([field, expected, payload])
    return await redis.eval(SCRIPT, len(keys), *keys, *args)


class TestCompareAndSet:
    @pytest.mark.asyncio
    async def test_create(self, redis):
        assert await cas(redis, ("e-1", 0, '{"v": 1}')) == [1]
        assert await redis.hget(HASH, "e-1") == '{"v": 1}'
        assert await redis.hget(VERSIONS, "e-1") == "1"
        assert await redis.smembers(INDEX) == {"e-1"}

    @pytest.mark.asyncio
    async def test_update_next_version(self, redis):
        await cas(redis, ("e-1", 0, "a"))
        assert await cas(redis, ("e-1", 1, "b")) == [1]
        assert await redis.hget(HASH, "e-1") == "b"
        assert await redis.hget(VERSIONS, "e-1") == "2"

    @pytest.mark.asyncio
    async def test_stale_write_rejected(self, redis):
        await cas(redis, ("e-1", 0, "a"))
        await cas(redis, ("e-1", 1, "b"))

        assert await cas(redis, ("e-1", 1, "stale")) == [0, "e-1", 2]
        assert await redis.hget(HASH, "e-1") == "b"

    @pytest.mark.asyncio
    async def test_duplicate_create_rejected(self, redis):
        await cas(redis, ("e-1", 0, "a"))
        assert await cas(redis, ("e-1", 0, "again")) == [0, "e-1", 1]

    @pytest.mark.asyncio
    async def test_batch_is_all_or_nothing(self, redis):
        await cas(redis, ("e-1", 0, "a"), ("e-2", 0, "b"))

        result = await cas(redis, ("e-1", 1, "a2"), ("e-2", 5, "b2"), ("e-3", 0, "c"))
        assert result == [0, "e-2", 1]
        assert await redis.hget(HASH, "e-1") == "a"
        assert await redis.hget(HASH, "e-3") is None
        assert await redis.smembers(INDEX) == {"e-1", "e-2"}

    @pytest.mark.asyncio
    async def test_without_index(self, redis):
        assert await cas(redis, ("h-1", 0, "x"), index=False) == [1]
        assert await redis.exists(INDEX) == 0
