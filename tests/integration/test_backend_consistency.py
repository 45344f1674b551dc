"""
Backend contract tests run against every implementation.

MemoryBackend and RedisBackend must agree on compare-and-set semantics,
batch atomicity, queue indexing and lock exclusion, because the components
above them rely on nothing else.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from capacity_engine.exceptions import ConcurrentModificationError
from capacity_engine.types import (
    CapacityLedger,
    HoldStatus,
    ReservationHold,
    WaitlistEntry,
    WaitlistStatus,
    next_version,
)

pytestmark = pytest.mark.integration

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def make_ledger(tier="vip") -> CapacityLedger:
    return CapacityLedger(
        event_id="evt-1", tier=tier, total=10, created_at=NOW, updated_at=NOW
    )


def make_hold(hold_id="h-1") -> ReservationHold:
    return ReservationHold(
        id=hold_id,
        event_id="evt-1",
        tier="vip",
        quantity=2,
        holder_id="alice",
        created_at=NOW,
        expires_at=NOW + timedelta(minutes=15),
    )


def make_entry(entry_id, position, tier="vip", seconds=0) -> WaitlistEntry:
    return WaitlistEntry(
        id=entry_id,
        event_id="evt-1",
        tier=tier,
        user_id=f"user-{entry_id}",
        position=position,
        joined_at=NOW + timedelta(seconds=seconds),
    )


class TestBackendConsistency:
    @pytest.mark.asyncio
    async def test_ledger_round_trip(self, any_backend):
        ledger = make_ledger()
        await any_backend.put_ledger(ledger)
        assert await any_backend.get_ledger("evt-1", "vip") == ledger
        assert await any_backend.get_ledger("evt-1", "default") is None

    @pytest.mark.asyncio
    async def test_ledger_version_conflict(self, any_backend):
        ledger = make_ledger()
        await any_backend.put_ledger(ledger)
        await any_backend.put_ledger(next_version(ledger, held=2, open_tickets={"t": 2}))

        with pytest.raises(ConcurrentModificationError):
            await any_backend.put_ledger(next_version(ledger, total=3))
        stored = await any_backend.get_ledger("evt-1", "vip")
        assert (stored.total, stored.held, stored.version) == (10, 2, 2)

    @pytest.mark.asyncio
    async def test_list_ledgers(self, any_backend):
        await any_backend.put_ledger(make_ledger("vip"))
        await any_backend.put_ledger(make_ledger("default"))
        tiers = sorted(lg.tier for lg in await any_backend.list_ledgers("evt-1"))
        assert tiers == ["default", "vip"]
        assert await any_backend.list_ledgers("evt-2") == []

    @pytest.mark.asyncio
    async def test_hold_status_listing(self, any_backend):
        first, second = make_hold("h-1"), make_hold("h-2")
        await any_backend.put_hold(first)
        await any_backend.put_hold(second)
        await any_backend.put_hold(
            next_version(first, status=HoldStatus.EXPIRED, released_at=NOW)
        )

        active = await any_backend.list_holds_by_status(HoldStatus.ACTIVE)
        assert [h.id for h in active] == ["h-2"]
        expired = await any_backend.get_hold("h-1")
        assert expired.status is HoldStatus.EXPIRED
        assert expired.released_at == NOW

    @pytest.mark.asyncio
    async def test_entry_batch_atomicity(self, any_backend):
        a, b = make_entry("a", 1), make_entry("b", 2, seconds=1)
        await any_backend.put_entries([a, b])
        await any_backend.put_entries([next_version(b, position=1)])

        with pytest.raises(ConcurrentModificationError):
            await any_backend.put_entries(
                [
                    next_version(a, status=WaitlistStatus.CANCELLED, cancelled_at=NOW),
                    next_version(b, position=1),
                ]
            )
        assert (await any_backend.get_entry("a")).status is WaitlistStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_queues_are_indexed_separately(self, any_backend):
        await any_backend.put_entries([make_entry("late", 1, seconds=5)])
        await any_backend.put_entries([make_entry("early", 2)])
        await any_backend.put_entries([make_entry("any", 1, tier=None)])

        vip = await any_backend.list_entries("evt-1", "vip")
        assert [e.id for e in vip] == ["early", "late"]
        assert [e.id for e in await any_backend.list_entries("evt-1", None)] == ["any"]
        assert await any_backend.list_entries("evt-2", "vip") == []

    @pytest.mark.asyncio
    async def test_entries_by_status(self, any_backend):
        entry = make_entry("a", 1)
        await any_backend.put_entries([entry])
        await any_backend.put_entries(
            [
                next_version(
                    entry,
                    status=WaitlistStatus.NOTIFIED,
                    notified_at=NOW,
                    confirm_expires_at=NOW + timedelta(minutes=15),
                    hold_id="h-1",
                )
            ]
        )
        [notified] = await any_backend.list_entries_by_status(WaitlistStatus.NOTIFIED)
        assert notified.hold_id == "h-1"
        assert await any_backend.list_entries_by_status(WaitlistStatus.ACTIVE) == []

    @pytest.mark.asyncio
    async def test_lock_excludes_concurrent_holders(self, any_backend):
        inside = 0
        peak = 0

        async def worker():
            nonlocal inside, peak
            async with any_backend.lock("ledger:evt-1|vip"):
                inside += 1
                peak = max(peak, inside)
                await asyncio.sleep(0.01)
                inside -= 1

        await asyncio.gather(*(worker() for _ in range(5)))
        assert peak == 1

    @pytest.mark.asyncio
    async def test_health_and_clear(self, any_backend):
        await any_backend.put_ledger(make_ledger())
        health = await any_backend.health_check()
        assert health.healthy
        assert health.metadata["ledgers"] == 1

        await any_backend.clear()
        assert await any_backend.get_ledger("evt-1", "vip") is None
        # Versions are cleared with the records
        await any_backend.put_ledger(make_ledger())
