"""Unit tests for the in-memory backend."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from capacity_engine.backends.memory import MemoryBackend
from capacity_engine.exceptions import ConcurrentModificationError
from capacity_engine.types import (
    CapacityLedger,
    HoldStatus,
    ReservationHold,
    WaitlistEntry,
    WaitlistStatus,
    next_version,
)

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def make_ledger(event_id="evt-1", tier="default", total=10) -> CapacityLedger:
    return CapacityLedger(
        event_id=event_id, tier=tier, total=total, created_at=NOW, updated_at=NOW
    )


def make_hold(hold_id="hold-1", event_id="evt-1") -> ReservationHold:
    return ReservationHold(
        id=hold_id,
        event_id=event_id,
        tier="default",
        quantity=1,
        holder_id="user-1",
        created_at=NOW,
        expires_at=NOW + timedelta(minutes=15),
    )


def make_entry(entry_id, position=1, tier="default", joined_at=NOW) -> WaitlistEntry:
    return WaitlistEntry(
        id=entry_id,
        event_id="evt-1",
        tier=tier,
        user_id=f"user-{entry_id}",
        position=position,
        joined_at=joined_at,
    )


class TestMemoryBackend:
    @pytest.fixture
    def backend(self):
        return MemoryBackend(namespace="test")

    def test_init(self):
        backend = MemoryBackend(namespace="test_ns")
        assert backend.namespace == "test_ns"
        assert backend.lock_blocking_timeout is None

    @pytest.mark.asyncio
    async def test_ledger_round_trip_is_a_copy(self, backend):
        await backend.put_ledger(make_ledger())
        stored = await backend.get_ledger("evt-1", "default")
        assert stored is not None
        stored.open_tickets["rogue"] = 1

        again = await backend.get_ledger("evt-1", "default")
        assert again.open_tickets == {}

    @pytest.mark.asyncio
    async def test_missing_records(self, backend):
        assert await backend.get_ledger("evt-1", "default") is None
        assert await backend.get_hold("missing") is None
        assert await backend.get_entry("missing") is None
        assert await backend.list_entries("evt-1", "default") == []

    @pytest.mark.asyncio
    async def test_ledger_cas(self, backend):
        ledger = make_ledger()
        await backend.put_ledger(ledger)
        await backend.put_ledger(next_version(ledger, total=20))

        with pytest.raises(ConcurrentModificationError):
            # Stale writer built from version 1
            await backend.put_ledger(next_version(ledger, total=30))
        with pytest.raises(ConcurrentModificationError):
            # Re-creating an existing record
            await backend.put_ledger(make_ledger())

        assert (await backend.get_ledger("evt-1", "default")).total == 20

    @pytest.mark.asyncio
    async def test_list_ledgers_by_event(self, backend):
        await backend.put_ledger(make_ledger("evt-1", "default"))
        await backend.put_ledger(make_ledger("evt-1", "vip"))
        await backend.put_ledger(make_ledger("evt-2", "default"))

        assert len(await backend.list_ledgers()) == 3
        tiers = sorted(ledger.tier for ledger in await backend.list_ledgers("evt-1"))
        assert tiers == ["default", "vip"]

    @pytest.mark.asyncio
    async def test_hold_cas_and_status_listing(self, backend):
        hold = make_hold()
        await backend.put_hold(hold)
        await backend.put_hold(make_hold("hold-2", event_id="evt-2"))
        confirmed = next_version(hold, status=HoldStatus.CONFIRMED, confirmed_at=NOW)
        await backend.put_hold(confirmed)

        with pytest.raises(ConcurrentModificationError):
            await backend.put_hold(next_version(hold, status=HoldStatus.RELEASED))

        active = await backend.list_holds_by_status(HoldStatus.ACTIVE)
        assert [h.id for h in active] == ["hold-2"]
        assert await backend.list_holds_by_status(HoldStatus.ACTIVE, "evt-1") == []

    @pytest.mark.asyncio
    async def test_entry_batch_is_all_or_nothing(self, backend):
        a = make_entry("a", 1)
        b = make_entry("b", 2, joined_at=NOW + timedelta(seconds=1))
        await backend.put_entries([a, b])

        stale_b = next_version(b, position=1)
        await backend.put_entries([stale_b])

        moved_a = next_version(a, status=WaitlistStatus.CANCELLED, cancelled_at=NOW)
        with pytest.raises(ConcurrentModificationError):
            await backend.put_entries([moved_a, next_version(b, position=1)])

        # Neither record of the failed batch landed
        assert (await backend.get_entry("a")).status is WaitlistStatus.ACTIVE
        assert (await backend.get_entry("b")).version == 2

    @pytest.mark.asyncio
    async def test_list_entries_ordered_by_join_time(self, backend):
        late = make_entry("late", 1, joined_at=NOW + timedelta(seconds=5))
        early = make_entry("early", 2, joined_at=NOW)
        await backend.put_entries([late])
        await backend.put_entries([early])
        await backend.put_entries([make_entry("other", 1, tier="vip")])

        entries = await backend.list_entries("evt-1", "default")
        assert [e.id for e in entries] == ["early", "late"]

    @pytest.mark.asyncio
    async def test_any_tier_queue_is_separate(self, backend):
        await backend.put_entries([make_entry("any", tier=None)])
        assert await backend.list_entries("evt-1", "default") == []
        assert [e.id for e in await backend.list_entries("evt-1", None)] == ["any"]

    @pytest.mark.asyncio
    async def test_list_entries_by_status(self, backend):
        await backend.put_entries([make_entry("a", 1), make_entry("b", 2)])
        notified = next_version(
            await backend.get_entry("b"),
            status=WaitlistStatus.NOTIFIED,
            notified_at=NOW,
            confirm_expires_at=NOW + timedelta(minutes=5),
        )
        await backend.put_entries([notified])

        result = await backend.list_entries_by_status(WaitlistStatus.NOTIFIED)
        assert [e.id for e in result] == ["b"]
        assert await backend.list_entries_by_status(WaitlistStatus.NOTIFIED, "evt-2") == []

    @pytest.mark.asyncio
    async def test_lock_serializes_holders(self, backend):
        order = []

        async def worker(name):
            async with backend.lock("ledger:evt-1|default"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order in (
            ["a-in", "a-out", "b-in", "b-out"],
            ["b-in", "b-out", "a-in", "a-out"],
        )

    @pytest.mark.asyncio
    async def test_distinct_locks_do_not_block(self, backend):
        async with backend.lock("ledger:evt-1|default"):
            async with backend.lock("ledger:evt-1|vip"):
                pass

    @pytest.mark.asyncio
    async def test_lock_timeout(self):
        backend = MemoryBackend(lock_blocking_timeout=0.01)
        async with backend.lock("k"):
            with pytest.raises(ConcurrentModificationError) as exc_info:
                async with backend.lock("k"):
                    pass
        assert exc_info.value.key == "k"

        # Released after the failed attempt
        async with backend.lock("k"):
            pass

    @pytest.mark.asyncio
    async def test_lock_released_on_error(self, backend):
        with pytest.raises(RuntimeError):
            async with backend.lock("k"):
                raise RuntimeError("boom")
        async with backend.lock("k"):
            pass

    @pytest.mark.asyncio
    async def test_health_check_and_clear(self, backend):
        await backend.put_ledger(make_ledger())
        await backend.put_hold(make_hold())

        health = await backend.health_check()
        assert health.healthy is True
        assert health.backend_type == "memory"
        assert health.metadata["ledgers"] == 1
        assert health.metadata["holds"] == 1

        await backend.clear()
        assert await backend.get_ledger("evt-1", "default") is None
        assert (await backend.health_check()).metadata["holds"] == 0

    @pytest.mark.asyncio
    async def test_async_context_manager(self):
        async with MemoryBackend() as backend:
            assert isinstance(backend, MemoryBackend)
