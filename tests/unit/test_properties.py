"""
Invariant checks over randomized and concurrent operation sequences.

Each test drives the engine through many interleaved operations and asserts
the properties that must hold after every step: no oversell, FIFO fairness,
contiguous positions and single live membership per user.
"""

import asyncio
import random

import pytest

from capacity_engine.exceptions import (
    AlreadyQueuedError,
    InsufficientCapacityError,
)
from capacity_engine.types import WaitlistStatus

EVENT = "evt-1"
TIER = "vip"


async def assert_ledger_sound(engine):
    ledger = await engine.capacity.get_ledger(EVENT, TIER)
    assert ledger.confirmed + ledger.held <= ledger.total
    assert sum(ledger.open_tickets.values()) == ledger.held


async def assert_queue_sound(engine, tier=TIER):
    live = await engine.waitlist.list_entries(EVENT, tier)
    assert [e.position for e in live] == list(range(1, len(live) + 1))
    users = [e.user_id for e in live]
    assert len(users) == len(set(users))
    # Positions follow arrival order
    assert [e.joined_at for e in live] == sorted(e.joined_at for e in live)


class TestNoOversell:
    @pytest.mark.asyncio
    async def test_two_concurrent_reservations_for_last_slot(self, engine):
        await engine.configure_capacity(EVENT, TIER, 1)
        results = await asyncio.gather(
            engine.checkout(EVENT, TIER, holder_id="alice"),
            engine.checkout(EVENT, TIER, holder_id="bob"),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, InsufficientCapacityError)]
        assert len(failures) == 1
        await assert_ledger_sound(engine)

    @pytest.mark.asyncio
    async def test_concurrent_mixed_operations(self, engine):
        await engine.configure_capacity(EVENT, TIER, 5)
        rng = random.Random(7)

        async def shopper(i):
            user = f"user-{i}"
            try:
                hold = await engine.checkout(EVENT, TIER, rng.randint(1, 2), holder_id=user)
            except InsufficientCapacityError:
                return
            if rng.random() < 0.5:
                await engine.complete_checkout(hold.id, holder_id=user)
            else:
                await engine.release_hold(hold.id, holder_id=user)

        for _ in range(5):
            await asyncio.gather(*(shopper(i) for i in range(20)))
            await assert_ledger_sound(engine)


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_confirm_twice_same_as_once(self, engine):
        await engine.configure_capacity(EVENT, TIER, 2)
        hold = await engine.checkout(EVENT, TIER, holder_id="alice")
        await engine.complete_checkout(hold.id)
        once = await engine.capacity.get_ledger(EVENT, TIER)
        await engine.complete_checkout(hold.id)
        twice = await engine.capacity.get_ledger(EVENT, TIER)
        assert (once.confirmed, once.held, once.version) == (
            twice.confirmed,
            twice.held,
            twice.version,
        )

    @pytest.mark.asyncio
    async def test_release_twice_same_as_once(self, engine):
        await engine.configure_capacity(EVENT, TIER, 2)
        hold = await engine.checkout(EVENT, TIER, holder_id="alice")
        await engine.release_hold(hold.id)
        once = await engine.capacity.get_ledger(EVENT, TIER)
        await engine.release_hold(hold.id)
        twice = await engine.capacity.get_ledger(EVENT, TIER)
        assert once.model_dump() == twice.model_dump()


class TestQueueProperties:
    @pytest.mark.asyncio
    async def test_random_join_leave_keeps_positions_contiguous(self, engine, clock):
        await engine.configure_capacity(EVENT, TIER, 0)
        rng = random.Random(11)
        live: dict[str, str] = {}

        for step in range(200):
            user = f"user-{rng.randint(0, 30)}"
            if user in live and rng.random() < 0.6:
                await engine.leave_waitlist(live.pop(user), user)
            else:
                try:
                    entry = await engine.join_waitlist(EVENT, TIER, user)
                    live[user] = entry.id
                except AlreadyQueuedError as e:
                    assert e.existing_entry.id == live[user]
            if step % 10 == 0:
                await clock.advance(1)
            await assert_queue_sound(engine)

    @pytest.mark.asyncio
    async def test_concurrent_joins_single_membership(self, engine):
        await engine.configure_capacity(EVENT, TIER, 0)
        results = await asyncio.gather(
            *(engine.join_waitlist(EVENT, TIER, f"user-{i % 5}") for i in range(25)),
            return_exceptions=True,
        )
        assert sum(1 for r in results if isinstance(r, AlreadyQueuedError)) == 20
        await assert_queue_sound(engine)

    @pytest.mark.asyncio
    async def test_fifo_promotion_order(self, engine, clock, notifier):
        await engine.configure_capacity(EVENT, TIER, 0)
        users = [f"user-{i}" for i in range(6)]
        entries = {}
        for user in users:
            entries[user] = await engine.join_waitlist(EVENT, TIER, user)
            await clock.advance(1)

        # user-1 leaves; everyone else is offered in arrival order
        await engine.leave_waitlist(entries["user-1"].id, "user-1")
        for slots in (1, 2, 4):
            await engine.configure_capacity(EVENT, TIER, slots)
        assert notifier.offered_users == ["user-0", "user-2", "user-3", "user-4"]
        await assert_queue_sound(engine)

    @pytest.mark.asyncio
    async def test_random_promotion_cycle(self, engine, clock):
        """Offers expire, get declined or confirmed while the queue keeps moving."""
        await engine.configure_capacity(EVENT, TIER, 3)
        rng = random.Random(3)
        for i in range(30):
            await engine.join_waitlist(EVENT, TIER, f"user-{i}")

        for _ in range(40):
            notified = [
                e
                for e in await engine.waitlist.list_entries(EVENT, TIER)
                if e.status is WaitlistStatus.NOTIFIED
            ]
            if notified:
                entry = rng.choice(notified)
                action = rng.choice(("confirm", "decline", "wait"))
                if action == "confirm":
                    await engine.confirm_waitlist_offer(entry.id, entry.user_id)
                    await engine.cancel_registration(EVENT, TIER)
                elif action == "decline":
                    await engine.decline_waitlist_offer(entry.id, entry.user_id)
                else:
                    await clock.advance(engine.config.confirm_window)
            assert clock.errors == []
            await assert_ledger_sound(engine)
            await assert_queue_sound(engine)

    @pytest.mark.asyncio
    async def test_release_with_empty_waitlist_terminates(self, engine, notifier):
        await engine.configure_capacity(EVENT, TIER, 1)
        hold = await engine.checkout(EVENT, TIER, holder_id="alice")
        await engine.release_hold(hold.id)

        ledger = await engine.capacity.get_ledger(EVENT, TIER)
        assert ledger.available_slots == 1
        assert notifier.offers == []
        assert engine.promotion.pending_timers == 0
