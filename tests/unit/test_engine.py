"""Unit tests for the ReservationEngine facade and create_engine."""

import pytest

from capacity_engine.backends.memory import MemoryBackend
from capacity_engine.clock import AsyncioClock, ManualClock
from capacity_engine.config import AlertLevel, EngineConfig
from capacity_engine.engine import ReservationEngine, create_engine
from capacity_engine.exceptions import (
    AlreadyQueuedError,
    ForbiddenError,
    InsufficientCapacityError,
    LedgerNotFoundError,
    WaitlistDisabledError,
)
from capacity_engine.types import HoldStatus, WaitlistStatus


class TestCapacity:
    @pytest.mark.asyncio
    async def test_status(self, engine):
        await engine.configure_capacity("evt-1", "vip", 10)
        for i in range(9):
            hold = await engine.checkout("evt-1", "vip", holder_id=f"u-{i}")
            await engine.complete_checkout(hold.id, holder_id=f"u-{i}")

        status = await engine.get_capacity_status("evt-1", "vip")
        assert status.confirmed == 9
        assert status.available == 1
        assert status.utilization_percentage == 90.0
        assert status.alert_level is AlertLevel.MEDIUM
        assert status.to_dict()["alert_level"] == "medium"
        assert not status.is_full

    @pytest.mark.asyncio
    async def test_status_counts_waitlist(self, engine):
        await engine.configure_capacity("evt-1", "vip", 0)
        await engine.join_waitlist("evt-1", "vip", "alice")
        status = await engine.get_capacity_status("evt-1", "vip")
        assert status.is_full
        assert status.waitlist_count == 1

    @pytest.mark.asyncio
    async def test_unconfigured(self, engine):
        with pytest.raises(LedgerNotFoundError):
            await engine.get_capacity_status("evt-1", "vip")

    @pytest.mark.asyncio
    async def test_growing_capacity_promotes(self, engine, notifier):
        await engine.configure_capacity("evt-1", "vip", 0)
        entry = await engine.join_waitlist("evt-1", "vip", "alice")

        ledger = await engine.configure_capacity("evt-1", "vip", 1)
        assert ledger.held == 1
        assert (await engine.get_waitlist_entry(entry.id)).status is WaitlistStatus.NOTIFIED
        assert notifier.offered_users == ["alice"]

    @pytest.mark.asyncio
    async def test_cancel_registration_promotes(self, engine):
        await engine.configure_capacity("evt-1", "vip", 1)
        hold = await engine.checkout("evt-1", "vip", holder_id="bob")
        await engine.complete_checkout(hold.id, holder_id="bob")
        entry = await engine.join_waitlist("evt-1", "vip", "alice")

        ledger = await engine.cancel_registration("evt-1", "vip", actor="admin")
        assert (ledger.confirmed, ledger.held) == (0, 1)
        assert (await engine.get_waitlist_entry(entry.id)).status is WaitlistStatus.NOTIFIED


class TestCheckout:
    @pytest.mark.asyncio
    async def test_sold_out_then_waitlist(self, engine):
        await engine.configure_capacity("evt-1", "vip", 1)
        await engine.checkout("evt-1", "vip", holder_id="bob")

        with pytest.raises(InsufficientCapacityError):
            await engine.checkout("evt-1", "vip", holder_id="alice")
        entry = await engine.join_waitlist("evt-1", "vip", "alice")
        assert entry.position == 1

    @pytest.mark.asyncio
    async def test_abandoned_checkout_goes_to_waitlist(self, engine):
        await engine.configure_capacity("evt-1", "vip", 1)
        hold = await engine.checkout("evt-1", "vip", holder_id="bob")
        entry = await engine.join_waitlist("evt-1", "vip", "alice")

        released = await engine.release_hold(hold.id, holder_id="bob")
        assert released.status is HoldStatus.RELEASED
        offered = await engine.get_waitlist_entry(entry.id)
        assert offered.status is WaitlistStatus.NOTIFIED

        confirmed = await engine.confirm_waitlist_offer(entry.id, "alice")
        assert confirmed.status is WaitlistStatus.CONFIRMED
        assert (await engine.get_hold(confirmed.hold_id)).status is HoldStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_other_user_cannot_release(self, engine):
        await engine.configure_capacity("evt-1", "vip", 1)
        hold = await engine.checkout("evt-1", "vip", holder_id="bob")
        with pytest.raises(ForbiddenError):
            await engine.release_hold(hold.id, holder_id="mallory")

    @pytest.mark.asyncio
    async def test_hold_expiry_promotes(self, engine, clock):
        await engine.configure_capacity("evt-1", "vip", 1)
        await engine.checkout("evt-1", "vip", holder_id="bob", ttl=60)
        entry = await engine.join_waitlist("evt-1", "vip", "alice")

        await clock.advance(60)
        assert (await engine.get_waitlist_entry(entry.id)).status is WaitlistStatus.NOTIFIED

    @pytest.mark.asyncio
    async def test_renew_hold(self, engine, clock):
        await engine.configure_capacity("evt-1", "vip", 1)
        hold = await engine.checkout("evt-1", "vip", holder_id="bob", ttl=60)
        await engine.renew_hold(hold.id, 60, holder_id="bob")
        await clock.advance(90)
        assert (await engine.get_hold(hold.id)).status is HoldStatus.ACTIVE


class TestWaitlist:
    @pytest.mark.asyncio
    async def test_join_notifies_position(self, engine, notifier):
        await engine.configure_capacity("evt-1", "vip", 0)
        await engine.join_waitlist("evt-1", "vip", "alice")
        await engine.join_waitlist("evt-1", "vip", "bob")
        assert notifier.joins == [("alice", "evt-1", 1), ("bob", "evt-1", 2)]
        assert await engine.get_waitlist_position("evt-1", "vip", "bob") == (2, 2)

    @pytest.mark.asyncio
    async def test_join_notifier_failure_is_swallowed(self, engine, notifier):
        notifier.fail = True
        await engine.configure_capacity("evt-1", "vip", 0)
        entry = await engine.join_waitlist("evt-1", "vip", "alice")
        assert entry.status is WaitlistStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_duplicate_join_reports_position(self, engine):
        await engine.configure_capacity("evt-1", "vip", 0)
        await engine.join_waitlist("evt-1", "vip", "bob")
        await engine.join_waitlist("evt-1", "vip", "alice")
        with pytest.raises(AlreadyQueuedError) as exc_info:
            await engine.join_waitlist("evt-1", "vip", "alice")
        assert exc_info.value.position == 2

    @pytest.mark.asyncio
    async def test_join_with_free_capacity_promotes_at_once(self, engine):
        await engine.configure_capacity("evt-1", "vip", 1)
        entry = await engine.join_waitlist("evt-1", "vip", "alice")
        assert (await engine.get_waitlist_entry(entry.id)).status is WaitlistStatus.NOTIFIED

    @pytest.mark.asyncio
    async def test_join_disabled_waitlist(self, engine):
        await engine.configure_capacity("evt-1", "vip", 0, waitlist_enabled=False)
        with pytest.raises(WaitlistDisabledError):
            await engine.join_waitlist("evt-1", "vip", "alice")

    @pytest.mark.asyncio
    async def test_resize_keeps_waitlist_disabled(self, engine):
        await engine.configure_capacity("evt-1", "vip", 0, waitlist_enabled=False)
        ledger = await engine.configure_capacity("evt-1", "vip", 10)

        assert ledger.waitlist_enabled is False
        with pytest.raises(WaitlistDisabledError):
            await engine.join_waitlist("evt-1", "vip", "alice")

    @pytest.mark.asyncio
    async def test_join_unconfigured(self, engine):
        with pytest.raises(LedgerNotFoundError):
            await engine.join_waitlist("evt-1", "vip", "alice")
        with pytest.raises(LedgerNotFoundError):
            await engine.join_waitlist("evt-1", None, "alice")

    @pytest.mark.asyncio
    async def test_any_tier_join_requires_an_enabled_ledger(self, engine):
        await engine.configure_capacity("evt-1", "vip", 0, waitlist_enabled=False)
        with pytest.raises(WaitlistDisabledError):
            await engine.join_waitlist("evt-1", None, "alice")

    @pytest.mark.asyncio
    async def test_any_tier_join_promoted_by_any_ledger(self, engine):
        await engine.configure_capacity("evt-1", "vip", 0)
        await engine.configure_capacity("evt-1", "default", 0)
        entry = await engine.join_waitlist("evt-1", None, "alice")

        await engine.configure_capacity("evt-1", "default", 1)
        offered = await engine.get_waitlist_entry(entry.id)
        assert offered.status is WaitlistStatus.NOTIFIED
        assert offered.offered_tier == "default"
        assert (await engine.get_hold(offered.hold_id)).tier == "default"

    @pytest.mark.asyncio
    async def test_leave_and_rejoin(self, engine):
        await engine.configure_capacity("evt-1", "vip", 0)
        first = await engine.join_waitlist("evt-1", "vip", "alice")
        await engine.join_waitlist("evt-1", "vip", "bob")

        left = await engine.leave_waitlist(first.id, "alice")
        assert left.status is WaitlistStatus.CANCELLED
        assert await engine.get_waitlist_position("evt-1", "vip", "bob") == (1, 1)

        again = await engine.join_waitlist("evt-1", "vip", "alice")
        assert again.id != first.id
        assert again.position == 2

    @pytest.mark.asyncio
    async def test_decline_offer(self, engine):
        await engine.configure_capacity("evt-1", "vip", 0)
        alice = await engine.join_waitlist("evt-1", "vip", "alice")
        bob = await engine.join_waitlist("evt-1", "vip", "bob")
        await engine.configure_capacity("evt-1", "vip", 1)

        await engine.decline_waitlist_offer(alice.id, "alice")
        assert (await engine.get_waitlist_entry(bob.id)).status is WaitlistStatus.NOTIFIED
        stats = await engine.get_waitlist_stats("evt-1", "vip")
        assert (stats.cancelled, stats.notified) == (1, 1)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_health_check(self, engine):
        health = await engine.health_check()
        assert health.healthy
        assert health.backend_type == "memory"

    @pytest.mark.asyncio
    async def test_reconcile_delegates(self, engine):
        await engine.configure_capacity("evt-1", "vip", 1)
        report = await engine.reconcile()
        assert not report.changed

    @pytest.mark.asyncio
    async def test_context_manager_closes_clock(self):
        clock = AsyncioClock()
        config = EngineConfig(metrics_enabled=False)
        async with ReservationEngine(clock=clock, config=config) as engine:
            await engine.configure_capacity("evt-1", "vip", 1)
            await engine.checkout("evt-1", "vip", holder_id="bob")
            assert clock.pending == 1
        assert clock.pending == 0

    @pytest.mark.asyncio
    async def test_defaults(self):
        engine = ReservationEngine(config=EngineConfig(metrics_enabled=False))
        assert isinstance(engine.backend, MemoryBackend)
        assert isinstance(engine.clock, AsyncioClock)
        assert engine.metrics is None
        await engine.close()


class TestCreateEngine:
    def test_overrides(self):
        engine = create_engine(clock=ManualClock(), hold_ttl=60, metrics_enabled=False)
        assert engine.config.hold_ttl == 60

    def test_unknown_option(self):
        with pytest.raises(ValueError, match="Unknown engine config option"):
            create_engine(hold_tll=60)

    def test_invalid_value(self):
        with pytest.raises(ValueError):
            create_engine(hold_ttl=0)

    def test_config_and_overrides(self):
        with pytest.raises(ValueError, match="not both"):
            create_engine(config=EngineConfig(), hold_ttl=60)
