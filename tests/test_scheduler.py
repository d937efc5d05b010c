"""
Monitoring scheduler tests: per-enrollment isolation, last-check ordering,
non-overlapping ticks and the IDLE/RUNNING lifecycle.
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from zen_trader.builder import FixedSpreadPricing, OrderBuilder
from zen_trader.errors import SigningFailed, TransientExternalError
from zen_trader.journal import ActivityJournal
from zen_trader.oracle import StaticMarketOracle
from zen_trader.resilience import BreakerRegistry
from zen_trader.schemas import EnrollmentOutcome, OrderFilter, OrderStatus, SchedulerState
from zen_trader.signer import HmacOrderSigner
from zen_trader.storage import InMemoryOrderRepository

from conftest import MAKER, PREFS, T0

ALICE = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
BOB = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
CAROL = "0xcccccccccccccccccccccccccccccccccccccccc"


class FlakyOracle(StaticMarketOracle):
    """Fails balance lookups for selected addresses."""

    def __init__(self, failing=(), market_down: bool = False, **kwargs):
        super().__init__(prices={"A": 2.0, "B": 1.0}, default_balance=10_000, **kwargs)
        self.failing = set(failing)
        self.market_down = market_down
        self.market_calls = 0
        self.balance_calls = 0

    async def get_market_snapshot(self):
        self.market_calls += 1
        if self.market_down:
            raise TransientExternalError(self.name, "price feed down")
        return await super().get_market_snapshot()

    async def get_balance(self, address, token):
        self.balance_calls += 1
        if address in self.failing:
            raise TransientExternalError(self.name, "rpc node down")
        return await super().get_balance(address, token)


class SlowOracle(StaticMarketOracle):
    def __init__(self, delay: float):
        super().__init__(prices={"A": 2.0, "B": 1.0}, default_balance=10_000)
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0

    async def get_market_snapshot(self):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            return await super().get_market_snapshot()
        finally:
            self.in_flight -= 1


class ToggleSigner(HmacOrderSigner):
    def __init__(self, secret: str):
        super().__init__(secret)
        self.fail = True

    async def sign(self, terms):
        if self.fail:
            raise SigningFailed("signer unavailable")
        return await super().sign(terms)


class BrokenSaveRepository(InMemoryOrderRepository):
    def __init__(self, error: Exception):
        super().__init__()
        self.error = error

    async def save(self, order):
        raise self.error


async def orders_for(repo, user):
    return await repo.list_orders(OrderFilter(user_address=user))


class TestTick:
    @pytest.mark.asyncio
    async def test_first_tick_creates_exactly_one_order(self, scheduler, enrollments, orders):
        await enrollments.upsert(MAKER, PREFS, T0)

        report = await scheduler.tick()

        created = await orders_for(orders, MAKER)
        assert len(created) == 1
        assert created[0].status == OrderStatus.CREATED
        assert (created[0].making_amount, created[0].taking_amount) == (100, 101)
        assert created[0].expires_at == T0 + timedelta(hours=24)
        assert report.outcomes == {MAKER: EnrollmentOutcome.ORDER_CREATED}
        assert report.orders_created == [created[0].id]
        assert (await enrollments.get(MAKER)).last_checked_at == created[0].created_at

    @pytest.mark.asyncio
    async def test_inactive_enrollments_are_never_evaluated(self, scheduler, enrollments, orders):
        await enrollments.upsert(MAKER, PREFS, T0)
        await enrollments.upsert(ALICE, PREFS, T0)
        await enrollments.deactivate(ALICE, T0)

        report = await scheduler.tick()

        assert set(report.outcomes) == {MAKER}
        assert await orders_for(orders, ALICE) == []

    @pytest.mark.asyncio
    async def test_back_to_back_ticks_inside_window_create_nothing(self, scheduler, enrollments, orders, clock):
        await enrollments.upsert(MAKER, PREFS, T0)
        await scheduler.tick()
        clock.advance(60)

        report = await scheduler.tick()

        assert report.outcomes[MAKER] == EnrollmentOutcome.HELD
        assert len(await orders_for(orders, MAKER)) == 1

    @pytest.mark.asyncio
    async def test_tick_after_window_creates_next_order(self, scheduler, enrollments, orders, clock):
        await enrollments.upsert(MAKER, PREFS, T0)
        await scheduler.tick()
        clock.advance(301)

        report = await scheduler.tick()

        assert report.outcomes[MAKER] == EnrollmentOutcome.ORDER_CREATED
        assert len(await orders_for(orders, MAKER)) == 2

    @pytest.mark.asyncio
    async def test_insufficient_balance_holds(self, make_scheduler, enrollments, orders, oracle):
        oracle.set_balance(MAKER, "A", 50)
        await enrollments.upsert(MAKER, {**PREFS, "min_balance": 100}, T0)

        report = await make_scheduler().tick()

        assert report.outcomes[MAKER] == EnrollmentOutcome.HELD
        assert await orders_for(orders, MAKER) == []
        assert (await enrollments.get(MAKER)).last_checked_at is None


class TestIsolation:
    @pytest.mark.asyncio
    async def test_oracle_failure_for_one_enrollment_spares_the_others(self, make_scheduler, enrollments, orders):
        for user in (ALICE, BOB, CAROL):
            await enrollments.upsert(user, PREFS, T0)
        scheduler = make_scheduler(oracle=FlakyOracle(failing={BOB}))

        report = await scheduler.tick()

        assert report.outcomes == {
            ALICE: EnrollmentOutcome.ORDER_CREATED,
            BOB: EnrollmentOutcome.SKIPPED,
            CAROL: EnrollmentOutcome.ORDER_CREATED,
        }
        assert await orders_for(orders, BOB) == []
        assert (await enrollments.get(BOB)).last_checked_at is None
        assert (await enrollments.get(ALICE)).last_checked_at is not None

    @pytest.mark.asyncio
    async def test_signer_failure_then_recovery(self, make_scheduler, enrollments, orders):
        signer = ToggleSigner("test-secret")
        builder = OrderBuilder(signer=signer, pricing=FixedSpreadPricing(), chain_id=8453, signer_timeout=0.2)
        scheduler = make_scheduler(builder=builder)
        await enrollments.upsert(MAKER, PREFS, T0)

        first = await scheduler.tick()
        assert first.outcomes[MAKER] == EnrollmentOutcome.FAILED
        assert await orders_for(orders, MAKER) == []
        assert (await enrollments.get(MAKER)).last_checked_at is None

        signer.fail = False
        second = await scheduler.tick()
        assert second.outcomes[MAKER] == EnrollmentOutcome.ORDER_CREATED
        assert len(await orders_for(orders, MAKER)) == 1

    @pytest.mark.asyncio
    async def test_malformed_enrollment_is_not_evaluable(self, scheduler, enrollments, orders):
        await enrollments.upsert(MAKER, PREFS, T0)
        await enrollments.upsert(ALICE, {"token": "A", "takerToken": "B", "amount": "lots"}, T0)

        report = await scheduler.tick()

        assert report.outcomes[ALICE] == EnrollmentOutcome.NOT_EVALUABLE
        assert report.outcomes[MAKER] == EnrollmentOutcome.ORDER_CREATED
        assert await orders_for(orders, ALICE) == []

    @pytest.mark.asyncio
    async def test_save_failure_leaves_last_check_unchanged(self, make_scheduler, enrollments):
        repo = BrokenSaveRepository(RuntimeError("disk full"))
        scheduler = make_scheduler(orders=repo)
        await enrollments.upsert(MAKER, PREFS, T0)

        report = await scheduler.tick()

        assert report.outcomes[MAKER] == EnrollmentOutcome.FAILED
        assert (await enrollments.get(MAKER)).last_checked_at is None

    @pytest.mark.asyncio
    async def test_mark_checked_failure_keeps_the_saved_order(self, scheduler, enrollments, orders):
        await enrollments.upsert(MAKER, PREFS, T0)

        with patch.object(enrollments, "mark_checked", AsyncMock(side_effect=RuntimeError("locked"))) as mark:
            report = await scheduler.tick()

        mark.assert_awaited_once()
        assert report.outcomes[MAKER] == EnrollmentOutcome.ORDER_CREATED
        assert len(await orders_for(orders, MAKER)) == 1

    @pytest.mark.asyncio
    async def test_transient_save_failure_is_skipped(self, make_scheduler, enrollments):
        repo = BrokenSaveRepository(TransientExternalError("store", "database locked"))
        scheduler = make_scheduler(orders=repo)
        await enrollments.upsert(MAKER, PREFS, T0)

        report = await scheduler.tick()

        assert report.outcomes[MAKER] == EnrollmentOutcome.SKIPPED
        assert (await enrollments.get(MAKER)).last_checked_at is None

    @pytest.mark.asyncio
    async def test_oracle_timeout_is_skipped(self, make_scheduler, enrollments, orders):
        scheduler = make_scheduler(oracle=SlowOracle(delay=1.0), oracle_timeout=0.05)
        await enrollments.upsert(MAKER, PREFS, T0)

        report = await scheduler.tick()

        assert report.outcomes[MAKER] == EnrollmentOutcome.SKIPPED
        assert await orders_for(orders, MAKER) == []

    @pytest.mark.asyncio
    async def test_open_circuit_skips_oracle_calls(self, make_scheduler, enrollments):
        oracle = FlakyOracle(market_down=True)
        scheduler = make_scheduler(oracle=oracle, breakers=BreakerRegistry(fail_threshold=2, cooldown_sec=600))
        await enrollments.upsert(MAKER, PREFS, T0)

        await scheduler.tick()
        await scheduler.tick()
        report = await scheduler.tick()

        assert report.outcomes[MAKER] == EnrollmentOutcome.SKIPPED
        assert oracle.market_calls == 2


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_ticks_never_overlap(self, make_scheduler, enrollments, orders):
        oracle = SlowOracle(delay=0.05)
        scheduler = make_scheduler(oracle=oracle)
        await enrollments.upsert(MAKER, PREFS, T0)

        first, second = await asyncio.gather(scheduler.tick(), scheduler.tick())

        assert oracle.max_in_flight == 1
        assert len(await orders_for(orders, MAKER)) == 1
        assert sorted([first.outcomes[MAKER], second.outcomes[MAKER]]) == sorted(
            [EnrollmentOutcome.ORDER_CREATED, EnrollmentOutcome.HELD]
        )

    @pytest.mark.asyncio
    async def test_deactivation_during_tick_applies_next_tick(self, make_scheduler, enrollments, orders):
        scheduler = make_scheduler(oracle=SlowOracle(delay=0.05))
        await enrollments.upsert(MAKER, PREFS, T0)

        in_flight = asyncio.create_task(scheduler.tick())
        await asyncio.sleep(0.01)
        await enrollments.deactivate(MAKER, T0)
        report = await in_flight

        assert report.outcomes[MAKER] == EnrollmentOutcome.ORDER_CREATED
        assert (await scheduler.tick()).outcomes == {}


class TestExpirySweep:
    @pytest.mark.asyncio
    async def test_tick_expires_stale_orders(self, scheduler, orders, make_order):
        stale = make_order(created_at=T0 - timedelta(days=2))
        await orders.save(stale)

        report = await scheduler.tick()

        assert report.orders_expired == 1
        assert (await orders.get(stale.id)).status == OrderStatus.EXPIRED


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_idle_without_enrollments(self, scheduler):
        assert await scheduler.refresh() == SchedulerState.IDLE
        assert scheduler.state == SchedulerState.IDLE

    @pytest.mark.asyncio
    async def test_running_while_any_enrollment_active(self, scheduler, enrollments):
        await enrollments.upsert(MAKER, PREFS, T0)
        assert await scheduler.refresh() == SchedulerState.RUNNING

        await enrollments.deactivate(MAKER, T0)
        assert await scheduler.refresh() == SchedulerState.IDLE
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_refresh_is_idempotent(self, scheduler, enrollments):
        await enrollments.upsert(MAKER, PREFS, T0)
        await scheduler.refresh()
        task = scheduler._task
        await scheduler.refresh()
        assert scheduler._task is task
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_background_loop_ticks(self, make_scheduler, enrollments, orders):
        scheduler = make_scheduler(tick_interval=0.02)
        await enrollments.upsert(MAKER, PREFS, T0)
        await scheduler.refresh()

        await asyncio.sleep(0.2)
        await scheduler.stop()

        assert scheduler.last_report is not None
        assert len(await orders_for(orders, MAKER)) == 1
        assert scheduler.state == SchedulerState.IDLE

    @pytest.mark.asyncio
    async def test_loop_goes_idle_when_enrollments_vanish(self, make_scheduler, enrollments):
        scheduler = make_scheduler(tick_interval=0.02)
        await enrollments.upsert(MAKER, PREFS, T0)
        await scheduler.refresh()
        await enrollments.deactivate(MAKER, T0)

        await asyncio.sleep(0.2)

        assert scheduler.state == SchedulerState.IDLE
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_lets_in_progress_tick_finish(self, make_scheduler, enrollments, orders):
        scheduler = make_scheduler(oracle=SlowOracle(delay=0.1), tick_interval=0.01)
        await enrollments.upsert(MAKER, PREFS, T0)
        await scheduler.refresh()
        await asyncio.sleep(0.05)

        await scheduler.stop()

        assert len(await orders_for(orders, MAKER)) == 1


class TestJournal:
    @pytest.mark.asyncio
    async def test_decisions_are_journaled(self, make_scheduler, enrollments, tmp_path):
        journal = ActivityJournal(str(tmp_path))
        scheduler = make_scheduler(journal=journal)
        await enrollments.upsert(MAKER, PREFS, T0)

        report = await scheduler.tick()

        rows = journal.get_recent_decisions()
        assert len(rows) == 1
        assert rows[0]["user_address"] == MAKER
        assert rows[0]["outcome"] == "order_created"
        assert rows[0]["order_id"] == report.orders_created[0]
