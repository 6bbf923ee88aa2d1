"""Tests for the Orchestrator tick loop and status reporting."""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from invest.config import AppSettings, SchedulerSettings
from invest.ledger.holdings import HoldingsLedger
from invest.market_data.price_store import PriceSeriesStore
from invest.models import Frequency
from invest.orchestrator import Orchestrator
from invest.scheduler.recurring import RecurringScheduler

JAN_15 = datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def scheduler(ledger: HoldingsLedger, price_store: PriceSeriesStore, clock) -> RecurringScheduler:
    return RecurringScheduler(ledger=ledger, prices=price_store, clock=clock)


@pytest.fixture
def price_monitor() -> MagicMock:
    monitor = MagicMock()
    monitor.start = AsyncMock()
    monitor.stop = AsyncMock()
    monitor.instruments = ["X"]
    return monitor


@pytest.fixture
def orchestrator(
    mock_settings: AppSettings,
    ledger: HoldingsLedger,
    scheduler: RecurringScheduler,
    price_store: PriceSeriesStore,
    price_monitor: MagicMock,
) -> Orchestrator:
    return Orchestrator(
        settings=mock_settings,
        ledger=ledger,
        scheduler=scheduler,
        price_store=price_store,
        price_monitor=price_monitor,
    )


class TestRunCycle:
    @pytest.mark.asyncio
    async def test_cycle_executes_due_plans(
        self,
        orchestrator: Orchestrator,
        scheduler: RecurringScheduler,
        ledger: HoldingsLedger,
        price_store: PriceSeriesStore,
    ) -> None:
        await ledger.deposit(Decimal("100"))
        await price_store.update_price("X", Decimal("5"))
        await scheduler.create("X", Decimal("10"), Frequency.DAILY)

        records = await orchestrator.run_cycle(JAN_15 + timedelta(days=1))

        assert len(records) == 1
        assert ledger.cash_balance == Decimal("90")

    @pytest.mark.asyncio
    async def test_concurrent_cycles_do_not_double_charge(
        self,
        orchestrator: Orchestrator,
        scheduler: RecurringScheduler,
        ledger: HoldingsLedger,
        price_store: PriceSeriesStore,
    ) -> None:
        await ledger.deposit(Decimal("100"))
        await price_store.update_price("X", Decimal("5"))
        await scheduler.create("X", Decimal("10"), Frequency.DAILY)
        now = JAN_15 + timedelta(days=1)

        results = await asyncio.gather(orchestrator.run_cycle(now), orchestrator.run_cycle(now))

        assert sum(len(r) for r in results) == 1
        assert ledger.cash_balance == Decimal("90")

    @pytest.mark.asyncio
    async def test_live_plan_instruments_tracked(
        self,
        orchestrator: Orchestrator,
        scheduler: RecurringScheduler,
        price_monitor: MagicMock,
    ) -> None:
        await scheduler.create("ETH/USD", Decimal("10"), Frequency.WEEKLY)
        await orchestrator.run_cycle(JAN_15)
        price_monitor.track.assert_called_with("ETH/USD")


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(
        self, orchestrator: Orchestrator, price_monitor: MagicMock
    ) -> None:
        task = asyncio.create_task(orchestrator.start())
        await asyncio.sleep(0.05)
        assert orchestrator.is_running

        await orchestrator.stop()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

        assert not orchestrator.is_running
        price_monitor.start.assert_awaited_once()
        price_monitor.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cycle_error_does_not_kill_loop(
        self, mock_settings: AppSettings, ledger: HoldingsLedger, price_store: PriceSeriesStore
    ) -> None:
        calls = []

        async def _tick(now=None):
            calls.append(now)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return []

        scheduler = MagicMock()
        scheduler.list_plans = MagicMock(return_value=[])
        scheduler.tick = AsyncMock(side_effect=_tick)
        settings = mock_settings.model_copy(
            update={"scheduler": SchedulerSettings(tick_interval=0)}
        )
        orchestrator = Orchestrator(settings, ledger, scheduler, price_store)

        task = asyncio.create_task(orchestrator.start())
        for _ in range(50):
            await asyncio.sleep(0.01)
            if scheduler.tick.await_count >= 2:
                break
        await orchestrator.stop()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

        assert scheduler.tick.await_count >= 2


class TestStatus:
    @pytest.mark.asyncio
    async def test_status_fields(
        self,
        orchestrator: Orchestrator,
        scheduler: RecurringScheduler,
        ledger: HoldingsLedger,
        price_store: PriceSeriesStore,
    ) -> None:
        await ledger.deposit(Decimal("100"))
        await price_store.update_price("X", Decimal("5"))
        await ledger.buy("X", Decimal("50"), Decimal("5"))
        await scheduler.create("X", Decimal("10"), Frequency.DAILY)

        status = await orchestrator.get_status()

        assert status["running"] is False
        assert status["cash_balance"] == "50"
        assert status["portfolio_value"] == "50"
        assert status["active_plans"] == 1
        assert status["next_due_at"] == (JAN_15 + timedelta(days=1)).isoformat()
        assert status["tracked_instruments"] == ["X"]
