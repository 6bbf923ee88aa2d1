"""Tests for EngineDatabase and PortfolioStore against a temporary SQLite file."""

import asyncio
import sqlite3
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import patch

import pytest
import pytest_asyncio

from invest.data.database import EngineDatabase
from invest.data.store import PortfolioStore
from invest.ledger.holdings import HoldingsLedger
from invest.market_data.price_store import PriceSeriesStore
from invest.models import (
    EventKind,
    ExecutionErrorReason,
    ExecutionRecord,
    Frequency,
    Holding,
    PlanStatus,
    PortfolioEvent,
    PortfolioSnapshot,
    RecurringPurchase,
)
from invest.scheduler.recurring import RecurringScheduler

T0 = datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def database(tmp_path):
    db = EngineDatabase(str(tmp_path / "nested" / "portfolio.db"))
    await db.connect()
    yield db
    await db.close()


@pytest.fixture
def store(database: EngineDatabase) -> PortfolioStore:
    return PortfolioStore(database)


def _plan(**overrides) -> RecurringPurchase:
    fields = dict(
        id="plan-1",
        instrument_id="BTC/USD",
        amount_per_execution=Decimal("25.50"),
        frequency=Frequency.WEEKLY,
        status=PlanStatus.ACTIVE,
        next_execution_at=T0 + timedelta(days=7),
        created_at=T0,
    )
    fields.update(overrides)
    return RecurringPurchase(**fields)


class TestDatabase:
    @pytest.mark.asyncio
    async def test_db_property_requires_connect(self, tmp_path) -> None:
        db = EngineDatabase(str(tmp_path / "x.db"))
        with pytest.raises(RuntimeError):
            _ = db.db

    @pytest.mark.asyncio
    async def test_context_manager_creates_file(self, tmp_path) -> None:
        path = tmp_path / "sub" / "engine.db"
        async with EngineDatabase(str(path)) as db:
            cursor = await db.db.execute("SELECT version FROM schema_version")
            assert (await cursor.fetchone())[0] == 1
        assert path.exists()

    @pytest.mark.asyncio
    async def test_newer_schema_rejected(self, tmp_path) -> None:
        path = str(tmp_path / "engine.db")
        async with EngineDatabase(path) as db:
            await db.db.execute("UPDATE schema_version SET version = 99")
            await db.db.commit()

        db = EngineDatabase(path)
        with pytest.raises(RuntimeError, match="schema version 99"):
            await db.connect()
        await db.close()


class TestPortfolio:
    @pytest.mark.asyncio
    async def test_empty_store(self, store: PortfolioStore) -> None:
        assert await store.load_portfolio() is None
        assert await store.load_events() == []

    @pytest.mark.asyncio
    async def test_round_trip_preserves_decimals(self, store: PortfolioStore) -> None:
        snapshot = PortfolioSnapshot(
            cash_balance=Decimal("1234.5678901234"),
            holdings={"X": Holding("X", Decimal("9.95"), Decimal("995"))},
            version=4,
        )
        event = PortfolioEvent(
            id="e1",
            kind=EventKind.BUY,
            amount=Decimal("1000"),
            cash_after=Decimal("1234.5678901234"),
            timestamp=T0,
            instrument_id="X",
            shares=Decimal("9.95"),
            price_per_share=Decimal("100"),
            fee=Decimal("5"),
        )
        await store.save_portfolio(snapshot, event)

        assert await store.load_portfolio() == snapshot
        assert await store.load_events() == [event]

    @pytest.mark.asyncio
    async def test_closed_holding_removed(self, store: PortfolioStore) -> None:
        await store.save_portfolio(PortfolioSnapshot(
            Decimal("0"), {"X": Holding("X", Decimal("1"), Decimal("10"))}, 1,
        ))
        await store.save_portfolio(PortfolioSnapshot(Decimal("12"), {}, 2))
        loaded = await store.load_portfolio()
        assert loaded.holdings == {}
        assert loaded.cash_balance == Decimal("12")

    @pytest.mark.asyncio
    async def test_ledger_survives_restart(self, store: PortfolioStore) -> None:
        ledger = HoldingsLedger(store=store)
        await ledger.deposit(Decimal("500"))
        await ledger.buy("X", Decimal("200"), Decimal("40"))

        restored = HoldingsLedger(store=store)
        assert await restored.load()
        assert restored.snapshot() == ledger.snapshot()
        assert [e.kind for e in restored.get_history()] == [EventKind.BUY, EventKind.DEPOSIT]


class TestPlans:
    @pytest.mark.asyncio
    async def test_save_and_update_plan(self, store: PortfolioStore) -> None:
        plan = _plan()
        await store.save_plan(plan)
        paused = _plan(status=PlanStatus.PAUSED)
        await store.save_plan(paused)
        assert await store.load_plans() == [paused]

    @pytest.mark.asyncio
    async def test_record_execution(self, store: PortfolioStore) -> None:
        plan = _plan(purchase_count=1, total_invested=Decimal("25.50"), last_execution_at=T0)
        ok = ExecutionRecord(
            id="r1",
            recurring_purchase_id="plan-1",
            instrument_id="BTC/USD",
            amount_requested=Decimal("25.50"),
            shares_acquired=Decimal("0.0004"),
            success=True,
            executed_at=T0,
            scheduled_for=T0,
            price_per_share=Decimal("63750"),
        )
        failed = ExecutionRecord(
            id="r2",
            recurring_purchase_id="plan-1",
            instrument_id="BTC/USD",
            amount_requested=Decimal("25.50"),
            shares_acquired=Decimal("0"),
            success=False,
            executed_at=T0 + timedelta(days=7),
            scheduled_for=T0 + timedelta(days=7),
            error_reason=ExecutionErrorReason.INSUFFICIENT_FUNDS,
        )
        await store.record_execution(plan, ok)
        await store.record_execution(plan, failed)

        assert await store.load_plans() == [plan]
        assert await store.load_executions() == [failed, ok]
        assert await store.load_executions("other") == []

    @pytest.mark.asyncio
    async def test_scheduler_survives_restart(self, store: PortfolioStore) -> None:
        ledger = HoldingsLedger(store=store)
        await ledger.deposit(Decimal("100"))
        prices = PriceSeriesStore()
        await prices.update_price("X", Decimal("10"))

        scheduler = RecurringScheduler(ledger, prices, store=store, clock=lambda: T0)
        plan = await scheduler.create("X", Decimal("20"), Frequency.DAILY)
        await scheduler.tick(T0 + timedelta(days=1))

        restored = RecurringScheduler(ledger, prices, store=store, clock=lambda: T0)
        assert await restored.load() == 1
        loaded = restored.get_plan(plan.id)
        assert loaded.purchase_count == 1
        assert loaded.next_execution_at == T0 + timedelta(days=2)
        assert len(restored.get_execution_history(plan.id)) == 1


class TestSharedConnection:
    @pytest.mark.asyncio
    async def test_failed_ledger_write_not_committed_by_plan_save(
        self, store: PortfolioStore, database: EngineDatabase
    ) -> None:
        """A plan saved while a ledger write is in flight must not commit half of it."""
        ledger = HoldingsLedger(store=store, clock=lambda: T0)
        await ledger.deposit(Decimal("100"))
        await ledger.buy("X", Decimal("10"), Decimal("1"))

        # an event id the next ledger write will collide with
        await database.db.execute(
            "INSERT INTO portfolio_events (id, kind, amount, shares, price_per_share, fee, "
            "cash_after, timestamp) VALUES (?, 'deposit', '1', '0', '0', '0', '1', ?)",
            ("c" * 16, T0.isoformat()),
        )
        await database.db.commit()
        scheduler = RecurringScheduler(ledger, PriceSeriesStore(), store=store, clock=lambda: T0)

        with patch("invest.ledger.holdings.uuid4", return_value=SimpleNamespace(hex="c" * 32)):
            results = await asyncio.gather(
                ledger.buy("Y", Decimal("10"), Decimal("1")),
                scheduler.create("Z", Decimal("5"), Frequency.DAILY),
                return_exceptions=True,
            )

        assert isinstance(results[0], sqlite3.IntegrityError)
        assert isinstance(results[1], RecurringPurchase)
        persisted = await store.load_portfolio()
        assert list(persisted.holdings) == ["X"]
        assert persisted.cash_balance == Decimal("90")
        assert [p.instrument_id for p in await store.load_plans()] == ["Z"]
        assert list(ledger.snapshot().holdings) == ["X"]


class TestHistoryPaging:
    @pytest.mark.asyncio
    async def test_latest_events_oldest_first(self, store: PortfolioStore) -> None:
        for i in range(3):
            await store.save_portfolio(
                PortfolioSnapshot(Decimal(i), {}, i + 1),
                PortfolioEvent(
                    id=f"e{i}",
                    kind=EventKind.DEPOSIT,
                    amount=Decimal("1"),
                    cash_after=Decimal(i),
                    value_after=Decimal(i * 10),
                    timestamp=T0 + timedelta(hours=i),
                ),
            )

        events = await store.load_events(limit=2)
        assert [e.id for e in events] == ["e1", "e2"]
        assert events[1].value_after == Decimal("20")

    @pytest.mark.asyncio
    async def test_latest_executions(self, store: PortfolioStore) -> None:
        plan = _plan()
        for i in range(3):
            await store.record_execution(plan, ExecutionRecord(
                id=f"r{i}",
                recurring_purchase_id=plan.id,
                instrument_id=plan.instrument_id,
                amount_requested=plan.amount_per_execution,
                shares_acquired=Decimal("0"),
                success=False,
                executed_at=T0 + timedelta(days=i),
                scheduled_for=T0 + timedelta(days=i),
                error_reason=ExecutionErrorReason.PRICE_UNAVAILABLE,
            ))

        assert [r.id for r in await store.load_executions(limit=2)] == ["r2", "r1"]
