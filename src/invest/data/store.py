"""Typed SQLite read/write abstraction for portfolio, plan and execution state.

All SQL is isolated behind PortfolioStore. Each write that belongs to one
logical mutation (new cash + holdings + event, or plan update + execution
record) is committed in a single transaction.

The ledger and the scheduler share one connection, so every write
transaction runs under the store's write lock from its first statement to
its commit or rollback.

CRITICAL: All monetary values stored as TEXT in SQLite, restored as Decimal on read.
"""

import asyncio
from datetime import datetime
from decimal import Decimal

from invest.data.database import EngineDatabase
from invest.logging import get_logger
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

logger = get_logger(__name__)


def _dt(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value is not None else None


class PortfolioStore:
    """Async SQLite store for engine state.

    Usage:
        async with EngineDatabase("data/portfolio.db") as database:
            store = PortfolioStore(database)
            snapshot = await store.load_portfolio()
    """

    def __init__(self, database: EngineDatabase) -> None:
        self._database = database
        self._write_lock = asyncio.Lock()

    # ──────────────────────────────────────────────
    # Portfolio
    # ──────────────────────────────────────────────

    async def save_portfolio(
        self, snapshot: PortfolioSnapshot, event: PortfolioEvent | None = None
    ) -> None:
        """Persist cash, the full holdings map and an optional event atomically."""
        db = self._database.db
        async with self._write_lock:
            try:
                await db.execute(
                    "INSERT OR REPLACE INTO portfolio_state (id, cash_balance, version) "
                    "VALUES (1, ?, ?)",
                    (str(snapshot.cash_balance), snapshot.version),
                )
                await db.execute("DELETE FROM holdings")
                await db.executemany(
                    "INSERT INTO holdings (instrument_id, shares, total_cost) VALUES (?, ?, ?)",
                    [
                        (h.instrument_id, str(h.shares), str(h.total_cost))
                        for h in snapshot.holdings.values()
                    ],
                )
                if event is not None:
                    await db.execute(
                        "INSERT INTO portfolio_events "
                        "(id, kind, instrument_id, amount, shares, price_per_share, fee, "
                        "cash_after, value_after, timestamp) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            event.id,
                            event.kind.value,
                            event.instrument_id,
                            str(event.amount),
                            str(event.shares),
                            str(event.price_per_share),
                            str(event.fee),
                            str(event.cash_after),
                            str(event.value_after),
                            _dt(event.timestamp),
                        ),
                    )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        logger.debug(
            "portfolio_saved",
            version=snapshot.version,
            holdings=len(snapshot.holdings),
        )

    async def load_portfolio(self) -> PortfolioSnapshot | None:
        """Load the persisted portfolio, or None if nothing was saved yet."""
        db = self._database.db
        cursor = await db.execute(
            "SELECT cash_balance, version FROM portfolio_state WHERE id = 1"
        )
        row = await cursor.fetchone()
        if row is None:
            return None

        cursor = await db.execute(
            "SELECT instrument_id, shares, total_cost FROM holdings ORDER BY instrument_id"
        )
        rows = await cursor.fetchall()
        holdings = {
            r[0]: Holding(instrument_id=r[0], shares=Decimal(r[1]), total_cost=Decimal(r[2]))
            for r in rows
        }
        return PortfolioSnapshot(
            cash_balance=Decimal(row[0]),
            holdings=holdings,
            version=row[1],
        )

    async def load_events(self, limit: int | None = None) -> list[PortfolioEvent]:
        """Return portfolio events ordered oldest first (the latest ``limit`` if given)."""
        query = (
            "SELECT id, kind, instrument_id, amount, shares, price_per_share, fee, "
            "cash_after, value_after, timestamp FROM portfolio_events "
            "ORDER BY timestamp DESC, rowid DESC"
        )
        params: list = []
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        cursor = await self._database.db.execute(query, params)
        rows = await cursor.fetchall()
        events = [
            PortfolioEvent(
                id=r[0],
                kind=EventKind(r[1]),
                instrument_id=r[2],
                amount=Decimal(r[3]),
                shares=Decimal(r[4]),
                price_per_share=Decimal(r[5]),
                fee=Decimal(r[6]),
                cash_after=Decimal(r[7]),
                value_after=Decimal(r[8]),
                timestamp=datetime.fromisoformat(r[9]),
            )
            for r in rows
        ]
        events.reverse()
        return events

    # ──────────────────────────────────────────────
    # Recurring plans and executions
    # ──────────────────────────────────────────────

    async def save_plan(self, plan: RecurringPurchase) -> None:
        """Insert or replace a recurring plan."""
        db = self._database.db
        async with self._write_lock:
            try:
                await self._upsert_plan(plan)
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    async def record_execution(self, plan: RecurringPurchase, record: ExecutionRecord) -> None:
        """Persist an updated plan and its new execution record in one transaction."""
        db = self._database.db
        async with self._write_lock:
            try:
                await self._upsert_plan(plan)
                await db.execute(
                    "INSERT INTO execution_records "
                    "(id, recurring_purchase_id, instrument_id, amount_requested, "
                    "shares_acquired, success, error_reason, executed_at, scheduled_for, "
                    "price_per_share, fee_charged) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        record.id,
                        record.recurring_purchase_id,
                        record.instrument_id,
                        str(record.amount_requested),
                        str(record.shares_acquired),
                        1 if record.success else 0,
                        record.error_reason.value if record.error_reason is not None else None,
                        _dt(record.executed_at),
                        _dt(record.scheduled_for),
                        str(record.price_per_share),
                        str(record.fee_charged),
                    ),
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    async def load_plans(self) -> list[RecurringPurchase]:
        """Return all plans ordered by creation time."""
        cursor = await self._database.db.execute(
            "SELECT id, instrument_id, amount_per_execution, frequency, status, "
            "next_execution_at, created_at, purchase_count, total_invested, "
            "last_execution_at FROM recurring_purchases ORDER BY created_at ASC"
        )
        rows = await cursor.fetchall()
        return [
            RecurringPurchase(
                id=r[0],
                instrument_id=r[1],
                amount_per_execution=Decimal(r[2]),
                frequency=Frequency(r[3]),
                status=PlanStatus(r[4]),
                next_execution_at=datetime.fromisoformat(r[5]),
                created_at=datetime.fromisoformat(r[6]),
                purchase_count=r[7],
                total_invested=Decimal(r[8]),
                last_execution_at=_parse_dt(r[9]),
            )
            for r in rows
        ]

    async def load_executions(
        self, plan_id: str | None = None, limit: int | None = None
    ) -> list[ExecutionRecord]:
        """Return execution records, most recent first, optionally for one plan."""
        query = (
            "SELECT id, recurring_purchase_id, instrument_id, amount_requested, "
            "shares_acquired, success, error_reason, executed_at, scheduled_for, "
            "price_per_share, fee_charged FROM execution_records"
        )
        params: list = []
        if plan_id is not None:
            query += " WHERE recurring_purchase_id = ?"
            params.append(plan_id)
        query += " ORDER BY executed_at DESC, rowid DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        cursor = await self._database.db.execute(query, params)
        rows = await cursor.fetchall()
        return [
            ExecutionRecord(
                id=r[0],
                recurring_purchase_id=r[1],
                instrument_id=r[2],
                amount_requested=Decimal(r[3]),
                shares_acquired=Decimal(r[4]),
                success=bool(r[5]),
                error_reason=ExecutionErrorReason(r[6]) if r[6] is not None else None,
                executed_at=datetime.fromisoformat(r[7]),
                scheduled_for=datetime.fromisoformat(r[8]),
                price_per_share=Decimal(r[9]),
                fee_charged=Decimal(r[10]),
            )
            for r in rows
        ]

    async def _upsert_plan(self, plan: RecurringPurchase) -> None:
        # Caller holds self._write_lock.
        await self._database.db.execute(
            "INSERT OR REPLACE INTO recurring_purchases "
            "(id, instrument_id, amount_per_execution, frequency, status, "
            "next_execution_at, created_at, purchase_count, total_invested, "
            "last_execution_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                plan.id,
                plan.instrument_id,
                str(plan.amount_per_execution),
                plan.frequency.value,
                plan.status.value,
                _dt(plan.next_execution_at),
                _dt(plan.created_at),
                plan.purchase_count,
                str(plan.total_invested),
                _dt(plan.last_execution_at),
            ),
        )
