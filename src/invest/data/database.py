"""Async SQLite database manager for portfolio persistence.

Uses aiosqlite for non-blocking database operations with WAL mode
for concurrent read/write performance.
"""

import os
from typing import Self

import aiosqlite

from invest.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS portfolio_state (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    cash_balance TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS holdings (
    instrument_id TEXT PRIMARY KEY,
    shares TEXT NOT NULL,
    total_cost TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS portfolio_events (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    instrument_id TEXT,
    amount TEXT NOT NULL,
    shares TEXT NOT NULL,
    price_per_share TEXT NOT NULL,
    fee TEXT NOT NULL,
    cash_after TEXT NOT NULL,
    value_after TEXT NOT NULL DEFAULT '0',
    timestamp TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS recurring_purchases (
    id TEXT PRIMARY KEY,
    instrument_id TEXT NOT NULL,
    amount_per_execution TEXT NOT NULL,
    frequency TEXT NOT NULL,
    status TEXT NOT NULL,
    next_execution_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    purchase_count INTEGER NOT NULL DEFAULT 0,
    total_invested TEXT NOT NULL,
    last_execution_at TEXT
);

CREATE TABLE IF NOT EXISTS execution_records (
    id TEXT PRIMARY KEY,
    recurring_purchase_id TEXT NOT NULL,
    instrument_id TEXT NOT NULL,
    amount_requested TEXT NOT NULL,
    shares_acquired TEXT NOT NULL,
    success INTEGER NOT NULL,
    error_reason TEXT,
    executed_at TEXT NOT NULL,
    scheduled_for TEXT NOT NULL,
    price_per_share TEXT NOT NULL,
    fee_charged TEXT NOT NULL
);
"""

_CREATE_INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_events_ts
    ON portfolio_events(timestamp);

CREATE INDEX IF NOT EXISTS idx_executions_plan_ts
    ON execution_records(recurring_purchase_id, executed_at);
"""


class EngineDatabase:
    """Async SQLite connection manager for engine state.

    Manages database lifecycle including schema creation, WAL mode
    configuration, and clean resource cleanup.

    Usage:
        async with EngineDatabase("data/portfolio.db") as database:
            store = PortfolioStore(database)
    """

    def __init__(self, db_path: str = "data/portfolio.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        """Access the raw aiosqlite connection.

        Raises RuntimeError if not connected.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    async def connect(self) -> None:
        """Open database connection, configure pragmas, and create schema.

        Creates the parent directory if it does not exist.
        """
        db_dir = os.path.dirname(self._db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self._connection = await aiosqlite.connect(self._db_path)

        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")

        await self._create_tables()
        await self._ensure_schema_version()

        logger.info("engine_db_connected", db_path=self._db_path)

    async def close(self) -> None:
        """Close the database connection if open."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("engine_db_closed", db_path=self._db_path)

    async def _create_tables(self) -> None:
        assert self._connection is not None
        await self._connection.executescript(_CREATE_TABLES_SQL)
        await self._connection.executescript(_CREATE_INDEXES_SQL)
        await self._connection.commit()

    async def _ensure_schema_version(self) -> None:
        assert self._connection is not None
        cursor = await self._connection.execute(
            "SELECT version FROM schema_version LIMIT 1"
        )
        row = await cursor.fetchone()
        if row is None:
            await self._connection.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            await self._connection.commit()
            logger.info("schema_version_set", version=SCHEMA_VERSION)
        elif row[0] > SCHEMA_VERSION:
            raise RuntimeError(
                f"{self._db_path} has schema version {row[0]}, "
                f"this build supports up to {SCHEMA_VERSION}"
            )

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()
