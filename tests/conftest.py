"""Shared test fixtures for the portfolio engine."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from invest.config import AppSettings, LedgerSettings, SchedulerSettings, StorageSettings
from invest.ledger.fee_calculator import FeeCalculator
from invest.ledger.holdings import HoldingsLedger
from invest.market_data.price_store import PriceSeriesStore


class FakeClock:
    """Settable UTC clock for code that takes a ``clock`` callable."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def mock_settings() -> AppSettings:
    """Return AppSettings with test defaults (no storage, fast ticks)."""
    return AppSettings(
        log_level="DEBUG",
        ledger=LedgerSettings(fee_rate_bps=0, initial_cash=Decimal("0")),
        scheduler=SchedulerSettings(tick_interval=1),
        storage=StorageSettings(enabled=False),
    )


@pytest.fixture
def ledger_settings() -> LedgerSettings:
    return LedgerSettings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def ledger(ledger_settings: LedgerSettings, clock: FakeClock) -> HoldingsLedger:
    """Empty in-memory ledger with default settings."""
    return HoldingsLedger(
        settings=ledger_settings,
        fee_calculator=FeeCalculator(ledger_settings),
        clock=clock,
    )


@pytest.fixture
def price_store() -> PriceSeriesStore:
    return PriceSeriesStore()
