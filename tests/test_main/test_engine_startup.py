"""Tests for component wiring and startup in invest.main."""

import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from structlog.testing import capture_logs

from invest.config import AppSettings, LedgerSettings, PriceSettings, RateSettings
from invest.main import _build_components, _startup
from invest.models import Frequency


@pytest.fixture
def startup_components() -> dict:
    return {
        "database": None,
        "ledger": AsyncMock(),
        "scheduler": AsyncMock(),
        "price_source": AsyncMock(),
        "rate_cache": AsyncMock(),
    }


class TestStartup:
    @pytest.mark.asyncio
    async def test_prefetches_rates_from_base_currency(self, startup_components: dict) -> None:
        settings = AppSettings(
            ledger=LedgerSettings(base_currency="USD"),
            rates=RateSettings(prefetch_currencies=["EUR", "usd", "GBP"]),
        )

        await _startup(startup_components, settings)

        startup_components["price_source"].connect.assert_awaited_once()
        rate_cache = startup_components["rate_cache"]
        rate_cache.prefetch.assert_awaited_once()
        assert list(rate_cache.prefetch.await_args.args[0]) == [("USD", "EUR"), ("USD", "GBP")]

    @pytest.mark.asyncio
    async def test_no_store_skips_restore(self, startup_components: dict) -> None:
        await _startup(startup_components, AppSettings())
        startup_components["ledger"].load.assert_not_awaited()
        startup_components["scheduler"].load.assert_not_awaited()


class TestBuildComponents:
    @pytest.mark.asyncio
    async def test_ledger_marks_events_with_shared_prices(self, mock_settings: AppSettings) -> None:
        components = await _build_components(mock_settings)
        try:
            ledger = components["ledger"]
            await ledger.deposit(Decimal("100"))
            await ledger.buy("Y", Decimal("10"), Decimal("1"))
            await components["price_store"].update_price("Y", Decimal("3"))
            await ledger.deposit(Decimal("1"))

            assert ledger.get_history(limit=1)[0].value_after == Decimal("30")
        finally:
            await components["price_source"].close()

    @pytest.mark.asyncio
    async def test_scheduler_uses_price_age_setting(self, mock_settings: AppSettings) -> None:
        settings = mock_settings.model_copy(update={
            "prices": PriceSettings(max_price_age_seconds=42.0),
        })
        components = await _build_components(settings)
        try:
            await components["ledger"].deposit(Decimal("100"))
            await components["price_store"].update_price(
                "X", Decimal("10"), timestamp=time.time() - 120
            )
            scheduler = components["scheduler"]
            await scheduler.create("X", Decimal("10"), Frequency.DAILY)

            with capture_logs() as logs:
                records = await scheduler.tick(datetime.now(timezone.utc) + timedelta(days=2))

            assert records[0].success is True
            assert [e["max_age_seconds"] for e in logs if e["event"] == "recurring_price_stale"] == [42.0]
        finally:
            await components["price_source"].close()
