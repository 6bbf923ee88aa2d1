"""Tests for the shared PriceSeriesStore cache."""

import time
from decimal import Decimal

import pytest

from invest.market_data.price_series import Period, PriceSeries
from invest.market_data.price_store import PriceSeriesStore


class TestPrices:
    @pytest.mark.asyncio
    async def test_update_and_get_price(self, price_store: PriceSeriesStore) -> None:
        await price_store.update_price("X", Decimal("101.5"))
        assert await price_store.get_price("X") == Decimal("101.5")

    @pytest.mark.asyncio
    async def test_missing_price_is_none(self, price_store: PriceSeriesStore) -> None:
        assert await price_store.get_price("NOPE") is None
        assert await price_store.get_price_age("NOPE") is None

    @pytest.mark.asyncio
    async def test_get_prices_returns_copy(self, price_store: PriceSeriesStore) -> None:
        await price_store.update_price("X", Decimal("1"))
        prices = await price_store.get_prices()
        prices["Y"] = Decimal("2")
        assert await price_store.get_prices() == {"X": Decimal("1")}

    @pytest.mark.asyncio
    async def test_staleness(self, price_store: PriceSeriesStore) -> None:
        await price_store.update_price("OLD", Decimal("1"), timestamp=time.time() - 120)
        await price_store.update_price("NEW", Decimal("1"))
        assert await price_store.is_stale("OLD", max_age_seconds=60)
        assert not await price_store.is_stale("NEW", max_age_seconds=60)
        assert await price_store.is_stale("MISSING")

    @pytest.mark.asyncio
    async def test_instruments_sorted(self, price_store: PriceSeriesStore) -> None:
        await price_store.update_price("B", Decimal("1"))
        await price_store.update_price("A", Decimal("1"))
        assert price_store.instruments() == ["A", "B"]


class TestSeries:
    @pytest.mark.asyncio
    async def test_update_series_seeds_price(self, price_store: PriceSeriesStore) -> None:
        series = PriceSeries.from_prices("X", [Decimal("1"), Decimal("3")], Period.WEEK)
        await price_store.update_series(series)

        assert await price_store.get_series("X", Period.WEEK) is series
        assert await price_store.get_price("X") == Decimal("3")

    @pytest.mark.asyncio
    async def test_update_series_keeps_existing_quote(self, price_store: PriceSeriesStore) -> None:
        await price_store.update_price("X", Decimal("5"))
        await price_store.update_series(PriceSeries.from_prices("X", [Decimal("1"), Decimal("3")]))
        assert await price_store.get_price("X") == Decimal("5")

    @pytest.mark.asyncio
    async def test_series_falls_back_to_degenerate(self, price_store: PriceSeriesStore) -> None:
        await price_store.update_price("X", Decimal("8"))
        series = await price_store.get_series("X", Period.MONTH)
        assert series is not None
        assert series.prices == (Decimal("8"), Decimal("8"))

    @pytest.mark.asyncio
    async def test_unknown_series_is_none(self, price_store: PriceSeriesStore) -> None:
        assert await price_store.get_series("X", Period.DAY) is None
