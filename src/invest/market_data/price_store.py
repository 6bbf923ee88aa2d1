"""Shared in-memory cache of last-known prices and price series.

The PriceMonitor writes into it on its own cadence; the ledger valuation,
the recurring scheduler and the API read from it. Readers always get the
last-known value and never wait on an in-flight fetch.

Uses asyncio.Lock for safe concurrent reads/writes from multiple coroutines.
"""

import asyncio
import time
from decimal import Decimal

from invest.logging import get_logger
from invest.market_data.price_series import Period, PriceSeries

logger = get_logger(__name__)


class PriceSeriesStore:
    """Last-known current price and series per instrument, with staleness detection."""

    def __init__(self) -> None:
        self._prices: dict[str, tuple[Decimal, float]] = {}
        self._series: dict[tuple[str, Period], PriceSeries] = {}
        self._lock = asyncio.Lock()

    async def update_price(
        self, instrument_id: str, price: Decimal, timestamp: float | None = None
    ) -> None:
        """Store the latest current price for an instrument.

        Args:
            instrument_id: Instrument identifier (e.g., "AAPL").
            price: Latest price as Decimal.
            timestamp: Unix timestamp of the quote; defaults to now.
        """
        async with self._lock:
            self._prices[instrument_id] = (price, timestamp if timestamp is not None else time.time())

    async def update_series(self, series: PriceSeries, timestamp: float | None = None) -> None:
        """Replace the stored series for its instrument and period.

        Seeds the current price from the series tail when no quote is
        known yet for the instrument.
        """
        async with self._lock:
            self._series[(series.instrument_id, series.period)] = series
            if series.instrument_id not in self._prices:
                self._prices[series.instrument_id] = (
                    series.latest,
                    timestamp if timestamp is not None else time.time(),
                )
        logger.debug(
            "price_series_updated",
            instrument_id=series.instrument_id,
            period=series.period.value,
            points=len(series),
        )

    async def get_price(self, instrument_id: str) -> Decimal | None:
        """Return the latest cached price for an instrument, or None if not cached."""
        async with self._lock:
            entry = self._prices.get(instrument_id)
            return entry[0] if entry is not None else None

    async def get_prices(self) -> dict[str, Decimal]:
        """Return a copy of all latest prices keyed by instrument."""
        async with self._lock:
            return {instrument_id: entry[0] for instrument_id, entry in self._prices.items()}

    async def get_price_age(self, instrument_id: str) -> float | None:
        """Return seconds since the last price update for an instrument.

        Returns None if the instrument has no cached price.
        """
        async with self._lock:
            entry = self._prices.get(instrument_id)
            if entry is None:
                return None
            return time.time() - entry[1]

    async def is_stale(self, instrument_id: str, max_age_seconds: float = 60.0) -> bool:
        """Check if a cached price is stale or missing."""
        age = await self.get_price_age(instrument_id)
        if age is None:
            return True
        return age > max_age_seconds

    async def get_series(self, instrument_id: str, period: Period) -> PriceSeries | None:
        """Return the cached series for an instrument and period.

        Falls back to the degenerate ``[price, price]`` series when only a
        current price is known, and None when nothing is known.
        """
        async with self._lock:
            series = self._series.get((instrument_id, period))
            if series is not None:
                return series
            entry = self._prices.get(instrument_id)
        if entry is None:
            return None
        return PriceSeries.from_prices(instrument_id, [], period, fallback=entry[0])

    def instruments(self) -> list[str]:
        """Instrument ids with a cached price, sorted."""
        return sorted(self._prices)
