"""Price source interface and a ccxt-backed implementation.

The engine never sources market data itself: it depends only on the
PriceSource ABC, and the concrete source is injected at startup.
"""

from abc import ABC, abstractmethod
from decimal import Decimal

import ccxt.async_support as ccxt_async

from invest.config import PriceSettings
from invest.exceptions import PriceUnavailableError
from invest.logging import get_logger
from invest.market_data.price_series import Period, PriceSeries

logger = get_logger(__name__)


class PriceSource(ABC):
    """Abstract base class for external price feeds."""

    @abstractmethod
    async def connect(self) -> None:
        """Initialize connection and load instrument metadata."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release network resources."""
        ...

    @abstractmethod
    async def fetch_current(self, instrument_id: str) -> Decimal:
        """Return the latest traded price for an instrument.

        Raises:
            PriceUnavailableError: If the source has no price.
        """
        ...

    @abstractmethod
    async def fetch_series(self, instrument_id: str, period: Period) -> PriceSeries:
        """Return the historical series covering ``period``."""
        ...


class CcxtPriceSource(PriceSource):
    """Price source backed by any ccxt exchange (ticker + OHLCV closes)."""

    def __init__(self, settings: PriceSettings) -> None:
        self._settings = settings
        exchange_class = getattr(ccxt_async, settings.exchange_id)
        self._exchange = exchange_class({"enableRateLimit": True})

    @property
    def exchange(self) -> ccxt_async.Exchange:
        """Access the underlying ccxt exchange instance."""
        return self._exchange

    async def connect(self) -> None:
        """Load markets so symbol lookups resolve."""
        logger.info("connecting_price_source", exchange=self._settings.exchange_id)
        markets = await self._exchange.load_markets()
        logger.info(
            "price_source_connected",
            exchange=self._settings.exchange_id,
            market_count=len(markets),
        )

    async def close(self) -> None:
        """Clean up ccxt async resources. Must be called to avoid resource leaks."""
        await self._exchange.close()
        logger.info("price_source_closed", exchange=self._settings.exchange_id)

    async def fetch_current(self, instrument_id: str) -> Decimal:
        ticker = await self._exchange.fetch_ticker(instrument_id)
        last = ticker.get("last")
        if last is None:
            last = ticker.get("close")
        if last is None:
            raise PriceUnavailableError(f"No last price for {instrument_id}")
        return Decimal(str(last))

    async def fetch_series(self, instrument_id: str, period: Period) -> PriceSeries:
        """Fetch OHLCV closes for ``period`` at the period's timeframe.

        An empty history falls back to the current quote, and a flat tail
        (closed market) is trimmed.
        """
        limit = self._candle_limit(period)
        candles = await self._exchange.fetch_ohlcv(
            instrument_id, timeframe=period.timeframe, limit=limit
        )
        if not candles:
            current = await self.fetch_current(instrument_id)
            logger.info(
                "price_series_empty_using_quote",
                instrument_id=instrument_id,
                period=period.value,
            )
            return PriceSeries.from_prices(instrument_id, [], period, fallback=current)

        return PriceSeries.from_candles(instrument_id, candles, period).trim_trailing_flat()

    def _candle_limit(self, period: Period) -> int:
        """Number of candles covering the period, capped by settings.series_limit."""
        lookback = period.lookback
        if lookback is None:
            return self._settings.series_limit
        candle_seconds = self._exchange.parse_timeframe(period.timeframe)
        needed = int(lookback.total_seconds() // candle_seconds)
        return max(2, min(needed, self._settings.series_limit))
