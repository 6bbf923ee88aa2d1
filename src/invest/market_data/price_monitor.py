"""Price monitor -- keeps the shared price cache warm for tracked instruments.

Uses REST polling on an interval independent from the scheduler tick.
Fetch failures are never fatal: the cache simply keeps the last-known
series and price. A fetch cancelled by timeout does not touch the cache.
"""

import asyncio
import time

from invest.logging import get_logger
from invest.market_data.price_series import Period, PriceSeries
from invest.market_data.price_source import PriceSource
from invest.market_data.price_store import PriceSeriesStore

logger = get_logger(__name__)


class PriceMonitor:
    """Polls a PriceSource and writes quotes and series into a PriceSeriesStore.

    Args:
        source: External price feed.
        store: Shared price cache to update.
        instruments: Instrument ids to keep fresh.
        periods: Series periods refreshed on every poll.
        poll_interval: Seconds between polls.
        fetch_timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        source: PriceSource,
        store: PriceSeriesStore,
        instruments: list[str] | None = None,
        periods: list[Period] | None = None,
        poll_interval: float = 30.0,
        fetch_timeout: float = 10.0,
    ) -> None:
        self._source = source
        self._store = store
        self._instruments: list[str] = list(instruments or [])
        self._periods: list[Period] = list(periods or [Period.DAY])
        self._poll_interval = poll_interval
        self._fetch_timeout = fetch_timeout
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]
        self._last_poll_at: float | None = None

    @property
    def instruments(self) -> list[str]:
        return list(self._instruments)

    @property
    def last_poll_at(self) -> float | None:
        return self._last_poll_at

    def track(self, instrument_id: str) -> None:
        """Add an instrument to the polling set (no-op if already tracked)."""
        if instrument_id not in self._instruments:
            self._instruments.append(instrument_id)
            logger.info("price_monitor_tracking", instrument_id=instrument_id)

    async def start(self) -> None:
        """Begin polling in the background."""
        if self._running:
            logger.warning("price_monitor_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(
            "price_monitor_started",
            poll_interval=self._poll_interval,
            instruments=len(self._instruments),
        )

    async def stop(self) -> None:
        """Stop the price monitor gracefully."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("price_monitor_stopped")

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("price_monitor_poll_error", exc_info=True)
            if self._running:
                await asyncio.sleep(self._poll_interval)

    async def poll_once(self) -> int:
        """Refresh quotes and series for every tracked instrument.

        Returns:
            Number of instruments whose current price was refreshed.
        """
        refreshed = 0
        for instrument_id in list(self._instruments):
            if await self.refresh_price(instrument_id):
                refreshed += 1
            for period in self._periods:
                await self.refresh_series(instrument_id, period)
        self._last_poll_at = time.time()
        logger.debug("prices_refreshed", count=refreshed, tracked=len(self._instruments))
        return refreshed

    async def refresh_price(self, instrument_id: str) -> bool:
        """Fetch and cache the current price. Returns False on failure."""
        try:
            price = await asyncio.wait_for(
                self._source.fetch_current(instrument_id), timeout=self._fetch_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "price_fetch_timeout", instrument_id=instrument_id, timeout=self._fetch_timeout
            )
            return False
        except Exception as e:
            logger.warning("price_fetch_failed", instrument_id=instrument_id, error=str(e))
            return False

        await self._store.update_price(instrument_id, price)
        return True

    async def refresh_series(self, instrument_id: str, period: Period) -> PriceSeries | None:
        """Fetch and cache a series, returning the last-known one on failure."""
        try:
            series = await asyncio.wait_for(
                self._source.fetch_series(instrument_id, period), timeout=self._fetch_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "series_fetch_timeout",
                instrument_id=instrument_id,
                period=period.value,
                timeout=self._fetch_timeout,
            )
            return await self._store.get_series(instrument_id, period)
        except Exception as e:
            logger.warning(
                "series_fetch_failed",
                instrument_id=instrument_id,
                period=period.value,
                error=str(e),
            )
            return await self._store.get_series(instrument_id, period)

        await self._store.update_series(series)
        return series
