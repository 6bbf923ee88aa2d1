"""TTL cache of currency conversion rates.

Used for display conversion only; ledger correctness never depends on it.
Availability wins over freshness: when a refetch fails, a stale entry is
still served. Only a pair that was never fetched raises RateUnavailable,
and callers then show amounts in the base currency.
"""

import asyncio
import time
from collections.abc import Callable, Iterable
from decimal import Decimal

from invest.exceptions import RateUnavailable
from invest.fx.rate_source import RateSource
from invest.logging import get_logger
from invest.models import ExchangeRateEntry

logger = get_logger(__name__)

_ONE = Decimal("1")


class ExchangeRateCache:
    """Caches rates per currency pair and refetches after ``ttl_seconds``.

    Args:
        source: Provider queried on a miss or expiry.
        ttl_seconds: Lifetime of a fetched rate.
        fetch_timeout: Seconds before a fetch is abandoned. An abandoned
            fetch leaves the cache exactly as it was.
        clock: Returns the current Unix time; injectable for tests.
    """

    def __init__(
        self,
        source: RateSource,
        ttl_seconds: float = 3600.0,
        fetch_timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._source = source
        self._ttl = ttl_seconds
        self._fetch_timeout = fetch_timeout
        self._clock = clock
        self._entries: dict[tuple[str, str], ExchangeRateEntry] = {}

    async def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        """Return the rate for a pair, fetching on miss or expiry.

        Raises:
            RateUnavailable: If the fetch fails and nothing is cached.
        """
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        if from_currency == to_currency:
            return _ONE

        key = (from_currency, to_currency)
        entry = self._entries.get(key)
        if entry is not None and entry.is_fresh(self._clock()):
            return entry.rate

        try:
            rate = await asyncio.wait_for(
                self._source.fetch_rate(from_currency, to_currency),
                timeout=self._fetch_timeout,
            )
        except Exception as e:
            if entry is not None:
                logger.warning(
                    "rate_fetch_failed_serving_stale",
                    from_currency=from_currency,
                    to_currency=to_currency,
                    age_seconds=round(self._clock() - entry.fetched_at, 1),
                    error=str(e),
                )
                return entry.rate
            logger.warning(
                "rate_unavailable",
                from_currency=from_currency,
                to_currency=to_currency,
                error=str(e),
            )
            raise RateUnavailable(
                f"No rate available for {from_currency}->{to_currency}"
            ) from e

        self._entries[key] = ExchangeRateEntry(
            from_currency=from_currency,
            to_currency=to_currency,
            rate=rate,
            fetched_at=self._clock(),
            ttl=self._ttl,
        )
        logger.info(
            "rate_cached",
            from_currency=from_currency,
            to_currency=to_currency,
            rate=str(rate),
        )
        return rate

    async def convert(self, amount: Decimal, from_currency: str, to_currency: str) -> Decimal:
        """Convert ``amount`` between currencies.

        Raises:
            RateUnavailable: Propagated from get_rate.
        """
        rate = await self.get_rate(from_currency, to_currency)
        return amount * rate

    def get_cached_rate(self, from_currency: str, to_currency: str) -> Decimal | None:
        """Return a cached rate without fetching, regardless of age."""
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        if from_currency == to_currency:
            return _ONE
        entry = self._entries.get((from_currency, to_currency))
        return entry.rate if entry is not None else None

    def get_entry(self, from_currency: str, to_currency: str) -> ExchangeRateEntry | None:
        return self._entries.get((from_currency.upper(), to_currency.upper()))

    async def prefetch(self, pairs: Iterable[tuple[str, str]]) -> int:
        """Warm the cache for common pairs. Returns how many are now available."""
        available = 0
        for from_currency, to_currency in pairs:
            try:
                await self.get_rate(from_currency, to_currency)
            except RateUnavailable:
                continue
            available += 1
        logger.info("rates_prefetched", available=available)
        return available
