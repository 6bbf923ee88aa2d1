"""Exchange rate sources.

FrankfurterRateSource talks to the free Frankfurter API with urllib.request
(stdlib), run in a worker thread so the event loop is never blocked.
"""

import asyncio
import json
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation

from invest.config import RateSettings
from invest.exceptions import RateUnavailable
from invest.logging import get_logger

logger = get_logger(__name__)


class RateSource(ABC):
    """Abstract base class for currency conversion rate providers."""

    @abstractmethod
    async def fetch_rate(self, from_currency: str, to_currency: str) -> Decimal:
        """Return how many ``to_currency`` units one ``from_currency`` unit buys.

        Raises:
            RateUnavailable: If the provider cannot quote the pair.
        """
        ...


class FrankfurterRateSource(RateSource):
    """Rates from https://www.frankfurter.app (ECB reference rates, no API key).

    Args:
        settings: Base URL and request timeout.
    """

    def __init__(self, settings: RateSettings) -> None:
        self._settings = settings

    async def fetch_rate(self, from_currency: str, to_currency: str) -> Decimal:
        return await asyncio.to_thread(self._fetch_rate_sync, from_currency, to_currency)

    def _fetch_rate_sync(self, from_currency: str, to_currency: str) -> Decimal:
        url = f"{self._settings.base_url}?from={from_currency}&to={to_currency}"
        headers = {"Accept": "application/json", "User-Agent": "PortfolioEngine/1.0"}
        req = urllib.request.Request(url, headers=headers)

        try:
            with urllib.request.urlopen(req, timeout=self._settings.fetch_timeout_seconds) as resp:
                data = json.loads(resp.read())
        except (urllib.error.URLError, TimeoutError, json.JSONDecodeError) as e:
            raise RateUnavailable(
                f"Rate fetch failed for {from_currency}->{to_currency}: {e}"
            ) from e

        raw_rate = data.get("rates", {}).get(to_currency)
        if raw_rate is None:
            raise RateUnavailable(f"No rate quoted for {from_currency}->{to_currency}")

        try:
            rate = Decimal(str(raw_rate))
        except InvalidOperation as e:
            raise RateUnavailable(f"Invalid rate {raw_rate!r} for {from_currency}->{to_currency}") from e

        logger.debug("rate_fetched", from_currency=from_currency, to_currency=to_currency, rate=str(rate))
        return rate
