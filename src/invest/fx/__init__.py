"""Currency conversion -- rate sources and the TTL rate cache."""

from invest.fx.rate_cache import ExchangeRateCache
from invest.fx.rate_source import FrankfurterRateSource, RateSource

__all__ = ["ExchangeRateCache", "FrankfurterRateSource", "RateSource"]
