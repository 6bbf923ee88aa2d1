"""Market data layer -- price series, shared price cache, price source and polling."""

from invest.market_data.price_monitor import PriceMonitor
from invest.market_data.price_series import Period, PriceSeries
from invest.market_data.price_source import CcxtPriceSource, PriceSource
from invest.market_data.price_store import PriceSeriesStore

__all__ = [
    "CcxtPriceSource",
    "Period",
    "PriceMonitor",
    "PriceSeries",
    "PriceSeriesStore",
    "PriceSource",
]
