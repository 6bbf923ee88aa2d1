"""Configuration system using pydantic-settings with environment variable loading."""

from decimal import Decimal
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerSettings(BaseSettings):
    """Cash and holdings accounting parameters."""

    model_config = SettingsConfigDict(env_prefix="LEDGER_")

    fee_rate_bps: int = 0  # applied when a buy does not pass its own rate
    zero_share_epsilon: Decimal = Decimal("0.0001")  # remaining shares at or below this close the holding
    pnl_display_epsilon: Decimal = Decimal("0.001")  # |P&L| below this reads as "no change"
    initial_cash: Decimal = Decimal("0")
    base_currency: str = "USD"
    history_limit: int = 10_000  # events kept in memory; the store keeps all of them


class SchedulerSettings(BaseSettings):
    """Recurring purchase scheduler parameters."""

    model_config = SettingsConfigDict(env_prefix="SCHEDULER_")

    enabled: bool = True
    tick_interval: int = 60  # seconds between scheduler ticks
    history_limit: int = 10_000  # execution records kept in memory


class PriceSettings(BaseSettings):
    """Price source and refresh cadence.

    ``instruments`` is the list of instrument ids the monitor keeps warm.
    All fields configurable via PRICES_ environment variable prefix.
    """

    model_config = SettingsConfigDict(env_prefix="PRICES_")

    exchange_id: str = "kraken"  # any ccxt exchange id
    instruments: list[str] = []
    poll_interval: float = 30.0
    fetch_timeout_seconds: float = 10.0
    default_period: Literal["1H", "1D", "1W", "1M", "1Y", "All"] = "1D"
    series_limit: int = 300  # max candles per series fetch
    max_price_age_seconds: float = 300.0


class RateSettings(BaseSettings):
    """Exchange rate cache configuration."""

    model_config = SettingsConfigDict(env_prefix="RATES_")

    ttl_seconds: float = 3600.0  # 1 hour
    base_url: str = "https://api.frankfurter.app/latest"
    fetch_timeout_seconds: float = 10.0
    prefetch_currencies: list[str] = ["EUR", "GBP"]  # warmed from base_currency at startup


class StorageSettings(BaseSettings):
    """Durable store for portfolio, plans and execution history."""

    model_config = SettingsConfigDict(env_prefix="STORAGE_")

    enabled: bool = True
    db_path: str = "data/portfolio.db"


class ApiSettings(BaseSettings):
    """HTTP API server configuration."""

    model_config = SettingsConfigDict(env_prefix="API_")

    host: str = "0.0.0.0"
    port: int = 8080
    enabled: bool = True


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    log_format: Literal["console", "json"] | None = None  # None defers to LOG_FORMAT
    ledger: LedgerSettings = LedgerSettings()
    scheduler: SchedulerSettings = SchedulerSettings()
    prices: PriceSettings = PriceSettings()
    rates: RateSettings = RateSettings()
    storage: StorageSettings = StorageSettings()
    api: ApiSettings = ApiSettings()
