"""Entry point for the portfolio engine.

Wires all components together, optionally serves the JSON API, and starts
the orchestrator. When the API is enabled (default), the engine and the
API share a single asyncio event loop via uvicorn's programmatic API and
FastAPI's lifespan context manager.

Handles SIGINT/SIGTERM for graceful shutdown.

Component wiring order (in _build_components):
1. EngineDatabase + PortfolioStore (when storage is enabled)
2. PriceSeriesStore (shared last-known prices)
3. CcxtPriceSource + PriceMonitor (price polling)
4. FrankfurterRateSource + ExchangeRateCache
5. FeeCalculator + HoldingsLedger
6. RecurringScheduler
7. Orchestrator (tick loop)
"""

import asyncio
import signal
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI

from invest.config import AppSettings
from invest.data.database import EngineDatabase
from invest.data.store import PortfolioStore
from invest.fx.rate_cache import ExchangeRateCache
from invest.fx.rate_source import FrankfurterRateSource
from invest.ledger.fee_calculator import FeeCalculator
from invest.ledger.holdings import HoldingsLedger
from invest.logging import get_logger, setup_logging
from invest.market_data.price_monitor import PriceMonitor
from invest.market_data.price_series import Period
from invest.market_data.price_source import CcxtPriceSource
from invest.market_data.price_store import PriceSeriesStore
from invest.orchestrator import Orchestrator
from invest.scheduler.recurring import RecurringScheduler


async def _build_components(settings: AppSettings) -> dict[str, Any]:
    """Build all engine components from settings.

    Note: Does NOT connect the database or the price source -- that happens
    in _startup(), called from the lifespan (API mode) or run().
    """
    database = None
    store = None
    if settings.storage.enabled:
        database = EngineDatabase(settings.storage.db_path)
        store = PortfolioStore(database)

    price_store = PriceSeriesStore()
    price_source = CcxtPriceSource(settings.prices)
    price_monitor = PriceMonitor(
        source=price_source,
        store=price_store,
        instruments=settings.prices.instruments,
        periods=[Period(settings.prices.default_period)],
        poll_interval=settings.prices.poll_interval,
        fetch_timeout=settings.prices.fetch_timeout_seconds,
    )

    rate_cache = ExchangeRateCache(
        source=FrankfurterRateSource(settings.rates),
        ttl_seconds=settings.rates.ttl_seconds,
        fetch_timeout=settings.rates.fetch_timeout_seconds,
    )

    fee_calculator = FeeCalculator(settings.ledger)
    ledger = HoldingsLedger(
        settings=settings.ledger,
        fee_calculator=fee_calculator,
        store=store,
        prices=price_store,
    )
    scheduler = RecurringScheduler(
        ledger=ledger,
        prices=price_store,
        store=store,
        max_price_age_seconds=settings.prices.max_price_age_seconds,
        history_limit=settings.scheduler.history_limit,
    )

    orchestrator = Orchestrator(
        settings=settings,
        ledger=ledger,
        scheduler=scheduler,
        price_store=price_store,
        price_monitor=price_monitor,
    )

    return {
        "database": database,
        "store": store,
        "price_store": price_store,
        "price_source": price_source,
        "price_monitor": price_monitor,
        "rate_cache": rate_cache,
        "fee_calculator": fee_calculator,
        "ledger": ledger,
        "scheduler": scheduler,
        "orchestrator": orchestrator,
    }


async def _startup(components: dict[str, Any], settings: AppSettings) -> None:
    """Restore persisted state, connect the price source and warm the rate cache."""
    logger = get_logger("invest.main")
    if components["database"] is not None:
        await components["database"].connect()
        restored = await components["ledger"].load()
        plans = await components["scheduler"].load()
        logger.info("engine_state_restored", portfolio=restored, plans=plans)
    await components["price_source"].connect()
    await components["rate_cache"].prefetch(
        (settings.ledger.base_currency, currency)
        for currency in settings.rates.prefetch_currencies
        if currency.upper() != settings.ledger.base_currency.upper()
    )


async def _shutdown(components: dict[str, Any]) -> None:
    await components["price_source"].close()
    if components["database"] is not None:
        await components["database"].close()


def _setup_signal_handlers(orchestrator: Orchestrator) -> None:
    """Register SIGINT/SIGTERM to stop the orchestrator gracefully.

    Must be called after the asyncio event loop is running.
    """
    logger = get_logger("invest.main")
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        asyncio.create_task(orchestrator.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage engine component lifecycle within the FastAPI application.

    On startup: stores components on app.state, restores state, starts
    the orchestrator as a background task.

    On shutdown: stops the orchestrator, cancels its task, closes
    the price source and database.
    """
    logger = get_logger("invest.main")
    settings = app.state.settings
    components = app.state.components

    app.state.ledger = components["ledger"]
    app.state.scheduler = components["scheduler"]
    app.state.price_store = components["price_store"]
    app.state.rate_cache = components["rate_cache"]
    app.state.orchestrator = components["orchestrator"]
    app.state.base_currency = settings.ledger.base_currency
    app.state.max_price_age_seconds = settings.prices.max_price_age_seconds

    await _startup(components, settings)

    engine_task = asyncio.create_task(components["orchestrator"].start())

    logger.info("lifespan_started", base_currency=settings.ledger.base_currency)

    yield

    await components["orchestrator"].stop()

    engine_task.cancel()
    try:
        await engine_task
    except asyncio.CancelledError:
        pass

    await _shutdown(components)

    logger.info("portfolio_engine_stopped")


async def run() -> None:
    """Run the portfolio engine.

    When the API is enabled (API_ENABLED=true, the default):
    - Creates the FastAPI app with lifespan
    - Runs engine and API in a single asyncio event loop via uvicorn

    When the API is disabled:
    - Runs the orchestrator directly with signal handlers
    """
    # 1. Load settings
    settings = AppSettings()

    # 2. Setup logging
    setup_logging(settings.log_level, settings.log_format)
    logger = get_logger("invest.main")

    # 3. Build all components
    components = await _build_components(settings)

    if settings.api.enabled:
        from invest.api.app import create_api_app

        app = create_api_app(lifespan=lifespan)
        app.state.settings = settings
        app.state.components = components

        logger.info(
            "starting_with_api",
            host=settings.api.host,
            port=settings.api.port,
        )

        config = uvicorn.Config(
            app,
            host=settings.api.host,
            port=settings.api.port,
            log_level="warning",  # Suppress uvicorn access logs
        )
        server = uvicorn.Server(config)
        await server.serve()
    else:
        _setup_signal_handlers(components["orchestrator"])

        logger.info(
            "starting_without_api",
            tick_interval=settings.scheduler.tick_interval,
            instruments=settings.prices.instruments,
        )

        try:
            await _startup(components, settings)
            await components["orchestrator"].start()
        finally:
            await _shutdown(components)
            logger.info("portfolio_engine_stopped")


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
