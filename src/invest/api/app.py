"""FastAPI application factory for the engine's JSON API."""

from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from invest.api.routes import fx, market, plans, portfolio
from invest.exceptions import (
    DuplicateActivePlan,
    EngineError,
    InsufficientFunds,
    InsufficientShares,
    InvalidTransition,
    PlanNotFound,
    PriceUnavailableError,
    RateUnavailable,
)
from invest.logging import get_logger

logger = get_logger(__name__)

# (status code, error kind) per domain exception
_ERROR_MAP: dict[type[EngineError], tuple[int, str]] = {
    InsufficientFunds: (409, "insufficient_funds"),
    InsufficientShares: (409, "insufficient_shares"),
    DuplicateActivePlan: (409, "duplicate_active_plan"),
    InvalidTransition: (409, "invalid_transition"),
    PlanNotFound: (404, "plan_not_found"),
    PriceUnavailableError: (404, "price_unavailable"),
    RateUnavailable: (503, "rate_unavailable"),
}


async def _engine_error_handler(request: Request, exc: Exception) -> JSONResponse:
    status_code, kind = _ERROR_MAP.get(type(exc), (400, "engine_error"))
    logger.info("api_request_rejected", path=request.url.path, error=kind, detail=str(exc))
    return JSONResponse(
        content={"error": kind, "detail": str(exc)},
        status_code=status_code,
    )


async def _value_error_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(
        content={"error": "invalid_request", "detail": str(exc)},
        status_code=400,
    )


def create_api_app(lifespan: Any = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        lifespan: Optional async context manager for application lifespan events.
                  Used by main.py to wire the engine components onto app.state.

    Returns:
        Configured FastAPI application with routes and error handlers.
    """
    app = FastAPI(
        title="Portfolio & Recurring Investment Engine",
        lifespan=lifespan,
    )

    # Engine components -- set by main.py lifespan, or directly in tests
    app.state.ledger = None
    app.state.scheduler = None
    app.state.price_store = None
    app.state.rate_cache = None
    app.state.orchestrator = None
    app.state.base_currency = "USD"
    app.state.max_price_age_seconds = 300.0

    app.add_exception_handler(EngineError, _engine_error_handler)
    app.add_exception_handler(ValueError, _value_error_handler)

    app.include_router(portfolio.router, prefix="/api/portfolio")
    app.include_router(plans.router, prefix="/api/plans")
    app.include_router(market.router, prefix="/api/market")
    app.include_router(fx.router, prefix="/api/fx")

    @app.get("/api/status")
    async def get_status(request: Request) -> JSONResponse:
        orchestrator = request.app.state.orchestrator
        if orchestrator is None:
            return JSONResponse(content={"running": False})
        return JSONResponse(content=await orchestrator.get_status())

    return app
