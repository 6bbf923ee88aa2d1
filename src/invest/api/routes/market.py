"""Price query endpoints backed by the shared PriceSeriesStore.

Instrument ids such as ``BTC/USD`` contain a slash, so they travel as a
query parameter rather than a path segment.
"""

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from invest.api.serializers import change_to_dict
from invest.exceptions import PriceUnavailableError
from invest.market_data.price_series import Period, PriceSeries

router = APIRouter()


async def _series(request: Request, instrument_id: str, period: Period) -> PriceSeries:
    series = await request.app.state.price_store.get_series(instrument_id, period)
    if series is None:
        raise PriceUnavailableError(f"No price data for {instrument_id}")
    return series


@router.get("/prices")
async def get_prices(request: Request) -> JSONResponse:
    """Last-known price of every tracked instrument, with its age.

    A quote older than ``max_price_age_seconds`` is flagged ``stale``.
    """
    price_store = request.app.state.price_store
    max_age = request.app.state.max_price_age_seconds
    prices = await price_store.get_prices()

    content = {}
    for instrument_id, price in sorted(prices.items()):
        age = await price_store.get_price_age(instrument_id)
        content[instrument_id] = {
            "price": str(price),
            "age_seconds": round(age, 1) if age is not None else None,
            "stale": await price_store.is_stale(instrument_id, max_age),
        }
    return JSONResponse(content=content)


@router.get("/series")
async def get_series(
    request: Request,
    instrument_id: str,
    period: Period = Period.DAY,
    count: int | None = Query(default=None, ge=2, le=1000),
) -> JSONResponse:
    """Raw series prices, optionally sampled down to ``count`` points."""
    series = await _series(request, instrument_id, period)
    prices = series.sample(count) if count is not None else list(series.prices)
    return JSONResponse(content={
        "instrument_id": instrument_id,
        "period": period.value,
        "first": str(series.first),
        "latest": str(series.latest),
        "prices": [str(p) for p in prices],
    })


@router.get("/price-at")
async def get_price_at(
    request: Request,
    instrument_id: str,
    progress: float = Query(..., description="Position along the series, clamped to [0, 1]"),
    period: Period = Period.DAY,
) -> JSONResponse:
    """Interpolated price and change from period start at ``progress``."""
    series = await _series(request, instrument_id, period)
    return JSONResponse(content={
        "instrument_id": instrument_id,
        "period": period.value,
        "progress": progress,
        "price": str(series.price_at(progress)),
        "change": change_to_dict(series.change_at(progress)),
    })


@router.get("/resample")
async def get_resampled(
    request: Request,
    instrument_id: str,
    count: int = Query(default=50, ge=2, le=1000),
    period: Period = Period.DAY,
) -> JSONResponse:
    """``count`` evenly spaced values normalized to [0, 1] for charting."""
    series = await _series(request, instrument_id, period)
    return JSONResponse(content={
        "instrument_id": instrument_id,
        "period": period.value,
        "values": [str(v) for v in series.resample(count)],
    })
