"""Currency conversion endpoints."""

from decimal import Decimal

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

router = APIRouter()


@router.get("/rate")
async def get_rate(
    request: Request,
    from_currency: str = Query(..., alias="from", min_length=3, max_length=3),
    to_currency: str = Query(..., alias="to", min_length=3, max_length=3),
) -> JSONResponse:
    rate = await request.app.state.rate_cache.get_rate(from_currency, to_currency)
    return JSONResponse(content={
        "from": from_currency.upper(),
        "to": to_currency.upper(),
        "rate": str(rate),
    })


@router.get("/convert")
async def convert(
    request: Request,
    amount: Decimal,
    from_currency: str = Query(..., alias="from", min_length=3, max_length=3),
    to_currency: str = Query(..., alias="to", min_length=3, max_length=3),
) -> JSONResponse:
    converted = await request.app.state.rate_cache.convert(amount, from_currency, to_currency)
    return JSONResponse(content={
        "amount": str(amount),
        "from": from_currency.upper(),
        "to": to_currency.upper(),
        "converted": str(converted),
    })
