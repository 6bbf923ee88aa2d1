"""Portfolio endpoints: snapshot, valuation, P&L, value over time, history and trades."""

from datetime import datetime, timezone
from decimal import Decimal

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from invest.api.schemas import BuyRequest, CashRequest, SellRequest
from invest.api.serializers import change_to_dict, snapshot_to_dict, to_json
from invest.exceptions import PriceUnavailableError, RateUnavailable
from invest.logging import get_logger
from invest.market_data.price_series import Period, PriceSeries
from invest.models import Change

log = get_logger(__name__)

router = APIRouter()


async def _quote(request: Request, instrument_id: str, price: Decimal | None) -> Decimal:
    """Use the caller's quoted price, else the last-known price."""
    if price is not None:
        return price
    last = await request.app.state.price_store.get_price(instrument_id)
    if last is None:
        raise PriceUnavailableError(f"No price known for {instrument_id}")
    return last


@router.get("")
async def get_portfolio(
    request: Request,
    currency: str | None = Query(default=None, min_length=3, max_length=3),
) -> JSONResponse:
    """Snapshot with market value at last-known prices.

    With ``currency``, money totals are converted for display. When no rate
    is available the totals stay in the base currency.
    """
    ledger = request.app.state.ledger
    snapshot = ledger.snapshot()
    prices = await request.app.state.price_store.get_prices()
    holdings_value = ledger.valuation(prices)

    base = request.app.state.base_currency
    display_currency = base
    rate = Decimal("1")
    if currency is not None and request.app.state.rate_cache is not None:
        try:
            rate = await request.app.state.rate_cache.get_rate(base, currency)
            display_currency = currency.upper()
        except RateUnavailable:
            log.warning("display_currency_fallback", requested=currency, base=base)

    payload = snapshot_to_dict(snapshot)
    payload.update({
        "holdings_value": str(holdings_value),
        "total_value": str(snapshot.cash_balance + holdings_value),
        "currency": display_currency,
        "display": {
            "cash_balance": str(snapshot.cash_balance * rate),
            "holdings_value": str(holdings_value * rate),
            "total_value": str((snapshot.cash_balance + holdings_value) * rate),
        },
    })
    return JSONResponse(content=payload)


@router.get("/pnl")
async def get_pnl(request: Request) -> JSONResponse:
    """Unrealized P&L per holding plus the portfolio total."""
    ledger = request.app.state.ledger
    prices = await request.app.state.price_store.get_prices()

    positions = []
    for instrument_id, holding in sorted(ledger.snapshot().holdings.items()):
        price = prices.get(instrument_id)
        positions.append({
            "instrument_id": instrument_id,
            "price": str(price) if price is not None else None,
            "value": str(ledger.holding_value(instrument_id, price)) if price is not None else None,
            "pnl": change_to_dict(ledger.unrealized_pnl(instrument_id, price)) if price is not None else None,
        })

    return JSONResponse(content={
        "total_cost_basis": str(ledger.total_cost_basis()),
        "total": change_to_dict(ledger.total_pnl(prices)),
        "positions": positions,
    })


@router.get("/history")
async def get_history(
    request: Request,
    limit: int | None = Query(default=None, ge=1),
) -> JSONResponse:
    """Portfolio activity, most recent first."""
    events = request.app.state.ledger.get_history(limit)
    return JSONResponse(content=to_json(events))


@router.post("/buy")
async def buy(request: Request, body: BuyRequest) -> JSONResponse:
    price = await _quote(request, body.instrument_id, body.price_per_share)
    result = await request.app.state.ledger.buy(
        body.instrument_id, body.amount, price, body.fee_rate_bps
    )
    return JSONResponse(content=to_json(result))


@router.post("/sell")
async def sell(request: Request, body: SellRequest) -> JSONResponse:
    price = await _quote(request, body.instrument_id, body.price_per_share)
    result = await request.app.state.ledger.sell(body.instrument_id, body.shares, price)
    return JSONResponse(content=to_json(result))


@router.post("/deposit")
async def deposit(request: Request, body: CashRequest) -> JSONResponse:
    balance = await request.app.state.ledger.deposit(body.amount)
    return JSONResponse(content={"cash_balance": str(balance)})


@router.post("/withdraw")
async def withdraw(request: Request, body: CashRequest) -> JSONResponse:
    balance = await request.app.state.ledger.withdraw(body.amount)
    return JSONResponse(content={"cash_balance": str(balance)})


async def _holding_series(request: Request, period: Period) -> dict[str, PriceSeries]:
    price_store = request.app.state.price_store
    series = {}
    for instrument_id in request.app.state.ledger.snapshot().holdings:
        instrument_series = await price_store.get_series(instrument_id, period)
        if instrument_series is not None:
            series[instrument_id] = instrument_series
    return series


@router.get("/chart")
async def get_chart(
    request: Request,
    period: Period = Period.DAY,
    count: int = Query(default=50, ge=2, le=1000),
) -> JSONResponse:
    """Holdings value over ``period`` as ``count`` values normalized to [0, 1]."""
    ledger = request.app.state.ledger
    prices = await request.app.state.price_store.get_prices()
    series = await _holding_series(request, period)
    start_value = ledger.value_at_period_start(period, prices, series)
    current_value = ledger.current_value(prices, series)
    change = None
    if start_value > 0:
        absolute = current_value - start_value
        change = change_to_dict(Change(
            absolute=absolute,
            percent=absolute / start_value * 100,
            is_positive=absolute >= 0,
        ))
    return JSONResponse(content={
        "period": period.value,
        "values": [str(v) for v in ledger.portfolio_chart(period, count, prices, series)],
        "period_start_value": str(start_value),
        "current_value": str(current_value),
        "change": change,
    })


@router.get("/value-at")
async def get_value_at(
    request: Request, time: datetime, period: Period = Period.DAY
) -> JSONResponse:
    """Holdings value at ``time``; a naive timestamp is read as UTC.

    ``period`` picks which cached series marks prices after the latest event.
    """
    if time.tzinfo is None:
        time = time.replace(tzinfo=timezone.utc)
    prices = await request.app.state.price_store.get_prices()
    series = await _holding_series(request, period)
    value = request.app.state.ledger.portfolio_value_at(time, prices, series)
    return JSONResponse(content={"time": time.isoformat(), "value": str(value)})
