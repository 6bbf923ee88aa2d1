"""Pydantic request bodies for the HTTP API."""

from decimal import Decimal

from pydantic import BaseModel, Field

from invest.models import Frequency


class BuyRequest(BaseModel):
    instrument_id: str = Field(..., min_length=1, examples=["BTC/USD"])
    amount: Decimal = Field(..., gt=0, description="Gross cash to spend, fee included")
    price_per_share: Decimal | None = Field(
        default=None, gt=0, description="Quoted price; last-known price when omitted"
    )
    fee_rate_bps: int | None = Field(default=None, ge=0)


class SellRequest(BaseModel):
    instrument_id: str = Field(..., min_length=1)
    shares: Decimal = Field(..., gt=0)
    price_per_share: Decimal | None = Field(default=None, gt=0)


class CashRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)


class PlanCreateRequest(BaseModel):
    instrument_id: str = Field(..., min_length=1)
    amount_per_execution: Decimal = Field(..., gt=0)
    frequency: Frequency
