"""Shared data models for the portfolio engine.

CRITICAL: All monetary values use Decimal. Never use float for prices, shares, fees or rates.
Snapshot-style records are frozen; owners swap in new instances with
dataclasses.replace instead of mutating what a reader may already hold.
"""

import calendar
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Frequency(str, Enum):
    """Recurring purchase cadence."""

    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"

    def next_date(self, start: datetime) -> datetime:
        """Return the next execution date after ``start``.

        Monthly keeps the day-of-month where the target month has it and
        clamps to the month end otherwise (Jan 31 -> Feb 28/29).
        """
        if self is Frequency.DAILY:
            return start + timedelta(days=1)
        if self is Frequency.WEEKLY:
            return start + timedelta(days=7)
        if self is Frequency.BIWEEKLY:
            return start + timedelta(days=14)
        return add_months(start, 1)

    @property
    def monthly_multiplier(self) -> Decimal:
        """Approximate executions per month, used for spend projections."""
        return _MONTHLY_MULTIPLIERS[self]


_MONTHLY_MULTIPLIERS: dict[Frequency, Decimal] = {
    Frequency.DAILY: Decimal("30"),
    Frequency.WEEKLY: Decimal("4.33"),
    Frequency.BIWEEKLY: Decimal("2.17"),
    Frequency.MONTHLY: Decimal("1"),
}


def add_months(value: datetime, months: int) -> datetime:
    """Shift a datetime by whole calendar months, clamping the day to month end."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


class PlanStatus(str, Enum):
    """Recurring purchase lifecycle state. CANCELLED is terminal."""

    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class ExecutionErrorReason(str, Enum):
    """Why a scheduled execution did not buy anything."""

    INSUFFICIENT_FUNDS = "insufficient_funds"
    PRICE_UNAVAILABLE = "price_unavailable"


class EventKind(str, Enum):
    """Portfolio activity type."""

    BUY = "buy"
    SELL = "sell"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


@dataclass(frozen=True)
class Holding:
    """Shares and cost basis held for one instrument.

    average_cost is derived so that total_cost == average_cost * shares
    always holds up to Decimal rounding.
    """

    instrument_id: str
    shares: Decimal
    total_cost: Decimal

    @property
    def average_cost(self) -> Decimal:
        if self.shares > 0:
            return self.total_cost / self.shares
        return Decimal("0")


@dataclass(frozen=True)
class PortfolioSnapshot:
    """Point-in-time copy of cash and holdings handed to readers."""

    cash_balance: Decimal
    holdings: dict[str, Holding]
    version: int = 0


@dataclass(frozen=True)
class PricePoint:
    """A single price observation."""

    timestamp: datetime
    price: Decimal


@dataclass(frozen=True)
class BuyResult:
    """Outcome of a successful buy."""

    instrument_id: str
    gross_amount: Decimal
    shares_acquired: Decimal
    fee_charged: Decimal
    price_per_share: Decimal


@dataclass(frozen=True)
class SellResult:
    """Outcome of a successful sell."""

    instrument_id: str
    shares_sold: Decimal
    proceeds: Decimal
    realized_pnl: Decimal
    price_per_share: Decimal


@dataclass(frozen=True)
class Change:
    """Signed change with a percentage, as shown next to a price or position."""

    absolute: Decimal
    percent: Decimal
    is_positive: bool

    @classmethod
    def zero(cls) -> "Change":
        return cls(absolute=Decimal("0"), percent=Decimal("0"), is_positive=True)


@dataclass(frozen=True)
class RecurringPurchase:
    """A recurring buy of a fixed cash amount of one instrument."""

    id: str
    instrument_id: str
    amount_per_execution: Decimal
    frequency: Frequency
    status: PlanStatus
    next_execution_at: datetime
    created_at: datetime
    purchase_count: int = 0
    total_invested: Decimal = Decimal("0")
    last_execution_at: datetime | None = None

    @property
    def is_live(self) -> bool:
        """Active or paused -- occupies the instrument's single plan slot."""
        return self.status is not PlanStatus.CANCELLED

    def is_due(self, now: datetime) -> bool:
        return self.status is PlanStatus.ACTIVE and self.next_execution_at <= now


@dataclass(frozen=True)
class ExecutionRecord:
    """Append-only audit entry for one scheduled execution attempt."""

    id: str
    recurring_purchase_id: str
    instrument_id: str
    amount_requested: Decimal
    shares_acquired: Decimal
    success: bool
    executed_at: datetime
    scheduled_for: datetime
    price_per_share: Decimal = Decimal("0")
    fee_charged: Decimal = Decimal("0")
    error_reason: ExecutionErrorReason | None = None


@dataclass(frozen=True)
class PortfolioEvent:
    """Activity log entry for a committed ledger mutation."""

    id: str
    kind: EventKind
    amount: Decimal
    cash_after: Decimal
    timestamp: datetime
    instrument_id: str | None = None
    shares: Decimal = Decimal("0")
    price_per_share: Decimal = Decimal("0")
    fee: Decimal = Decimal("0")
    value_after: Decimal = Decimal("0")  # holdings market value once the event applied


@dataclass
class ExchangeRateEntry:
    """Cached conversion rate for a currency pair.

    fetched_at is a Unix timestamp; ttl is in seconds.
    """

    from_currency: str
    to_currency: str
    rate: Decimal
    fetched_at: float
    ttl: float = field(default=3600.0)

    def is_fresh(self, now: float) -> bool:
        return now - self.fetched_at < self.ttl
