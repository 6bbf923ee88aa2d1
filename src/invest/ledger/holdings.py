"""Cash and holdings ledger with weighted-average cost basis.

Every money-moving operation (manual buy, recurring buy, sell, deposit,
withdrawal) funnels through HoldingsLedger so its invariants hold no matter
who calls it.

Mutation flow:
1. Acquire the ledger lock (single writer)
2. Validate against the current snapshot and raise before touching anything
3. Build the next PortfolioSnapshot as a new object
4. Persist it (when a store is configured)
5. Swap it in with one assignment and append the activity event

Readers call snapshot()/valuation()/unrealized_pnl() without the lock and
always see either the old or the new snapshot, never a partial one.
"""

import asyncio
import bisect
from collections.abc import Callable, Mapping
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from invest.config import LedgerSettings
from invest.data.store import PortfolioStore
from invest.exceptions import InsufficientFunds, InsufficientShares
from invest.ledger.fee_calculator import FeeCalculator
from invest.logging import get_logger
from invest.market_data.price_series import Period, PriceSeries
from invest.market_data.price_store import PriceSeriesStore
from invest.models import (
    BuyResult,
    Change,
    EventKind,
    Holding,
    PortfolioEvent,
    PortfolioSnapshot,
    SellResult,
    utc_now,
)

logger = get_logger(__name__)

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")
_HALF = Decimal("0.5")
_ONE = Decimal("1")


def _require_positive(name: str, value: Decimal) -> None:
    if value <= 0:
        raise ValueError(f"{name} must be > 0, got {value}")


class HoldingsLedger:
    """Single source of truth for cash and holdings.

    Args:
        settings: Ledger configuration (epsilons, default fee, initial cash).
        fee_calculator: Fee computation; built from settings when omitted.
        store: Optional durable store. When set, each mutation is written
            before it becomes visible in memory, and a failed write leaves
            the ledger unchanged.
        prices: Optional last-known prices, used to mark untraded holdings
            when recording each event's value_after.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        settings: LedgerSettings | None = None,
        fee_calculator: FeeCalculator | None = None,
        store: PortfolioStore | None = None,
        prices: PriceSeriesStore | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings or LedgerSettings()
        self._fees = fee_calculator or FeeCalculator(self._settings)
        self._store = store
        self._prices = prices
        self._clock = clock
        self._snapshot = PortfolioSnapshot(
            cash_balance=self._settings.initial_cash, holdings={}, version=0
        )
        self._events: list[PortfolioEvent] = []
        # value_after of the newest event dropped from the in-memory tail
        self._baseline_value: Decimal | None = None
        self._lock = asyncio.Lock()

    # ──────────────────────────────────────────────
    # Mutations
    # ──────────────────────────────────────────────

    async def buy(
        self,
        instrument_id: str,
        gross_amount: Decimal,
        price_per_share: Decimal,
        fee_rate_bps: int | None = None,
    ) -> BuyResult:
        """Spend ``gross_amount`` of cash on an instrument.

        The fee comes out of the gross amount: cash is debited by exactly
        ``gross_amount`` and only the net is converted to shares and added
        to cost basis.

        Raises:
            ValueError: On a non-positive amount or price, or a negative fee rate.
            InsufficientFunds: If ``gross_amount`` exceeds the cash balance.
        """
        _require_positive("gross_amount", gross_amount)
        _require_positive("price_per_share", price_per_share)
        rate = self._fees.resolve_rate(fee_rate_bps)

        async with self._lock:
            current = self._snapshot
            if gross_amount > current.cash_balance:
                raise InsufficientFunds(
                    f"Buy of {gross_amount} exceeds cash balance {current.cash_balance}"
                )

            shares, fee = self._fees.shares_for(gross_amount, price_per_share, rate)
            net = gross_amount - fee

            existing = current.holdings.get(instrument_id)
            holdings = dict(current.holdings)
            holdings[instrument_id] = Holding(
                instrument_id=instrument_id,
                shares=(existing.shares if existing else _ZERO) + shares,
                total_cost=(existing.total_cost if existing else _ZERO) + net,
            )
            cash_after = current.cash_balance - gross_amount
            event = self._event(
                EventKind.BUY,
                amount=gross_amount,
                cash_after=cash_after,
                value_after=await self._holdings_value(holdings, instrument_id, price_per_share),
                instrument_id=instrument_id,
                shares=shares,
                price_per_share=price_per_share,
                fee=fee,
            )
            await self._commit(cash_after, holdings, event)

        logger.info(
            "buy_executed",
            instrument_id=instrument_id,
            gross_amount=str(gross_amount),
            shares=str(shares),
            fee=str(fee),
            price=str(price_per_share),
        )
        return BuyResult(
            instrument_id=instrument_id,
            gross_amount=gross_amount,
            shares_acquired=shares,
            fee_charged=fee,
            price_per_share=price_per_share,
        )

    async def sell(
        self,
        instrument_id: str,
        shares: Decimal,
        price_per_share: Decimal,
    ) -> SellResult:
        """Sell shares at weighted-average cost.

        The average cost of the remaining position is unchanged; total cost
        shrinks in proportion. A remainder at or below ``zero_share_epsilon``
        closes the holding.

        Raises:
            ValueError: On non-positive shares or price.
            InsufficientShares: If ``shares`` exceeds what is held.
        """
        _require_positive("shares", shares)
        _require_positive("price_per_share", price_per_share)

        async with self._lock:
            current = self._snapshot
            holding = current.holdings.get(instrument_id)
            held = holding.shares if holding is not None else _ZERO
            if holding is None or shares > held:
                raise InsufficientShares(
                    f"Cannot sell {shares} of {instrument_id}, holding {held}"
                )

            average_cost = holding.average_cost
            proceeds = shares * price_per_share
            realized_pnl = (price_per_share - average_cost) * shares
            remaining = held - shares

            holdings = dict(current.holdings)
            if remaining <= self._settings.zero_share_epsilon:
                del holdings[instrument_id]
            else:
                holdings[instrument_id] = Holding(
                    instrument_id=instrument_id,
                    shares=remaining,
                    total_cost=holding.total_cost - average_cost * shares,
                )
            cash_after = current.cash_balance + proceeds
            event = self._event(
                EventKind.SELL,
                amount=proceeds,
                cash_after=cash_after,
                value_after=await self._holdings_value(holdings, instrument_id, price_per_share),
                instrument_id=instrument_id,
                shares=shares,
                price_per_share=price_per_share,
            )
            await self._commit(cash_after, holdings, event)

        logger.info(
            "sell_executed",
            instrument_id=instrument_id,
            shares=str(shares),
            proceeds=str(proceeds),
            realized_pnl=str(realized_pnl),
            position_closed=instrument_id not in holdings,
        )
        return SellResult(
            instrument_id=instrument_id,
            shares_sold=shares,
            proceeds=proceeds,
            realized_pnl=realized_pnl,
            price_per_share=price_per_share,
        )

    async def deposit(self, amount: Decimal) -> Decimal:
        """Add cash. Returns the new cash balance."""
        _require_positive("amount", amount)
        async with self._lock:
            current = self._snapshot
            cash_after = current.cash_balance + amount
            event = self._event(
                EventKind.DEPOSIT,
                amount=amount,
                cash_after=cash_after,
                value_after=await self._holdings_value(current.holdings),
            )
            await self._commit(cash_after, current.holdings, event)

        logger.info("cash_deposited", amount=str(amount), cash_balance=str(cash_after))
        return cash_after

    async def withdraw(self, amount: Decimal) -> Decimal:
        """Remove cash. Returns the new cash balance.

        Raises:
            InsufficientFunds: If ``amount`` exceeds the cash balance.
        """
        _require_positive("amount", amount)
        async with self._lock:
            current = self._snapshot
            if amount > current.cash_balance:
                raise InsufficientFunds(
                    f"Withdrawal of {amount} exceeds cash balance {current.cash_balance}"
                )
            cash_after = current.cash_balance - amount
            event = self._event(
                EventKind.WITHDRAWAL,
                amount=amount,
                cash_after=cash_after,
                value_after=await self._holdings_value(current.holdings),
            )
            await self._commit(cash_after, current.holdings, event)

        logger.info("cash_withdrawn", amount=str(amount), cash_balance=str(cash_after))
        return cash_after

    # ──────────────────────────────────────────────
    # Reads
    # ──────────────────────────────────────────────

    @property
    def cash_balance(self) -> Decimal:
        return self._snapshot.cash_balance

    @property
    def version(self) -> int:
        return self._snapshot.version

    def snapshot(self) -> PortfolioSnapshot:
        """Return the current snapshot with its own copy of the holdings map."""
        current = self._snapshot
        return PortfolioSnapshot(
            cash_balance=current.cash_balance,
            holdings=dict(current.holdings),
            version=current.version,
        )

    def get_holding(self, instrument_id: str) -> Holding | None:
        return self._snapshot.holdings.get(instrument_id)

    def shares_owned(self, instrument_id: str) -> Decimal:
        holding = self._snapshot.holdings.get(instrument_id)
        return holding.shares if holding is not None else _ZERO

    def owns(self, instrument_id: str) -> bool:
        return instrument_id in self._snapshot.holdings

    def holding_value(self, instrument_id: str, current_price: Decimal) -> Decimal:
        return self.shares_owned(instrument_id) * current_price

    def total_cost_basis(self) -> Decimal:
        return sum(
            (h.total_cost for h in self._snapshot.holdings.values()), _ZERO
        )

    def valuation(self, prices: Mapping[str, Decimal]) -> Decimal:
        """Market value of all holdings.

        Instruments without a price in ``prices`` contribute 0.
        """
        total = _ZERO
        for instrument_id, holding in self._snapshot.holdings.items():
            price = prices.get(instrument_id)
            if price is not None:
                total += holding.shares * price
        return total

    def unrealized_pnl(self, instrument_id: str, current_price: Decimal) -> Change:
        """Open P&L of one holding at ``current_price``.

        Amounts smaller than ``pnl_display_epsilon`` read as no change.
        """
        holding = self._snapshot.holdings.get(instrument_id)
        if holding is None:
            return Change.zero()
        amount = holding.shares * current_price - holding.total_cost
        return self._change(amount, holding.total_cost)

    def total_pnl(self, prices: Mapping[str, Decimal]) -> Change:
        """Open P&L across all holdings.

        An instrument without a price is valued at its cost, so it adds
        nothing to the result.
        """
        holdings = self._snapshot.holdings.values()
        cost = sum((h.total_cost for h in holdings), _ZERO)
        value = _ZERO
        for holding in holdings:
            price = prices.get(holding.instrument_id)
            value += holding.shares * price if price is not None else holding.total_cost
        return self._change(value - cost, cost)

    def get_history(self, limit: int | None = None) -> list[PortfolioEvent]:
        """Return activity events, most recent first."""
        events = self._events[::-1]
        return events[:limit] if limit is not None else events

    # ──────────────────────────────────────────────
    # Value over time
    # ──────────────────────────────────────────────

    def portfolio_value_at(
        self,
        time: datetime,
        prices: Mapping[str, Decimal],
        series: Mapping[str, PriceSeries] | None = None,
        now: datetime | None = None,
    ) -> Decimal:
        """Holdings market value at ``time``, reconstructed from the event log.

        Before the first event the portfolio is empty (0). Between events the
        value is the earlier event's ``value_after``. After the latest event
        the current holdings are marked to market: through the instrument's
        series when given (scrubbed by how far ``time`` is between the event
        and ``now``), else its last-known price, else its cost.
        """
        index = bisect.bisect_right([e.timestamp for e in self._events], time)
        if index == 0:
            return self._baseline_value if self._baseline_value is not None else _ZERO

        event = self._events[index - 1]
        holdings = self._snapshot.holdings
        if index < len(self._events) or time <= event.timestamp or not holdings:
            return event.value_after

        now = now or self._clock()
        total_seconds = (now - event.timestamp).total_seconds()
        progress: Decimal | None = None
        if total_seconds > 0:
            elapsed = (time - event.timestamp).total_seconds()
            progress = min(Decimal(str(elapsed)) / Decimal(str(total_seconds)), _ONE)

        value = _ZERO
        for instrument_id, holding in holdings.items():
            instrument_series = series.get(instrument_id) if series else None
            if instrument_series is not None and progress is not None:
                value += holding.shares * instrument_series.price_at(progress)
            elif instrument_id in prices:
                value += holding.shares * prices[instrument_id]
            else:
                value += holding.total_cost
        return value

    def value_at_period_start(
        self,
        period: Period,
        prices: Mapping[str, Decimal],
        series: Mapping[str, PriceSeries] | None = None,
        now: datetime | None = None,
    ) -> Decimal:
        now = now or self._clock()
        return self.portfolio_value_at(self._period_start(period, now), prices, series, now)

    def current_value(
        self,
        prices: Mapping[str, Decimal],
        series: Mapping[str, PriceSeries] | None = None,
    ) -> Decimal:
        """Holdings value now, the last point of any chart."""
        now = self._clock()
        return self.portfolio_value_at(now, prices, series, now)

    def portfolio_chart(
        self,
        period: Period,
        count: int,
        prices: Mapping[str, Decimal],
        series: Mapping[str, PriceSeries] | None = None,
        now: datetime | None = None,
    ) -> list[Decimal]:
        """``count`` evenly spaced portfolio values over ``period``, normalized to [0, 1].

        An empty event log yields no points, and a flat line maps to 0.5.

        Raises:
            ValueError: If ``count`` is below 2.
        """
        if count < 2:
            raise ValueError(f"count must be >= 2, got {count}")
        if not self._events:
            return []

        now = now or self._clock()
        start = self._period_start(period, now)
        span = now - start
        values = [
            self.portfolio_value_at(start + span * i / (count - 1), prices, series, now)
            for i in range(count)
        ]

        low = min(values)
        high = max(values)
        if high == low:
            return [_HALF] * count
        spread = high - low
        return [(v - low) / spread for v in values]

    def _period_start(self, period: Period, now: datetime) -> datetime:
        lookback = period.lookback
        if lookback is not None:
            return now - lookback
        return self._events[0].timestamp if self._events else now

    # ──────────────────────────────────────────────
    # Restore
    # ──────────────────────────────────────────────

    def restore(
        self,
        snapshot: PortfolioSnapshot,
        events: list[PortfolioEvent] | None = None,
    ) -> None:
        """Replace in-memory state with a previously persisted snapshot.

        ``events`` are expected oldest first, as the store returns them. Only
        the newest ``history_limit`` are kept in memory.
        """
        self._snapshot = PortfolioSnapshot(
            cash_balance=snapshot.cash_balance,
            holdings=dict(snapshot.holdings),
            version=snapshot.version,
        )
        self._events = list(events or [])
        self._baseline_value = None
        self._trim_events()
        logger.info(
            "ledger_restored",
            cash_balance=str(snapshot.cash_balance),
            holdings=len(snapshot.holdings),
            version=snapshot.version,
        )

    async def load(self) -> bool:
        """Restore state from the store. Returns False if nothing was persisted."""
        if self._store is None:
            return False
        snapshot = await self._store.load_portfolio()
        if snapshot is None:
            return False
        # one extra event so the value before the kept tail is known
        events = await self._store.load_events(self._settings.history_limit + 1)
        self.restore(snapshot, events)
        return True

    # ──────────────────────────────────────────────
    # Internal
    # ──────────────────────────────────────────────

    async def _holdings_value(
        self,
        holdings: Mapping[str, Holding],
        traded_id: str | None = None,
        trade_price: Decimal | None = None,
    ) -> Decimal:
        """Market value recorded as an event's value_after.

        The traded instrument is marked at its trade price, others at the
        last-known price, and anything unpriced at cost.
        """
        total = _ZERO
        for instrument_id, holding in holdings.items():
            price = None
            if instrument_id == traded_id:
                price = trade_price
            elif self._prices is not None:
                price = await self._prices.get_price(instrument_id)
            total += holding.shares * price if price is not None else holding.total_cost
        return total

    def _trim_events(self) -> None:
        overflow = len(self._events) - self._settings.history_limit
        if overflow > 0:
            self._baseline_value = self._events[overflow - 1].value_after
            del self._events[:overflow]

    def _change(self, amount: Decimal, cost: Decimal) -> Change:
        if abs(amount) < self._settings.pnl_display_epsilon:
            return Change.zero()
        percent = amount / cost * _HUNDRED if cost > 0 else _ZERO
        return Change(absolute=amount, percent=percent, is_positive=amount > 0)

    def _event(
        self,
        kind: EventKind,
        amount: Decimal,
        cash_after: Decimal,
        value_after: Decimal,
        instrument_id: str | None = None,
        shares: Decimal = _ZERO,
        price_per_share: Decimal = _ZERO,
        fee: Decimal = _ZERO,
    ) -> PortfolioEvent:
        return PortfolioEvent(
            id=uuid4().hex[:16],
            kind=kind,
            amount=amount,
            cash_after=cash_after,
            timestamp=self._clock(),
            instrument_id=instrument_id,
            shares=shares,
            price_per_share=price_per_share,
            fee=fee,
            value_after=value_after,
        )

    async def _commit(
        self,
        cash_balance: Decimal,
        holdings: dict[str, Holding],
        event: PortfolioEvent,
    ) -> None:
        # Caller holds self._lock.
        new_snapshot = PortfolioSnapshot(
            cash_balance=cash_balance,
            holdings=holdings,
            version=self._snapshot.version + 1,
        )
        if self._store is not None:
            await self._store.save_portfolio(new_snapshot, event)
        self._snapshot = new_snapshot
        self._events.append(event)
        self._trim_events()
