"""Historical price series with progress-based interpolation and chart resampling.

A PriceSeries is the single primitive behind every "drag to scrub" chart:
``progress`` is a position in [0, 1] along the series, mapped uniformly onto
the point indices (not onto wall-clock time). All arithmetic is Decimal.

Series are immutable. Queries are pure, so redrawing a chart with the same
input always yields the same output.
"""

from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum

from invest.models import Change, PricePoint

_ZERO = Decimal("0")
_ONE = Decimal("1")
_HALF = Decimal("0.5")
_HUNDRED = Decimal("100")

# Flat-tail trimming thresholds (fractions of the overall price range)
_TRIM_MIN_POINTS = 20
_TRIM_TAIL_RANGE = Decimal("0.05")
_TRIM_TOLERANCE = Decimal("0.02")


class Period(str, Enum):
    """Chart period bucket."""

    HOUR = "1H"
    DAY = "1D"
    WEEK = "1W"
    MONTH = "1M"
    YEAR = "1Y"
    ALL = "All"

    @property
    def timeframe(self) -> str:
        """Candle timeframe used to build a series for this period."""
        return _TIMEFRAMES[self]

    @property
    def lookback(self) -> timedelta | None:
        """How far back the period reaches; None means all available history."""
        return _LOOKBACKS[self]


_TIMEFRAMES: dict[Period, str] = {
    Period.HOUR: "1m",
    Period.DAY: "5m",
    Period.WEEK: "15m",
    Period.MONTH: "1h",
    Period.YEAR: "4h",
    Period.ALL: "4h",
}

_LOOKBACKS: dict[Period, timedelta | None] = {
    Period.HOUR: timedelta(hours=1),
    Period.DAY: timedelta(days=1),
    Period.WEEK: timedelta(weeks=1),
    Period.MONTH: timedelta(days=30),
    Period.YEAR: timedelta(days=365),
    Period.ALL: None,
}


def _to_decimal(value: float | Decimal | int) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


class PriceSeries:
    """Ordered, non-empty price history for one instrument and period.

    A single point is padded to the degenerate two-point series ``[v, v]``
    so that consumers can always interpolate.

    Args:
        instrument_id: Instrument the prices belong to.
        points: Price observations; sorted by timestamp on construction.
        period: Period bucket the series was fetched for.

    Raises:
        ValueError: If ``points`` is empty or a price is negative.
    """

    def __init__(
        self,
        instrument_id: str,
        points: Sequence[PricePoint],
        period: Period = Period.DAY,
    ) -> None:
        if not points:
            raise ValueError(f"PriceSeries for {instrument_id} needs at least one point")
        ordered = sorted(points, key=lambda p: p.timestamp)
        for point in ordered:
            if point.price < 0:
                raise ValueError(f"Negative price {point.price} for {instrument_id}")
        if len(ordered) == 1:
            ordered = [ordered[0], ordered[0]]

        self._instrument_id = instrument_id
        self._period = period
        self._points: tuple[PricePoint, ...] = tuple(ordered)
        self._prices: tuple[Decimal, ...] = tuple(p.price for p in ordered)

    @classmethod
    def from_prices(
        cls,
        instrument_id: str,
        prices: Sequence[Decimal],
        period: Period = Period.DAY,
        fallback: Decimal | None = None,
        timestamps: Sequence[datetime] | None = None,
    ) -> "PriceSeries":
        """Build a series from bare prices.

        Missing timestamps are synthesised one second apart so ordering is
        preserved. An empty ``prices`` with a ``fallback`` yields
        ``[fallback, fallback]``.
        """
        if not prices:
            if fallback is None:
                raise ValueError(f"No prices and no fallback for {instrument_id}")
            prices = [fallback, fallback]
            timestamps = None

        if timestamps is None or len(timestamps) != len(prices):
            timestamps = [datetime.fromtimestamp(i, tz=timezone.utc) for i in range(len(prices))]

        points = [
            PricePoint(timestamp=ts, price=_to_decimal(price))
            for ts, price in zip(timestamps, prices)
        ]
        return cls(instrument_id, points, period)

    @classmethod
    def from_candles(
        cls,
        instrument_id: str,
        candles: Sequence[Sequence],
        period: Period = Period.DAY,
        fallback: Decimal | None = None,
    ) -> "PriceSeries":
        """Build a series from OHLCV rows ``[timestamp_ms, open, high, low, close, volume]``.

        Rows without a close price are skipped.
        """
        points = [
            PricePoint(
                timestamp=datetime.fromtimestamp(row[0] / 1000, tz=timezone.utc),
                price=Decimal(str(row[4])),
            )
            for row in candles
            if row[4] is not None
        ]
        if not points:
            return cls.from_prices(instrument_id, [], period, fallback=fallback)
        return cls(instrument_id, points, period)

    @property
    def instrument_id(self) -> str:
        return self._instrument_id

    @property
    def period(self) -> Period:
        return self._period

    @property
    def points(self) -> tuple[PricePoint, ...]:
        return self._points

    @property
    def prices(self) -> tuple[Decimal, ...]:
        return self._prices

    @property
    def first(self) -> Decimal:
        return self._prices[0]

    @property
    def latest(self) -> Decimal:
        return self._prices[-1]

    def __len__(self) -> int:
        return len(self._prices)

    def price_at(self, progress: float | Decimal) -> Decimal:
        """Linearly interpolated price at ``progress`` in [0, 1].

        Out-of-range progress is clamped. ``price_at(0)`` is exactly the first
        price and ``price_at(1)`` exactly the last.

        Raises:
            ValueError: If ``progress`` is NaN or infinite.
        """
        p = _to_decimal(progress)
        if not p.is_finite():
            raise ValueError(f"progress must be a finite number, got {progress}")
        if p < _ZERO:
            p = _ZERO
        elif p > _ONE:
            p = _ONE

        last_index = len(self._prices) - 1
        exact_index = p * last_index
        lower = int(exact_index)
        if lower >= last_index:
            return self._prices[last_index]

        start = self._prices[lower]
        fraction = exact_index - lower
        if fraction == 0:
            return start
        return start + (self._prices[lower + 1] - start) * fraction

    def change_at(self, progress: float | Decimal) -> Change:
        """Change from the period start to ``price_at(progress)``.

        A zero start price reports 0% and positive rather than dividing.
        """
        start = self.price_at(0)
        current = self.price_at(progress)
        absolute = current - start
        if start == 0:
            return Change(absolute=absolute, percent=_ZERO, is_positive=True)
        return Change(
            absolute=absolute,
            percent=absolute / start * _HUNDRED,
            is_positive=absolute >= 0,
        )

    def resample(self, target_count: int) -> list[Decimal]:
        """Return ``target_count`` evenly spaced values normalized to [0, 1].

        Each value is interpolated as in ``price_at`` and then scaled by
        ``(v - min) / (max - min)`` over the resampled values. A flat
        series maps every value to 0.5.

        Raises:
            ValueError: If ``target_count`` is below 2.
        """
        if target_count < 2:
            raise ValueError(f"target_count must be >= 2, got {target_count}")

        denominator = Decimal(target_count - 1)
        values = [self.price_at(Decimal(i) / denominator) for i in range(target_count)]

        low = min(values)
        high = max(values)
        if high == low:
            return [_HALF] * target_count
        spread = high - low
        return [(v - low) / spread for v in values]

    def sample(self, count: int) -> list[Decimal]:
        """Pick ``count`` raw prices at evenly stepped indices (mini charts).

        Short series are padded with their last price.
        """
        if count < 1:
            raise ValueError(f"count must be >= 1, got {count}")
        n = len(self._prices)
        if n < count:
            return list(self._prices) + [self._prices[-1]] * (count - n)
        if count == 1:
            return [self._prices[0]]
        return [self._prices[i * (n - 1) // (count - 1)] for i in range(count)]

    def trim_trailing_flat(self) -> "PriceSeries":
        """Drop a flat tail left by a closed market.

        Applies to series longer than 20 points whose last 40% moves less
        than 5% of the overall range; the series is cut just after the last
        point that departs more than 2% of the range from the flat value.
        Returns ``self`` when nothing is trimmed.
        """
        prices = self._prices
        n = len(prices)
        if n <= _TRIM_MIN_POINTS:
            return self

        overall_range = max(prices) - min(prices)
        if overall_range <= 0:
            return self

        tail = prices[n * 3 // 5:]
        if max(tail) - min(tail) >= overall_range * _TRIM_TAIL_RANGE:
            return self

        flat_price = tail[-1]
        tolerance = overall_range * _TRIM_TOLERANCE
        cut = n
        for i in range(n - 1, -1, -1):
            if abs(prices[i] - flat_price) > tolerance:
                cut = i + 2
                break

        if cut >= n:
            return self
        return PriceSeries(self._instrument_id, self._points[:cut], self._period)
