"""Fee computation for cash purchases.

All calculations use Decimal arithmetic exclusively -- no float conversions anywhere.

Fees are quoted in basis points and come out of the gross amount the user
commits: the gross is what leaves cash, and only the post-fee net is
converted into shares and added to cost basis.
"""

from decimal import Decimal

from invest.config import LedgerSettings

_BPS_DIVISOR = Decimal("10000")


class FeeCalculator:
    """Calculates purchase fees and the net amount invested.

    Uses LedgerSettings for the default fee rate. All methods return Decimal
    values with full precision -- no rounding is applied.

    Args:
        settings: Ledger configuration (default fee rate in bps).
    """

    def __init__(self, settings: LedgerSettings | None = None) -> None:
        self._settings = settings or LedgerSettings()

    @property
    def default_fee_rate_bps(self) -> int:
        return self._settings.fee_rate_bps

    def resolve_rate(self, fee_rate_bps: int | None) -> int:
        """Return ``fee_rate_bps`` or the configured default when None.

        Raises:
            ValueError: If the rate is negative.
        """
        rate = self._settings.fee_rate_bps if fee_rate_bps is None else fee_rate_bps
        if rate < 0:
            raise ValueError(f"fee_rate_bps must be >= 0, got {rate}")
        return rate

    def fee_for(self, gross_amount: Decimal, fee_rate_bps: int | None = None) -> Decimal:
        """Calculate the fee charged on a gross purchase amount.

        Formula: fee = gross * bps / 10000

        Args:
            gross_amount: Cash committed by the buyer.
            fee_rate_bps: Fee rate in basis points; None uses the default.

        Returns:
            Fee in the base currency.
        """
        rate = self.resolve_rate(fee_rate_bps)
        return gross_amount * Decimal(rate) / _BPS_DIVISOR

    def net_amount(self, gross_amount: Decimal, fee_rate_bps: int | None = None) -> Decimal:
        """Amount left for shares after the fee is taken out."""
        return gross_amount - self.fee_for(gross_amount, fee_rate_bps)

    def shares_for(
        self,
        gross_amount: Decimal,
        price_per_share: Decimal,
        fee_rate_bps: int | None = None,
    ) -> tuple[Decimal, Decimal]:
        """Split a gross amount into (shares_acquired, fee_charged).

        Example: $1000 at $100/share with 50 bps -> fee $5, net $995, 9.95 shares.
        """
        fee = self.fee_for(gross_amount, fee_rate_bps)
        shares = (gross_amount - fee) / price_per_share
        return shares, fee
