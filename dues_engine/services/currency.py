"""Currency conversion between payment, dues, account and reporting currencies.

Rate convention: a rate quoted "to X" means 1 unit of the source currency
equals `rate` units of X. Every monetary operation passes its rates in
explicitly; nothing here looks up a site default.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from dues_engine.services.errors import ValidationError

CENT = Decimal("0.01")
RATE_PLACES = Decimal("0.000001")


def quantize_money(value: Decimal) -> Decimal:
    """Round a money amount to cents (half up)."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def quantize_rate(value: Decimal) -> Decimal:
    """Round an exchange rate to the stored precision."""
    return Decimal(str(value)).quantize(RATE_PLACES, rounding=ROUND_HALF_UP)


def validate_rate(rate: Decimal, name: str = "exchange_rate") -> Decimal:
    """Check that an exchange rate is strictly positive.

    Raises:
        ValidationError: If the rate is missing, zero or negative
    """
    if rate is None:
        raise ValidationError(f"{name} is required")
    rate = Decimal(str(rate))
    if rate <= 0:
        raise ValidationError(f"{name} must be greater than zero, got {rate}")
    return rate


def to_reporting(amount: Decimal, rate: Decimal) -> Decimal:
    """Convert an amount into the reporting currency (amount x rate).

    Amount may be negative (reversals). Rate must be positive.
    """
    rate = validate_rate(rate)
    return quantize_money(Decimal(str(amount)) * rate)


def to_target_currency(amount: Decimal, source_rate: Decimal, target_rate: Decimal) -> Decimal:
    """Convert between two currencies through the reporting currency.

    Args:
        amount: Amount in the source currency
        source_rate: 1 source = source_rate reporting
        target_rate: 1 target = target_rate reporting

    Returns:
        amount x source_rate / target_rate, rounded to cents
    """
    source_rate = validate_rate(source_rate, "source_rate")
    target_rate = validate_rate(target_rate, "target_rate")
    return quantize_money(Decimal(str(amount)) * source_rate / target_rate)


@dataclass(frozen=True)
class ConversionRates:
    """The three currencies of a payment and the two rates between them."""

    payment_currency: str
    dues_currency: str
    reporting_currency: str
    payment_to_dues: Decimal
    payment_to_reporting: Decimal

    @classmethod
    def build(
        cls,
        payment_currency: str,
        dues_currency: str,
        reporting_currency: str,
        exchange_rate: Decimal,
        reporting_rate: Decimal | None = None,
    ) -> "ConversionRates":
        """Assemble rates, deriving the reporting rate when it is implied.

        The reporting rate is implied when the payment is already in the
        reporting currency (1) or the dues are (exchange_rate). Otherwise it
        must be supplied.

        Raises:
            ValidationError: On a non-positive rate, a same-currency rate other
                than 1, or a reporting rate that cannot be derived
        """
        exchange_rate = validate_rate(exchange_rate)
        if payment_currency == dues_currency and exchange_rate != 1:
            raise ValidationError(
                f"exchange_rate must be 1 when paying {dues_currency} dues in "
                f"{payment_currency}, got {exchange_rate}"
            )

        if reporting_rate is not None:
            reporting_rate = validate_rate(reporting_rate, "reporting_rate")
        elif payment_currency == reporting_currency:
            reporting_rate = Decimal("1")
        elif dues_currency == reporting_currency:
            reporting_rate = exchange_rate
        else:
            raise ValidationError(
                f"reporting_rate is required to convert {payment_currency} "
                f"into {reporting_currency}"
            )

        return cls(
            payment_currency=payment_currency,
            dues_currency=dues_currency,
            reporting_currency=reporting_currency,
            payment_to_dues=exchange_rate,
            payment_to_reporting=reporting_rate,
        )

    def rate_to(self, currency: str, explicit_rate: Decimal | None = None) -> Decimal:
        """Rate from the payment currency into `currency`.

        Raises:
            ValidationError: If `currency` is none of the three known ones and
                no explicit rate was given
        """
        if currency == self.payment_currency:
            return Decimal("1")
        if currency == self.dues_currency:
            return self.payment_to_dues
        if currency == self.reporting_currency:
            return self.payment_to_reporting
        if explicit_rate is not None:
            return validate_rate(explicit_rate, "account_rate")
        raise ValidationError(
            f"No rate from {self.payment_currency} to {currency}; pass account_rate"
        )

    def convert(
        self, amount: Decimal, currency: str, explicit_rate: Decimal | None = None
    ) -> Decimal:
        """Convert a payment-currency amount into `currency`."""
        return quantize_money(Decimal(str(amount)) * self.rate_to(currency, explicit_rate))


__all__ = [
    "CENT",
    "ConversionRates",
    "quantize_money",
    "quantize_rate",
    "to_reporting",
    "to_target_currency",
    "validate_rate",
]
