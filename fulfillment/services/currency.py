"""
Currency Conversion Service

Converts amounts between NGN and USD/EUR/GBP through the canonical NGN
base. Pure functions: no I/O, no state.

A `RateTable` stores, for each currency, how many units of it buy one
naira. Conversion goes through NGN:

    amount_to = amount_from / rate[from] * rate[to]

and is rounded to the target's minor unit with banker's rounding.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Dict, Mapping, Optional, Union

from fulfillment.database.models import Currency
from fulfillment.errors import InvalidQuantityError, MissingRateError

Amount = Union[Decimal, int, str, float]

# NGN has no subunits in this model
MINOR_UNITS: Dict[Currency, int] = {
    Currency.NGN: 0,
    Currency.USD: 2,
    Currency.EUR: 2,
    Currency.GBP: 2,
}


def to_decimal(amount: Amount) -> Decimal:
    """Coerce to Decimal without binary float artefacts"""
    if isinstance(amount, Decimal):
        return amount
    if isinstance(amount, float):
        return Decimal(repr(amount))
    return Decimal(amount)


def quantize(amount: Amount, currency: Currency) -> Decimal:
    """Round to the currency's minor unit using banker's rounding"""
    exponent = Decimal(1).scaleb(-MINOR_UNITS[Currency(currency)])
    return to_decimal(amount).quantize(exponent, rounding=ROUND_HALF_EVEN)


@dataclass(frozen=True)
class RateTable:
    """
    Units of each currency per one NGN.

    NGN is always present with rate 1. A missing currency means the table
    cannot convert into or out of it.

    Example:
        rates = RateTable({Currency.USD: Decimal("0.00065")})
        rates.rate(Currency.USD)  # Decimal("0.00065")
    """

    per_ngn: Mapping[Currency, Decimal] = field(default_factory=dict)
    fetched_at: Optional[datetime] = None

    def __post_init__(self):
        normalized: Dict[Currency, Decimal] = {}
        for currency, rate in self.per_ngn.items():
            value = to_decimal(rate)
            if value <= 0:
                raise ValueError(f"Rate for {currency} must be positive, got {rate}")
            normalized[Currency(currency)] = value
        normalized[Currency.NGN] = Decimal(1)
        object.__setattr__(self, "per_ngn", normalized)

    def rate(self, currency: Currency) -> Optional[Decimal]:
        return self.per_ngn.get(Currency(currency))

    def supports(self, currency: Currency) -> bool:
        return Currency(currency) in self.per_ngn

    @classmethod
    def from_quotes(
        cls,
        quotes: Mapping[str, Amount],
        source: str = "USD",
        fetched_at: Optional[datetime] = None,
    ) -> "RateTable":
        """
        Build a table from CurrencyLayer-style quotes.

        Quotes are keyed `<source><target>` (e.g. `USDNGN`) and give units of
        target per one unit of source. Currencies without a quote are left
        out of the table.

        Args:
            quotes: Quote mapping as returned by the provider
            source: Quote base currency
            fetched_at: When the quotes were fetched

        Raises:
            MissingRateError: If the NGN quote is absent
        """
        source_to_ngn = quotes.get(f"{source}NGN")
        if not source_to_ngn:
            raise MissingRateError(source, Currency.NGN.value)
        source_to_ngn = to_decimal(source_to_ngn)

        per_ngn: Dict[Currency, Decimal] = {}
        for currency in Currency:
            if currency is Currency.NGN:
                continue
            if currency.value == source:
                per_ngn[currency] = Decimal(1) / source_to_ngn
                continue
            quote = quotes.get(f"{source}{currency.value}")
            if quote:
                per_ngn[currency] = to_decimal(quote) / source_to_ngn

        return cls(per_ngn=per_ngn, fetched_at=fetched_at)


def convert(
    amount: Amount,
    from_currency: Currency,
    to_currency: Currency,
    rates: RateTable,
) -> Decimal:
    """
    Convert an amount between currencies through NGN.

    Args:
        amount: Non-negative amount in `from_currency`
        from_currency: Source currency
        to_currency: Target currency
        rates: Rate table

    Returns:
        Amount in `to_currency`, rounded to its minor unit. Same-currency
        conversion returns the amount untouched.

    Raises:
        InvalidQuantityError: If amount is negative
        MissingRateError: If either currency has no rate
    """
    value = to_decimal(amount)
    if value < 0:
        raise InvalidQuantityError(amount, f"Amount must be non-negative, got {amount}")

    source = Currency(from_currency)
    target = Currency(to_currency)
    if source is target:
        return value

    from_rate = rates.rate(source)
    to_rate = rates.rate(target)
    if from_rate is None or to_rate is None:
        raise MissingRateError(source.value, target.value)

    return quantize(value / from_rate * to_rate, target)
