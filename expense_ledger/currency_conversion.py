from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Mapping

from expense_ledger.errors import RateNotFound

ZERO = Decimal("0")
ONE = Decimal("1")
CENT = Decimal("0.01")


@dataclass(frozen=True)
class CurrencyRate:
    """One organization-supplied rate: 1 unit of base = ``rate`` units of ``to_currency``."""

    to_currency: str
    rate: Decimal
    organization_id: int | None = None
    id: int | None = None
    symbol: str | None = None
    symbol_position: str = "left"
    separator: str = ","
    decimal_separator: str = "."


@dataclass(frozen=True)
class TableRateProvider:
    """Directional base -> currency rates for a single organization.

    There is never a direct rate between two non-base currencies.
    """

    base_currency: str
    rates: Mapping[str, CurrencyRate] = field(default_factory=dict)

    @classmethod
    def from_rates(cls, base_currency: str, rates: Iterable[CurrencyRate]) -> "TableRateProvider":
        base = normalize_currency(base_currency)
        indexed = {normalize_currency(rate.to_currency): rate for rate in rates}
        indexed.pop(base, None)
        return cls(base_currency=base, rates=indexed)

    def get_rate(self, currency: str) -> Decimal:
        normalized = normalize_currency(currency)
        if normalized == self.base_currency:
            return ONE
        try:
            return coerce_decimal(self.rates[normalized].rate)
        except KeyError as exc:
            raise RateNotFound(normalized) from exc

    def has_rate(self, currency: str) -> bool:
        normalized = normalize_currency(currency)
        return normalized == self.base_currency or normalized in self.rates

    def get_format(self, currency: str) -> CurrencyRate | None:
        return self.rates.get(normalize_currency(currency))


def convert_amount(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rate_provider: TableRateProvider,
) -> Decimal:
    """Convert an amount between currencies, always routing through the base currency.

    No rounding happens here; callers round once for presentation.
    """
    coerced_amount = coerce_decimal(amount)
    normalized_source = normalize_currency(source_currency)
    normalized_target = normalize_currency(target_currency)
    base_currency = rate_provider.base_currency

    if normalized_source == normalized_target:
        return coerced_amount
    if normalized_source == base_currency:
        return coerced_amount * rate_provider.get_rate(normalized_target)
    if normalized_target == base_currency:
        return coerced_amount / rate_provider.get_rate(normalized_source)

    source_rate = rate_provider.get_rate(normalized_source)
    target_rate = rate_provider.get_rate(normalized_target)
    amount_in_base = coerced_amount / source_rate
    return amount_in_base * target_rate


def convert_with_explicit_rate(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rate_provider: TableRateProvider,
    explicit_rate: Decimal | int | float | str,
) -> Decimal:
    """Convert using a caller supplied source -> base multiplier for the first hop.

    The base -> target hop still comes from the rate table.
    """
    coerced_amount = coerce_decimal(amount)
    normalized_source = normalize_currency(source_currency)
    normalized_target = normalize_currency(target_currency)
    base_currency = rate_provider.base_currency

    if normalized_source == base_currency:
        return convert_amount(coerced_amount, base_currency, normalized_target, rate_provider)

    rate = _coerce_rate(explicit_rate)
    amount_in_base = coerced_amount * rate
    if normalized_target == base_currency:
        return amount_in_base
    return amount_in_base * rate_provider.get_rate(normalized_target)


def conversion_rate_to_base(currency: str, rate_provider: TableRateProvider) -> Decimal:
    """Multiplier turning ``currency`` amounts into base currency amounts."""
    return ONE / rate_provider.get_rate(currency)


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def round_money(amount: Decimal | int | float | str) -> Decimal:
    return coerce_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def format_currency(
    amount: Decimal | int | float | str,
    currency: str,
    currency_rate: CurrencyRate | None = None,
) -> str:
    rounded = round_money(amount)
    negative = rounded < ZERO
    integer_part, _, decimal_part = f"{abs(rounded):.2f}".partition(".")

    if currency_rate is not None and currency_rate.symbol:
        symbol = currency_rate.symbol
        separator = currency_rate.separator or ","
        decimal_separator = currency_rate.decimal_separator or "."
        formatted = f"{_group_thousands(integer_part, separator)}{decimal_separator}{decimal_part}"
        if currency_rate.symbol_position == "right":
            formatted = f"{formatted}{symbol}"
        else:
            formatted = f"{symbol}{formatted}"
    else:
        formatted = f"{normalize_currency(currency)} {_group_thousands(integer_part, ',')}.{decimal_part}"

    return f"-{formatted}" if negative else formatted


def _group_thousands(digits: str, separator: str) -> str:
    groups = []
    while len(digits) > 3:
        groups.insert(0, digits[-3:])
        digits = digits[:-3]
    groups.insert(0, digits)
    return separator.join(groups)


def coerce_decimal(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    try:
        return Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {amount!r}") from exc


def _coerce_rate(rate: Decimal | int | float | str) -> Decimal:
    coerced = coerce_decimal(rate)
    if coerced <= ZERO:
        raise ValueError("Conversion rate must be greater than zero.")
    return coerced
