from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
import re
from typing import Any

from erp_billing.billing.errors import ValidationError

# Currencies whose minor unit equals the major unit
ZERO_DECIMAL_CURRENCIES = frozenset({
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
    "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
})

# Minimum charge, in minor units
DEFAULT_MINIMUM_MINOR = 50
MINIMUM_MINOR_OVERRIDES = {
    "gbp": 30,
    "mxn": 10,
    "cop": 1500,
}

_CURRENCY_RE = re.compile(r"^[a-z]{3}$")


def normalize_currency(currency: str | None) -> str:
    code = (currency or "").strip().lower()
    if not _CURRENCY_RE.match(code):
        raise ValidationError(f"Invalid currency code: {currency!r}")
    return code


def is_zero_decimal(currency: str) -> bool:
    return currency.lower() in ZERO_DECIMAL_CURRENCIES


def minor_unit_divisor(currency: str) -> int:
    return 1 if is_zero_decimal(currency) else 100


def minimum_charge_minor(currency: str) -> int:
    return MINIMUM_MINOR_OVERRIDES.get(currency.lower(), DEFAULT_MINIMUM_MINOR)


def _to_decimal(amount: Any) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"Invalid amount: {amount!r}")
    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount!r}")
    return value


def round_half_up(value: Any) -> int:
    return int(_to_decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_minor_units(amount: Any, currency: str) -> int:
    """Major units -> integer minor units (half-up rounding)."""
    value = _to_decimal(amount)
    if not is_zero_decimal(currency):
        value = value * 100
    return round_half_up(value)


def from_minor_units(amount_minor: int, currency: str) -> Decimal:
    divisor = minor_unit_divisor(currency)
    value = Decimal(int(amount_minor)) / Decimal(divisor)
    if divisor == 1:
        return value
    return value.quantize(Decimal("0.01"))


def validate_charge_amount(amount: Any, currency: str) -> int:
    """
    Validate a charge and return its minor-unit amount.
    Raises ValidationError for non-positive amounts and amounts below the
    currency minimum.
    """
    value = _to_decimal(amount)
    if value <= 0:
        raise ValidationError("Amount must be greater than zero")
    amount_minor = to_minor_units(value, currency)
    minimum = minimum_charge_minor(currency)
    if amount_minor < minimum:
        raise ValidationError(
            f"Amount is below the minimum charge for {currency.upper()} "
            f"({minimum} minor units)"
        )
    return amount_minor
