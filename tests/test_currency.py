from decimal import Decimal

import pytest

from erp_billing.billing.currency import (
    from_minor_units,
    minimum_charge_minor,
    normalize_currency,
    round_half_up,
    to_minor_units,
    validate_charge_amount,
)
from erp_billing.billing.errors import ValidationError


def test_two_decimal_currency_converts_to_cents():
    assert to_minor_units("12.34", "usd") == 1234
    assert to_minor_units(0.5, "eur") == 50


def test_zero_decimal_currency_is_not_multiplied():
    assert to_minor_units(1500, "jpy") == 1500
    assert from_minor_units(1500, "jpy") == Decimal("1500")


def test_half_up_rounding():
    assert to_minor_units("10.005", "usd") == 1001
    assert round_half_up("2.5") == 3
    assert round_half_up("-2.5") == -3


def test_from_minor_units_keeps_two_places():
    assert from_minor_units(1001, "usd") == Decimal("10.01")


def test_normalize_currency_rejects_garbage():
    assert normalize_currency(" USD ") == "usd"
    for bad in (None, "", "us", "dollars", "12a"):
        with pytest.raises(ValidationError):
            normalize_currency(bad)


def test_minimums_per_currency():
    assert minimum_charge_minor("usd") == 50
    assert minimum_charge_minor("gbp") == 30
    assert minimum_charge_minor("mxn") == 10


def test_validate_charge_amount_boundaries():
    assert validate_charge_amount("0.50", "usd") == 50
    with pytest.raises(ValidationError):
        validate_charge_amount("0.49", "usd")
    with pytest.raises(ValidationError):
        validate_charge_amount(0, "usd")
    with pytest.raises(ValidationError):
        validate_charge_amount(-5, "usd")
    with pytest.raises(ValidationError):
        validate_charge_amount("abc", "usd")
    # 30 pence is enough for GBP
    assert validate_charge_amount("0.30", "gbp") == 30
