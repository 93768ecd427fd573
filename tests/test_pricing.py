from decimal import Decimal

import pytest

from erp_billing.billing.catalog import PlanCatalog
from erp_billing.billing.errors import NotFoundError, ValidationError
from erp_billing.billing.pricing import (
    EnterpriseConfig,
    PricingCalculator,
    UnitPrices,
    price_lookup_key,
    quote,
)

UNITS = UnitPrices(
    base=Decimal("99"),
    module_unit=Decimal("10"),
    branch_unit=Decimal("5"),
    user_unit=Decimal("2"),
    ai_credit_unit_minor=Decimal("100"),
)


def test_enterprise_quote_example():
    q = quote(EnterpriseConfig(modules=8, branches=3, users=10, ai_credits=500), UNITS)
    assert q.additional_modules == 2
    assert q.modules_price == Decimal("20")
    assert q.branches_price == Decimal("15")
    assert q.users_price == Decimal("20")
    assert q.ai_credits_price == Decimal("500")
    assert q.monthly == 654
    assert q.yearly == 6540


def test_included_modules_are_free():
    q = quote(EnterpriseConfig(modules=4, branches=0, users=0), UNITS)
    assert q.additional_modules == 0
    assert q.monthly == 99


def test_config_from_dict_accepts_camel_case_and_validates():
    config = EnterpriseConfig.from_dict(
        {"modules": "7", "branches": 2, "users": 3, "aiCredits": 10, "billingPeriod": "yearly"}
    )
    assert config.ai_credits == 10
    assert config.billing_period == "yearly"
    with pytest.raises(ValidationError):
        EnterpriseConfig.from_dict({"modules": -1})
    with pytest.raises(ValidationError):
        EnterpriseConfig.from_dict({"modules": 1, "billing_period": "weekly"})


def test_lookup_key_depends_on_configuration():
    a = EnterpriseConfig(modules=8, branches=3, users=10)
    b = EnterpriseConfig(modules=8, branches=4, users=10)
    assert price_lookup_key(a, 100, "usd") == price_lookup_key(a, 100, "usd")
    assert price_lookup_key(a, 100, "usd") != price_lookup_key(b, 100, "usd")


def test_resolve_price_uses_catalog(ctx, plans, stripe_fake):
    calc = PricingCalculator(stripe_fake, PlanCatalog(), UNITS)
    assert calc.resolve_price("basic", "monthly") == "price_basic_m"
    assert calc.resolve_price("pro", "yearly") == "price_pro_y"
    with pytest.raises(NotFoundError):
        calc.resolve_price("enterprise", "monthly")
    with pytest.raises(NotFoundError):
        calc.resolve_price("gold", "monthly")
    with pytest.raises(ValidationError):
        calc.resolve_price("basic", "weekly")


def test_dynamic_price_created_once_and_reused(ctx, plans, stripe_fake):
    calc = PricingCalculator(stripe_fake, PlanCatalog(), UNITS)
    config = EnterpriseConfig(modules=8, branches=3, users=10, ai_credits=500)

    first = calc.ensure_dynamic_price(1, config)
    second = calc.ensure_dynamic_price(2, config)

    assert first.reused is False
    assert second.reused is True
    assert first.price_id == second.price_id
    assert len(stripe_fake.called("prices.create")) == 1
    assert len(stripe_fake.called("products.create")) == 1

    (_, _, kwargs), = stripe_fake.called("prices.create")
    assert kwargs["params"]["unit_amount"] == 65400
    assert kwargs["params"]["recurring"] == {"interval": "month"}


def test_yearly_dynamic_price_bills_ten_months(ctx, plans, stripe_fake):
    calc = PricingCalculator(stripe_fake, PlanCatalog(), UNITS)
    calc.ensure_dynamic_price(1, EnterpriseConfig(modules=8, branches=3, users=10, ai_credits=500, billing_period="yearly"))
    (_, _, kwargs), = stripe_fake.called("prices.create")
    assert kwargs["params"]["unit_amount"] == 654000
    assert kwargs["params"]["recurring"] == {"interval": "year"}


def test_shared_price_params_do_not_depend_on_organization(ctx, plans, stripe_fake):
    calc = PricingCalculator(stripe_fake, PlanCatalog(), UNITS)
    calc.ensure_dynamic_price(1, EnterpriseConfig(modules=8, branches=3, users=10, ai_credits=500))

    for name in ("products.create", "prices.create"):
        (_, _, kwargs), = stripe_fake.called(name)
        assert "organizationId" not in kwargs["params"]["metadata"]
        assert kwargs["params"]["metadata"]["planCode"] == "enterprise"
