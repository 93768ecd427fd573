"""
Plan pricing: fixed catalog prices and dynamically priced enterprise plans.

Enterprise prices are computed from unit prices and the tenant's chosen
quantities. The Stripe price for a given configuration is looked up by a
deterministic lookup key before a new product/price pair is created, so
repeated quotes for the same configuration share one price.
"""
from dataclasses import dataclass, field, asdict
from decimal import Decimal
from typing import Any, Dict, List
import logging

import stripe

from erp_billing.billing.catalog import PlanCatalog, validate_billing_period
from erp_billing.billing.client import make_idempotency_key
from erp_billing.billing.currency import normalize_currency, round_half_up, to_minor_units
from erp_billing.billing.errors import ValidationError, translate_stripe_error
from erp_billing.models import BILLING_MONTHLY

logger = logging.getLogger(__name__)

INCLUDED_MODULES = 6
# Annual price = ten monthly payments
YEARLY_MONTHS_CHARGED = 10

_INTERVALS = {"monthly": "month", "yearly": "year"}


@dataclass(frozen=True)
class UnitPrices:
    base: Decimal
    module_unit: Decimal
    branch_unit: Decimal
    user_unit: Decimal
    ai_credit_unit_minor: Decimal

    @classmethod
    def from_config(cls, config) -> "UnitPrices":
        return cls(
            base=Decimal(str(config["ENTERPRISE_BASE_PRICE"])),
            module_unit=Decimal(str(config["ENTERPRISE_MODULE_UNIT_PRICE"])),
            branch_unit=Decimal(str(config["ENTERPRISE_BRANCH_UNIT_PRICE"])),
            user_unit=Decimal(str(config["ENTERPRISE_USER_UNIT_PRICE"])),
            ai_credit_unit_minor=Decimal(str(config["ENTERPRISE_AI_CREDIT_UNIT_PRICE_MINOR"])),
        )


@dataclass(frozen=True)
class EnterpriseConfig:
    modules: int
    branches: int
    users: int
    ai_credits: int = 0
    selected_modules: List[str] = field(default_factory=list)
    billing_period: str = BILLING_MONTHLY

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "EnterpriseConfig":
        if not isinstance(data, dict):
            raise ValidationError("enterprise_config must be an object")

        def _count(key: str, *aliases: str) -> int:
            raw = data.get(key)
            for alias in aliases:
                if raw is None:
                    raw = data.get(alias)
            if raw is None:
                raw = 0
            try:
                value = int(raw)
            except (TypeError, ValueError):
                raise ValidationError(f"{key} must be an integer")
            if value < 0:
                raise ValidationError(f"{key} must not be negative")
            return value

        selected = data.get("selected_modules") or data.get("selectedModules") or []
        if not isinstance(selected, (list, tuple)):
            raise ValidationError("selected_modules must be a list")

        return cls(
            modules=_count("modules"),
            branches=_count("branches"),
            users=_count("users"),
            ai_credits=_count("ai_credits", "aiCredits"),
            selected_modules=[str(m) for m in selected],
            billing_period=validate_billing_period(
                data.get("billing_period") or data.get("billingPeriod") or BILLING_MONTHLY
            ),
        )

    def to_metadata(self) -> Dict[str, Any]:
        return asdict(self)

    def to_stripe_metadata(self) -> Dict[str, str]:
        # Stripe metadata values are strings of at most 500 characters
        return {
            "modules": str(self.modules),
            "branches": str(self.branches),
            "users": str(self.users),
            "aiCredits": str(self.ai_credits),
            "selectedModules": ",".join(self.selected_modules)[:500],
            "billingPeriod": self.billing_period,
        }


@dataclass(frozen=True)
class EnterpriseQuote:
    additional_modules: int
    modules_price: Decimal
    branches_price: Decimal
    users_price: Decimal
    ai_credits_price: Decimal
    monthly: int
    yearly: int

    def amount_for(self, billing_period: str) -> int:
        return self.yearly if billing_period == "yearly" else self.monthly

    def to_dict(self) -> Dict[str, Any]:
        return {
            "additional_modules": self.additional_modules,
            "modules_price": float(self.modules_price),
            "branches_price": float(self.branches_price),
            "users_price": float(self.users_price),
            "ai_credits_price": float(self.ai_credits_price),
            "monthly": self.monthly,
            "yearly": self.yearly,
        }


def quote(config: EnterpriseConfig, unit_prices: UnitPrices) -> EnterpriseQuote:
    additional_modules = max(0, config.modules - INCLUDED_MODULES)
    modules_price = additional_modules * unit_prices.module_unit
    branches_price = config.branches * unit_prices.branch_unit
    users_price = config.users * unit_prices.user_unit
    ai_credits_price = config.ai_credits * (unit_prices.ai_credit_unit_minor / Decimal(100))

    monthly = round_half_up(unit_prices.base + modules_price + branches_price + users_price + ai_credits_price)
    yearly = round_half_up(monthly * YEARLY_MONTHS_CHARGED)
    return EnterpriseQuote(
        additional_modules=additional_modules,
        modules_price=modules_price,
        branches_price=branches_price,
        users_price=users_price,
        ai_credits_price=ai_credits_price,
        monthly=monthly,
        yearly=yearly,
    )


def price_lookup_key(config: EnterpriseConfig, amount: int, currency: str) -> str:
    return make_idempotency_key(
        "enterprise-price",
        config.modules, config.branches, config.users, config.ai_credits,
        config.billing_period, amount, currency,
    )


@dataclass(frozen=True)
class DynamicPrice:
    price_id: str
    quote: EnterpriseQuote
    reused: bool


class PricingCalculator:
    def __init__(self, client, catalog: PlanCatalog, unit_prices: UnitPrices, currency: str = "usd"):
        self.client = client
        self.catalog = catalog
        self.unit_prices = unit_prices
        self.currency = normalize_currency(currency)

    def resolve_price(self, plan_code: str, billing_period: str) -> str:
        return self.catalog.price_id(plan_code, billing_period)

    def quote(self, config: EnterpriseConfig) -> EnterpriseQuote:
        return quote(config, self.unit_prices)

    def ensure_dynamic_price(self, organization_id: int, config: EnterpriseConfig) -> DynamicPrice:
        """Return a Stripe price for this configuration, creating it only when none exists."""
        q = self.quote(config)
        amount = q.amount_for(config.billing_period)
        lookup_key = price_lookup_key(config, amount, self.currency)

        try:
            existing = self.client.prices.list(params={"lookup_keys": [lookup_key], "active": True, "limit": 1})
            data = existing.get("data") or []
            if data:
                logger.info(
                    "billing.pricing.enterprise_price_reused",
                    extra={"organization_id": organization_id, "price_id": data[0]["id"]},
                )
                return DynamicPrice(price_id=data[0]["id"], quote=q, reused=True)

            # Shared by every organization with this configuration
            metadata = {
                "planCode": "enterprise",
                **config.to_stripe_metadata(),
            }
            product = self.client.products.create(
                params={
                    "name": f"Enterprise plan ({config.modules} modules, {config.branches} branches, {config.users} users)",
                    "metadata": metadata,
                },
                options={"idempotency_key": f"{lookup_key}:product"},
            )
            price = self.client.prices.create(
                params={
                    "product": product["id"],
                    "currency": self.currency,
                    "unit_amount": to_minor_units(amount, self.currency),
                    "recurring": {"interval": _INTERVALS[config.billing_period]},
                    "lookup_key": lookup_key,
                    "transfer_lookup_key": True,
                    "metadata": metadata,
                },
                options={"idempotency_key": f"{lookup_key}:price"},
            )
        except stripe.StripeError as exc:
            raise translate_stripe_error(exc) from exc

        logger.info(
            "billing.pricing.enterprise_price_created",
            extra={"organization_id": organization_id, "price_id": price["id"], "amount": amount},
        )
        return DynamicPrice(price_id=price["id"], quote=q, reused=False)
