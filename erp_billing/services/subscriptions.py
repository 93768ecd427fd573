"""
Subscription lifecycle against Stripe.

Local status always mirrors whatever Stripe reports; nothing here invents
transitions. Every mutation is followed by a write through
SubscriptionRepository so the local row tracks the processor.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
import logging

import stripe

from erp_billing.billing.catalog import PlanCatalog, validate_billing_period
from erp_billing.billing.client import make_idempotency_key, request_options
from erp_billing.billing.errors import (
    NotFoundError,
    ValidationError,
    translate_stripe_error,
)
from erp_billing.billing.pricing import EnterpriseConfig, PricingCalculator
from erp_billing.services.subscription_repository import (
    SubscriptionRepository,
    period_bounds,
    ts_to_dt,
)

logger = logging.getLogger(__name__)

ENTERPRISE_PLAN_CODE = "enterprise"
# Intent states where the customer still has to act in the browser
_CLIENT_ACTION_STATES = ("requires_action", "requires_confirmation", "requires_payment_method")


def _stripe_call(fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except stripe.StripeError as exc:
        raise translate_stripe_error(exc) from exc


def _id_of(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


class SubscriptionOrchestrator:
    def __init__(
        self,
        client,
        catalog: PlanCatalog,
        pricing: PricingCalculator,
        repository: SubscriptionRepository,
        *,
        enterprise_plan_code: str = ENTERPRISE_PLAN_CODE,
    ):
        self.client = client
        self.catalog = catalog
        self.pricing = pricing
        self.repository = repository
        self.enterprise_plan_code = enterprise_plan_code

    # ---- customers ----

    def _resolve_customer(
        self,
        *,
        organization_id: int,
        plan_code: str,
        email: str,
        name: Optional[str],
        existing_customer_id: Optional[str],
    ) -> str:
        metadata = {"organizationId": str(organization_id), "planCode": plan_code}

        if existing_customer_id:
            _stripe_call(
                self.client.customers.update,
                existing_customer_id,
                params={"metadata": {**metadata, "status": "active"}},
            )
            logger.info("billing.customer.reused", extra={"customer_id": existing_customer_id})
            return existing_customer_id

        found = _stripe_call(self.client.customers.list, params={"email": email, "limit": 1})
        data = found.get("data") or []
        if data:
            logger.info("billing.customer.found_by_email", extra={"customer_id": data[0]["id"]})
            return data[0]["id"]

        params: Dict[str, Any] = {"email": email, "metadata": metadata}
        if name:
            params["name"] = name
        customer = _stripe_call(
            self.client.customers.create,
            params=params,
            options={"idempotency_key": make_idempotency_key("customer", organization_id, email.lower())},
        )
        logger.info("billing.customer.created", extra={"customer_id": customer["id"], "organization_id": organization_id})
        return customer["id"]

    def _set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        _stripe_call(self.client.payment_methods.attach, payment_method_id, params={"customer": customer_id})
        _stripe_call(
            self.client.customers.update,
            customer_id,
            params={"invoice_settings": {"default_payment_method": payment_method_id}},
        )

    # ---- lifecycle ----

    def create_subscription(
        self,
        organization_id: int,
        plan_code: str,
        billing_period: str,
        use_trial: bool,
        customer_email: str,
        customer_name: Optional[str] = None,
        payment_method_id: Optional[str] = None,
        existing_customer_id: Optional[str] = None,
        enterprise_config: Optional[EnterpriseConfig] = None,
    ) -> Dict[str, Any]:
        """
        Create a subscription, with a free trial or with immediate payment.

        Returns {"success", "subscription_id", "customer_id", "status",
        "trial_end", "client_secret"}. Processor failures are raised as
        ProcessorError variants.
        """
        billing_period = validate_billing_period(billing_period)
        if not customer_email:
            raise ValidationError("customer_email is required")
        if not use_trial and not payment_method_id:
            raise ValidationError("A payment method is required for subscriptions without a trial")

        plan = self.catalog.get(plan_code, active_only=True)
        local_meta: Dict[str, Any] = {"billing_period": billing_period, "used_trial": bool(use_trial)}
        sub_metadata = {
            "organizationId": str(organization_id),
            "planCode": plan_code,
            "billingPeriod": billing_period,
            "usedTrial": "true" if use_trial else "false",
        }

        # Resolve the price first so an unconfigured plan fails before any customer is touched
        if plan_code == self.enterprise_plan_code and enterprise_config is not None:
            config = EnterpriseConfig(**{**enterprise_config.to_metadata(), "billing_period": billing_period})
            dynamic = self.pricing.ensure_dynamic_price(organization_id, config)
            price_id = dynamic.price_id
            local_meta["enterprise"] = config.to_metadata()
            local_meta["quote"] = dynamic.quote.to_dict()
            sub_metadata.update(config.to_stripe_metadata())
        else:
            price_id = self.pricing.resolve_price(plan_code, billing_period)
        local_meta["price_id"] = price_id

        customer_id = self._resolve_customer(
            organization_id=organization_id,
            plan_code=plan_code,
            email=customer_email,
            name=customer_name,
            existing_customer_id=existing_customer_id,
        )

        if use_trial:
            trial_days = plan.trial_days or self.catalog.default_trial_days
            params = {
                "customer": customer_id,
                "items": [{"price": price_id}],
                "trial_period_days": trial_days,
                "payment_behavior": "default_incomplete",
                "payment_settings": {"save_default_payment_method": "on_subscription"},
                "metadata": sub_metadata,
            }
        else:
            self._set_default_payment_method(customer_id, payment_method_id)
            params = {
                "customer": customer_id,
                "items": [{"price": price_id}],
                "default_payment_method": payment_method_id,
                # Keep SCA-challenged first payments alive as "incomplete" instead of erroring
                "payment_behavior": "allow_incomplete",
                "expand": ["latest_invoice.payment_intent"],
                "metadata": sub_metadata,
            }

        subscription = _stripe_call(
            self.client.subscriptions.create, params=params, options=request_options("subscription")
        )

        start, end = period_bounds(subscription)
        if use_trial:
            status = subscription.get("status") or "trialing"
            trial_end = ts_to_dt(subscription.get("trial_end")) or (
                datetime.now(timezone.utc) + timedelta(days=trial_days)
            )
            client_secret = None
        else:
            status = subscription.get("status") or "incomplete"
            trial_end = None
            client_secret = self._pending_client_secret(subscription)

        self.repository.upsert(
            organization_id,
            plan_code=plan_code,
            stripe_subscription_id=subscription["id"],
            stripe_customer_id=customer_id,
            status=status,
            billing_period=billing_period,
            trial_end=trial_end,
            current_period_start=start,
            current_period_end=end,
            metadata=local_meta,
        )
        logger.info(
            "billing.subscription.created",
            extra={
                "organization_id": organization_id,
                "subscription_id": subscription["id"],
                "status": status,
                "use_trial": use_trial,
            },
        )
        return {
            "success": True,
            "subscription_id": subscription["id"],
            "customer_id": customer_id,
            "status": status,
            "trial_end": trial_end,
            "client_secret": client_secret,
        }

    @staticmethod
    def _pending_client_secret(subscription) -> Optional[str]:
        invoice = subscription.get("latest_invoice")
        if not invoice or isinstance(invoice, str):
            return None
        intent = invoice.get("payment_intent")
        if intent and not isinstance(intent, str):
            if intent.get("status") in _CLIENT_ACTION_STATES:
                return intent.get("client_secret")
            return None
        # Newer API versions expose the secret on the invoice itself
        confirmation = invoice.get("confirmation_secret")
        if confirmation and subscription.get("status") == "incomplete":
            return confirmation.get("client_secret")
        return None

    def change_plan(self, subscription_id: str, new_plan_code: str, billing_period: str) -> Dict[str, Any]:
        """Move to another catalog plan with proration. Dynamic enterprise re-pricing is not handled here."""
        billing_period = validate_billing_period(billing_period)
        if new_plan_code == self.enterprise_plan_code:
            plan = self.catalog.get(new_plan_code, active_only=True)
            if not plan.price_id_for(billing_period):
                raise NotFoundError("Enterprise plans are priced per configuration and cannot be changed to here")
        new_price_id = self.catalog.price_id(new_plan_code, billing_period)

        current = _stripe_call(self.client.subscriptions.retrieve, subscription_id)
        items = (current.get("items") or {}).get("data") or []
        if not items:
            raise NotFoundError(f"Subscription {subscription_id} has no items")

        metadata = {**(current.get("metadata") or {}), "planCode": new_plan_code, "billingPeriod": billing_period}
        updated = _stripe_call(
            self.client.subscriptions.update,
            subscription_id,
            params={
                "items": [{"id": items[0]["id"], "price": new_price_id}],
                "proration_behavior": "create_prorations",
                "metadata": metadata,
            },
            options=request_options("change-plan"),
        )
        self.repository.sync_from_processor(updated, plan_code=new_plan_code, billing_period=billing_period)
        logger.info(
            "billing.subscription.plan_changed",
            extra={"subscription_id": subscription_id, "plan_code": new_plan_code, "billing_period": billing_period},
        )
        return {
            "success": True,
            "subscription_id": updated["id"],
            "new_plan_code": new_plan_code,
            "billing_period": billing_period,
            "status": updated.get("status"),
        }

    def cancel_subscription(self, subscription_id: str, immediate: bool = False) -> Dict[str, Any]:
        if immediate:
            result = _stripe_call(self.client.subscriptions.cancel, subscription_id, options=request_options("cancel"))
            canceled_at = ts_to_dt(result.get("canceled_at")) or datetime.now(timezone.utc)
        else:
            result = _stripe_call(
                self.client.subscriptions.update,
                subscription_id,
                params={"cancel_at_period_end": True},
                options=request_options("cancel"),
            )
            _, end = period_bounds(result)
            canceled_at = end
        self.repository.sync_from_processor(result)
        logger.info(
            "billing.subscription.canceled",
            extra={"subscription_id": subscription_id, "immediate": immediate, "status": result.get("status")},
        )
        return {
            "success": True,
            "subscription_id": result["id"],
            "status": result.get("status"),
            "cancel_at_period_end": bool(result.get("cancel_at_period_end")),
            "canceled_at": canceled_at,
        }

    def reactivate_subscription(self, subscription_id: str) -> Dict[str, Any]:
        result = _stripe_call(
            self.client.subscriptions.update,
            subscription_id,
            params={"cancel_at_period_end": False},
            options=request_options("reactivate"),
        )
        self.repository.sync_from_processor(result)
        logger.info("billing.subscription.reactivated", extra={"subscription_id": subscription_id})
        return {"success": True, "subscription_id": result["id"], "status": result.get("status")}

    # ---- payment methods and customer pass-throughs ----

    def update_subscription_payment_method(self, subscription_id: str, payment_method_id: str) -> Dict[str, Any]:
        subscription = _stripe_call(self.client.subscriptions.retrieve, subscription_id)
        customer_id = _id_of(subscription.get("customer"))
        self._set_default_payment_method(customer_id, payment_method_id)
        return {"success": True, "subscription_id": subscription_id}

    def attach_payment_method(self, customer_id: str, payment_method_id: str, set_default: bool = True) -> Dict[str, Any]:
        if set_default:
            self._set_default_payment_method(customer_id, payment_method_id)
        else:
            _stripe_call(self.client.payment_methods.attach, payment_method_id, params={"customer": customer_id})
        return {"success": True, "payment_method_id": payment_method_id}

    def list_payment_methods(self, customer_id: str) -> List[Dict[str, Any]]:
        customer = _stripe_call(self.client.customers.retrieve, customer_id)
        default_pm = _id_of((customer.get("invoice_settings") or {}).get("default_payment_method"))
        methods = _stripe_call(
            self.client.payment_methods.list,
            params={"customer": customer_id, "type": "card"},
        )
        out = []
        for pm in methods.get("data") or []:
            card = pm.get("card") or {}
            out.append({
                "id": pm["id"],
                "brand": card.get("brand"),
                "last4": card.get("last4"),
                "exp_month": card.get("exp_month"),
                "exp_year": card.get("exp_year"),
                "is_default": pm["id"] == default_pm,
            })
        return out

    def delete_payment_method(self, payment_method_id: str) -> Dict[str, Any]:
        _stripe_call(self.client.payment_methods.detach, payment_method_id)
        return {"success": True}

    def create_setup_intent(self, customer_id: str) -> Dict[str, Any]:
        setup_intent = _stripe_call(
            self.client.setup_intents.create,
            params={"customer": customer_id, "payment_method_types": ["card"], "usage": "off_session"},
        )
        return {"success": True, "client_secret": setup_intent["client_secret"]}

    def create_portal_session(self, customer_id: str, return_url: str) -> Dict[str, Any]:
        session = _stripe_call(
            self.client.billing_portal.sessions.create,
            params={"customer": customer_id, "return_url": return_url},
        )
        return {"success": True, "url": session["url"]}

    def list_invoices(self, customer_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        invoices = _stripe_call(self.client.invoices.list, params={"customer": customer_id, "limit": limit})
        out = []
        for inv in invoices.get("data") or []:
            transitions = inv.get("status_transitions") or {}
            out.append({
                "id": inv["id"],
                "number": inv.get("number"),
                "status": inv.get("status"),
                "amount": inv.get("amount_due"),
                "currency": inv.get("currency"),
                "created": ts_to_dt(inv.get("created")),
                "due_date": ts_to_dt(inv.get("due_date")),
                "paid_at": ts_to_dt(transitions.get("paid_at")),
                "invoice_pdf": inv.get("invoice_pdf"),
                "hosted_invoice_url": inv.get("hosted_invoice_url"),
            })
        return out


def build_orchestrator(client, config) -> SubscriptionOrchestrator:
    """Wire the orchestrator and its collaborators from app config."""
    from erp_billing.billing.pricing import UnitPrices

    catalog = PlanCatalog(default_trial_days=config.get("DEFAULT_TRIAL_DAYS", 15))
    pricing = PricingCalculator(
        client,
        catalog,
        UnitPrices.from_config(config),
        currency=config.get("ENTERPRISE_CURRENCY", "usd"),
    )
    return SubscriptionOrchestrator(
        client,
        catalog,
        pricing,
        SubscriptionRepository(catalog),
        enterprise_plan_code=config.get("ENTERPRISE_PLAN_CODE", ENTERPRISE_PLAN_CODE),
    )
