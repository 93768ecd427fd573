from datetime import datetime
from urllib.parse import urljoin

from flask import Blueprint, current_app, jsonify, request

from erp_billing.extensions import limiter
from erp_billing.billing.client import current_client
from erp_billing.billing.errors import BillingError, ProcessorError, ValidationError
from erp_billing.billing.pricing import EnterpriseConfig, UnitPrices, quote
from erp_billing.services.payments import PaymentIntentGateway, PaymentRecorder, RefundProcessor
from erp_billing.services.subscriptions import build_orchestrator

billing_bp = Blueprint("billing", __name__)


def _jsonable(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def _payload() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _require(data: dict, *names: str):
    missing = [n for n in names if data.get(n) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}")
    return [data[n] for n in names]


def _int(value, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")


def _bool(data: dict, name: str, default: bool) -> bool:
    value = data.get(name, default)
    if not isinstance(value, bool):
        raise ValidationError(f"{name} must be true or false")
    return value


def _absolute_url(path: str) -> str:
    base = (current_app.config.get("APP_BASE_URL") or "").rstrip("/") + "/"
    return urljoin(base, path.lstrip("/"))


def _orchestrator():
    return build_orchestrator(current_client(), current_app.config)


@billing_bp.errorhandler(BillingError)
def handle_billing_error(e: BillingError):
    log = current_app.logger.warning if isinstance(e, (ValidationError, ProcessorError)) else current_app.logger.error
    log(
        "billing.request_failed",
        extra={"error_code": e.code, "path": request.path, "detail": getattr(e, "detail", None) or e.message},
    )
    return jsonify({"success": False, "error": e.user_message, "code": e.code}), e.http_status


# ---- one-time payments ----

@billing_bp.post("/payment-intents")
@limiter.limit("30/minute")
def create_payment_intent():
    data = _payload()
    amount, currency, organization_id, branch_id = _require(
        data, "amount", "currency", "organization_id", "branch_id"
    )
    result = PaymentIntentGateway(current_client()).create_intent(
        amount,
        currency,
        _int(organization_id, "organization_id"),
        _int(branch_id, "branch_id"),
        description=data.get("description"),
        metadata=data.get("metadata"),
        customer_id=data.get("customer_id"),
        sale_id=data.get("sale_id"),
        invoice_id=data.get("invoice_id"),
        account_receivable_id=data.get("account_receivable_id"),
        idempotency_key=request.headers.get("Idempotency-Key"),
    )
    return jsonify(result), 201


@billing_bp.post("/payment-intents/<intent_id>/confirm")
@limiter.limit("30/minute")
def confirm_payment_intent(intent_id: str):
    result = PaymentRecorder(current_client()).process_successful_payment(intent_id)
    return jsonify({"success": True, **result}), (200 if result["duplicate"] else 201)


@billing_bp.post("/payment-intents/<intent_id>/refunds")
@limiter.limit("10/minute")
def refund_payment_intent(intent_id: str):
    data = _payload()
    result = RefundProcessor(current_client()).process_refund(
        intent_id,
        amount=data.get("amount"),
        reason=data.get("reason"),
        metadata=data.get("metadata"),
    )
    return jsonify(result), (201 if result["success"] else 400)


# ---- pricing ----

@billing_bp.post("/quotes/enterprise")
def enterprise_quote():
    config = EnterpriseConfig.from_dict(_payload())
    q = quote(config, UnitPrices.from_config(current_app.config))
    return jsonify({"success": True, "billing_period": config.billing_period, **q.to_dict()})


# ---- subscriptions ----

@billing_bp.post("/subscriptions")
@limiter.limit("10/minute")
def create_subscription():
    data = _payload()
    organization_id, plan_code, billing_period, customer_email = _require(
        data, "organization_id", "plan_code", "billing_period", "customer_email"
    )
    enterprise_config = None
    if data.get("enterprise_config") is not None:
        # The subscription's period wins over one inside the config
        enterprise_config = EnterpriseConfig.from_dict(data["enterprise_config"])
    result = _orchestrator().create_subscription(
        _int(organization_id, "organization_id"),
        plan_code,
        billing_period,
        _bool(data, "use_trial", True),
        customer_email,
        customer_name=data.get("customer_name"),
        payment_method_id=data.get("payment_method_id"),
        existing_customer_id=data.get("existing_customer_id"),
        enterprise_config=enterprise_config,
    )
    return jsonify(_jsonable(result)), 201


@billing_bp.post("/subscriptions/<subscription_id>/plan")
@limiter.limit("10/minute")
def change_plan(subscription_id: str):
    data = _payload()
    plan_code, billing_period = _require(data, "plan_code", "billing_period")
    return jsonify(_jsonable(_orchestrator().change_plan(subscription_id, plan_code, billing_period)))


@billing_bp.post("/subscriptions/<subscription_id>/cancel")
@limiter.limit("10/minute")
def cancel_subscription(subscription_id: str):
    data = _payload()
    result = _orchestrator().cancel_subscription(subscription_id, immediate=_bool(data, "immediate", False))
    return jsonify(_jsonable(result))


@billing_bp.post("/subscriptions/<subscription_id>/reactivate")
@limiter.limit("10/minute")
def reactivate_subscription(subscription_id: str):
    return jsonify(_jsonable(_orchestrator().reactivate_subscription(subscription_id)))


@billing_bp.post("/subscriptions/<subscription_id>/payment-method")
@limiter.limit("10/minute")
def update_subscription_payment_method(subscription_id: str):
    (payment_method_id,) = _require(_payload(), "payment_method_id")
    return jsonify(_orchestrator().update_subscription_payment_method(subscription_id, payment_method_id))


# ---- customers ----

@billing_bp.get("/customers/<customer_id>/payment-methods")
def list_payment_methods(customer_id: str):
    return jsonify({"success": True, "payment_methods": _orchestrator().list_payment_methods(customer_id)})


@billing_bp.post("/customers/<customer_id>/payment-methods")
@limiter.limit("10/minute")
def attach_payment_method(customer_id: str):
    data = _payload()
    (payment_method_id,) = _require(data, "payment_method_id")
    result = _orchestrator().attach_payment_method(
        customer_id, payment_method_id, set_default=_bool(data, "set_default", True)
    )
    return jsonify(result), 201


@billing_bp.delete("/payment-methods/<payment_method_id>")
@limiter.limit("10/minute")
def delete_payment_method(payment_method_id: str):
    return jsonify(_orchestrator().delete_payment_method(payment_method_id))


@billing_bp.post("/customers/<customer_id>/setup-intents")
@limiter.limit("10/minute")
def create_setup_intent(customer_id: str):
    return jsonify(_orchestrator().create_setup_intent(customer_id)), 201


@billing_bp.post("/customers/<customer_id>/portal")
@limiter.limit("10/minute")
def create_portal_session(customer_id: str):
    data = _payload()
    return_url = data.get("return_url") or _absolute_url("billing")
    return jsonify(_orchestrator().create_portal_session(customer_id, return_url))


@billing_bp.get("/customers/<customer_id>/invoices")
def list_invoices(customer_id: str):
    limit = _int(request.args.get("limit", 10), "limit")
    limit = max(1, min(limit, 100))
    return jsonify(_jsonable({"success": True, "invoices": _orchestrator().list_invoices(customer_id, limit=limit)}))


@billing_bp.get("/stripe-pk")
def stripe_publishable_key():
    """Publishable key for Stripe.js initialization (safe to expose)."""
    return jsonify({"publishable_key": current_app.config.get("STRIPE_PUBLISHABLE_KEY")})
