import hashlib
import json
from datetime import datetime, timezone

import stripe
from flask import current_app, jsonify, request

from . import bp
from erp_billing.extensions import csrf, db
from erp_billing.billing.client import current_client, to_dict
from erp_billing.billing.errors import BillingError, NotFoundError, SignatureError
from erp_billing.billing.webhook import WebhookVerifier
from erp_billing.models import BillingEventLog
from erp_billing.services.payments import PaymentRecorder
from erp_billing.services.subscription_repository import SubscriptionRepository

SUBSCRIPTION_EVENTS = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)
INVOICE_EVENTS = ("invoice.paid", "invoice.payment_failed")
# Recorded in the event log and application log; nothing to reconcile
LOGGED_EVENTS = (
    "payment_intent.payment_failed",
    "charge.refunded",
    "customer.subscription.trial_will_end",
)


def _invoice_subscription_id(invoice: dict):
    sub = invoice.get("subscription")
    if sub is None:
        # Newer API versions nest it under the invoice parent
        details = ((invoice.get("parent") or {}).get("subscription_details") or {})
        sub = details.get("subscription")
    if isinstance(sub, dict):
        return sub.get("id")
    return sub


def _log_invalid(raw_bytes: bytes) -> None:
    # Deterministic synthetic id; nothing in an unverified payload is trusted
    digest = hashlib.sha256(raw_bytes).hexdigest()[:32]
    synthetic_id = f"invalid:{digest}"
    if BillingEventLog.query.filter_by(stripe_event_id=synthetic_id).first():
        return
    db.session.add(BillingEventLog(
        stripe_event_id=synthetic_id,
        type="signature_invalid",
        signature_valid=False,
        payload={},
    ))
    db.session.commit()


def _sync_subscription(sub_obj: dict) -> None:
    # Plan changes made in the billing portal only reach us through the metadata
    meta = sub_obj.get("metadata") or {}
    SubscriptionRepository().sync_from_processor(
        sub_obj, plan_code=meta.get("planCode"), billing_period=meta.get("billingPeriod"),
    )


def _handle(ev_type: str, obj: dict) -> str:
    if ev_type == "payment_intent.succeeded":
        result = PaymentRecorder(current_client()).process_successful_payment(obj["id"])
        return "payment_duplicate" if result["duplicate"] else "payment_recorded"

    if ev_type in SUBSCRIPTION_EVENTS:
        _sync_subscription(obj)
        return "subscription_synced"

    if ev_type in INVOICE_EVENTS:
        sub_id = _invoice_subscription_id(obj)
        if not sub_id:
            return "ignored"
        sub_obj = to_dict(current_client().subscriptions.retrieve(sub_id))
        _sync_subscription(sub_obj)
        return "subscription_synced"

    if ev_type in LOGGED_EVENTS:
        current_app.logger.info(
            "billing.webhook.noted",
            extra={"event_type": ev_type, "object_id": obj.get("id")},
        )
        return "logged"

    return "ignored"


@csrf.exempt
@bp.post("/stripe")
def stripe_webhook():
    """
    Stripe -> /webhooks/stripe
    Verifies the signature, logs the event once, then reconciles payments and subscriptions.
    """
    raw_bytes = request.get_data(cache=False, as_text=False)
    verifier = WebhookVerifier(current_app.config.get("STRIPE_WEBHOOK_TOLERANCE", 300))
    try:
        event = verifier.verify(
            raw_bytes,
            request.headers.get("Stripe-Signature"),
            current_app.config.get("STRIPE_WEBHOOK_SECRET"),
        )
    except SignatureError as e:
        current_app.logger.warning("billing.webhook.signature_invalid", extra={"reason": e.message})
        _log_invalid(raw_bytes)
        return jsonify({"error": "invalid_signature"}), 400

    ev_id = event.get("id")
    ev_type = event.get("type")
    if not ev_id or not ev_type:
        return jsonify({"error": "malformed_event"}), 400

    if BillingEventLog.query.filter_by(stripe_event_id=ev_id).first():
        return jsonify({"ok": True, "duplicate": True}), 200

    try:
        payload_json = json.loads(raw_bytes.decode("utf-8"))
    except ValueError:
        payload_json = {"_decode_error": True}

    log = BillingEventLog(
        stripe_event_id=ev_id,
        type=ev_type,
        signature_valid=True,
        payload=payload_json,
    )
    db.session.add(log)
    db.session.commit()

    obj = to_dict((event.get("data") or {}).get("object"))
    try:
        outcome = _handle(ev_type, obj)
        log.notes = outcome
        log.processed_at = datetime.now(timezone.utc)
        db.session.commit()
        current_app.logger.info(
            "billing.webhook.processed",
            extra={"event_id": ev_id, "event_type": ev_type, "outcome": outcome},
        )
    except NotFoundError as e:
        db.session.rollback()
        log.notes = "untracked"
        db.session.commit()
        current_app.logger.warning(
            "billing.webhook.untracked",
            extra={"event_id": ev_id, "event_type": ev_type, "reason": e.message},
        )
    except (BillingError, stripe.StripeError, RuntimeError) as e:
        # 200 regardless so Stripe stops retrying; ops review the note and logs
        db.session.rollback()
        log.notes = f"handler_error:{type(e).__name__}"
        db.session.commit()
        current_app.logger.exception(
            "billing.webhook.handler_error",
            extra={"event_id": ev_id, "event_type": ev_type},
        )

    return jsonify({"ok": True}), 200
