"""
One-time payments: intent creation, confirmation into the ledger, refunds.

Intent metadata carries every ledger identifier so that confirmation (from
the client or from the webhook) needs nothing but the intent id.
"""
from decimal import Decimal
from typing import Any, Dict, Optional
import logging

import stripe
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from erp_billing.extensions import db
from erp_billing.billing.client import request_options
from erp_billing.billing.currency import (
    from_minor_units,
    normalize_currency,
    to_minor_units,
    validate_charge_amount,
)
from erp_billing.billing.errors import (
    BillingError,
    PersistenceError,
    StateError,
    ValidationError,
    translate_stripe_error,
)
from erp_billing.models import AccountReceivable, Invoice, Payment, Sale
from erp_billing.models.payment import (
    METHOD_CARD,
    SOURCE_ACCOUNT_RECEIVABLE,
    SOURCE_MANUAL,
    SOURCE_SALE,
    STATUS_COMPLETED,
)

logger = logging.getLogger(__name__)

REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")


def _optional_id(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid identifier: {value!r}")


def build_intent_metadata(
    *,
    organization_id: int,
    branch_id: int,
    customer_id: Any = None,
    sale_id: Any = None,
    invoice_id: Any = None,
    account_receivable_id: Any = None,
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, str]:
    """Flat string map written on the intent and read back at confirmation."""
    metadata = {str(k): str(v) for k, v in (extra or {}).items() if v is not None}
    metadata["organizationId"] = str(organization_id)
    metadata["branchId"] = str(branch_id)
    linkage = {
        "customerId": customer_id,
        "saleId": sale_id,
        "invoiceId": invoice_id,
        "accountReceivableId": account_receivable_id,
    }
    for key, value in linkage.items():
        if value is not None and value != "":
            metadata[key] = str(value)
    return metadata


class PaymentIntentGateway:
    def __init__(self, client):
        self.client = client

    def create_intent(
        self,
        amount: Any,
        currency: str,
        organization_id: int,
        branch_id: int,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        customer_id: Any = None,
        sale_id: Any = None,
        invoice_id: Any = None,
        account_receivable_id: Any = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Validate and create a PaymentIntent.
        Returns: {"client_secret", "intent_id", "amount_minor_units", "currency"}
        """
        currency = normalize_currency(currency)
        amount_minor = validate_charge_amount(amount, currency)
        if organization_id is None or branch_id is None:
            raise ValidationError("organization_id and branch_id are required")

        params: Dict[str, Any] = {
            "amount": amount_minor,
            "currency": currency,
            "automatic_payment_methods": {"enabled": True},
            "metadata": build_intent_metadata(
                organization_id=organization_id,
                branch_id=branch_id,
                customer_id=customer_id,
                sale_id=sale_id,
                invoice_id=invoice_id,
                account_receivable_id=account_receivable_id,
                extra=metadata,
            ),
        }
        if description:
            params["description"] = description

        options = {"idempotency_key": idempotency_key} if idempotency_key else request_options("payment-intent")
        try:
            intent = self.client.payment_intents.create(params=params, options=options)
        except stripe.StripeError as exc:
            logger.warning(
                "billing.payment_intent.create_failed",
                extra={"organization_id": organization_id, "currency": currency, "stripe_error": str(exc)},
            )
            raise translate_stripe_error(exc) from exc

        logger.info(
            "billing.payment_intent.created",
            extra={"intent_id": intent["id"], "organization_id": organization_id, "amount_minor": amount_minor},
        )
        return {
            "client_secret": intent["client_secret"],
            "intent_id": intent["id"],
            "amount_minor_units": amount_minor,
            "currency": currency,
        }


class PaymentRecorder:
    """Records a succeeded intent as a Payment and settles linked balances."""

    def __init__(self, client, session=None):
        self.client = client
        self.session = session or db.session

    def process_successful_payment(self, intent_id: str) -> Dict[str, Any]:
        try:
            intent = self.client.payment_intents.retrieve(intent_id)
        except stripe.StripeError as exc:
            raise translate_stripe_error(exc) from exc

        if intent.get("status") != "succeeded":
            raise StateError(f"Payment {intent_id} has not succeeded (status={intent.get('status')!r})")

        existing = self.session.query(Payment).filter_by(reference=intent_id).one_or_none()
        if existing is not None:
            logger.info("billing.payment.duplicate", extra={"intent_id": intent_id, "payment_id": existing.id})
            return self._result(existing, duplicate=True)

        meta = intent.get("metadata") or {}
        organization_id = _optional_id(meta.get("organizationId"))
        branch_id = _optional_id(meta.get("branchId"))
        if organization_id is None or branch_id is None:
            raise ValidationError(f"Payment {intent_id} is missing organization/branch metadata")

        sale_id = _optional_id(meta.get("saleId"))
        invoice_id = _optional_id(meta.get("invoiceId"))
        receivable_id = _optional_id(meta.get("accountReceivableId"))

        if sale_id is not None:
            source, source_id = SOURCE_SALE, sale_id
        elif receivable_id is not None:
            source, source_id = SOURCE_ACCOUNT_RECEIVABLE, receivable_id
        else:
            source, source_id = SOURCE_MANUAL, None

        currency = intent.get("currency") or "usd"
        amount_minor = intent.get("amount_received") or intent.get("amount") or 0
        amount = from_minor_units(amount_minor, currency)

        payment = Payment(
            organization_id=organization_id,
            branch_id=branch_id,
            amount=amount,
            currency=currency,
            method=METHOD_CARD,
            source=source,
            source_id=source_id,
            reference=intent_id,
            status=STATUS_COMPLETED,
            customer_id=_optional_id(meta.get("customerId")),
            sale_id=sale_id,
            invoice_id=invoice_id,
            account_receivable_id=receivable_id,
        )
        self.session.add(payment)
        try:
            self.session.commit()
        except IntegrityError:
            # Lost the race against a concurrent confirmation of the same intent
            self.session.rollback()
            existing = self.session.query(Payment).filter_by(reference=intent_id).one_or_none()
            if existing is None:
                raise PersistenceError(f"Could not record payment {intent_id}")
            logger.info("billing.payment.duplicate", extra={"intent_id": intent_id, "payment_id": existing.id})
            return self._result(existing, duplicate=True)
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception("billing.payment.insert_failed", extra={"intent_id": intent_id})
            raise PersistenceError(f"Could not record payment {intent_id}") from exc

        logger.info(
            "billing.payment.recorded",
            extra={"intent_id": intent_id, "payment_id": payment.id, "source": source, "amount": str(amount)},
        )
        self._cascade(payment, amount)
        return self._result(payment, duplicate=False)

    def _cascade(self, payment: Payment, amount: Decimal) -> None:
        """
        Best-effort balance updates. The payment is already committed; a failure
        here is logged and rolled back, never raised.
        """
        targets = (
            (Sale, payment.sale_id),
            (Invoice, payment.invoice_id),
            (AccountReceivable, payment.account_receivable_id),
        )
        for model, row_id in targets:
            if row_id is None:
                continue
            try:
                row = self.session.get(model, row_id)
                if row is None:
                    logger.warning(
                        "billing.payment.cascade_target_missing",
                        extra={"payment_id": payment.id, "table": model.__tablename__, "row_id": row_id},
                    )
                    continue
                row.apply_payment(amount)
                self.session.commit()
                logger.info(
                    "billing.payment.cascade_applied",
                    extra={
                        "payment_id": payment.id,
                        "table": model.__tablename__,
                        "row_id": row_id,
                        "balance": str(row.balance),
                        "status": row.status,
                    },
                )
            except SQLAlchemyError:
                self.session.rollback()
                logger.exception(
                    "billing.payment.cascade_failed",
                    extra={"payment_id": payment.id, "table": model.__tablename__, "row_id": row_id},
                )

    @staticmethod
    def _result(payment: Payment, *, duplicate: bool) -> Dict[str, Any]:
        return {
            "payment_id": payment.id,
            "reference": payment.reference,
            "amount": float(payment.amount),
            "currency": payment.currency,
            "source": payment.source,
            "source_id": payment.source_id,
            "duplicate": duplicate,
        }


class RefundProcessor:
    """Refunds never raise; failures come back as {"success": False, "error": ...}."""

    def __init__(self, client):
        self.client = client

    def process_refund(
        self,
        intent_id: str,
        amount: Any = None,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            params: Dict[str, Any] = {"payment_intent": intent_id}
            if reason:
                if reason not in REFUND_REASONS:
                    raise ValidationError(f"reason must be one of {', '.join(REFUND_REASONS)}")
                params["reason"] = reason
            if metadata:
                params["metadata"] = {str(k): str(v) for k, v in metadata.items()}
            if amount is not None:
                intent = self.client.payment_intents.retrieve(intent_id)
                currency = normalize_currency(intent.get("currency"))
                amount_minor = to_minor_units(amount, currency)
                if amount_minor <= 0:
                    raise ValidationError("Refund amount must be greater than zero")
                params["amount"] = amount_minor

            refund = self.client.refunds.create(params=params, options=request_options("refund"))
        except stripe.StripeError as exc:
            err = translate_stripe_error(exc)
            logger.warning(
                "billing.refund.failed",
                extra={"intent_id": intent_id, "error_code": err.code, "stripe_error": err.detail},
            )
            return {"success": False, "error": err.user_message}
        except BillingError as exc:
            logger.warning("billing.refund.rejected", extra={"intent_id": intent_id, "error": exc.message})
            return {"success": False, "error": exc.user_message}

        refunded = from_minor_units(refund.get("amount") or 0, refund.get("currency") or "usd")
        logger.info(
            "billing.refund.created",
            extra={"intent_id": intent_id, "refund_id": refund["id"], "amount": str(refunded)},
        )
        return {
            "success": True,
            "refund_id": refund["id"],
            "amount": float(refunded),
            "status": refund.get("status"),
        }
