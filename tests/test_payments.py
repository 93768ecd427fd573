from decimal import Decimal

import pytest
import stripe

from erp_billing.extensions import db
from erp_billing.billing.errors import CardError, StateError, ValidationError
from erp_billing.models import AccountReceivable, Invoice, Payment, Sale
from erp_billing.services.payments import PaymentIntentGateway, PaymentRecorder, RefundProcessor


def _sale(balance, total=None):
    sale = Sale(organization_id=1, branch_id=2, total=Decimal(total or balance), balance=Decimal(balance))
    db.session.add(sale)
    db.session.commit()
    return sale.id


# ---- intent creation ----

def test_create_intent_converts_amount_and_writes_metadata(ctx, stripe_fake):
    result = PaymentIntentGateway(stripe_fake).create_intent(
        "25.50", "USD", 1, 2, description="Counter sale", sale_id=77, customer_id=9,
    )
    assert result["amount_minor_units"] == 2550
    assert result["currency"] == "usd"
    assert result["client_secret"].startswith(result["intent_id"])

    (_, _, kwargs), = stripe_fake.called("payment_intents.create")
    params = kwargs["params"]
    assert params["metadata"] == {
        "organizationId": "1",
        "branchId": "2",
        "customerId": "9",
        "saleId": "77",
    }
    assert params["description"] == "Counter sale"
    assert kwargs["options"]["idempotency_key"].startswith("payment-intent:")


def test_create_intent_below_minimum_makes_no_network_call(ctx, stripe_fake):
    with pytest.raises(ValidationError):
        PaymentIntentGateway(stripe_fake).create_intent("0.30", "usd", 1, 2)
    with pytest.raises(ValidationError):
        PaymentIntentGateway(stripe_fake).create_intent(0, "usd", 1, 2)
    assert stripe_fake.calls == []


def test_create_intent_uses_caller_idempotency_key(ctx, stripe_fake):
    PaymentIntentGateway(stripe_fake).create_intent(10, "usd", 1, 2, idempotency_key="order-42")
    (_, _, kwargs), = stripe_fake.called("payment_intents.create")
    assert kwargs["options"] == {"idempotency_key": "order-42"}


def test_create_intent_translates_card_error(ctx, stripe_fake):
    stripe_fake.fail_next["payment_intents.create"] = stripe.CardError(
        "Your card was declined.", None, "card_declined"
    )
    with pytest.raises(CardError) as exc_info:
        PaymentIntentGateway(stripe_fake).create_intent(10, "usd", 1, 2)
    assert "declined" in exc_info.value.user_message


# ---- recording ----

def test_recording_is_idempotent(ctx, stripe_fake):
    intent_id = stripe_fake.add_intent(5000, metadata={"organizationId": "1", "branchId": "2"})
    recorder = PaymentRecorder(stripe_fake)

    first = recorder.process_successful_payment(intent_id)
    second = recorder.process_successful_payment(intent_id)

    assert first["duplicate"] is False
    assert second["duplicate"] is True
    assert first["payment_id"] == second["payment_id"]
    assert Payment.query.filter_by(reference=intent_id).count() == 1
    assert first["amount"] == 50.0
    assert first["source"] == "manual"


def test_recording_requires_succeeded_intent(ctx, stripe_fake):
    intent_id = stripe_fake.add_intent(5000, status="processing", metadata={"organizationId": "1", "branchId": "2"})
    with pytest.raises(StateError):
        PaymentRecorder(stripe_fake).process_successful_payment(intent_id)
    assert Payment.query.count() == 0


def test_full_payment_settles_sale(ctx, stripe_fake):
    sale_id = _sale("1000")
    intent_id = stripe_fake.add_intent(100000, metadata={"organizationId": "1", "branchId": "2", "saleId": str(sale_id)})

    result = PaymentRecorder(stripe_fake).process_successful_payment(intent_id)

    sale = db.session.get(Sale, sale_id)
    assert result["source"] == "sale"
    assert result["source_id"] == sale_id
    assert sale.balance == Decimal("0")
    assert sale.status == "paid"


def test_partial_payment_leaves_balance(ctx, stripe_fake):
    sale_id = _sale("1000")
    intent_id = stripe_fake.add_intent(40000, metadata={"organizationId": "1", "branchId": "2", "saleId": str(sale_id)})

    PaymentRecorder(stripe_fake).process_successful_payment(intent_id)

    sale = db.session.get(Sale, sale_id)
    assert sale.balance == Decimal("600")
    assert sale.status == "partial"


def test_overpayment_clamps_balance_to_zero(ctx, stripe_fake):
    sale_id = _sale("100")
    intent_id = stripe_fake.add_intent(25000, metadata={"organizationId": "1", "branchId": "2", "saleId": str(sale_id)})

    PaymentRecorder(stripe_fake).process_successful_payment(intent_id)

    sale = db.session.get(Sale, sale_id)
    assert sale.balance == Decimal("0")
    assert sale.status == "paid"


def test_payment_cascades_to_invoice_and_receivable(ctx, stripe_fake):
    sale_id = _sale("500")
    invoice = Invoice(organization_id=1, sale_id=sale_id, total=Decimal("500"), balance=Decimal("500"))
    receivable = AccountReceivable(organization_id=1, sale_id=sale_id, amount=Decimal("500"), balance=Decimal("500"))
    db.session.add_all([invoice, receivable])
    db.session.commit()

    intent_id = stripe_fake.add_intent(20000, metadata={
        "organizationId": "1",
        "branchId": "2",
        "saleId": str(sale_id),
        "invoiceId": str(invoice.id),
        "accountReceivableId": str(receivable.id),
    })
    PaymentRecorder(stripe_fake).process_successful_payment(intent_id)

    assert db.session.get(Invoice, invoice.id).balance == Decimal("300")
    assert db.session.get(AccountReceivable, receivable.id).balance == Decimal("300")
    assert db.session.get(AccountReceivable, receivable.id).status == "partial"


def test_receivable_only_payment_sources_receivable(ctx, stripe_fake):
    receivable = AccountReceivable(organization_id=1, amount=Decimal("80"), balance=Decimal("80"))
    db.session.add(receivable)
    db.session.commit()
    intent_id = stripe_fake.add_intent(8000, metadata={
        "organizationId": "1", "branchId": "2", "accountReceivableId": str(receivable.id),
    })

    result = PaymentRecorder(stripe_fake).process_successful_payment(intent_id)

    assert result["source"] == "account_receivable"
    assert result["source_id"] == receivable.id
    assert db.session.get(AccountReceivable, receivable.id).status == "paid"


def test_missing_ledger_row_does_not_fail_recording(ctx, stripe_fake):
    intent_id = stripe_fake.add_intent(5000, metadata={"organizationId": "1", "branchId": "2", "saleId": "999"})
    result = PaymentRecorder(stripe_fake).process_successful_payment(intent_id)
    assert result["duplicate"] is False
    assert Payment.query.count() == 1


# ---- refunds ----

def test_full_refund(ctx, stripe_fake):
    intent_id = stripe_fake.add_intent(5000)
    result = RefundProcessor(stripe_fake).process_refund(intent_id)
    assert result["success"] is True
    assert result["amount"] == 50.0
    assert result["status"] == "succeeded"


def test_partial_refund_converts_to_minor_units(ctx, stripe_fake):
    intent_id = stripe_fake.add_intent(5000)
    result = RefundProcessor(stripe_fake).process_refund(intent_id, amount="12.5", reason="requested_by_customer")
    (_, _, kwargs), = stripe_fake.called("refunds.create")
    assert kwargs["params"]["amount"] == 1250
    assert kwargs["params"]["reason"] == "requested_by_customer"
    assert result["amount"] == 12.5


def test_refund_failure_is_returned_not_raised(ctx, stripe_fake):
    result = RefundProcessor(stripe_fake).process_refund("pi_missing")
    assert result["success"] is False
    assert result["error"]


def test_refund_rejects_unknown_reason(ctx, stripe_fake):
    intent_id = stripe_fake.add_intent(5000)
    result = RefundProcessor(stripe_fake).process_refund(intent_id, reason="because")
    assert result["success"] is False
    assert stripe_fake.called("refunds.create") == []
