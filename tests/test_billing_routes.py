import pytest

from erp_billing.models import Payment, Subscription


def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.get_json() == {"status": "ok"}


def test_create_payment_intent(client, stripe_fake):
    resp = client.post("/billing/payment-intents", json={
        "amount": "49.90", "currency": "usd", "organization_id": 1, "branch_id": 2, "sale_id": 3,
    })
    assert resp.status_code == 201
    data = resp.get_json()
    assert data["amount_minor_units"] == 4990
    assert data["client_secret"]


def test_create_payment_intent_below_minimum_returns_error_shape(client, stripe_fake):
    resp = client.post("/billing/payment-intents", json={
        "amount": "0.10", "currency": "usd", "organization_id": 1, "branch_id": 2,
    })
    assert resp.status_code == 400
    data = resp.get_json()
    assert data["success"] is False
    assert data["code"] == "validation_error"
    assert "minimum" in data["error"]
    assert stripe_fake.calls == []


def test_create_payment_intent_requires_fields(client, stripe_fake):
    resp = client.post("/billing/payment-intents", json={"amount": 10})
    assert resp.status_code == 400
    assert "currency" in resp.get_json()["error"]


def test_confirm_payment_intent_is_idempotent(app, client, stripe_fake):
    intent_id = stripe_fake.add_intent(5000, metadata={"organizationId": "1", "branchId": "2"})

    first = client.post(f"/billing/payment-intents/{intent_id}/confirm")
    second = client.post(f"/billing/payment-intents/{intent_id}/confirm")

    assert first.status_code == 201
    assert second.status_code == 200
    assert second.get_json()["duplicate"] is True
    with app.app_context():
        assert Payment.query.count() == 1


def test_confirm_unsucceeded_intent_conflicts(client, stripe_fake):
    intent_id = stripe_fake.add_intent(5000, status="requires_payment_method")
    resp = client.post(f"/billing/payment-intents/{intent_id}/confirm")
    assert resp.status_code == 409
    assert resp.get_json()["code"] == "invalid_state"


def test_unknown_intent_maps_processor_error(client, stripe_fake):
    resp = client.post("/billing/payment-intents/pi_missing/confirm")
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "invalid_request"


def test_refund_route(client, stripe_fake):
    intent_id = stripe_fake.add_intent(5000)
    resp = client.post(f"/billing/payment-intents/{intent_id}/refunds", json={"amount": 20})
    assert resp.status_code == 201
    assert resp.get_json()["amount"] == 20.0


def test_enterprise_quote_route(client):
    resp = client.post("/billing/quotes/enterprise", json={
        "modules": 8, "branches": 3, "users": 10, "ai_credits": 0, "billing_period": "yearly",
    })
    assert resp.status_code == 200
    data = resp.get_json()
    # 99 + 20 + 15 + 20 with default unit prices
    assert data["monthly"] == 154
    assert data["yearly"] == 1540
    assert data["billing_period"] == "yearly"


def test_subscription_lifecycle_over_http(app, client, plans, stripe_fake):
    resp = client.post("/billing/subscriptions", json={
        "organization_id": 7,
        "plan_code": "basic",
        "billing_period": "monthly",
        "use_trial": True,
        "customer_email": "ops@tenant.test",
    })
    assert resp.status_code == 201
    created = resp.get_json()
    assert created["status"] == "trialing"
    assert created["trial_end"]
    sub_id = created["subscription_id"]

    resp = client.post(f"/billing/subscriptions/{sub_id}/plan", json={"plan_code": "pro", "billing_period": "monthly"})
    assert resp.status_code == 200

    resp = client.post(f"/billing/subscriptions/{sub_id}/cancel", json={"immediate": False})
    assert resp.get_json()["cancel_at_period_end"] is True

    resp = client.post(f"/billing/subscriptions/{sub_id}/reactivate")
    assert resp.get_json()["success"] is True

    resp = client.post(f"/billing/subscriptions/{sub_id}/cancel", json={"immediate": True})
    assert resp.get_json()["status"] == "canceled"

    with app.app_context():
        row = Subscription.query.filter_by(organization_id=7).one()
        assert row.status == "canceled"


def test_subscription_with_unknown_plan_is_404(client, plans, stripe_fake):
    resp = client.post("/billing/subscriptions", json={
        "organization_id": 7, "plan_code": "gold", "billing_period": "monthly", "customer_email": "a@b.test",
    })
    assert resp.status_code == 404
    assert resp.get_json()["success"] is False


def test_customer_routes(client, stripe_fake):
    customer = stripe_fake.customers.create(params={"email": "ops@tenant.test"})
    pm_id = stripe_fake.add_payment_method()

    resp = client.post(f"/billing/customers/{customer['id']}/payment-methods", json={"payment_method_id": pm_id})
    assert resp.status_code == 201

    resp = client.get(f"/billing/customers/{customer['id']}/payment-methods")
    methods = resp.get_json()["payment_methods"]
    assert [m["id"] for m in methods] == [pm_id]
    assert methods[0]["is_default"] is True

    resp = client.post(f"/billing/customers/{customer['id']}/portal", json={})
    assert "return=http://example.test/billing" in resp.get_json()["url"]

    resp = client.get(f"/billing/customers/{customer['id']}/invoices?limit=500")
    assert resp.status_code == 200
    (_, _, kwargs), = stripe_fake.called("invoices.list")
    assert kwargs["params"]["limit"] == 100

    resp = client.delete(f"/billing/payment-methods/{pm_id}")
    assert resp.get_json() == {"success": True}


@pytest.mark.parametrize("field, path_suffix", [
    ("use_trial", None),
    ("immediate", "cancel"),
])
def test_subscription_flags_must_be_json_booleans(client, plans, stripe_fake, field, path_suffix):
    if path_suffix is None:
        resp = client.post("/billing/subscriptions", json={
            "organization_id": 7, "plan_code": "basic", "billing_period": "monthly",
            "customer_email": "ops@tenant.test", field: "false",
        })
    else:
        resp = client.post(f"/billing/subscriptions/sub_any/{path_suffix}", json={field: "false"})

    assert resp.status_code == 400
    assert resp.get_json()["code"] == "validation_error"
    assert stripe_fake.called("subscriptions.create") == []
    assert stripe_fake.called("subscriptions.cancel") == []
    assert stripe_fake.called("subscriptions.update") == []


def test_attach_payment_method_rejects_string_flag(client, stripe_fake):
    customer = stripe_fake.customers.create(params={"email": "ops@tenant.test"})
    pm_id = stripe_fake.add_payment_method()

    resp = client.post(
        f"/billing/customers/{customer['id']}/payment-methods",
        json={"payment_method_id": pm_id, "set_default": "no"},
    )

    assert resp.status_code == 400
    assert stripe_fake.called("payment_methods.attach") == []
