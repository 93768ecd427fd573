from erp_billing.models import Payment, Plan


def test_plans_seed_creates_then_updates(app):
    runner = app.test_cli_runner()

    result = runner.invoke(args=[
        "plans", "seed", "--code", "basic", "--name", "Basic",
        "--monthly-price-id", "price_m", "--trial-days", "7",
    ])
    assert result.exit_code == 0, result.output
    assert "Plan created" in result.output

    result = runner.invoke(args=["plans", "seed", "--code", "basic", "--name", "Basic+", "--yearly-price-id", "price_y"])
    assert result.exit_code == 0, result.output
    assert "Plan updated" in result.output

    with app.app_context():
        plan = Plan.query.filter_by(code="basic").one()
        assert plan.name == "Basic+"
        assert plan.stripe_price_monthly_id == "price_m"
        assert plan.stripe_price_yearly_id == "price_y"
        assert plan.trial_days == 7

    result = runner.invoke(args=["plans", "list"])
    assert "basic" in result.output
    assert "monthly=price_m" in result.output


def test_plans_seed_rejects_negative_trial(app):
    result = app.test_cli_runner().invoke(args=[
        "plans", "seed", "--code", "x", "--name", "X", "--trial-days", "-1",
    ])
    assert result.exit_code != 0


def test_payments_record_replays_confirmation(app, stripe_fake):
    intent_id = stripe_fake.add_intent(1500, metadata={"organizationId": "1", "branchId": "1"})
    runner = app.test_cli_runner()

    first = runner.invoke(args=["payments", "record", intent_id])
    second = runner.invoke(args=["payments", "record", intent_id])

    assert first.exit_code == 0, first.output
    assert "Payment recorded" in first.output
    assert "already recorded" in second.output
    with app.app_context():
        assert Payment.query.count() == 1


def test_payments_record_reports_unsucceeded_intent(app, stripe_fake):
    intent_id = stripe_fake.add_intent(1500, status="processing", metadata={"organizationId": "1", "branchId": "1"})
    result = app.test_cli_runner().invoke(args=["payments", "record", intent_id])
    assert result.exit_code != 0
    assert "has not succeeded" in result.output
