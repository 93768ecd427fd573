import click
from flask import current_app
from flask.cli import with_appcontext

from erp_billing.extensions import db
from erp_billing.billing.client import current_client
from erp_billing.billing.errors import BillingError
from erp_billing.models import Plan
from erp_billing.services.payments import PaymentRecorder


@click.group()
def plans():
    """Plan catalog."""


@plans.command("seed")
@click.option("--code", required=True)
@click.option("--name", required=True)
@click.option("--product-id", default=None)
@click.option("--monthly-price-id", default=None, help="Stripe price id billed monthly")
@click.option("--yearly-price-id", default=None, help="Stripe price id billed yearly")
@click.option("--trial-days", type=int, default=None)
@click.option("--inactive", is_flag=True, default=False)
@with_appcontext
def plans_seed(code, name, product_id, monthly_price_id, yearly_price_id, trial_days, inactive):
    """Create or update one plan row. Re-running with the same code updates it."""
    plan = db.session.query(Plan).filter_by(code=code).one_or_none()
    created = plan is None
    if created:
        plan = Plan(code=code, name=name)
        db.session.add(plan)
    plan.name = name
    if product_id is not None:
        plan.stripe_product_id = product_id
    if monthly_price_id is not None:
        plan.stripe_price_monthly_id = monthly_price_id
    if yearly_price_id is not None:
        plan.stripe_price_yearly_id = yearly_price_id
    if trial_days is not None:
        if trial_days < 0:
            raise click.ClickException("--trial-days must be >= 0")
        plan.trial_days = trial_days
    plan.is_active = not inactive
    db.session.commit()

    click.echo(f"Plan {'created' if created else 'updated'} id={plan.id} code={plan.code}")


@plans.command("list")
@with_appcontext
def plans_list():
    rows = db.session.query(Plan).order_by(Plan.code).all()
    if not rows:
        click.echo("No plans configured")
        return
    for p in rows:
        click.echo(
            f"{p.id}\t{p.code}\t{p.name}\tmonthly={p.stripe_price_monthly_id or '-'}"
            f"\tyearly={p.stripe_price_yearly_id or '-'}\ttrial_days={p.trial_days or '-'}"
            f"\t{'active' if p.is_active else 'inactive'}"
        )


@click.group()
def payments():
    """Payment ops."""


@payments.command("record")
@click.argument("intent_id")
@with_appcontext
def payments_record(intent_id):
    """Record a succeeded PaymentIntent (safe to repeat)."""
    try:
        client = current_client()
    except RuntimeError as exc:
        raise click.ClickException(str(exc))
    try:
        result = PaymentRecorder(client).process_successful_payment(intent_id)
    except BillingError as exc:
        current_app.logger.warning("billing.cli.record_failed", extra={"intent_id": intent_id, "error_code": exc.code})
        raise click.ClickException(exc.message)

    state = "already recorded" if result["duplicate"] else "recorded"
    click.echo(f"Payment {state}: id={result['payment_id']} amount={result['amount']} {result['currency']}")


def register_cli(app):
    app.cli.add_command(plans)
    app.cli.add_command(payments)
