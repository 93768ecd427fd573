from erp_billing.extensions import db
from erp_billing.models import Plan, BILLING_PERIODS
from erp_billing.billing.errors import NotFoundError, ValidationError

DEFAULT_TRIAL_DAYS = 15


def validate_billing_period(billing_period: str | None) -> str:
    period = (billing_period or "").strip().lower()
    if period not in BILLING_PERIODS:
        raise ValidationError(f"billing_period must be one of {', '.join(BILLING_PERIODS)}")
    return period


class PlanCatalog:
    """Read-only access to the seeded plan rows."""

    def __init__(self, session=None, default_trial_days: int = DEFAULT_TRIAL_DAYS):
        self.session = session or db.session
        self.default_trial_days = default_trial_days

    def get(self, plan_code: str, active_only: bool = False) -> Plan:
        """Existing subscriptions may still reference a retired plan; new sales pass active_only."""
        plan = self.session.query(Plan).filter_by(code=plan_code).one_or_none()
        if plan is None or (active_only and not plan.is_active):
            raise NotFoundError(f"Plan {plan_code!r} not found")
        return plan

    def plan_id(self, plan_code: str) -> int:
        return self.get(plan_code).id

    def price_id(self, plan_code: str, billing_period: str) -> str:
        plan = self.get(plan_code, active_only=True)
        period = validate_billing_period(billing_period)
        price_id = plan.price_id_for(period)
        if not price_id:
            raise NotFoundError(f"Plan {plan_code!r} has no {period} price configured")
        return price_id

    def trial_days(self, plan_code: str) -> int:
        return self.get(plan_code).trial_days or self.default_trial_days
