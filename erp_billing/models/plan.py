from sqlalchemy import func, true
from erp_billing.extensions import db

BILLING_MONTHLY = "monthly"
BILLING_YEARLY = "yearly"
BILLING_PERIODS = (BILLING_MONTHLY, BILLING_YEARLY)


class Plan(db.Model):
    __tablename__ = "plans"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(40), nullable=False, unique=True, index=True)
    name = db.Column(db.String(120), nullable=False)

    stripe_product_id = db.Column(db.String(64), nullable=True)
    stripe_price_monthly_id = db.Column(db.String(64), nullable=True)
    stripe_price_yearly_id = db.Column(db.String(64), nullable=True)

    trial_days = db.Column(db.Integer, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, server_default=true())

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    def price_id_for(self, billing_period: str) -> str | None:
        if billing_period == BILLING_MONTHLY:
            return self.stripe_price_monthly_id
        if billing_period == BILLING_YEARLY:
            return self.stripe_price_yearly_id
        return None

    def __repr__(self) -> str:
        return f"<Plan id={self.id} code={self.code!r}>"
