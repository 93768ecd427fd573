from sqlalchemy import func, false, UniqueConstraint
from erp_billing.extensions import db
from erp_billing.models.types import JSONType


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, nullable=False, index=True)
    plan_id = db.Column(db.Integer, db.ForeignKey("plans.id", ondelete="RESTRICT"), nullable=True, index=True)

    stripe_subscription_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    stripe_customer_id = db.Column(db.String(64), nullable=False, index=True)

    # Mirrors the processor status verbatim
    status = db.Column(db.String(32), nullable=False, index=True, server_default="incomplete")
    billing_period = db.Column(db.String(16), nullable=True)

    trial_end = db.Column(db.DateTime(timezone=True), nullable=True)
    current_period_start = db.Column(db.DateTime(timezone=True), nullable=True)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, server_default=false())
    cancel_at = db.Column(db.DateTime(timezone=True), nullable=True)
    canceled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # "metadata" is reserved on declarative models
    meta = db.Column("metadata", JSONType, nullable=False, default=dict)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    plan = db.relationship("Plan", lazy="joined")

    __table_args__ = (
        UniqueConstraint("organization_id", name="uq_subscriptions_organization_id"),
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<Subscription id={self.id} organization_id={self.organization_id} "
            f"status={self.status!r} stripe_subscription_id={self.stripe_subscription_id!r}>"
        )
