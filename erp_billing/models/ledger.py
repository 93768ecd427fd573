"""
ERP ledger entities whose balances are settled by recorded payments.

The rows are owned by the sales/invoicing modules; billing only applies
payments against their balance.
"""
from decimal import Decimal

from sqlalchemy import func
from erp_billing.extensions import db

STATUS_PAID = "paid"
STATUS_PARTIAL = "partial"
STATUS_PENDING = "pending"


class _BalanceMixin:
    def apply_payment(self, amount: Decimal) -> None:
        """Reduce the balance (never below zero) and derive the status."""
        current = Decimal(self.balance or 0)
        remaining = current - Decimal(amount)
        if remaining < 0:
            remaining = Decimal("0")
        self.balance = remaining
        self.status = STATUS_PAID if remaining == 0 else STATUS_PARTIAL


class Sale(_BalanceMixin, db.Model):
    __tablename__ = "sales"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, nullable=False, index=True)
    branch_id = db.Column(db.Integer, nullable=True)
    total = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    balance = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default=STATUS_PENDING)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class Invoice(_BalanceMixin, db.Model):
    __tablename__ = "invoices"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, nullable=False, index=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id", ondelete="SET NULL"), nullable=True)
    total = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    balance = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default=STATUS_PENDING)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class AccountReceivable(_BalanceMixin, db.Model):
    __tablename__ = "account_receivables"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, nullable=False, index=True)
    customer_id = db.Column(db.Integer, nullable=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id", ondelete="SET NULL"), nullable=True)
    amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    balance = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default=STATUS_PENDING)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
