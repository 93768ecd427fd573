from sqlalchemy import func
from erp_billing.extensions import db

SOURCE_SALE = "sale"
SOURCE_ACCOUNT_RECEIVABLE = "account_receivable"
SOURCE_MANUAL = "manual"

METHOD_CARD = "card"
STATUS_COMPLETED = "completed"


class Payment(db.Model):
    """A successfully collected payment. Written once, never updated here."""
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, nullable=False, index=True)
    branch_id = db.Column(db.Integer, nullable=False, index=True)

    amount = db.Column(db.Numeric(14, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    method = db.Column(db.String(20), nullable=False)

    source = db.Column(db.String(32), nullable=False)
    source_id = db.Column(db.Integer, nullable=True)

    # Processor intent id; the uniqueness constraint makes recording idempotent
    reference = db.Column(db.String(255), nullable=False, unique=True, index=True)
    status = db.Column(db.String(20), nullable=False)

    customer_id = db.Column(db.Integer, nullable=True)
    # Ledger linkage; the rows live in the sales/invoicing modules
    sale_id = db.Column(db.Integer, nullable=True, index=True)
    invoice_id = db.Column(db.Integer, nullable=True, index=True)
    account_receivable_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    def __repr__(self) -> str:
        return f"<Payment id={self.id} reference={self.reference!r} amount={self.amount} source={self.source!r}>"
