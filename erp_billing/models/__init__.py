from .plan import Plan, BILLING_MONTHLY, BILLING_YEARLY, BILLING_PERIODS
from .subscription import Subscription
from .ledger import Sale, Invoice, AccountReceivable
from .payment import Payment
from .billing_event import BillingEventLog

__all__ = [
    "Plan",
    "BILLING_MONTHLY",
    "BILLING_YEARLY",
    "BILLING_PERIODS",
    "Subscription",
    "Sale",
    "Invoice",
    "AccountReceivable",
    "Payment",
    "BillingEventLog",
]
