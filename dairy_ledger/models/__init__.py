"""SQLAlchemy ORM models for the dairy ledger."""

from dairy_ledger.models.allocation import (
    InvoicePaymentAllocation,
    OpeningBalancePaymentAllocation,
)
from dairy_ledger.models.customer import Customer, CustomerStatus
from dairy_ledger.models.invoice import Invoice
from dairy_ledger.models.payment import Payment
from dairy_ledger.models.unapplied_payment import UnappliedPayment

__all__ = [
    "Customer",
    "CustomerStatus",
    "Invoice",
    "InvoicePaymentAllocation",
    "OpeningBalancePaymentAllocation",
    "Payment",
    "UnappliedPayment",
]
