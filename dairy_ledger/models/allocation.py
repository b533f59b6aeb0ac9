"""
Module: dairy_ledger.models.allocation
Responsibility: ORM persistence for allocation rows -- the authoritative
    record of how each payment is split across invoices and the customer's
    opening balance.
Architecture position: Ledger > Models.  May import from db/base.py only.

Invariants enforced:
    - One invoice_payments row per (payment, invoice) pair
      (uq_invoice_payment_pair); a later top-up increases that row.
    - One opening_balance_payments row per (customer, payment) pair
      (uq_opening_balance_payment_pair).
    - Every allocated amount is > 0.
    - Rows are only inserted or increased by AllocationEngine and deleted
      wholesale per payment by ReversalService.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from dairy_ledger.db.base import TrackedBase


class InvoicePaymentAllocation(TrackedBase):
    """Part of a payment applied to one invoice."""

    __tablename__ = "invoice_payments"

    __table_args__ = (
        UniqueConstraint("payment_id", "invoice_id", name="uq_invoice_payment_pair"),
        CheckConstraint("amount_allocated > 0", name="ck_invoice_payment_positive"),
        Index("idx_invoice_payment_invoice", "invoice_id"),
        Index("idx_invoice_payment_payment", "payment_id"),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("invoice_metadata.id"),
        nullable=False,
    )

    payment_id: Mapped[UUID] = mapped_column(
        ForeignKey("payments.id"),
        nullable=False,
    )

    amount_allocated: Mapped[Decimal] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<InvoicePaymentAllocation {self.payment_id}->{self.invoice_id}: {self.amount_allocated}>"


class OpeningBalancePaymentAllocation(TrackedBase):
    """Part of a payment applied to the customer's opening balance."""

    __tablename__ = "opening_balance_payments"

    __table_args__ = (
        UniqueConstraint(
            "customer_id", "payment_id", name="uq_opening_balance_payment_pair"
        ),
        CheckConstraint("amount > 0", name="ck_opening_balance_payment_positive"),
        Index("idx_opening_balance_payment_customer", "customer_id"),
        Index("idx_opening_balance_payment_payment", "payment_id"),
    )

    customer_id: Mapped[UUID] = mapped_column(
        ForeignKey("customers.id"),
        nullable=False,
    )

    payment_id: Mapped[UUID] = mapped_column(
        ForeignKey("payments.id"),
        nullable=False,
    )

    amount: Mapped[Decimal] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<OpeningBalancePaymentAllocation {self.payment_id}->{self.customer_id}: {self.amount}>"
