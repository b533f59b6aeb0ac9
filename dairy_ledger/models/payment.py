"""
Module: dairy_ledger.models.payment
Responsibility: ORM persistence for customer payments.
Architecture position: Ledger > Models.  May import from db/base.py only.

Invariants enforced:
    - amount > 0 (ck_payment_amount_positive).
    - amount_applied >= 0 and amount_unapplied >= 0; the services always
      write amount_unapplied as amount - amount_applied.
    - amount_applied / amount_unapplied / allocation_status are a cache of
      the payment's invoice_payments and opening_balance_payments rows.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, Date, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from dairy_ledger.db.base import TrackedBase


class Payment(TrackedBase):
    """Money received from a customer."""

    __tablename__ = "payments"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_amount_positive"),
        CheckConstraint("amount_applied >= 0", name="ck_payment_applied_nonneg"),
        CheckConstraint("amount_unapplied >= 0", name="ck_payment_unapplied_nonneg"),
        Index("idx_payment_customer", "customer_id"),
        Index("idx_payment_allocation_status", "allocation_status"),
    )

    customer_id: Mapped[UUID] = mapped_column(
        ForeignKey("customers.id"),
        nullable=False,
    )

    payment_date: Mapped[date] = mapped_column(Date, nullable=False)

    amount: Mapped[Decimal] = mapped_column(nullable=False)

    amount_applied: Mapped[Decimal] = mapped_column(
        nullable=False,
        default=Decimal("0.00"),
    )

    amount_unapplied: Mapped[Decimal] = mapped_column(nullable=False)

    allocation_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="unapplied",
    )

    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<Payment {self.id}: {self.amount_applied}/{self.amount} "
            f"{self.allocation_status}>"
        )
