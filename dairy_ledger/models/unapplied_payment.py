"""
Module: dairy_ledger.models.unapplied_payment
Responsibility: Tracker rows for the unallocated remainder of payments --
    the "credit available" records read by reports.
Architecture position: Ledger > Models.  May import from db/base.py only.

Invariants enforced:
    - At most one row per payment (uq_unapplied_payment_payment).
    - A row exists iff the payment's amount_unapplied > 0, and its
      amount_unapplied equals the payment's.  Maintained by
      UnappliedPaymentTracker in the same transaction as every allocation
      change.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from dairy_ledger.db.base import TrackedBase


class UnappliedPayment(TrackedBase):
    """Mirror of a payment's positive unapplied amount."""

    __tablename__ = "unapplied_payments"

    __table_args__ = (
        UniqueConstraint("payment_id", name="uq_unapplied_payment_payment"),
        CheckConstraint("amount_unapplied > 0", name="ck_unapplied_payment_positive"),
        Index("idx_unapplied_payment_customer", "customer_id"),
    )

    customer_id: Mapped[UUID] = mapped_column(
        ForeignKey("customers.id"),
        nullable=False,
    )

    payment_id: Mapped[UUID] = mapped_column(
        ForeignKey("payments.id"),
        nullable=False,
    )

    amount_unapplied: Mapped[Decimal] = mapped_column(nullable=False)

    reason: Mapped[str] = mapped_column(String(255), nullable=False)

    def __repr__(self) -> str:
        return f"<UnappliedPayment {self.payment_id}: {self.amount_unapplied}>"
