"""
Module: dairy_ledger.models.invoice
Responsibility: ORM persistence for invoices (table ``invoice_metadata``).
Architecture position: Ledger > Models.  May import from db/base.py only.

Invariants enforced:
    - 0 <= amount_paid <= total_amount (ck_invoice_paid_nonneg,
      ck_invoice_paid_within_total); amount_outstanding is always written
      as total_amount - amount_paid.
    - amount_paid / amount_outstanding / invoice_status are a cache of the
      invoice_payments rows.  Only AllocationEngine and ReversalService
      write them, and they always recompute from the rows.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, Date, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from dairy_ledger.db.base import TrackedBase


class Invoice(TrackedBase):
    """An invoice raised against a customer."""

    __tablename__ = "invoice_metadata"

    __table_args__ = (
        UniqueConstraint("invoice_number", name="uq_invoice_number"),
        CheckConstraint("total_amount >= 0", name="ck_invoice_total_nonneg"),
        CheckConstraint("amount_paid >= 0", name="ck_invoice_paid_nonneg"),
        CheckConstraint("amount_paid <= total_amount", name="ck_invoice_paid_within_total"),
        Index("idx_invoice_customer", "customer_id"),
        Index("idx_invoice_status", "invoice_status"),
    )

    customer_id: Mapped[UUID] = mapped_column(
        ForeignKey("customers.id"),
        nullable=False,
    )

    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False)

    invoice_date: Mapped[date] = mapped_column(Date, nullable=False)

    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    total_amount: Mapped[Decimal] = mapped_column(nullable=False)

    amount_paid: Mapped[Decimal] = mapped_column(
        nullable=False,
        default=Decimal("0.00"),
    )

    amount_outstanding: Mapped[Decimal] = mapped_column(nullable=False)

    invoice_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending",
    )

    def __repr__(self) -> str:
        return (
            f"<Invoice {self.invoice_number}: {self.amount_paid}/{self.total_amount} "
            f"{self.invoice_status}>"
        )
