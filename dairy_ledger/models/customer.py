"""
Module: dairy_ledger.models.customer
Responsibility: ORM persistence for customers and their opening balance.
Architecture position: Ledger > Models.  May import from db/base.py only.

Invariants enforced:
    - opening_balance >= 0 (ck_customer_opening_balance_nonneg).
    - opening_balance is recorded once at onboarding and never modified
      (ORM before_update listener in db/immutability.py).  Payments against
      it live in opening_balance_payments; the remaining debt is derived.

Failure modes:
    - ImmutabilityViolationError on flush if opening_balance is changed.
    - IntegrityError on a negative opening balance.
"""

from decimal import Decimal
from enum import Enum

from sqlalchemy import CheckConstraint, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from dairy_ledger.db.base import TrackedBase


class CustomerStatus(str, Enum):
    """Customer lifecycle status."""

    ACTIVE = "active"
    INACTIVE = "inactive"


class Customer(TrackedBase):
    """
    A dairy customer.

    The raw ``opening_balance`` column is the ORIGINAL figure.  Outstanding
    calculations must use ``OutstandingSelector.effective_opening_balance``.
    """

    __tablename__ = "customers"

    __table_args__ = (
        CheckConstraint("opening_balance >= 0", name="ck_customer_opening_balance_nonneg"),
        Index("idx_customer_route", "route"),
        Index("idx_customer_status", "status"),
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    opening_balance: Mapped[Decimal] = mapped_column(
        nullable=False,
        default=Decimal("0.00"),
    )

    route: Mapped[str | None] = mapped_column(String(100), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=CustomerStatus.ACTIVE.value,
    )

    def __repr__(self) -> str:
        return f"<Customer {self.name} opening={self.opening_balance}>"
