"""
Ledger Domain Value Objects (``dairy_ledger.domain.dtos``).

Responsibility
--------------
Enums and frozen dataclasses for the nouns of payment allocation:
allocation requests coming in from payment forms, and the immutable results
and report rows going back out.  Services and selectors return these, never
ORM instances.

Architecture position
---------------------
**Domain layer** -- pure data definitions with ZERO I/O.

Invariants enforced
-------------------
* All result objects are ``frozen=True``.
* All monetary fields are ``Decimal`` -- NEVER ``float``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from uuid import UUID


class InvoiceStatus(str, Enum):
    """Invoice lifecycle states."""
    PENDING = "pending"
    SENT = "sent"
    OVERDUE = "overdue"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"


class AllocationStatus(str, Enum):
    """How much of a payment has been applied to debts."""
    UNAPPLIED = "unapplied"
    PARTIALLY_APPLIED = "partially_applied"
    FULLY_APPLIED = "fully_applied"


class TargetType(str, Enum):
    """What an allocation pays down."""
    INVOICE = "invoice"
    OPENING_BALANCE = "opening_balance"


@dataclass(frozen=True)
class AllocationRequest:
    """
    One line of a user-entered allocation breakdown.

    For ``TargetType.INVOICE`` the target is the invoice id; for
    ``TargetType.OPENING_BALANCE`` it is the customer id.  ``amount`` is
    left as the caller supplied it and validated by
    ``allocation_rules.normalize_requests``.
    """
    target_id: UUID
    target_type: TargetType
    amount: Decimal | str | int | float

    @classmethod
    def invoice(cls, invoice_id: UUID, amount) -> AllocationRequest:
        return cls(target_id=invoice_id, target_type=TargetType.INVOICE, amount=amount)

    @classmethod
    def opening_balance(cls, customer_id: UUID, amount) -> AllocationRequest:
        return cls(
            target_id=customer_id,
            target_type=TargetType.OPENING_BALANCE,
            amount=amount,
        )


@dataclass(frozen=True)
class AllocationLine:
    """A validated, merged allocation line (amount is a 2dp Decimal)."""
    target_id: UUID
    target_type: TargetType
    amount: Decimal


@dataclass(frozen=True)
class CustomerInfo:
    """
    Immutable DTO for customer data.

    ``opening_balance`` is the ORIGINAL figure recorded at onboarding.
    """
    id: UUID
    name: str
    opening_balance: Decimal
    route: str | None
    status: str


@dataclass(frozen=True)
class InvoiceSnapshot:
    """Invoice aggregate state after an allocation change."""
    id: UUID
    customer_id: UUID
    invoice_number: str
    invoice_date: date
    due_date: date | None
    total_amount: Decimal
    amount_paid: Decimal
    amount_outstanding: Decimal
    status: InvoiceStatus


@dataclass(frozen=True)
class PaymentSnapshot:
    """Payment aggregate state after an allocation change."""
    id: UUID
    customer_id: UUID
    payment_date: date
    amount: Decimal
    amount_applied: Decimal
    amount_unapplied: Decimal
    allocation_status: AllocationStatus
    payment_method: str | None = None


class TrackerAction(str, Enum):
    """What ``UnappliedPaymentTracker.reconcile`` did to the tracker row."""
    INSERTED = "inserted"
    UPDATED = "updated"
    DELETED = "deleted"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class ReconcileOutcome:
    """Result of reconciling one payment's tracker row."""
    payment_id: UUID
    amount_unapplied: Decimal
    action: TrackerAction

    @property
    def changed(self) -> bool:
        return self.action is not TrackerAction.UNCHANGED


@dataclass(frozen=True)
class AllocationResult:
    """
    Immutable result of a successful ``allocate`` call.

    Guarantees:
        - ``payment.amount_applied + payment.amount_unapplied == payment.amount``.
        - ``allocated_amount`` is the sum of ``lines``.
    """
    payment: PaymentSnapshot
    lines: tuple[AllocationLine, ...]
    allocated_amount: Decimal
    invoices: tuple[InvoiceSnapshot, ...]
    opening_balance_remaining: Decimal | None
    tracker: ReconcileOutcome


@dataclass(frozen=True)
class ReversalResult:
    """Immutable result of ``reverse_allocations``."""
    payment: PaymentSnapshot
    removed_invoice_allocations: int
    removed_opening_balance_allocations: int
    removed_amount: Decimal
    invoices: tuple[InvoiceSnapshot, ...]
    tracker: ReconcileOutcome


@dataclass(frozen=True)
class PaymentUpdateResult:
    """Immutable result of ``update_payment_amount``."""
    payment: PaymentSnapshot
    previous_amount: Decimal
    reversal: ReversalResult | None = None
    allocation: AllocationResult | None = None


@dataclass(frozen=True)
class InvoiceDeletionResult:
    """Immutable result of deleting an invoice."""
    invoice_id: UUID
    reallocated_payments: tuple[UUID, ...] = ()
    released_amount: Decimal = Decimal("0.00")


@dataclass(frozen=True)
class PaymentEntry:
    """One payment in a bulk entry batch, with its optional breakdown."""
    customer_id: UUID
    amount: Decimal | str | int
    payment_date: date | None = None
    payment_method: str | None = None
    notes: str | None = None
    allocations: tuple[AllocationRequest, ...] = ()


@dataclass(frozen=True)
class BulkPaymentError:
    """A rejected batch row; ``index`` is its position in the batch."""
    index: int
    code: str
    message: str


@dataclass(frozen=True)
class BulkPaymentResult:
    """
    Outcome of a bulk payment batch.

    Each row commits on its own, so ``payment_ids`` are committed even
    when ``errors`` is not empty.
    """
    total: int
    payment_ids: tuple[UUID, ...]
    errors: tuple[BulkPaymentError, ...]

    @property
    def processed(self) -> int:
        return len(self.payment_ids)

    @property
    def success(self) -> bool:
        return not self.errors


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UnpaidInvoiceRow:
    """One unpaid invoice line in a customer outstanding breakdown."""
    id: UUID
    invoice_number: str
    invoice_date: date
    due_date: date | None
    total_amount: Decimal
    amount_paid: Decimal
    amount_outstanding: Decimal
    status: InvoiceStatus


@dataclass(frozen=True)
class CustomerOutstanding:
    """
    Outstanding breakdown for one customer.

    ``original_opening_balance`` is what the customer started owing;
    ``effective_opening_balance`` is what is still owed against it.
    """
    customer_id: UUID
    customer_name: str
    route: str | None
    original_opening_balance: Decimal
    effective_opening_balance: Decimal
    invoice_outstanding: Decimal
    total_outstanding: Decimal
    available_credit: Decimal
    unpaid_invoices: tuple[UnpaidInvoiceRow, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class DashboardCustomerRow:
    """Per-customer row of the outstanding dashboard."""
    customer_id: UUID
    customer_name: str
    route: str | None
    original_opening_balance: Decimal
    effective_opening_balance: Decimal
    invoice_outstanding: Decimal
    total_outstanding: Decimal
    unpaid_invoice_count: int
    oldest_unpaid_date: date | None
    credit_amount: Decimal
    credit_count: int

    @property
    def has_credit(self) -> bool:
        return self.credit_amount > 0


@dataclass(frozen=True)
class OutstandingDashboard:
    """Outstanding totals across all customers with something owed."""
    total_outstanding: Decimal
    customers_with_outstanding: int
    overdue_invoices: int
    average_outstanding: Decimal
    customers: tuple[DashboardCustomerRow, ...]


@dataclass(frozen=True)
class OutstandingValidation:
    """Anomaly check on one customer's outstanding figure."""
    customer_id: UUID
    amount: Decimal
    warnings: tuple[str, ...]

    @property
    def is_valid(self) -> bool:
        return not self.warnings

    @property
    def requires_review(self) -> bool:
        return bool(self.warnings)


@dataclass(frozen=True)
class UnappliedPaymentRow:
    """A payment with credit still available."""
    id: UUID
    payment_id: UUID
    customer_id: UUID
    customer_name: str
    payment_date: date
    payment_amount: Decimal
    amount_unapplied: Decimal
    payment_method: str | None
    reason: str


@dataclass(frozen=True)
class CustomerCreditInfo:
    """Available credit for one customer."""
    customer_id: UUID
    total_amount: Decimal
    payment_count: int

    @property
    def has_credit(self) -> bool:
        return self.total_amount > 0


@dataclass(frozen=True)
class UnappliedPaymentStats:
    """Totals across every tracker row."""
    total_amount: Decimal
    total_count: int
    customers_count: int


@dataclass(frozen=True)
class UnappliedDiscrepancy:
    """A payment whose tracker row disagrees with its allocation rows."""
    payment_id: UUID
    expected_unapplied: Decimal
    tracked_unapplied: Decimal
    recorded_unapplied: Decimal

    @property
    def discrepancy(self) -> Decimal:
        return self.expected_unapplied - self.tracked_unapplied


@dataclass(frozen=True)
class NetCreditRow:
    """A customer whose available credit exceeds what they owe."""
    customer_id: UUID
    customer_name: str
    credit_amount: Decimal
    total_outstanding: Decimal

    @property
    def net_credit(self) -> Decimal:
        return self.credit_amount - self.total_outstanding
