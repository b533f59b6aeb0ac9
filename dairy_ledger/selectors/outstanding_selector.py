"""
Module: dairy_ledger.selectors.outstanding_selector
Responsibility: What customers owe.  Computes the effective opening
    balance, invoice outstanding and total outstanding per customer, the
    outstanding dashboard, and the anomaly check used before statements
    go out.
Architecture position: Ledger > Selectors.  Read-only.

Invariants enforced:
    - Two opening-balance accessors, never conflated:
        original_opening_balance   the immutable onboarding figure
        effective_opening_balance  max(0, original - Σ opening-balance rows)
      Outstanding figures only ever use the effective one.
    - Invoice outstanding is max(0, total_amount - Σ invoice rows) per
      invoice, recomputed from rows on every call.  The cached
      amount_outstanding column is only compared, never summed.

Failure modes:
    - CustomerNotFoundError for an unknown customer id.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from dairy_ledger.config import LedgerSettings
from dairy_ledger.domain.clock import Clock, SystemClock
from dairy_ledger.domain.dtos import (
    CustomerOutstanding,
    DashboardCustomerRow,
    InvoiceStatus,
    OutstandingDashboard,
    OutstandingValidation,
    UnpaidInvoiceRow,
)
from dairy_ledger.domain.values import MONEY_QUANTUM, ZERO, to_money
from dairy_ledger.exceptions import CustomerNotFoundError
from dairy_ledger.models.allocation import (
    InvoicePaymentAllocation,
    OpeningBalancePaymentAllocation,
)
from dairy_ledger.models.customer import Customer
from dairy_ledger.models.invoice import Invoice
from dairy_ledger.models.payment import Payment
from dairy_ledger.models.unapplied_payment import UnappliedPayment
from dairy_ledger.selectors.allocation_selector import AllocationSelector
from dairy_ledger.selectors.base import BaseSelector


@dataclass(frozen=True)
class _InvoiceBalance:
    invoice: Invoice
    allocated: Decimal

    @property
    def outstanding(self) -> Decimal:
        return max(ZERO, to_money(self.invoice.total_amount) - self.allocated)

    def to_row(self) -> UnpaidInvoiceRow:
        return UnpaidInvoiceRow(
            id=self.invoice.id,
            invoice_number=self.invoice.invoice_number,
            invoice_date=self.invoice.invoice_date,
            due_date=self.invoice.due_date,
            total_amount=to_money(self.invoice.total_amount),
            amount_paid=self.allocated,
            amount_outstanding=self.outstanding,
            status=InvoiceStatus(self.invoice.invoice_status),
        )


class OutstandingSelector(BaseSelector[Customer]):
    """Outstanding-balance queries."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        settings: LedgerSettings | None = None,
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._settings = settings or LedgerSettings()
        self._allocations = AllocationSelector(session)

    def _get_customer(self, customer_id: UUID) -> Customer:
        customer = self.session.get(Customer, customer_id)
        if customer is None:
            raise CustomerNotFoundError(str(customer_id))
        return customer

    def _invoice_balances(self, customer_id: UUID | None = None) -> list[_InvoiceBalance]:
        allocated = (
            select(
                InvoicePaymentAllocation.invoice_id.label("invoice_id"),
                func.sum(InvoicePaymentAllocation.amount_allocated).label("allocated"),
            )
            .group_by(InvoicePaymentAllocation.invoice_id)
            .subquery()
        )
        stmt = (
            select(Invoice, allocated.c.allocated)
            .outerjoin(allocated, allocated.c.invoice_id == Invoice.id)
            .order_by(Invoice.invoice_date, Invoice.invoice_number)
        )
        if customer_id is not None:
            stmt = stmt.where(Invoice.customer_id == customer_id)
        return [
            _InvoiceBalance(invoice=invoice, allocated=to_money(total or 0))
            for invoice, total in self.session.execute(stmt)
        ]

    # =========================================================================
    # Per-customer figures
    # =========================================================================

    def original_opening_balance(self, customer_id: UUID) -> Decimal:
        """What the customer started owing at onboarding."""
        return to_money(self._get_customer(customer_id).opening_balance)

    def effective_opening_balance(self, customer_id: UUID) -> Decimal:
        """What the customer still owes against the opening balance."""
        customer = self._get_customer(customer_id)
        allocated = self._allocations.opening_balance_allocated_total(customer.id)
        return max(ZERO, to_money(customer.opening_balance) - allocated)

    def invoice_outstanding(self, customer_id: UUID) -> Decimal:
        """Σ outstanding over the customer's unpaid and part-paid invoices."""
        self._get_customer(customer_id)
        return sum(
            (balance.outstanding for balance in self._invoice_balances(customer_id)),
            ZERO,
        )

    def total_outstanding(self, customer_id: UUID) -> Decimal:
        """Effective opening balance plus invoice outstanding."""
        return self.effective_opening_balance(customer_id) + self.invoice_outstanding(
            customer_id
        )

    def customer_outstanding(self, customer_id: UUID) -> CustomerOutstanding:
        """Full outstanding breakdown for one customer."""
        customer = self._get_customer(customer_id)
        original = to_money(customer.opening_balance)
        effective = max(
            ZERO, original - self._allocations.opening_balance_allocated_total(customer.id)
        )
        unpaid = [b for b in self._invoice_balances(customer.id) if b.outstanding > ZERO]
        invoice_total = sum((b.outstanding for b in unpaid), ZERO)
        credit = to_money(
            self.session.execute(
                select(func.coalesce(func.sum(UnappliedPayment.amount_unapplied), 0)).where(
                    UnappliedPayment.customer_id == customer.id
                )
            ).scalar_one()
        )
        return CustomerOutstanding(
            customer_id=customer.id,
            customer_name=customer.name,
            route=customer.route,
            original_opening_balance=original,
            effective_opening_balance=effective,
            invoice_outstanding=invoice_total,
            total_outstanding=effective + invoice_total,
            available_credit=credit,
            unpaid_invoices=tuple(b.to_row() for b in unpaid),
        )

    # =========================================================================
    # Dashboard
    # =========================================================================

    def outstanding_dashboard(self) -> OutstandingDashboard:
        """
        Outstanding across all customers that owe anything.

        Rows are ordered by total outstanding, largest first.  An invoice
        counts as overdue when it is unpaid and its due date has passed,
        or when it has no due date and is marked overdue.
        """
        today = self._clock.today()

        opening_allocated = {
            customer_id: to_money(total)
            for customer_id, total in self.session.execute(
                select(
                    OpeningBalancePaymentAllocation.customer_id,
                    func.sum(OpeningBalancePaymentAllocation.amount),
                ).group_by(OpeningBalancePaymentAllocation.customer_id)
            )
        }
        credit = {
            customer_id: (to_money(total), count)
            for customer_id, total, count in self.session.execute(
                select(
                    UnappliedPayment.customer_id,
                    func.sum(UnappliedPayment.amount_unapplied),
                    func.count(UnappliedPayment.id),
                ).group_by(UnappliedPayment.customer_id)
            )
        }

        unpaid_by_customer: dict[UUID, list[_InvoiceBalance]] = defaultdict(list)
        overdue_invoices = 0
        for balance in self._invoice_balances():
            if balance.outstanding <= ZERO:
                continue
            unpaid_by_customer[balance.invoice.customer_id].append(balance)
            if _is_overdue(balance.invoice, today):
                overdue_invoices += 1

        rows: list[DashboardCustomerRow] = []
        customers = self.session.execute(select(Customer).order_by(Customer.name)).scalars()
        for customer in customers:
            original = to_money(customer.opening_balance)
            effective = max(ZERO, original - opening_allocated.get(customer.id, ZERO))
            unpaid = unpaid_by_customer.get(customer.id, [])
            invoice_total = sum((b.outstanding for b in unpaid), ZERO)
            total = effective + invoice_total
            if total <= ZERO:
                continue
            credit_amount, credit_count = credit.get(customer.id, (ZERO, 0))
            rows.append(
                DashboardCustomerRow(
                    customer_id=customer.id,
                    customer_name=customer.name,
                    route=customer.route,
                    original_opening_balance=original,
                    effective_opening_balance=effective,
                    invoice_outstanding=invoice_total,
                    total_outstanding=total,
                    unpaid_invoice_count=len(unpaid),
                    oldest_unpaid_date=min(
                        (b.invoice.invoice_date for b in unpaid), default=None
                    ),
                    credit_amount=credit_amount,
                    credit_count=credit_count,
                )
            )

        rows.sort(key=lambda row: row.total_outstanding, reverse=True)
        grand_total = sum((row.total_outstanding for row in rows), ZERO)
        average = (
            (grand_total / len(rows)).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)
            if rows
            else ZERO
        )
        return OutstandingDashboard(
            total_outstanding=grand_total,
            customers_with_outstanding=len(rows),
            overdue_invoices=overdue_invoices,
            average_outstanding=average,
            customers=tuple(rows),
        )

    # =========================================================================
    # Anomaly check
    # =========================================================================

    def validate_outstanding(self, customer_id: UUID) -> OutstandingValidation:
        """
        Flag outstanding figures that need review before they are shown.

        Checks the total against the configured maximum, and the
        cached invoice and payment counters against the allocation rows.
        """
        customer = self._get_customer(customer_id)
        warnings: list[str] = []

        original = to_money(customer.opening_balance)
        opening_allocated = self._allocations.opening_balance_allocated_total(customer.id)
        if opening_allocated > original:
            warnings.append(
                f"opening balance allocations {opening_allocated} exceed "
                f"opening balance {original}"
            )

        balances = self._invoice_balances(customer.id)
        amount = max(ZERO, original - opening_allocated) + sum(
            (b.outstanding for b in balances), ZERO
        )
        if amount > self._settings.max_reasonable_outstanding:
            warnings.append(
                f"outstanding amount {amount} exceeds "
                f"{self._settings.max_reasonable_outstanding}"
            )

        for balance in balances:
            invoice = balance.invoice
            total = to_money(invoice.total_amount)
            paid = to_money(invoice.amount_paid)
            if balance.allocated > total:
                warnings.append(
                    f"invoice {invoice.invoice_number} allocations {balance.allocated} "
                    f"exceed total {total}"
                )
            if paid != balance.allocated:
                warnings.append(
                    f"invoice {invoice.invoice_number} amount_paid {paid} "
                    f"disagrees with allocations {balance.allocated}"
                )
            if to_money(invoice.amount_outstanding) != total - paid:
                warnings.append(
                    f"invoice {invoice.invoice_number} amount_outstanding "
                    f"{to_money(invoice.amount_outstanding)} != total - paid"
                )

        applied = self._allocations.applied_totals_by_payment(customer.id)
        payments = self.session.execute(
            select(Payment).where(Payment.customer_id == customer.id)
        ).scalars()
        for payment in payments:
            face = to_money(payment.amount)
            recorded = to_money(payment.amount_applied)
            expected = applied.get(payment.id, ZERO)
            if recorded != expected:
                warnings.append(
                    f"payment {payment.id} amount_applied {recorded} "
                    f"disagrees with allocations {expected}"
                )
            if recorded + to_money(payment.amount_unapplied) != face:
                warnings.append(
                    f"payment {payment.id} applied + unapplied != amount {face}"
                )

        return OutstandingValidation(
            customer_id=customer.id,
            amount=amount,
            warnings=tuple(warnings),
        )


def _is_overdue(invoice: Invoice, today: date) -> bool:
    if invoice.due_date is not None:
        return invoice.due_date < today
    return invoice.invoice_status == InvoiceStatus.OVERDUE.value
