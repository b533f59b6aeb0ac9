"""
AggregateService -- recomputes cached aggregates from allocation rows.

Invoice ``amount_paid`` / ``amount_outstanding`` / ``invoice_status`` and
payment ``amount_applied`` / ``amount_unapplied`` / ``allocation_status``
are a cache of a query over the allocation rows.  They are never
incremented or decremented; after every allocation change the affected
rows are summed again and the cache is overwritten.

Callers must hold the row lock on the invoice or payment being refreshed.
Row sums beyond an invoice total or a payment amount raise instead of
being written.
"""

from __future__ import annotations

from sqlalchemy.orm import Session

from dairy_ledger.domain.allocation_rules import (
    derive_allocation_status,
    derive_invoice_status,
)
from dairy_ledger.domain.clock import Clock, SystemClock
from dairy_ledger.domain.dtos import (
    AllocationStatus,
    CustomerInfo,
    InvoiceSnapshot,
    InvoiceStatus,
    PaymentSnapshot,
)
from dairy_ledger.domain.values import ZERO, to_money
from dairy_ledger.exceptions import AllocationExceedsInvoiceError, AllocationExceedsPaymentError
from dairy_ledger.logging_config import get_logger
from dairy_ledger.models.customer import Customer
from dairy_ledger.models.invoice import Invoice
from dairy_ledger.models.payment import Payment
from dairy_ledger.selectors.allocation_selector import AllocationSelector
from dairy_ledger.services.base import BaseService

logger = get_logger("services.aggregates")


def customer_info(customer: Customer) -> CustomerInfo:
    return CustomerInfo(
        id=customer.id,
        name=customer.name,
        opening_balance=to_money(customer.opening_balance),
        route=customer.route,
        status=customer.status,
    )


def invoice_snapshot(invoice: Invoice) -> InvoiceSnapshot:
    return InvoiceSnapshot(
        id=invoice.id,
        customer_id=invoice.customer_id,
        invoice_number=invoice.invoice_number,
        invoice_date=invoice.invoice_date,
        due_date=invoice.due_date,
        total_amount=to_money(invoice.total_amount),
        amount_paid=to_money(invoice.amount_paid),
        amount_outstanding=to_money(invoice.amount_outstanding),
        status=InvoiceStatus(invoice.invoice_status),
    )


def payment_snapshot(payment: Payment) -> PaymentSnapshot:
    return PaymentSnapshot(
        id=payment.id,
        customer_id=payment.customer_id,
        payment_date=payment.payment_date,
        amount=to_money(payment.amount),
        amount_applied=to_money(payment.amount_applied),
        amount_unapplied=to_money(payment.amount_unapplied),
        allocation_status=AllocationStatus(payment.allocation_status),
        payment_method=payment.payment_method,
    )


class AggregateService(BaseService[Invoice]):
    """Overwrites invoice and payment aggregates with sums of their rows."""

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._allocations = AllocationSelector(session)

    def refresh_invoice(self, invoice: Invoice) -> InvoiceSnapshot:
        """
        Recompute amount_paid, amount_outstanding and status for ``invoice``.

        Raises:
            AllocationExceedsInvoiceError: the invoice's rows sum to more
                than its total.
        """
        total = to_money(invoice.total_amount)
        paid = self._allocations.invoice_allocated_total(invoice.id)
        outstanding = total - paid
        if outstanding < ZERO:
            logger.error(
                "invoice_over_allocated",
                extra={
                    "invoice_id": str(invoice.id),
                    "total_amount": str(total),
                    "allocated": str(paid),
                },
            )
            raise AllocationExceedsInvoiceError(
                invoice_id=str(invoice.id),
                requested=paid,
                outstanding=total,
                total_amount=total,
            )
        status = derive_invoice_status(
            invoice.invoice_status,
            amount_paid=paid,
            amount_outstanding=outstanding,
            due_date=invoice.due_date,
            today=self._clock.today(),
        )
        invoice.amount_paid = paid
        invoice.amount_outstanding = outstanding
        invoice.invoice_status = status.value
        self.session.flush()
        return invoice_snapshot(invoice)

    def refresh_payment(self, payment: Payment) -> PaymentSnapshot:
        """
        Recompute amount_applied, amount_unapplied and allocation_status.

        Raises:
            AllocationExceedsPaymentError: the payment's rows sum to more
                than its amount.
        """
        amount = to_money(payment.amount)
        applied = self._allocations.payment_applied_total(payment.id)
        unapplied = amount - applied
        if unapplied < ZERO:
            logger.error(
                "payment_over_allocated",
                extra={
                    "payment_id": str(payment.id),
                    "amount": str(amount),
                    "applied": str(applied),
                },
            )
            raise AllocationExceedsPaymentError(
                payment_id=str(payment.id),
                requested=applied,
                available=amount,
                payment_amount=amount,
            )
        payment.amount_applied = applied
        payment.amount_unapplied = unapplied
        payment.allocation_status = derive_allocation_status(applied, unapplied).value
        self.session.flush()
        return payment_snapshot(payment)
