"""
AllocationEngine -- distributes a payment across invoices and the opening balance.

Responsibility:
    Validates a user-entered allocation breakdown against the payment's
    remaining balance and against each target's remaining debt, writes the
    allocation rows, and recomputes every aggregate the rows feed.

Architecture position:
    Ledger > Services -- imperative shell.  Pure decisions (amount
    validation, duplicate merging, status derivation) live in
    ``dairy_ledger.domain.allocation_rules``.  This service only locks,
    reads, checks and writes.

Invariants enforced:
    - Σ requested ≤ payment.amount − Σ existing allocation rows of the
      payment (incremental allocation is allowed).
    - Σ opening-balance rows for a customer ≤ customer.opening_balance.
    - Σ invoice rows for an invoice ≤ invoice.total_amount.
    - A target must belong to the payment's customer.
    - Aggregates are recomputed from rows, never incremented.
    - The tracker row is reconciled before returning.

    All checks run after the locks are taken and before the first write.

Lock order:
    payment -> customer -> invoices sorted by id (see ``services.locking``).

Failure modes:
    - InvalidAllocationAmountError: zero, negative or non-finite amount.
    - PaymentNotFoundError: unknown payment.
    - AllocationExceedsPaymentError: request exceeds the remaining balance.
    - TargetNotFoundError: unknown invoice or customer.
    - TargetCustomerMismatchError: target belongs to another customer.
    - AllocationExceedsOpeningBalanceError / AllocationExceedsInvoiceError.

Audit relevance:
    ``allocation_started`` and ``allocation_completed`` are logged with the
    payment id, the requested total and the resulting unapplied amount.
"""

from __future__ import annotations

from typing import Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from dairy_ledger.config import LedgerSettings
from dairy_ledger.domain.allocation_rules import lines_total, normalize_requests
from dairy_ledger.domain.clock import Clock, SystemClock
from dairy_ledger.domain.dtos import (
    AllocationLine,
    AllocationRequest,
    AllocationResult,
    TargetType,
)
from dairy_ledger.domain.values import to_money
from dairy_ledger.exceptions import (
    AllocationExceedsInvoiceError,
    AllocationExceedsOpeningBalanceError,
    AllocationExceedsPaymentError,
    PaymentNotFoundError,
    TargetCustomerMismatchError,
    TargetNotFoundError,
)
from dairy_ledger.logging_config import get_logger
from dairy_ledger.models.allocation import (
    InvoicePaymentAllocation,
    OpeningBalancePaymentAllocation,
)
from dairy_ledger.models.customer import Customer
from dairy_ledger.models.invoice import Invoice
from dairy_ledger.models.payment import Payment
from dairy_ledger.selectors.allocation_selector import AllocationSelector
from dairy_ledger.services.aggregates import AggregateService
from dairy_ledger.services.base import BaseService
from dairy_ledger.services.locking import lock_customer, lock_invoices, lock_payment
from dairy_ledger.services.unapplied_tracker import UnappliedPaymentTracker

logger = get_logger("services.allocation_engine")


class AllocationEngine(BaseService[InvoicePaymentAllocation]):
    """
    Applies allocation breakdowns to payments.

    Usage:
        engine = AllocationEngine(session, clock)
        result = engine.allocate(payment_id, [
            AllocationRequest.opening_balance(customer_id, "200"),
            AllocationRequest.invoice(invoice_id, "800"),
        ])
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        settings: LedgerSettings | None = None,
        tracker: UnappliedPaymentTracker | None = None,
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._allocations = AllocationSelector(session)
        self._aggregates = AggregateService(session, self._clock)
        self._tracker = tracker or UnappliedPaymentTracker(session, self._clock, settings)

    def allocate(
        self,
        payment_id: UUID,
        allocations: Iterable[AllocationRequest | AllocationLine],
        reason: str | None = None,
    ) -> AllocationResult:
        """
        Allocate part or all of a payment's remaining balance.

        Repeated targets in ``allocations`` are merged.  A target that
        already holds part of this payment has its row increased.  An
        empty breakdown only refreshes the payment and its tracker row.

        Args:
            payment_id: Payment to allocate from.
            allocations: Target/amount lines.
            reason: Reason stored on the tracker row if credit remains.

        Returns:
            AllocationResult with post-allocation snapshots.
        """
        lines = normalize_requests(allocations)
        requested = lines_total(lines)

        logger.info(
            "allocation_started",
            extra={
                "payment_id": str(payment_id),
                "line_count": len(lines),
                "requested": str(requested),
            },
        )

        payment = lock_payment(self.session, payment_id)
        if payment is None:
            raise PaymentNotFoundError(str(payment_id))

        amount = to_money(payment.amount)
        available = amount - self._allocations.payment_applied_total(payment.id)
        if requested > available:
            raise AllocationExceedsPaymentError(
                payment_id=str(payment.id),
                requested=requested,
                available=available,
                payment_amount=amount,
            )

        opening_lines = [line for line in lines if line.target_type is TargetType.OPENING_BALANCE]
        invoice_lines = sorted(
            (line for line in lines if line.target_type is TargetType.INVOICE),
            key=lambda line: str(line.target_id),
        )

        opening_remaining = None
        for line in opening_lines:
            customer = self._check_opening_balance_line(payment, line)
            opening_remaining = to_money(customer.opening_balance) - (
                self._allocations.opening_balance_allocated_total(customer.id) + line.amount
            )

        invoices = self._check_invoice_lines(payment, invoice_lines)

        # All checks passed: write.
        for line in opening_lines:
            self._upsert_opening_balance_row(payment, line)
        for line in invoice_lines:
            self._upsert_invoice_row(payment, line)
        self.session.flush()

        invoice_snapshots = tuple(
            self._aggregates.refresh_invoice(invoices[line.target_id]) for line in invoice_lines
        )
        payment_snapshot = self._aggregates.refresh_payment(payment)
        tracker = self._tracker.sync(payment, reason=reason)

        logger.info(
            "allocation_completed",
            extra={
                "payment_id": str(payment.id),
                "allocated": str(requested),
                "amount_applied": str(payment_snapshot.amount_applied),
                "amount_unapplied": str(payment_snapshot.amount_unapplied),
                "allocation_status": payment_snapshot.allocation_status.value,
                "tracker_action": tracker.action.value,
            },
        )

        return AllocationResult(
            payment=payment_snapshot,
            lines=lines,
            allocated_amount=requested,
            invoices=invoice_snapshots,
            opening_balance_remaining=opening_remaining,
            tracker=tracker,
        )

    # =========================================================================
    # Validation
    # =========================================================================

    def _check_opening_balance_line(self, payment: Payment, line: AllocationLine) -> Customer:
        customer = lock_customer(self.session, line.target_id)
        if customer is None:
            raise TargetNotFoundError(
                target_type=TargetType.OPENING_BALANCE.value,
                target_id=str(line.target_id),
            )
        if customer.id != payment.customer_id:
            raise TargetCustomerMismatchError(
                target_type=TargetType.OPENING_BALANCE.value,
                target_id=str(customer.id),
                payment_customer_id=str(payment.customer_id),
                target_customer_id=str(customer.id),
            )
        opening_balance = to_money(customer.opening_balance)
        remaining = opening_balance - self._allocations.opening_balance_allocated_total(
            customer.id
        )
        if line.amount > remaining:
            raise AllocationExceedsOpeningBalanceError(
                customer_id=str(customer.id),
                requested=line.amount,
                remaining=remaining,
                opening_balance=opening_balance,
            )
        return customer

    def _check_invoice_lines(
        self,
        payment: Payment,
        lines: list[AllocationLine],
    ) -> dict[UUID, Invoice]:
        invoices = lock_invoices(self.session, (line.target_id for line in lines))
        for line in lines:
            invoice = invoices.get(line.target_id)
            if invoice is None:
                raise TargetNotFoundError(
                    target_type=TargetType.INVOICE.value,
                    target_id=str(line.target_id),
                )
            if invoice.customer_id != payment.customer_id:
                raise TargetCustomerMismatchError(
                    target_type=TargetType.INVOICE.value,
                    target_id=str(invoice.id),
                    payment_customer_id=str(payment.customer_id),
                    target_customer_id=str(invoice.customer_id),
                )
            total = to_money(invoice.total_amount)
            outstanding = total - self._allocations.invoice_allocated_total(invoice.id)
            if line.amount > outstanding:
                raise AllocationExceedsInvoiceError(
                    invoice_id=str(invoice.id),
                    requested=line.amount,
                    outstanding=outstanding,
                    total_amount=total,
                )
        return invoices

    # =========================================================================
    # Writes
    # =========================================================================

    def _upsert_invoice_row(self, payment: Payment, line: AllocationLine) -> None:
        row = self.session.execute(
            select(InvoicePaymentAllocation).where(
                InvoicePaymentAllocation.payment_id == payment.id,
                InvoicePaymentAllocation.invoice_id == line.target_id,
            )
        ).scalar_one_or_none()
        if row is None:
            self.session.add(
                InvoicePaymentAllocation(
                    invoice_id=line.target_id,
                    payment_id=payment.id,
                    amount_allocated=line.amount,
                )
            )
        else:
            row.amount_allocated = to_money(row.amount_allocated) + line.amount
        logger.debug(
            "invoice_allocation_written",
            extra={
                "payment_id": str(payment.id),
                "invoice_id": str(line.target_id),
                "amount": str(line.amount),
            },
        )

    def _upsert_opening_balance_row(self, payment: Payment, line: AllocationLine) -> None:
        row = self.session.execute(
            select(OpeningBalancePaymentAllocation).where(
                OpeningBalancePaymentAllocation.payment_id == payment.id,
                OpeningBalancePaymentAllocation.customer_id == line.target_id,
            )
        ).scalar_one_or_none()
        if row is None:
            self.session.add(
                OpeningBalancePaymentAllocation(
                    customer_id=line.target_id,
                    payment_id=payment.id,
                    amount=line.amount,
                )
            )
        else:
            row.amount = to_money(row.amount) + line.amount
        logger.debug(
            "opening_balance_allocation_written",
            extra={
                "payment_id": str(payment.id),
                "customer_id": str(line.target_id),
                "amount": str(line.amount),
            },
        )
