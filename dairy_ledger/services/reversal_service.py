"""
ReversalService -- undoes payment allocations before edits and deletes.

Responsibility:
    Removes a payment's allocation rows and recomputes everything they fed,
    and builds the edit/delete flows on top of that: changing a payment's
    face amount, deleting a payment, and deleting an invoice that payments
    were allocated to.

Architecture position:
    Ledger > Services -- imperative shell.  Re-allocation goes back through
    ``AllocationEngine.allocate`` so every rule of a fresh allocation also
    applies to a re-allocation.

Invariants enforced:
    - After ``reverse_allocations`` the payment is
      {amount_applied: 0, amount_unapplied: amount, allocation_status: unapplied}
      and holds no allocation rows.
    - Invoices that lost a row are recomputed from their remaining rows,
      which may belong to other payments.
    - The face amount of an allocated payment only changes together with a
      new allocation breakdown (``ReallocationRequiredError`` otherwise).
    - An invoice with allocation rows is only deleted when the caller asks
      for re-allocation.

Lock order:
    payment -> customer -> invoices sorted by id, as in AllocationEngine.
    Payment edits and ``delete_invoice`` take every lock they need, in that
    order, before the first reversal; a payment that appears on the invoice
    only after the locks is refused with ``AllocationConflictError``.

Failure modes:
    - PaymentNotFoundError / InvoiceNotFoundError: unknown id.
    - InvalidPaymentAmountError: new face amount is not a positive number.
    - ReallocationRequiredError: see above.
    - Any AllocationError raised by the re-allocation step; the caller
      rolls the whole transaction back.
"""

from __future__ import annotations

from decimal import Decimal
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
    InvoiceDeletionResult,
    PaymentUpdateResult,
    ReversalResult,
    TargetType,
)
from dairy_ledger.domain.values import ZERO, NonFiniteAmount, money_sum, to_money
from dairy_ledger.exceptions import (
    AllocationConflictError,
    AllocationExceedsPaymentError,
    InvalidPaymentAmountError,
    InvoiceNotFoundError,
    PaymentNotFoundError,
    ReallocationRequiredError,
)
from dairy_ledger.logging_config import get_logger
from dairy_ledger.models.allocation import (
    InvoicePaymentAllocation,
    OpeningBalancePaymentAllocation,
)
from dairy_ledger.models.invoice import Invoice
from dairy_ledger.models.payment import Payment
from dairy_ledger.models.unapplied_payment import UnappliedPayment
from dairy_ledger.selectors.allocation_selector import AllocationSelector
from dairy_ledger.services.aggregates import AggregateService, payment_snapshot
from dairy_ledger.services.allocation_engine import AllocationEngine
from dairy_ledger.services.base import BaseService
from dairy_ledger.services.locking import (
    lock_customer,
    lock_invoices,
    lock_payment,
    lock_payments,
)
from dairy_ledger.services.unapplied_tracker import UnappliedPaymentTracker

logger = get_logger("services.reversal")


class ReversalService(BaseService[Payment]):
    """Reverses and re-applies payment allocations."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        settings: LedgerSettings | None = None,
        engine: AllocationEngine | None = None,
        tracker: UnappliedPaymentTracker | None = None,
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._tracker = tracker or UnappliedPaymentTracker(session, self._clock, settings)
        self._engine = engine or AllocationEngine(
            session, self._clock, settings, tracker=self._tracker
        )
        self._allocations = AllocationSelector(session)
        self._aggregates = AggregateService(session, self._clock)

    def _lock_payment(self, payment_id: UUID) -> Payment:
        payment = lock_payment(self.session, payment_id)
        if payment is None:
            raise PaymentNotFoundError(str(payment_id))
        return payment

    # =========================================================================
    # Reversal
    # =========================================================================

    def reverse_allocations(self, payment_id: UUID) -> ReversalResult:
        """
        Delete every allocation row of a payment and recompute what they fed.

        Returns:
            ReversalResult with the reset payment and the recomputed invoices.

        Raises:
            PaymentNotFoundError: the payment does not exist.
        """
        payment = self._lock_payment(payment_id)
        invoices = lock_invoices(
            self.session, self._allocations.invoice_ids_for_payment(payment.id)
        )

        invoice_rows = self.session.execute(
            select(InvoicePaymentAllocation).where(
                InvoicePaymentAllocation.payment_id == payment.id
            )
        ).scalars().all()
        opening_rows = self.session.execute(
            select(OpeningBalancePaymentAllocation).where(
                OpeningBalancePaymentAllocation.payment_id == payment.id
            )
        ).scalars().all()

        removed_amount = money_sum(row.amount_allocated for row in invoice_rows) + money_sum(
            row.amount for row in opening_rows
        )

        for row in invoice_rows:
            self.session.delete(row)
        for row in opening_rows:
            self.session.delete(row)
        self.session.flush()

        invoice_snapshots = tuple(
            self._aggregates.refresh_invoice(invoices[invoice_id])
            for invoice_id in sorted(invoices, key=str)
        )
        snapshot = self._aggregates.refresh_payment(payment)
        tracker = self._tracker.sync(payment)

        logger.info(
            "allocations_reversed",
            extra={
                "payment_id": str(payment.id),
                "removed_invoice_allocations": len(invoice_rows),
                "removed_opening_balance_allocations": len(opening_rows),
                "removed_amount": str(removed_amount),
            },
        )

        return ReversalResult(
            payment=snapshot,
            removed_invoice_allocations=len(invoice_rows),
            removed_opening_balance_allocations=len(opening_rows),
            removed_amount=removed_amount,
            invoices=invoice_snapshots,
            tracker=tracker,
        )

    # =========================================================================
    # Payment edits
    # =========================================================================

    def update_payment_amount(
        self,
        payment_id: UUID,
        new_amount: Decimal | str | int | float,
        new_allocations: Iterable[AllocationRequest] | None = None,
    ) -> PaymentUpdateResult:
        """
        Change a payment's face amount.

        An unapplied payment takes the new amount directly and then any
        ``new_allocations``.  An allocated payment needs a new breakdown
        whenever its amount changes: the old allocations are reversed and
        the new ones applied in the same transaction.

        Raises:
            InvalidPaymentAmountError: ``new_amount`` is not a positive number.
            ReallocationRequiredError: amount of an allocated payment changed
                without ``new_allocations``.
            AllocationExceedsPaymentError: ``new_allocations`` sum to more
                than ``new_amount``.
        """
        amount = _validate_payment_amount(new_amount)
        lines = None if new_allocations is None else normalize_requests(new_allocations)

        payment = self._lock_payment(payment_id)
        previous = to_money(payment.amount)
        applied = self._allocations.payment_applied_total(payment.id)

        if lines is not None and lines_total(lines) > amount:
            raise AllocationExceedsPaymentError(
                payment_id=str(payment.id),
                requested=lines_total(lines),
                available=amount,
                payment_amount=amount,
            )

        if applied == ZERO:
            payment.amount = amount
            self.session.flush()
            self._aggregates.refresh_payment(payment)
            allocation = None
            if lines:
                allocation = self._engine.allocate(payment.id, lines)
            else:
                self._tracker.sync(payment)
            self._log_amount_change(payment, previous, amount, reallocated=False)
            return PaymentUpdateResult(
                payment=payment_snapshot(payment),
                previous_amount=previous,
                allocation=allocation,
            )

        if lines is None:
            if amount == previous:
                return PaymentUpdateResult(
                    payment=payment_snapshot(payment),
                    previous_amount=previous,
                )
            logger.warning(
                "payment_amount_change_rejected",
                extra={
                    "payment_id": str(payment.id),
                    "previous_amount": str(previous),
                    "new_amount": str(amount),
                    "amount_applied": str(applied),
                },
            )
            raise ReallocationRequiredError(
                entity_type="payment",
                entity_id=str(payment.id),
                reason="payment has allocations; supply a new allocation breakdown",
            )

        # Every lock the re-allocation needs is taken before reversing.
        lock_customer(self.session, payment.customer_id)
        lock_invoices(
            self.session,
            set(self._allocations.invoice_ids_for_payment(payment.id))
            | {line.target_id for line in lines if line.target_type is TargetType.INVOICE},
        )
        reversal = self.reverse_allocations(payment.id)
        payment.amount = amount
        self.session.flush()
        self._aggregates.refresh_payment(payment)
        allocation = self._engine.allocate(payment.id, lines)
        self._log_amount_change(payment, previous, amount, reallocated=True)
        return PaymentUpdateResult(
            payment=payment_snapshot(payment),
            previous_amount=previous,
            reversal=reversal,
            allocation=allocation,
        )

    def _log_amount_change(
        self, payment: Payment, previous: Decimal, amount: Decimal, reallocated: bool
    ) -> None:
        logger.info(
            "payment_amount_updated",
            extra={
                "payment_id": str(payment.id),
                "previous_amount": str(previous),
                "new_amount": str(amount),
                "reallocated": reallocated,
            },
        )

    def delete_payment(self, payment_id: UUID) -> ReversalResult:
        """Reverse a payment's allocations, then remove its tracker row and the payment."""
        reversal = self.reverse_allocations(payment_id)
        payment = self._lock_payment(payment_id)
        tracker_row = self.session.execute(
            select(UnappliedPayment).where(UnappliedPayment.payment_id == payment.id)
        ).scalar_one_or_none()
        if tracker_row is not None:
            self.session.delete(tracker_row)
            self.session.flush()
        self.session.delete(payment)
        self.session.flush()
        logger.info(
            "payment_deleted",
            extra={"payment_id": str(payment_id), "amount": str(reversal.payment.amount)},
        )
        return reversal

    # =========================================================================
    # Invoice deletion
    # =========================================================================

    def delete_invoice(self, invoice_id: UUID, reallocate: bool = False) -> InvoiceDeletionResult:
        """
        Delete an invoice.

        With allocation rows present the call is refused unless
        ``reallocate`` is set.  Then every affected payment is reversed,
        the invoice is removed, and each payment's allocations to its other
        targets are applied again.  The amount that was on this invoice
        becomes unapplied credit.

        The affected payments, the customer and every invoice those
        payments touch are locked in that order before anything is
        reversed.

        Raises:
            InvoiceNotFoundError: the invoice does not exist.
            ReallocationRequiredError: allocations exist and ``reallocate``
                is False.
            AllocationConflictError: another payment was allocated to the
                invoice between the first read and the locks.
        """
        unlocked = self.session.get(Invoice, invoice_id)
        if unlocked is None:
            raise InvoiceNotFoundError(str(invoice_id))

        payment_ids = self._allocations.payment_ids_for_invoice(invoice_id)
        if payment_ids and not reallocate:
            self._raise_invoice_has_allocations(invoice_id, len(payment_ids))

        lock_payments(self.session, payment_ids)
        lock_customer(self.session, unlocked.customer_id)
        invoice_ids = {invoice_id}
        for payment_id in payment_ids:
            invoice_ids.update(self._allocations.invoice_ids_for_payment(payment_id))
        invoice = lock_invoices(self.session, invoice_ids).get(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(str(invoice_id))

        locked_ids = self._allocations.payment_ids_for_invoice(invoice.id)
        if locked_ids and not reallocate:
            self._raise_invoice_has_allocations(invoice.id, len(locked_ids))
        late = set(locked_ids) - set(payment_ids)
        if late:
            logger.warning(
                "invoice_delete_conflict",
                extra={
                    "invoice_id": str(invoice.id),
                    "late_payment_ids": sorted(str(pid) for pid in late),
                },
            )
            raise AllocationConflictError(entity_type="invoice", entity_id=str(invoice.id))

        released = self._allocations.invoice_allocated_total(invoice.id)
        remaining: dict[UUID, tuple[AllocationLine, ...]] = {}
        for payment_id in locked_ids:
            remaining[payment_id] = tuple(
                line
                for line in self._allocations.allocation_lines_for_payment(payment_id)
                if line.target_id != invoice.id
            )
            self.reverse_allocations(payment_id)

        self.session.delete(invoice)
        self.session.flush()

        for payment_id in locked_ids:
            lines = remaining[payment_id]
            if lines:
                self._engine.allocate(payment_id, lines)

        logger.info(
            "invoice_deleted",
            extra={
                "invoice_id": str(invoice_id),
                "reallocated_payments": len(locked_ids),
                "released_amount": str(released),
            },
        )
        return InvoiceDeletionResult(
            invoice_id=invoice.id,
            reallocated_payments=tuple(locked_ids),
            released_amount=released,
        )

    def _raise_invoice_has_allocations(self, invoice_id: UUID, payment_count: int) -> None:
        logger.warning(
            "invoice_delete_rejected",
            extra={"invoice_id": str(invoice_id), "payment_count": payment_count},
        )
        raise ReallocationRequiredError(
            entity_type="invoice",
            entity_id=str(invoice_id),
            reason=f"invoice has allocations from {payment_count} payment(s)",
        )


def _validate_payment_amount(value: object) -> Decimal:
    try:
        amount = to_money(value)
    except NonFiniteAmount as exc:
        raise InvalidPaymentAmountError(amount=value, reason=str(exc)) from exc
    if amount <= ZERO:
        raise InvalidPaymentAmountError(
            amount=value, reason="payment amount must be greater than zero"
        )
    return amount
