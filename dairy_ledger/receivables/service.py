"""
Receivables Service - the single entry point for payment forms, invoice
lifecycle logic and reports.

Thin glue layer that:
1. Calls LedgerRecordService to create customers, invoices and payments
2. Calls AllocationEngine to distribute payments
3. Calls ReversalService for payment edits and invoice / payment deletes
4. Calls UnappliedPaymentTracker for repair jobs
5. Calls OutstandingSelector and CreditSelector for reports

All rules live in the services and the domain layer.
This service owns the transaction boundary: every mutating method commits
on success and rolls back on any exception, re-raising it unchanged.  A
rejected operation therefore never leaves partial state behind, and the
caller can retry the same request after an infrastructure failure.

Each call runs inside ``LogContext.operation``, so every record the
services log during it shares one correlation id.

The opening-balance immutability listeners are registered by
``init_engine_from_url``.  A caller that builds its own engine and session
must call ``register_immutability_listeners()`` itself.

Usage:
    service = ReceivablesService(session, clock)
    payment = service.record_payment(customer_id, Decimal("1000.00"))
    result = service.allocate(payment.id, [
        AllocationRequest.invoice(invoice_id, Decimal("600.00")),
        AllocationRequest.invoice(other_invoice_id, Decimal("400.00")),
    ])

    # Payment and breakdown in one transaction
    payment = service.record_payment(customer_id, "500", allocations=[
        AllocationRequest.opening_balance(customer_id, "500"),
    ])
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Iterable, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from dairy_ledger.config import LedgerSettings
from dairy_ledger.domain.clock import Clock, SystemClock
from dairy_ledger.domain.dtos import (
    AllocationRequest,
    AllocationResult,
    BulkPaymentError,
    BulkPaymentResult,
    CustomerCreditInfo,
    CustomerInfo,
    CustomerOutstanding,
    InvoiceDeletionResult,
    InvoiceSnapshot,
    InvoiceStatus,
    NetCreditRow,
    OutstandingDashboard,
    OutstandingValidation,
    PaymentEntry,
    PaymentSnapshot,
    PaymentUpdateResult,
    ReconcileOutcome,
    ReversalResult,
    UnappliedDiscrepancy,
    UnappliedPaymentRow,
    UnappliedPaymentStats,
)
from dairy_ledger.exceptions import DairyLedgerError
from dairy_ledger.logging_config import LogContext, get_logger
from dairy_ledger.selectors.credit_selector import CreditSelector
from dairy_ledger.selectors.outstanding_selector import OutstandingSelector
from dairy_ledger.services.allocation_engine import AllocationEngine
from dairy_ledger.services.ledger_records import LedgerRecordService
from dairy_ledger.services.reversal_service import ReversalService
from dairy_ledger.services.unapplied_tracker import UnappliedPaymentTracker

logger = get_logger("receivables.service")


class ReceivablesService:
    """
    Orchestrates payment allocation and outstanding reporting.

    Service composition:
    - LedgerRecordService: customers, invoices, payments
    - AllocationEngine: allocate
    - ReversalService: reverse, update amount, delete payment / invoice
    - UnappliedPaymentTracker: reconcile, reconcile_all
    - OutstandingSelector / CreditSelector: read side

    Transaction boundary: this service commits on success, rolls back on failure.
    All write services share one session and one tracker so an operation's
    rows, aggregates and tracker update commit together.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        settings: LedgerSettings | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._settings = settings or LedgerSettings()

        self._tracker = UnappliedPaymentTracker(session, self._clock, self._settings)
        self._records = LedgerRecordService(
            session, self._clock, self._settings, tracker=self._tracker
        )
        self._engine = AllocationEngine(
            session, self._clock, self._settings, tracker=self._tracker
        )
        self._reversal = ReversalService(
            session,
            self._clock,
            self._settings,
            engine=self._engine,
            tracker=self._tracker,
        )

        self._outstanding = OutstandingSelector(session, self._clock, self._settings)
        self._credit = CreditSelector(session, self._clock)

    # =========================================================================
    # Ledger records
    # =========================================================================

    def onboard_customer(
        self,
        name: str,
        opening_balance: Decimal | str | int = Decimal("0.00"),
        route: str | None = None,
        status: str = "active",
    ) -> CustomerInfo:
        with LogContext.operation("onboard_customer"):
            try:
                customer = self._records.onboard_customer(
                    name=name,
                    opening_balance=opening_balance,
                    route=route,
                    status=status,
                )
                self._session.commit()
                logger.info("customer_onboard_committed", extra={"customer_id": str(customer.id)})
                return customer

            except Exception:
                self._session.rollback()
                raise

    def record_invoice(
        self,
        customer_id: UUID,
        invoice_number: str,
        invoice_date: date,
        total_amount: Decimal | str | int,
        due_date: date | None = None,
        status: InvoiceStatus | str = InvoiceStatus.PENDING,
    ) -> InvoiceSnapshot:
        with LogContext.operation("record_invoice", customer_id=customer_id):
            try:
                invoice = self._records.record_invoice(
                    customer_id=customer_id,
                    invoice_number=invoice_number,
                    invoice_date=invoice_date,
                    total_amount=total_amount,
                    due_date=due_date,
                    status=status,
                )
                self._session.commit()
                logger.info("invoice_record_committed", extra={"invoice_id": str(invoice.id)})
                return invoice

            except Exception:
                self._session.rollback()
                raise

    def record_payment(
        self,
        customer_id: UUID,
        amount: Decimal | str | int,
        payment_date: date | None = None,
        payment_method: str | None = None,
        notes: str | None = None,
        allocations: Iterable[AllocationRequest] | None = None,
    ) -> PaymentSnapshot:
        """
        Record a payment, optionally together with its allocation breakdown.

        The payment row and its allocations commit together: a rejected
        breakdown leaves no payment behind.  Returns the payment as it
        stands after allocation.
        """
        with LogContext.operation("record_payment", customer_id=customer_id):
            try:
                payment = self._record_payment(
                    customer_id, amount, payment_date, payment_method, notes, allocations
                )
                self._session.commit()
                logger.info(
                    "payment_record_committed",
                    extra={
                        "payment_id": str(payment.id),
                        "allocation_status": payment.allocation_status.value,
                    },
                )
                return payment

            except Exception:
                self._session.rollback()
                raise

    def _record_payment(
        self,
        customer_id: UUID,
        amount: Decimal | str | int,
        payment_date: date | None,
        payment_method: str | None,
        notes: str | None,
        allocations: Iterable[AllocationRequest] | None,
    ) -> PaymentSnapshot:
        payment = self._records.record_payment(
            customer_id=customer_id,
            amount=amount,
            payment_date=payment_date,
            payment_method=payment_method,
            notes=notes,
        )
        requests = list(allocations or ())
        if not requests:
            return payment
        with LogContext.bind(payment_id=payment.id):
            return self._engine.allocate(payment.id, requests).payment

    def record_bulk_payments(self, entries: Sequence[PaymentEntry]) -> BulkPaymentResult:
        """
        Record a batch of payments from the bulk entry screen.

        Rows are processed in order and each one commits on its own, so a
        rejected row does not undo the rows before it.  Ledger errors are
        collected per row index; any other exception stops the batch and
        propagates with the earlier rows already committed.
        """
        payment_ids: list[UUID] = []
        errors: list[BulkPaymentError] = []

        with LogContext.operation("record_bulk_payments"):
            for index, entry in enumerate(entries):
                try:
                    payment = self.record_payment(
                        entry.customer_id,
                        entry.amount,
                        payment_date=entry.payment_date,
                        payment_method=entry.payment_method,
                        notes=entry.notes,
                        allocations=entry.allocations,
                    )
                except DairyLedgerError as exc:
                    logger.warning(
                        "bulk_payment_row_rejected",
                        extra={"row_index": index, "error_code": exc.code},
                    )
                    errors.append(BulkPaymentError(index=index, code=exc.code, message=str(exc)))
                    continue
                payment_ids.append(payment.id)

            logger.info(
                "bulk_payments_completed",
                extra={
                    "total": len(entries),
                    "processed": len(payment_ids),
                    "rejected": len(errors),
                },
            )

        return BulkPaymentResult(
            total=len(entries),
            payment_ids=tuple(payment_ids),
            errors=tuple(errors),
        )

    # =========================================================================
    # Allocation
    # =========================================================================

    def allocate(
        self,
        payment_id: UUID,
        allocations: Iterable[AllocationRequest],
        reason: str | None = None,
    ) -> AllocationResult:
        """Allocate a payment.  Nothing is written if any line is rejected."""
        with LogContext.operation("allocate", payment_id=payment_id):
            try:
                result = self._engine.allocate(payment_id, list(allocations), reason=reason)
                self._session.commit()
                logger.info(
                    "allocation_committed",
                    extra={
                        "allocated": str(result.allocated_amount),
                        "allocation_status": result.payment.allocation_status.value,
                    },
                )
                return result

            except Exception:
                self._session.rollback()
                logger.warning("allocation_rolled_back", extra={"payment_id": str(payment_id)})
                raise

    # =========================================================================
    # Reversal / reallocation
    # =========================================================================

    def reverse_allocations(self, payment_id: UUID) -> ReversalResult:
        with LogContext.operation("reverse_allocations", payment_id=payment_id):
            try:
                result = self._reversal.reverse_allocations(payment_id)
                self._session.commit()
                logger.info(
                    "reversal_committed",
                    extra={"removed_amount": str(result.removed_amount)},
                )
                return result

            except Exception:
                self._session.rollback()
                raise

    def update_payment_amount(
        self,
        payment_id: UUID,
        new_amount: Decimal | str | int,
        new_allocations: Iterable[AllocationRequest] | None = None,
    ) -> PaymentUpdateResult:
        """
        Change a payment's face amount, re-allocating when it was allocated.

        Reversal and re-allocation commit together or not at all.
        """
        with LogContext.operation("update_payment_amount", payment_id=payment_id):
            try:
                result = self._reversal.update_payment_amount(
                    payment_id,
                    new_amount,
                    None if new_allocations is None else list(new_allocations),
                )
                self._session.commit()
                logger.info(
                    "payment_update_committed",
                    extra={
                        "previous_amount": str(result.previous_amount),
                        "new_amount": str(result.payment.amount),
                    },
                )
                return result

            except Exception:
                self._session.rollback()
                raise

    def delete_payment(self, payment_id: UUID) -> ReversalResult:
        with LogContext.operation("delete_payment", payment_id=payment_id):
            try:
                result = self._reversal.delete_payment(payment_id)
                self._session.commit()
                logger.info("payment_delete_committed")
                return result

            except Exception:
                self._session.rollback()
                raise

    def delete_invoice(self, invoice_id: UUID, reallocate: bool = False) -> InvoiceDeletionResult:
        """
        Delete an invoice, reversing and re-applying its payments when asked.

        ``AllocationConflictError`` means another payment was allocated to
        the invoice mid-call; nothing was written and the call can be repeated.
        """
        with LogContext.operation("delete_invoice", invoice_id=invoice_id):
            try:
                result = self._reversal.delete_invoice(invoice_id, reallocate=reallocate)
                self._session.commit()
                logger.info(
                    "invoice_delete_committed",
                    extra={"reallocated_payments": len(result.reallocated_payments)},
                )
                return result

            except Exception:
                self._session.rollback()
                raise

    # =========================================================================
    # Unapplied payment tracker
    # =========================================================================

    def reconcile_unapplied(self, payment_id: UUID) -> ReconcileOutcome:
        with LogContext.operation("reconcile_unapplied", payment_id=payment_id):
            try:
                outcome = self._tracker.reconcile(payment_id)
                self._session.commit()
                return outcome

            except Exception:
                self._session.rollback()
                raise

    def reconcile_all(self) -> int:
        """Repair every payment's counters and tracker row; returns the number changed."""
        with LogContext.operation("reconcile_all"):
            try:
                changed = self._tracker.reconcile_all()
                self._session.commit()
                logger.info("reconcile_all_committed", extra={"changed_count": changed})
                return changed

            except Exception:
                self._session.rollback()
                raise

    # =========================================================================
    # Reports (read-only, no commit)
    # =========================================================================

    def original_opening_balance(self, customer_id: UUID) -> Decimal:
        return self._outstanding.original_opening_balance(customer_id)

    def effective_opening_balance(self, customer_id: UUID) -> Decimal:
        return self._outstanding.effective_opening_balance(customer_id)

    def invoice_outstanding(self, customer_id: UUID) -> Decimal:
        return self._outstanding.invoice_outstanding(customer_id)

    def total_outstanding(self, customer_id: UUID) -> Decimal:
        return self._outstanding.total_outstanding(customer_id)

    def customer_outstanding(self, customer_id: UUID) -> CustomerOutstanding:
        return self._outstanding.customer_outstanding(customer_id)

    def outstanding_dashboard(self) -> OutstandingDashboard:
        return self._outstanding.outstanding_dashboard()

    def validate_outstanding(self, customer_id: UUID) -> OutstandingValidation:
        result = self._outstanding.validate_outstanding(customer_id)
        if result.requires_review:
            logger.warning(
                "outstanding_requires_review",
                extra={
                    "customer_id": str(customer_id),
                    "amount": str(result.amount),
                    "warnings": list(result.warnings),
                },
            )
        return result

    def unapplied_payments(self, customer_id: UUID | None = None) -> list[UnappliedPaymentRow]:
        return self._credit.unapplied_payments(customer_id)

    def customer_credit_info(self, customer_id: UUID) -> CustomerCreditInfo:
        return self._credit.customer_credit_info(customer_id)

    def unapplied_payment_stats(self) -> UnappliedPaymentStats:
        return self._credit.unapplied_payment_stats()

    def customers_with_net_credit(self) -> list[NetCreditRow]:
        return self._credit.customers_with_net_credit()

    def unapplied_discrepancies(self) -> list[UnappliedDiscrepancy]:
        return self._credit.unapplied_discrepancies()
