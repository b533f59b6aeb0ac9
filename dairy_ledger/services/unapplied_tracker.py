"""
UnappliedPaymentTracker -- keeps ``unapplied_payments`` in step with payments.

Responsibility:
    Maintains the "leftover" portion of every payment as a queryable row.
    The table is a materialized view of ``payments.amount_unapplied > 0``:
    one row per payment with credit left, none otherwise.

Architecture position:
    Ledger > Services.  Called at the end of every AllocationEngine and
    ReversalService operation, inside the same transaction, and on its
    own by repair jobs (``reconcile``, ``reconcile_all``).

Invariants enforced:
    - A tracker row exists iff the payment's amount_unapplied > 0, and its
      amount equals the payment's amount_unapplied.
    - ``reconcile`` is idempotent: a second call with no intervening
      allocation change reports ``TrackerAction.UNCHANGED`` and writes
      nothing.

Failure modes:
    - PaymentNotFoundError: ``reconcile`` called for an unknown payment.

Audit relevance:
    Every insert, update and delete of a tracker row is logged with the
    payment id and the amount.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from dairy_ledger.config import LedgerSettings
from dairy_ledger.domain.clock import Clock
from dairy_ledger.domain.dtos import ReconcileOutcome, TrackerAction
from dairy_ledger.domain.values import ZERO, to_money
from dairy_ledger.exceptions import PaymentNotFoundError
from dairy_ledger.logging_config import get_logger
from dairy_ledger.models.payment import Payment
from dairy_ledger.models.unapplied_payment import UnappliedPayment
from dairy_ledger.services.aggregates import AggregateService
from dairy_ledger.services.base import BaseService
from dairy_ledger.services.locking import lock_payment

logger = get_logger("services.unapplied_tracker")


class UnappliedPaymentTracker(BaseService[UnappliedPayment]):
    """
    Reconciles tracker rows against payment counters.

    Usage:
        tracker = UnappliedPaymentTracker(session)
        outcome = tracker.reconcile(payment_id)
        session.commit()
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        settings: LedgerSettings | None = None,
    ):
        super().__init__(session)
        self._settings = settings or LedgerSettings()
        self._aggregates = AggregateService(session, clock)

    def reconcile(self, payment_id: UUID, reason: str | None = None) -> ReconcileOutcome:
        """
        Bring the payment's tracker row in line with its amount_unapplied.

        Locks the payment row, so it is safe to run while payment forms
        are in use.

        Raises:
            PaymentNotFoundError: the payment does not exist.
        """
        payment = lock_payment(self.session, payment_id)
        if payment is None:
            raise PaymentNotFoundError(str(payment_id))
        return self.sync(payment, reason=reason)

    def sync(self, payment: Payment, reason: str | None = None) -> ReconcileOutcome:
        """
        Reconcile the tracker row for an already-locked payment.

        ``reason`` only replaces the stored reason when given; a new row
        falls back to the configured default.
        """
        unapplied = to_money(payment.amount_unapplied)
        row = self.session.execute(
            select(UnappliedPayment).where(UnappliedPayment.payment_id == payment.id)
        ).scalar_one_or_none()

        if unapplied > ZERO:
            if row is None:
                row = UnappliedPayment(
                    customer_id=payment.customer_id,
                    payment_id=payment.id,
                    amount_unapplied=unapplied,
                    reason=reason or self._settings.default_unapplied_reason,
                )
                self.session.add(row)
                self.session.flush()
                logger.info(
                    "unapplied_row_inserted",
                    extra={"payment_id": str(payment.id), "amount_unapplied": str(unapplied)},
                )
                return ReconcileOutcome(payment.id, unapplied, TrackerAction.INSERTED)

            changed = False
            if to_money(row.amount_unapplied) != unapplied:
                row.amount_unapplied = unapplied
                changed = True
            if row.customer_id != payment.customer_id:
                row.customer_id = payment.customer_id
                changed = True
            if reason is not None and row.reason != reason:
                row.reason = reason
                changed = True
            if not changed:
                return ReconcileOutcome(payment.id, unapplied, TrackerAction.UNCHANGED)
            self.session.flush()
            logger.info(
                "unapplied_row_updated",
                extra={"payment_id": str(payment.id), "amount_unapplied": str(unapplied)},
            )
            return ReconcileOutcome(payment.id, unapplied, TrackerAction.UPDATED)

        if row is None:
            return ReconcileOutcome(payment.id, ZERO, TrackerAction.UNCHANGED)
        self.session.delete(row)
        self.session.flush()
        logger.info("unapplied_row_deleted", extra={"payment_id": str(payment.id)})
        return ReconcileOutcome(payment.id, ZERO, TrackerAction.DELETED)

    def reconcile_all(self) -> int:
        """
        Repair job: re-derive every payment's counters from its allocation
        rows and reconcile its tracker row.

        Returns:
            Number of payments whose counters or tracker row changed.
        """
        payment_ids = self.session.execute(
            select(Payment.id).order_by(Payment.id)
        ).scalars().all()

        changed = 0
        for payment_id in payment_ids:
            payment = lock_payment(self.session, payment_id)
            if payment is None:
                continue
            before = (
                to_money(payment.amount_applied),
                to_money(payment.amount_unapplied),
                payment.allocation_status,
            )
            snapshot = self._aggregates.refresh_payment(payment)
            after = (
                snapshot.amount_applied,
                snapshot.amount_unapplied,
                snapshot.allocation_status.value,
            )
            outcome = self.sync(payment)
            if before != after or outcome.changed:
                changed += 1
                logger.warning(
                    "payment_state_repaired",
                    extra={
                        "payment_id": str(payment_id),
                        "tracker_action": outcome.action.value,
                        "amount_unapplied": str(snapshot.amount_unapplied),
                    },
                )

        logger.info(
            "unapplied_reconcile_all_completed",
            extra={"payment_count": len(payment_ids), "changed_count": changed},
        )
        return changed
