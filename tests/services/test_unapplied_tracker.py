"""
Tests for UnappliedPaymentTracker.

The tracker row must exist exactly when a payment has credit left, and
carry that amount.  Repair tests corrupt rows behind the services' back
and check that reconcile puts them right.
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from dairy_ledger.domain.dtos import AllocationRequest, TrackerAction
from dairy_ledger.exceptions import PaymentNotFoundError
from dairy_ledger.models.payment import Payment
from dairy_ledger.models.unapplied_payment import UnappliedPayment


def _tracker_row(session, payment_id):
    return session.execute(
        select(UnappliedPayment).where(UnappliedPayment.payment_id == payment_id)
    ).scalar_one_or_none()


class TestReconcile:

    def test_new_payment_has_tracker_row(self, session, customer, make_payment):
        payment = make_payment(customer.id, "250")

        row = _tracker_row(session, payment.id)
        assert row is not None
        assert row.amount_unapplied == Decimal("250.00")
        assert row.customer_id == customer.id
        assert row.reason == "Payment not fully allocated"

    def test_reconcile_is_idempotent(self, receivables, customer, make_payment):
        payment = make_payment(customer.id, "250")

        first = receivables.reconcile_unapplied(payment.id)
        second = receivables.reconcile_unapplied(payment.id)

        assert first.action is TrackerAction.UNCHANGED
        assert second.action is TrackerAction.UNCHANGED
        assert not second.changed

    def test_missing_row_is_inserted(self, session, receivables, customer, make_payment):
        payment = make_payment(customer.id, "250")
        session.delete(_tracker_row(session, payment.id))
        session.commit()

        outcome = receivables.reconcile_unapplied(payment.id)

        assert outcome.action is TrackerAction.INSERTED
        assert _tracker_row(session, payment.id).amount_unapplied == Decimal("250.00")

    def test_wrong_amount_is_updated(self, session, receivables, customer, make_payment):
        payment = make_payment(customer.id, "250")
        _tracker_row(session, payment.id).amount_unapplied = Decimal("999.00")
        session.commit()

        outcome = receivables.reconcile_unapplied(payment.id)

        assert outcome.action is TrackerAction.UPDATED
        assert outcome.amount_unapplied == Decimal("250.00")
        assert _tracker_row(session, payment.id).amount_unapplied == Decimal("250.00")

    def test_stale_row_on_applied_payment_is_deleted(
        self, session, receivables, customer, make_invoice, make_payment
    ):
        invoice = make_invoice(customer.id, "100")
        payment = make_payment(customer.id, "100")
        receivables.allocate(payment.id, [AllocationRequest.invoice(invoice.id, "100")])
        session.add(
            UnappliedPayment(
                customer_id=customer.id,
                payment_id=payment.id,
                amount_unapplied=Decimal("100.00"),
                reason="stale",
            )
        )
        session.commit()

        outcome = receivables.reconcile_unapplied(payment.id)

        assert outcome.action is TrackerAction.DELETED
        assert _tracker_row(session, payment.id) is None

    def test_unknown_payment(self, receivables):
        with pytest.raises(PaymentNotFoundError):
            receivables.reconcile_unapplied(uuid4())


class TestReconcileAll:

    def test_clean_ledger_changes_nothing(
        self, receivables, customer, make_invoice, make_payment
    ):
        invoice = make_invoice(customer.id, "100")
        payment = make_payment(customer.id, "300")
        make_payment(customer.id, "50")
        receivables.allocate(payment.id, [AllocationRequest.invoice(invoice.id, "100")])

        assert receivables.reconcile_all() == 0
        assert receivables.unapplied_discrepancies() == []

    def test_repairs_counters_and_rows(
        self, session, receivables, customer, make_invoice, make_payment, captured_logs
    ):
        invoice = make_invoice(customer.id, "100")
        damaged = make_payment(customer.id, "300")
        untouched = make_payment(customer.id, "50")
        receivables.allocate(damaged.id, [AllocationRequest.invoice(invoice.id, "100")])

        # Counters and tracker row drift away from the allocation rows.
        payment = session.get(Payment, damaged.id)
        payment.amount_applied = Decimal("0.00")
        payment.amount_unapplied = Decimal("300.00")
        payment.allocation_status = "unapplied"
        session.delete(_tracker_row(session, damaged.id))
        session.commit()

        assert [d.payment_id for d in receivables.unapplied_discrepancies()] == [damaged.id]

        assert receivables.reconcile_all() == 1

        repaired = session.get(Payment, damaged.id)
        assert repaired.amount_applied == Decimal("100.00")
        assert repaired.amount_unapplied == Decimal("200.00")
        assert repaired.allocation_status == "partially_applied"
        assert _tracker_row(session, damaged.id).amount_unapplied == Decimal("200.00")
        assert _tracker_row(session, untouched.id).amount_unapplied == Decimal("50.00")
        assert receivables.unapplied_discrepancies() == []

        repaired_logs = [r for r in captured_logs() if r["message"] == "payment_state_repaired"]
        assert len(repaired_logs) == 1
        assert repaired_logs[0]["payment_id"] == str(damaged.id)
