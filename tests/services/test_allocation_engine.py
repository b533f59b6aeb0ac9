"""
Tests for AllocationEngine.allocate.

Scenario tests (A-E) walk the documented allocation stories end to end
through ReceivablesService, so commit/rollback is the real one.  Each
rejection test also checks that nothing was written.
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from dairy_ledger.domain.dtos import (
    AllocationRequest,
    AllocationStatus,
    InvoiceStatus,
    TrackerAction,
)
from dairy_ledger.exceptions import (
    AllocationExceedsInvoiceError,
    AllocationExceedsOpeningBalanceError,
    AllocationExceedsPaymentError,
    InvalidAllocationAmountError,
    PaymentNotFoundError,
    TargetCustomerMismatchError,
    TargetNotFoundError,
)
from dairy_ledger.models.allocation import (
    InvoicePaymentAllocation,
    OpeningBalancePaymentAllocation,
)
from dairy_ledger.models.invoice import Invoice
from dairy_ledger.models.payment import Payment
from dairy_ledger.models.unapplied_payment import UnappliedPayment
from dairy_ledger.services.allocation_engine import AllocationEngine


def _tracker_row(session, payment_id):
    return session.execute(
        select(UnappliedPayment).where(UnappliedPayment.payment_id == payment_id)
    ).scalar_one_or_none()


def _allocation_row_count(session, payment_id) -> int:
    invoice_rows = session.execute(
        select(func.count()).select_from(InvoicePaymentAllocation).where(
            InvoicePaymentAllocation.payment_id == payment_id
        )
    ).scalar_one()
    opening_rows = session.execute(
        select(func.count()).select_from(OpeningBalancePaymentAllocation).where(
            OpeningBalancePaymentAllocation.payment_id == payment_id
        )
    ).scalar_one()
    return invoice_rows + opening_rows


def _assert_payment_untouched(session, payment_id, amount):
    payment = session.get(Payment, payment_id)
    assert payment.amount_applied == Decimal("0.00")
    assert payment.amount_unapplied == Decimal(amount)
    assert payment.allocation_status == "unapplied"
    assert _allocation_row_count(session, payment_id) == 0


class TestAllocationScenarios:
    """The five documented allocation stories."""

    def test_scenario_a_exact_split_fully_applies(
        self, session, receivables, customer, make_invoice, make_payment
    ):
        invoice1 = make_invoice(customer.id, "600")
        invoice2 = make_invoice(customer.id, "400")
        payment = make_payment(customer.id, "1000")

        result = receivables.allocate(payment.id, [
            AllocationRequest.invoice(invoice1.id, "600"),
            AllocationRequest.invoice(invoice2.id, "400"),
        ])

        assert result.payment.allocation_status is AllocationStatus.FULLY_APPLIED
        assert result.payment.amount_unapplied == Decimal("0.00")
        assert result.payment.amount_applied == Decimal("1000.00")
        assert result.tracker.action is TrackerAction.DELETED
        assert _tracker_row(session, payment.id) is None
        assert {inv.status for inv in result.invoices} == {InvoiceStatus.PAID}

    def test_scenario_b_over_allocation_writes_nothing(
        self, session, receivables, customer, make_invoice, make_payment
    ):
        invoice1 = make_invoice(customer.id, "600")
        invoice2 = make_invoice(customer.id, "400")
        payment = make_payment(customer.id, "800")

        with pytest.raises(AllocationExceedsPaymentError) as exc_info:
            receivables.allocate(payment.id, [
                AllocationRequest.invoice(invoice1.id, "600"),
                AllocationRequest.invoice(invoice2.id, "300"),
            ])

        assert exc_info.value.requested == Decimal("900.00")
        assert exc_info.value.available == Decimal("800.00")
        _assert_payment_untouched(session, payment.id, "800.00")
        assert _tracker_row(session, payment.id).amount_unapplied == Decimal("800.00")
        assert session.get(Invoice, invoice1.id).amount_paid == Decimal("0.00")

    def test_scenario_c_existing_allocation_limits_remainder(
        self, session, receivables, customer, make_invoice, make_payment
    ):
        invoice0 = make_invoice(customer.id, "400")
        invoice1 = make_invoice(customer.id, "500")
        invoice2 = make_invoice(customer.id, "500")
        payment = make_payment(customer.id, "1000")
        receivables.allocate(payment.id, [AllocationRequest.invoice(invoice0.id, "400")])

        with pytest.raises(AllocationExceedsPaymentError) as exc_info:
            receivables.allocate(payment.id, [
                AllocationRequest.invoice(invoice1.id, "300"),
                AllocationRequest.invoice(invoice2.id, "400"),
            ])

        assert exc_info.value.available == Decimal("600.00")
        stored = session.get(Payment, payment.id)
        assert stored.amount_applied == Decimal("400.00")
        assert stored.amount_unapplied == Decimal("600.00")
        assert _allocation_row_count(session, payment.id) == 1

    def test_scenario_d_incremental_allocation_tracks_remainder(
        self, session, receivables, customer, make_invoice, make_payment
    ):
        invoice1 = make_invoice(customer.id, "300")
        invoice2 = make_invoice(customer.id, "700")
        payment = make_payment(customer.id, "1000")

        first = receivables.allocate(payment.id, [AllocationRequest.invoice(invoice1.id, "300")])
        assert first.payment.amount_unapplied == Decimal("700.00")
        assert first.payment.allocation_status is AllocationStatus.PARTIALLY_APPLIED
        assert first.tracker.action is TrackerAction.UPDATED
        assert _tracker_row(session, payment.id).amount_unapplied == Decimal("700.00")

        second = receivables.allocate(payment.id, [AllocationRequest.invoice(invoice2.id, "700")])
        assert second.payment.amount_unapplied == Decimal("0.00")
        assert second.tracker.action is TrackerAction.DELETED
        assert _tracker_row(session, payment.id) is None

    def test_scenario_e_opening_balance_cannot_be_over_allocated(
        self, session, receivables, make_customer, make_payment
    ):
        customer = make_customer("500")
        payment_a = make_payment(customer.id, "500")
        payment_b = make_payment(customer.id, "100")

        result = receivables.allocate(
            payment_a.id, [AllocationRequest.opening_balance(customer.id, "500")]
        )
        assert result.opening_balance_remaining == Decimal("0.00")
        assert receivables.effective_opening_balance(customer.id) == Decimal("0.00")

        with pytest.raises(AllocationExceedsOpeningBalanceError) as exc_info:
            receivables.allocate(
                payment_b.id, [AllocationRequest.opening_balance(customer.id, "1")]
            )

        assert exc_info.value.remaining == Decimal("0.00")
        assert exc_info.value.opening_balance == Decimal("500.00")
        _assert_payment_untouched(session, payment_b.id, "100.00")


class TestAllocationRows:

    def test_top_up_increases_existing_row(
        self, session, receivables, customer, make_invoice, make_payment
    ):
        invoice = make_invoice(customer.id, "500")
        payment = make_payment(customer.id, "500")

        receivables.allocate(payment.id, [AllocationRequest.invoice(invoice.id, "200")])
        result = receivables.allocate(payment.id, [AllocationRequest.invoice(invoice.id, "100")])

        rows = session.execute(
            select(InvoicePaymentAllocation).where(
                InvoicePaymentAllocation.payment_id == payment.id
            )
        ).scalars().all()
        assert len(rows) == 1
        assert rows[0].amount_allocated == Decimal("300.00")
        assert result.invoices[0].amount_paid == Decimal("300.00")
        assert result.invoices[0].amount_outstanding == Decimal("200.00")
        assert result.invoices[0].status is InvoiceStatus.PARTIALLY_PAID

    def test_invoice_paid_by_two_payments(
        self, session, receivables, customer, make_invoice, make_payment
    ):
        invoice = make_invoice(customer.id, "1000")
        p1 = make_payment(customer.id, "600")
        p2 = make_payment(customer.id, "400")

        receivables.allocate(p1.id, [AllocationRequest.invoice(invoice.id, "600")])
        result = receivables.allocate(p2.id, [AllocationRequest.invoice(invoice.id, "400")])

        assert result.invoices[0].amount_paid == Decimal("1000.00")
        assert result.invoices[0].status is InvoiceStatus.PAID

    def test_mixed_opening_balance_and_invoice(
        self, session, receivables, make_customer, make_invoice, make_payment
    ):
        customer = make_customer("250")
        invoice = make_invoice(customer.id, "750")
        payment = make_payment(customer.id, "1200")

        result = receivables.allocate(payment.id, [
            AllocationRequest.opening_balance(customer.id, "250"),
            AllocationRequest.invoice(invoice.id, "750"),
        ])

        assert result.allocated_amount == Decimal("1000.00")
        assert result.payment.amount_unapplied == Decimal("200.00")
        assert result.opening_balance_remaining == Decimal("0.00")
        assert _tracker_row(session, payment.id).amount_unapplied == Decimal("200.00")

    def test_tracker_reason_recorded(
        self, session, receivables, customer, make_invoice, make_payment
    ):
        invoice = make_invoice(customer.id, "100")
        payment = make_payment(customer.id, "300")

        receivables.allocate(
            payment.id,
            [AllocationRequest.invoice(invoice.id, "100")],
            reason="advance for next month",
        )

        assert _tracker_row(session, payment.id).reason == "advance for next month"


class TestAllocationRejections:

    def test_unknown_payment(self, receivables):
        with pytest.raises(PaymentNotFoundError):
            receivables.allocate(uuid4(), [AllocationRequest.invoice(uuid4(), "1")])

    def test_unknown_invoice(self, session, receivables, customer, make_payment):
        payment = make_payment(customer.id, "100")
        missing = uuid4()

        with pytest.raises(TargetNotFoundError) as exc_info:
            receivables.allocate(payment.id, [AllocationRequest.invoice(missing, "50")])

        assert exc_info.value.target_type == "invoice"
        assert exc_info.value.target_id == str(missing)
        _assert_payment_untouched(session, payment.id, "100.00")

    def test_unknown_opening_balance_customer(self, session, receivables, customer, make_payment):
        payment = make_payment(customer.id, "100")

        with pytest.raises(TargetNotFoundError) as exc_info:
            receivables.allocate(payment.id, [AllocationRequest.opening_balance(uuid4(), "50")])

        assert exc_info.value.target_type == "opening_balance"

    def test_invoice_of_another_customer(
        self, session, receivables, make_customer, make_invoice, make_payment
    ):
        owner = make_customer("0")
        other = make_customer("0")
        invoice = make_invoice(other.id, "100")
        payment = make_payment(owner.id, "100")

        with pytest.raises(TargetCustomerMismatchError):
            receivables.allocate(payment.id, [AllocationRequest.invoice(invoice.id, "100")])

        _assert_payment_untouched(session, payment.id, "100.00")

    def test_opening_balance_of_another_customer(
        self, receivables, make_customer, make_payment
    ):
        owner = make_customer("0")
        other = make_customer("500")
        payment = make_payment(owner.id, "100")

        with pytest.raises(TargetCustomerMismatchError):
            receivables.allocate(
                payment.id, [AllocationRequest.opening_balance(other.id, "100")]
            )

    def test_invoice_over_allocation(
        self, session, receivables, customer, make_invoice, make_payment
    ):
        invoice = make_invoice(customer.id, "100")
        payment = make_payment(customer.id, "500")

        with pytest.raises(AllocationExceedsInvoiceError) as exc_info:
            receivables.allocate(payment.id, [AllocationRequest.invoice(invoice.id, "150")])

        assert exc_info.value.outstanding == Decimal("100.00")
        _assert_payment_untouched(session, payment.id, "500.00")

    def test_late_failure_rolls_back_earlier_lines(
        self, session, receivables, customer, make_invoice, make_payment
    ):
        """A bad last line leaves the good lines before it unwritten too."""
        good = make_invoice(customer.id, "100")
        payment = make_payment(customer.id, "500")

        with pytest.raises(TargetNotFoundError):
            receivables.allocate(payment.id, [
                AllocationRequest.invoice(good.id, "100"),
                AllocationRequest.invoice(uuid4(), "50"),
            ])

        assert session.get(Invoice, good.id).amount_paid == Decimal("0.00")
        assert session.get(Invoice, good.id).invoice_status == "pending"
        _assert_payment_untouched(session, payment.id, "500.00")

    @pytest.mark.parametrize("amount", ["-5", "0", "NaN", "Infinity"])
    def test_invalid_amounts(self, session, receivables, customer, make_invoice, make_payment, amount):
        invoice = make_invoice(customer.id, "100")
        payment = make_payment(customer.id, "100")

        with pytest.raises(InvalidAllocationAmountError):
            receivables.allocate(payment.id, [AllocationRequest.invoice(invoice.id, amount)])

        _assert_payment_untouched(session, payment.id, "100.00")

    def test_rejection_is_logged_as_rollback(
        self, receivables, customer, make_payment, captured_logs
    ):
        payment = make_payment(customer.id, "100")

        with pytest.raises(TargetNotFoundError):
            receivables.allocate(payment.id, [AllocationRequest.invoice(uuid4(), "10")])

        messages = [r["message"] for r in captured_logs()]
        assert "allocation_started" in messages
        assert "allocation_rolled_back" in messages
        assert "allocation_committed" not in messages


class TestAllocationEngineDirect:
    """The engine flushes but never commits."""

    def test_engine_does_not_commit(
        self, session, deterministic_clock, customer, make_invoice, make_payment
    ):
        invoice = make_invoice(customer.id, "100")
        payment = make_payment(customer.id, "100")

        engine = AllocationEngine(session, deterministic_clock)
        result = engine.allocate(payment.id, [AllocationRequest.invoice(invoice.id, "100")])
        assert result.payment.allocation_status is AllocationStatus.FULLY_APPLIED

        session.rollback()
        _assert_payment_untouched(session, payment.id, "100.00")

    def test_empty_breakdown_only_refreshes(
        self, session, deterministic_clock, customer, make_payment
    ):
        payment = make_payment(customer.id, "100")

        engine = AllocationEngine(session, deterministic_clock)
        result = engine.allocate(payment.id, [])

        assert result.allocated_amount == Decimal("0.00")
        assert result.payment.amount_unapplied == Decimal("100.00")
        assert result.tracker.action is TrackerAction.UNCHANGED
