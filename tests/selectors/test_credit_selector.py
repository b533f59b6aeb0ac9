"""Tests for CreditSelector: available credit and tracker consistency."""

from datetime import date
from decimal import Decimal

from dairy_ledger.domain.dtos import AllocationRequest
from dairy_ledger.models.payment import Payment


class TestUnappliedPayments:

    def test_lists_payments_with_credit_oldest_first(
        self, receivables, customer, make_invoice, make_payment
    ):
        invoice = make_invoice(customer.id, "100")
        newer = make_payment(customer.id, "30", payment_date=date(2024, 6, 10))
        older = make_payment(customer.id, "70", payment_date=date(2024, 6, 1))
        applied = make_payment(customer.id, "100")
        receivables.allocate(applied.id, [AllocationRequest.invoice(invoice.id, "100")])

        rows = receivables.unapplied_payments(customer.id)

        assert [row.payment_id for row in rows] == [older.id, newer.id]
        assert rows[0].amount_unapplied == Decimal("70.00")
        assert rows[0].payment_method == "cash"
        assert rows[0].customer_name == customer.name

    def test_filter_by_customer(self, receivables, make_customer, make_payment):
        first = make_customer("0")
        second = make_customer("0")
        make_payment(first.id, "10")
        make_payment(second.id, "20")

        assert len(receivables.unapplied_payments()) == 2
        assert [row.customer_id for row in receivables.unapplied_payments(second.id)] == [
            second.id
        ]


class TestCreditTotals:

    def test_customer_credit_info(self, receivables, customer, make_invoice, make_payment):
        invoice = make_invoice(customer.id, "50")
        payment = make_payment(customer.id, "80")
        make_payment(customer.id, "20")
        receivables.allocate(payment.id, [AllocationRequest.invoice(invoice.id, "50")])

        info = receivables.customer_credit_info(customer.id)

        assert info.total_amount == Decimal("50.00")
        assert info.payment_count == 2
        assert info.has_credit

    def test_customer_without_credit(self, receivables, customer):
        info = receivables.customer_credit_info(customer.id)
        assert info.total_amount == Decimal("0.00")
        assert not info.has_credit

    def test_stats(self, receivables, make_customer, make_payment):
        first = make_customer("0")
        second = make_customer("0")
        make_payment(first.id, "10")
        make_payment(first.id, "15")
        make_payment(second.id, "25")

        stats = receivables.unapplied_payment_stats()

        assert stats.total_amount == Decimal("50.00")
        assert stats.total_count == 3
        assert stats.customers_count == 2


class TestNetCredit:

    def test_only_customers_whose_credit_exceeds_debt(
        self, receivables, make_customer, make_invoice, make_payment
    ):
        in_credit = make_customer("0", name="In credit")
        in_debt = make_customer("500", name="In debt")
        make_invoice(in_credit.id, "40")
        make_payment(in_credit.id, "100")
        make_payment(in_debt.id, "100")

        rows = receivables.customers_with_net_credit()

        assert [row.customer_id for row in rows] == [in_credit.id]
        assert rows[0].net_credit == Decimal("60.00")

    def test_paid_off_opening_balance_not_counted_as_debt(
        self, receivables, make_customer, make_payment
    ):
        customer = make_customer("100")
        payment = make_payment(customer.id, "150")
        receivables.allocate(
            payment.id, [AllocationRequest.opening_balance(customer.id, "100")]
        )

        rows = receivables.customers_with_net_credit()

        assert rows[0].total_outstanding == Decimal("0.00")
        assert rows[0].credit_amount == Decimal("50.00")


class TestDiscrepancies:

    def test_counter_drift_reported(self, session, receivables, customer, make_payment):
        payment = make_payment(customer.id, "90")
        session.get(Payment, payment.id).amount_unapplied = Decimal("10.00")
        session.commit()

        [item] = receivables.unapplied_discrepancies()

        assert item.payment_id == payment.id
        assert item.expected_unapplied == Decimal("90.00")
        assert item.tracked_unapplied == Decimal("90.00")
        assert item.recorded_unapplied == Decimal("10.00")
        assert item.discrepancy == Decimal("0.00")
