"""Tests for AllocationSelector sums over allocation rows."""

from decimal import Decimal

from dairy_ledger.domain.dtos import AllocationRequest
from dairy_ledger.selectors.allocation_selector import AllocationSelector


class TestAppliedTotalsByPayment:

    def test_filtered_by_customer(
        self, session, receivables, make_customer, make_invoice, make_payment
    ):
        alice = make_customer("40")
        bob = make_customer("0")
        alice_invoice = make_invoice(alice.id, "100")
        bob_invoice = make_invoice(bob.id, "100")
        alice_payment = make_payment(alice.id, "200")
        bob_payment = make_payment(bob.id, "80")
        idle_payment = make_payment(alice.id, "5")
        receivables.allocate(alice_payment.id, [
            AllocationRequest.opening_balance(alice.id, "40"),
            AllocationRequest.invoice(alice_invoice.id, "100"),
        ])
        receivables.allocate(bob_payment.id, [AllocationRequest.invoice(bob_invoice.id, "80")])

        selector = AllocationSelector(session)

        assert selector.applied_totals_by_payment(alice.id) == {
            alice_payment.id: Decimal("140.00"),
        }
        assert selector.applied_totals_by_payment(bob.id) == {
            bob_payment.id: Decimal("80.00"),
        }
        everything = selector.applied_totals_by_payment()
        assert set(everything) == {alice_payment.id, bob_payment.id}
        assert idle_payment.id not in everything

    def test_validation_ignores_other_customers(
        self, session, receivables, make_customer, make_invoice, make_payment
    ):
        clean = make_customer("0")
        other = make_customer("0")
        invoice = make_invoice(other.id, "100")
        payment = make_payment(other.id, "100")
        receivables.allocate(payment.id, [AllocationRequest.invoice(invoice.id, "100")])

        assert receivables.validate_outstanding(clean.id).is_valid
