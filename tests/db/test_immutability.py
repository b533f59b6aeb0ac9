"""
Tests for ORM-level immutability of the opening balance.

Paying down an opening balance must go through allocation rows; editing
the onboarding figure is refused at flush time.
"""

from decimal import Decimal

import pytest

from dairy_ledger.exceptions import ImmutabilityViolationError
from dairy_ledger.models.customer import Customer


class TestOpeningBalanceImmutability:

    def test_opening_balance_update_blocked(self, session, make_customer, captured_logs):
        info = make_customer("500")
        customer = session.get(Customer, info.id)

        customer.opening_balance = Decimal("0.00")
        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()
        session.rollback()

        assert exc_info.value.entity_type == "Customer"
        assert session.get(Customer, info.id).opening_balance == Decimal("500.00")
        assert any(r["message"] == "immutability_violation_blocked" for r in captured_logs())

    def test_other_fields_still_editable(self, session, make_customer):
        info = make_customer("500", route="R1")
        customer = session.get(Customer, info.id)

        customer.route = "R2"
        customer.status = "inactive"
        session.commit()

        stored = session.get(Customer, info.id)
        assert stored.route == "R2"
        assert stored.opening_balance == Decimal("500.00")
