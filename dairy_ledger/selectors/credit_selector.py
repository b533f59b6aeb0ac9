"""
CreditSelector -- unapplied payment (credit available) queries.

Reads ``unapplied_payments`` for the "credit available" displays and
compares it against the allocation rows for the consistency report that
feeds ``UnappliedPaymentTracker.reconcile_all``.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from dairy_ledger.domain.clock import Clock
from dairy_ledger.domain.dtos import (
    CustomerCreditInfo,
    NetCreditRow,
    UnappliedDiscrepancy,
    UnappliedPaymentRow,
    UnappliedPaymentStats,
)
from dairy_ledger.domain.values import ZERO, to_money
from dairy_ledger.models.customer import Customer
from dairy_ledger.models.payment import Payment
from dairy_ledger.models.unapplied_payment import UnappliedPayment
from dairy_ledger.selectors.allocation_selector import AllocationSelector
from dairy_ledger.selectors.base import BaseSelector
from dairy_ledger.selectors.outstanding_selector import OutstandingSelector


class CreditSelector(BaseSelector[UnappliedPayment]):
    """Read-only access to customer credit."""

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session)
        self._allocations = AllocationSelector(session)
        self._outstanding = OutstandingSelector(session, clock)

    def unapplied_payments(self, customer_id: UUID | None = None) -> list[UnappliedPaymentRow]:
        """Tracker rows joined with their payment and customer, oldest payment first."""
        stmt = (
            select(UnappliedPayment, Payment, Customer)
            .join(Payment, Payment.id == UnappliedPayment.payment_id)
            .join(Customer, Customer.id == UnappliedPayment.customer_id)
            .order_by(Payment.payment_date, Payment.created_at, Payment.id)
        )
        if customer_id is not None:
            stmt = stmt.where(UnappliedPayment.customer_id == customer_id)
        return [
            UnappliedPaymentRow(
                id=row.id,
                payment_id=payment.id,
                customer_id=customer.id,
                customer_name=customer.name,
                payment_date=payment.payment_date,
                payment_amount=to_money(payment.amount),
                amount_unapplied=to_money(row.amount_unapplied),
                payment_method=payment.payment_method,
                reason=row.reason,
            )
            for row, payment, customer in self.session.execute(stmt)
        ]

    def customer_credit_info(self, customer_id: UUID) -> CustomerCreditInfo:
        total, count = self.session.execute(
            select(
                func.coalesce(func.sum(UnappliedPayment.amount_unapplied), 0),
                func.count(UnappliedPayment.id),
            ).where(UnappliedPayment.customer_id == customer_id)
        ).one()
        return CustomerCreditInfo(
            customer_id=customer_id,
            total_amount=to_money(total),
            payment_count=count,
        )

    def unapplied_payment_stats(self) -> UnappliedPaymentStats:
        total, count, customers = self.session.execute(
            select(
                func.coalesce(func.sum(UnappliedPayment.amount_unapplied), 0),
                func.count(UnappliedPayment.id),
                func.count(func.distinct(UnappliedPayment.customer_id)),
            )
        ).one()
        return UnappliedPaymentStats(
            total_amount=to_money(total),
            total_count=count,
            customers_count=customers,
        )

    def customers_with_net_credit(self) -> list[NetCreditRow]:
        """
        Customers whose available credit exceeds what they owe.

        What they owe uses the effective opening balance, so a customer who
        has paid their opening balance off is not counted as owing it.
        """
        credit_rows = self.session.execute(
            select(
                Customer.id,
                Customer.name,
                func.sum(UnappliedPayment.amount_unapplied),
            )
            .join(Customer, Customer.id == UnappliedPayment.customer_id)
            .group_by(Customer.id, Customer.name)
        ).all()

        rows: list[NetCreditRow] = []
        for customer_id, name, credit in credit_rows:
            outstanding = self._outstanding.total_outstanding(customer_id)
            credit = to_money(credit)
            if credit > outstanding:
                rows.append(
                    NetCreditRow(
                        customer_id=customer_id,
                        customer_name=name,
                        credit_amount=credit,
                        total_outstanding=outstanding,
                    )
                )
        rows.sort(key=lambda row: row.net_credit, reverse=True)
        return rows

    def unapplied_discrepancies(self) -> list[UnappliedDiscrepancy]:
        """
        Payments whose tracker row or cached counters disagree with
        ``amount - Σ allocation rows``.
        """
        applied = self._allocations.applied_totals_by_payment()
        tracked = {
            payment_id: to_money(amount)
            for payment_id, amount in self.session.execute(
                select(UnappliedPayment.payment_id, UnappliedPayment.amount_unapplied)
            )
        }

        discrepancies: list[UnappliedDiscrepancy] = []
        payments = self.session.execute(select(Payment).order_by(Payment.id)).scalars()
        for payment in payments:
            expected = max(ZERO, to_money(payment.amount) - applied.get(payment.id, ZERO))
            tracked_amount = tracked.get(payment.id, ZERO)
            recorded = to_money(payment.amount_unapplied)
            if expected != tracked_amount or expected != recorded:
                discrepancies.append(
                    UnappliedDiscrepancy(
                        payment_id=payment.id,
                        expected_unapplied=expected,
                        tracked_unapplied=tracked_amount,
                        recorded_unapplied=recorded,
                    )
                )
        return discrepancies
