"""
AllocationSelector -- sums over the authoritative allocation rows.

Every aggregate the ledger keeps (invoice amount_paid, payment
amount_applied) and every derived figure it reports (effective opening
balance) is a query over ``invoice_payments`` and
``opening_balance_payments``.  This selector is the one place those sums
are written, so the write services and the reporting selectors agree.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from dairy_ledger.domain.dtos import AllocationLine, TargetType
from dairy_ledger.domain.values import to_money
from dairy_ledger.models.allocation import (
    InvoicePaymentAllocation,
    OpeningBalancePaymentAllocation,
)
from dairy_ledger.models.payment import Payment
from dairy_ledger.selectors.base import BaseSelector


class AllocationSelector(BaseSelector[InvoicePaymentAllocation]):
    """Read-only sums and listings over allocation rows."""

    def invoice_allocated_total(self, invoice_id: UUID) -> Decimal:
        """Σ amount_allocated over all payments for one invoice."""
        stmt = select(
            func.coalesce(func.sum(InvoicePaymentAllocation.amount_allocated), 0)
        ).where(InvoicePaymentAllocation.invoice_id == invoice_id)
        return to_money(self.session.execute(stmt).scalar_one())

    def opening_balance_allocated_total(self, customer_id: UUID) -> Decimal:
        """Σ opening-balance allocations for one customer, across payments."""
        stmt = select(
            func.coalesce(func.sum(OpeningBalancePaymentAllocation.amount), 0)
        ).where(OpeningBalancePaymentAllocation.customer_id == customer_id)
        return to_money(self.session.execute(stmt).scalar_one())

    def payment_applied_total(self, payment_id: UUID) -> Decimal:
        """Σ of a payment's invoice and opening-balance allocation rows."""
        invoice_stmt = select(
            func.coalesce(func.sum(InvoicePaymentAllocation.amount_allocated), 0)
        ).where(InvoicePaymentAllocation.payment_id == payment_id)
        opening_stmt = select(
            func.coalesce(func.sum(OpeningBalancePaymentAllocation.amount), 0)
        ).where(OpeningBalancePaymentAllocation.payment_id == payment_id)
        return to_money(self.session.execute(invoice_stmt).scalar_one()) + to_money(
            self.session.execute(opening_stmt).scalar_one()
        )

    def applied_totals_by_payment(self, customer_id: UUID | None = None) -> dict[UUID, Decimal]:
        """
        Σ allocation rows per payment, for every payment with any row.

        With ``customer_id`` only that customer's payments are summed.
        """
        totals: dict[UUID, Decimal] = {}
        invoice_stmt = select(
            InvoicePaymentAllocation.payment_id,
            func.sum(InvoicePaymentAllocation.amount_allocated),
        ).group_by(InvoicePaymentAllocation.payment_id)
        opening_stmt = select(
            OpeningBalancePaymentAllocation.payment_id,
            func.sum(OpeningBalancePaymentAllocation.amount),
        ).group_by(OpeningBalancePaymentAllocation.payment_id)
        if customer_id is not None:
            invoice_stmt = invoice_stmt.join(
                Payment, Payment.id == InvoicePaymentAllocation.payment_id
            ).where(Payment.customer_id == customer_id)
            opening_stmt = opening_stmt.join(
                Payment, Payment.id == OpeningBalancePaymentAllocation.payment_id
            ).where(Payment.customer_id == customer_id)
        for stmt in (invoice_stmt, opening_stmt):
            for payment_id, total in self.session.execute(stmt):
                totals[payment_id] = totals.get(payment_id, Decimal("0.00")) + to_money(total)
        return totals

    def invoice_ids_for_payment(self, payment_id: UUID) -> list[UUID]:
        """Invoices the payment is allocated to, in lock order."""
        stmt = (
            select(InvoicePaymentAllocation.invoice_id)
            .where(InvoicePaymentAllocation.payment_id == payment_id)
        )
        return sorted(self.session.execute(stmt).scalars().all(), key=str)

    def payment_ids_for_invoice(self, invoice_id: UUID) -> list[UUID]:
        """Payments allocated to the invoice, in lock order."""
        stmt = (
            select(InvoicePaymentAllocation.payment_id)
            .where(InvoicePaymentAllocation.invoice_id == invoice_id)
        )
        return sorted(self.session.execute(stmt).scalars().all(), key=str)

    def allocation_lines_for_payment(self, payment_id: UUID) -> tuple[AllocationLine, ...]:
        """
        The payment's current allocations as lines that ``allocate`` accepts.

        Used to re-apply a payment's remaining allocations after one of its
        targets is removed.
        """
        lines: list[AllocationLine] = []
        opening_stmt = select(
            OpeningBalancePaymentAllocation.customer_id,
            OpeningBalancePaymentAllocation.amount,
        ).where(OpeningBalancePaymentAllocation.payment_id == payment_id)
        for customer_id, amount in self.session.execute(opening_stmt):
            lines.append(
                AllocationLine(
                    target_id=customer_id,
                    target_type=TargetType.OPENING_BALANCE,
                    amount=to_money(amount),
                )
            )
        invoice_stmt = (
            select(
                InvoicePaymentAllocation.invoice_id,
                InvoicePaymentAllocation.amount_allocated,
            )
            .where(InvoicePaymentAllocation.payment_id == payment_id)
            .order_by(InvoicePaymentAllocation.created_at, InvoicePaymentAllocation.id)
        )
        for invoice_id, amount in self.session.execute(invoice_stmt):
            lines.append(
                AllocationLine(
                    target_id=invoice_id,
                    target_type=TargetType.INVOICE,
                    amount=to_money(amount),
                )
            )
        return tuple(lines)
