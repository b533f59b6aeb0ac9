"""
Row locks for allocation writes.

Every mutating ledger operation takes its locks in one global order:

    payment(s)  ->  customer (opening balance)  ->  invoices (sorted by id)

Two allocations on the same payment serialize on the payment row, so the
remaining-balance check cannot race.  Two payments for the same customer
serialize on the customer row only when both touch the opening balance,
and on an invoice row only when both touch that invoice.  Flows that
reverse and then re-allocate (payment edits, invoice deletes) take every
lock they will need up front, in this order, before reversing anything.

``populate_existing`` refreshes any instance already in the identity map,
so the values read after the lock is granted are the committed ones.  On
SQLite FOR UPDATE is not emitted; file-backed engines open every
transaction with BEGIN IMMEDIATE instead (see ``db.engine``), which holds
the whole database for the transaction.
"""

from __future__ import annotations

from typing import Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from dairy_ledger.models.customer import Customer
from dairy_ledger.models.invoice import Invoice
from dairy_ledger.models.payment import Payment


def lock_payment(session: Session, payment_id: UUID) -> Payment | None:
    return session.execute(
        select(Payment)
        .where(Payment.id == payment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def lock_payments(session: Session, payment_ids: Iterable[UUID]) -> dict[UUID, Payment]:
    """Lock several payments in id order; missing ids are absent from the result."""
    ordered = sorted(set(payment_ids), key=str)
    if not ordered:
        return {}
    payments = session.execute(
        select(Payment)
        .where(Payment.id.in_(ordered))
        .order_by(Payment.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().all()
    return {payment.id: payment for payment in payments}


def lock_customer(session: Session, customer_id: UUID) -> Customer | None:
    return session.execute(
        select(Customer)
        .where(Customer.id == customer_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def lock_invoices(session: Session, invoice_ids: Iterable[UUID]) -> dict[UUID, Invoice]:
    """Lock the given invoices in id order; missing ids are absent from the result."""
    ordered = sorted(set(invoice_ids), key=str)
    if not ordered:
        return {}
    invoices = session.execute(
        select(Invoice)
        .where(Invoice.id.in_(ordered))
        .order_by(Invoice.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().all()
    return {invoice.id: invoice for invoice in invoices}
