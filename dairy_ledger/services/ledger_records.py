"""
Service layer for ledger records: customers, invoices and payments.

These are the entry points invoice lifecycle logic and payment forms use to
create the facts the allocation engine works on.  Every amount is
validated once here; afterwards the face values never change except
through ``ReversalService.update_payment_amount``.

Returns DTOs instead of ORM entities.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from dairy_ledger.config import LedgerSettings
from dairy_ledger.domain.clock import Clock, SystemClock
from dairy_ledger.domain.dtos import (
    AllocationStatus,
    CustomerInfo,
    InvoiceSnapshot,
    InvoiceStatus,
    PaymentSnapshot,
)
from dairy_ledger.domain.values import ZERO, NonFiniteAmount, to_money
from dairy_ledger.exceptions import (
    CustomerNotFoundError,
    InvalidLedgerAmountError,
    InvalidPaymentAmountError,
)
from dairy_ledger.logging_config import get_logger
from dairy_ledger.models.customer import Customer, CustomerStatus
from dairy_ledger.models.invoice import Invoice
from dairy_ledger.models.payment import Payment
from dairy_ledger.services.aggregates import (
    customer_info,
    invoice_snapshot,
    payment_snapshot,
)
from dairy_ledger.services.base import BaseService
from dairy_ledger.services.unapplied_tracker import UnappliedPaymentTracker

logger = get_logger("services.ledger_records")


class LedgerRecordService(BaseService[Customer]):
    """Creates customers, invoices and payments."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        settings: LedgerSettings | None = None,
        tracker: UnappliedPaymentTracker | None = None,
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._tracker = tracker or UnappliedPaymentTracker(session, self._clock, settings)

    def _get_customer(self, customer_id: UUID) -> Customer:
        customer = self.session.get(Customer, customer_id)
        if customer is None:
            raise CustomerNotFoundError(str(customer_id))
        return customer

    def onboard_customer(
        self,
        name: str,
        opening_balance: Decimal | str | int = ZERO,
        route: str | None = None,
        status: str = CustomerStatus.ACTIVE.value,
    ) -> CustomerInfo:
        """
        Create a customer with their opening balance.

        The opening balance is recorded once here and is immutable
        afterwards.

        Raises:
            InvalidLedgerAmountError: opening balance negative or not a number.
        """
        balance = _validate_amount("opening_balance", opening_balance, allow_zero=True)
        customer = Customer(
            name=name,
            opening_balance=balance,
            route=route,
            status=CustomerStatus(status).value,
        )
        self.session.add(customer)
        self.session.flush()
        logger.info(
            "customer_onboarded",
            extra={"customer_id": str(customer.id), "opening_balance": str(balance)},
        )
        return customer_info(customer)

    def record_invoice(
        self,
        customer_id: UUID,
        invoice_number: str,
        invoice_date: date,
        total_amount: Decimal | str | int,
        due_date: date | None = None,
        status: InvoiceStatus | str = InvoiceStatus.PENDING,
    ) -> InvoiceSnapshot:
        """
        Record an invoice with nothing paid against it.

        ``status`` lets invoice lifecycle logic mark the invoice as sent or
        overdue; paid and partially_paid are only ever derived from
        allocations.

        Raises:
            CustomerNotFoundError: unknown customer.
            InvalidLedgerAmountError: total not a positive number.
        """
        customer = self._get_customer(customer_id)
        total = _validate_amount("total_amount", total_amount, allow_zero=False)
        status = InvoiceStatus(status)
        if status in (InvoiceStatus.PAID, InvoiceStatus.PARTIALLY_PAID):
            raise ValueError(f"a new invoice cannot start as {status.value}")

        invoice = Invoice(
            customer_id=customer.id,
            invoice_number=invoice_number,
            invoice_date=invoice_date,
            due_date=due_date,
            total_amount=total,
            amount_paid=ZERO,
            amount_outstanding=total,
            invoice_status=status.value,
        )
        self.session.add(invoice)
        self.session.flush()
        logger.info(
            "invoice_recorded",
            extra={
                "invoice_id": str(invoice.id),
                "customer_id": str(customer.id),
                "total_amount": str(total),
            },
        )
        return invoice_snapshot(invoice)

    def record_payment(
        self,
        customer_id: UUID,
        amount: Decimal | str | int,
        payment_date: date | None = None,
        payment_method: str | None = None,
        notes: str | None = None,
    ) -> PaymentSnapshot:
        """
        Record a payment received from a customer.

        A new payment is entirely unapplied credit, so its tracker row is
        created in the same transaction.

        Raises:
            CustomerNotFoundError: unknown customer.
            InvalidPaymentAmountError: amount not a positive number.
        """
        customer = self._get_customer(customer_id)
        try:
            value = to_money(amount)
        except NonFiniteAmount as exc:
            raise InvalidPaymentAmountError(amount=amount, reason=str(exc)) from exc
        if value <= ZERO:
            raise InvalidPaymentAmountError(
                amount=amount, reason="payment amount must be greater than zero"
            )

        payment = Payment(
            customer_id=customer.id,
            payment_date=payment_date or self._clock.today(),
            amount=value,
            amount_applied=ZERO,
            amount_unapplied=value,
            allocation_status=AllocationStatus.UNAPPLIED.value,
            payment_method=payment_method,
            notes=notes,
        )
        self.session.add(payment)
        self.session.flush()
        self._tracker.sync(payment)
        logger.info(
            "payment_recorded",
            extra={
                "payment_id": str(payment.id),
                "customer_id": str(customer.id),
                "amount": str(value),
            },
        )
        return payment_snapshot(payment)


def _validate_amount(field: str, value: object, allow_zero: bool) -> Decimal:
    try:
        amount = to_money(value)
    except NonFiniteAmount as exc:
        raise InvalidLedgerAmountError(field=field, amount=value, reason=str(exc)) from exc
    if amount < ZERO or (amount == ZERO and not allow_zero):
        raise InvalidLedgerAmountError(
            field=field,
            amount=value,
            reason="must be zero or more" if allow_zero else "must be greater than zero",
        )
    return amount
