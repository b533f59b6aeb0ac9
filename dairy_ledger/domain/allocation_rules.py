"""
Allocation rules -- the pure decision functions behind the allocation engine.

Responsibility
--------------
Everything about an allocation that can be decided without a database:

* ``normalize_requests`` turns user-entered allocation lines into validated,
  two-decimal ``AllocationLine`` objects, merging repeated targets.
* ``derive_invoice_status`` maps an invoice's recomputed paid/outstanding
  figures onto its status.
* ``derive_allocation_status`` does the same for a payment.

Architecture position
---------------------
**Domain layer** -- functional core.  ZERO I/O; the clock's ``today`` is
passed in as a plain ``date``.

Invariants enforced
-------------------
* Every normalized amount is finite and strictly positive.
* Normalization preserves the first-seen order of targets, so the lock
  order chosen later by the engine does not depend on duplicates.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Iterable
from uuid import UUID

from dairy_ledger.domain.dtos import (
    AllocationLine,
    AllocationRequest,
    AllocationStatus,
    InvoiceStatus,
    TargetType,
)
from dairy_ledger.domain.values import ZERO, NonFiniteAmount, to_money
from dairy_ledger.exceptions import InvalidAllocationAmountError, TargetNotFoundError


def normalize_requests(
    requests: Iterable[AllocationRequest],
) -> tuple[AllocationLine, ...]:
    """
    Validate and merge allocation requests.

    Raises:
        InvalidAllocationAmountError: an amount is missing, non-numeric,
            non-finite, zero or negative.
        TargetNotFoundError: a target id is not a valid UUID, or the target
            type is neither invoice nor opening_balance.
    """
    merged: dict[tuple[TargetType, UUID], Decimal] = {}
    for request in requests:
        try:
            target_type = TargetType(request.target_type)
        except ValueError as exc:
            raise TargetNotFoundError(
                target_type=str(request.target_type),
                target_id=str(request.target_id),
            ) from exc
        try:
            target_id = (
                request.target_id
                if isinstance(request.target_id, UUID)
                else UUID(str(request.target_id))
            )
        except ValueError as exc:
            raise TargetNotFoundError(
                target_type=target_type.value,
                target_id=str(request.target_id),
            ) from exc
        try:
            amount = to_money(request.amount)
        except NonFiniteAmount as exc:
            raise InvalidAllocationAmountError(
                target_id=str(request.target_id),
                amount=request.amount,
                reason=str(exc),
            ) from exc
        if amount <= ZERO:
            raise InvalidAllocationAmountError(
                target_id=str(request.target_id),
                amount=request.amount,
                reason="allocation amount must be greater than zero",
            )
        key = (target_type, target_id)
        merged[key] = merged.get(key, ZERO) + amount

    return tuple(
        AllocationLine(target_id=target_id, target_type=target_type, amount=amount)
        for (target_type, target_id), amount in merged.items()
    )


def lines_total(lines: Iterable[AllocationLine]) -> Decimal:
    total = ZERO
    for line in lines:
        total += line.amount
    return total


def derive_invoice_status(
    current: InvoiceStatus | str,
    amount_paid: Decimal,
    amount_outstanding: Decimal,
    due_date: date | None,
    today: date,
) -> InvoiceStatus:
    """
    Status for an invoice after its paid/outstanding figures were recomputed.

    paid when nothing is outstanding, partially_paid when anything was
    paid.  Otherwise a pending/sent/overdue status is kept as it was set by
    invoice lifecycle logic, and an invoice dropping back from paid or
    partially_paid becomes overdue if past due, else pending.
    """
    current = InvoiceStatus(current)
    if amount_outstanding <= ZERO:
        return InvoiceStatus.PAID
    if amount_paid > ZERO:
        return InvoiceStatus.PARTIALLY_PAID
    if current in (InvoiceStatus.PENDING, InvoiceStatus.SENT, InvoiceStatus.OVERDUE):
        return current
    if due_date is not None and due_date < today:
        return InvoiceStatus.OVERDUE
    return InvoiceStatus.PENDING


def derive_allocation_status(
    amount_applied: Decimal,
    amount_unapplied: Decimal,
) -> AllocationStatus:
    """Status for a payment given its recomputed counters."""
    if amount_unapplied <= ZERO:
        return AllocationStatus.FULLY_APPLIED
    if amount_applied > ZERO:
        return AllocationStatus.PARTIALLY_APPLIED
    return AllocationStatus.UNAPPLIED
