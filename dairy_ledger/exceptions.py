"""
Typed Exception Hierarchy for the Dairy Ledger.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Payment forms and report screens must react to a rejected allocation
precisely: "the payment does not have that much left" is a different
conversation with the user than "that invoice no longer exists". Callers
therefore catch by TYPE and read structured attributes, never parse messages:

    try:
        receivables.allocate(payment_id, requests)
    except AllocationExceedsPaymentError as e:
        form.error(f"Only {e.available} left on this payment")
    except TargetNotFoundError as e:
        form.error(f"{e.target_type} {e.target_id} is gone, refresh the page")

Every exception has:
  1. A ``code`` class attribute (machine-readable, API-safe)
  2. Its context stored as attributes (amounts as ``Decimal``, ids as ``str``)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    DairyLedgerError (base)
    |
    +-- AllocationError
    |   +-- AllocationExceedsPaymentError
    |   +-- AllocationExceedsOpeningBalanceError
    |   +-- AllocationExceedsInvoiceError
    |   +-- InvalidAllocationAmountError
    |   +-- TargetNotFoundError
    |   +-- TargetCustomerMismatchError
    |
    +-- ReallocationError
    |   +-- ReallocationRequiredError
    |   +-- AllocationConflictError
    |
    +-- PaymentError
    |   +-- PaymentNotFoundError
    |   +-- InvalidPaymentAmountError
    |
    +-- LedgerRecordError
    |   +-- CustomerNotFoundError
    |   +-- InvoiceNotFoundError
    |   +-- InvalidLedgerAmountError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category      | Code                              | When Raised
--------------|-----------------------------------|-------------------------------------
Allocation    | ALLOCATION_EXCEEDS_PAYMENT        | Requested > payment's unapplied rest
              | ALLOCATION_EXCEEDS_OPENING_BALANCE| Would push OB allocations past OB
              | ALLOCATION_EXCEEDS_INVOICE        | Would push invoice paid past total
              | INVALID_ALLOCATION_AMOUNT         | Zero, negative, NaN or infinite
              | TARGET_NOT_FOUND                  | Invoice / customer id missing
              | TARGET_CUSTOMER_MISMATCH          | Target belongs to another customer
--------------|-----------------------------------|-------------------------------------
Reallocation  | REALLOCATION_REQUIRED             | Amount change / invoice delete on an
              |                                   | allocated payment without breakdown
              | ALLOCATION_CONFLICT               | Allocations changed between read and
              |                                   | lock; retry the operation
--------------|-----------------------------------|-------------------------------------
Payment       | PAYMENT_NOT_FOUND                 | Payment id missing
              | INVALID_PAYMENT_AMOUNT            | Face value not a positive amount
--------------|-----------------------------------|-------------------------------------
Ledger        | CUSTOMER_NOT_FOUND                | Customer id missing
              | INVOICE_NOT_FOUND                 | Invoice id missing
              | INVALID_LEDGER_AMOUNT             | Bad opening balance / invoice total
--------------|-----------------------------------|-------------------------------------
Immutability  | IMMUTABILITY_VIOLATION            | Opening balance modified

===============================================================================
HANDLING POLICY
===============================================================================

All of these are detected before the first write of an operation and
surface synchronously. None are retried: each is either a user input error
or a business-rule conflict that needs a fresh decision. The exception is
ALLOCATION_CONFLICT, where resubmitting the same request is correct. The
transaction-owning ``ReceivablesService`` rolls back and re-raises, so a
caught exception always means "nothing was committed".
"""

from decimal import Decimal


class DairyLedgerError(Exception):
    """
    Base exception for all dairy ledger errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "DAIRY_LEDGER_ERROR"


# Allocation exceptions


class AllocationError(DairyLedgerError):
    """Base exception for allocation errors."""

    code: str = "ALLOCATION_ERROR"


class AllocationExceedsPaymentError(AllocationError):
    """
    Requested allocations exceed what is left on the payment.

    ``available`` is the payment amount minus everything already allocated
    from it (or, for a re-allocation, the new face amount).
    """

    code: str = "ALLOCATION_EXCEEDS_PAYMENT"

    def __init__(
        self,
        payment_id: str,
        requested: Decimal,
        available: Decimal,
        payment_amount: Decimal,
    ):
        self.payment_id = payment_id
        self.requested = requested
        self.available = available
        self.payment_amount = payment_amount
        super().__init__(
            f"Total allocations ({requested}) exceed the unapplied amount "
            f"({available}) of payment {payment_id} (face value {payment_amount})"
        )


class AllocationExceedsOpeningBalanceError(AllocationError):
    """Opening-balance allocations would exceed the customer's opening balance."""

    code: str = "ALLOCATION_EXCEEDS_OPENING_BALANCE"

    def __init__(
        self,
        customer_id: str,
        requested: Decimal,
        remaining: Decimal,
        opening_balance: Decimal,
    ):
        self.customer_id = customer_id
        self.requested = requested
        self.remaining = remaining
        self.opening_balance = opening_balance
        super().__init__(
            f"Allocation of {requested} exceeds remaining opening balance "
            f"({remaining} of {opening_balance}) for customer {customer_id}"
        )


class AllocationExceedsInvoiceError(AllocationError):
    """Allocations against an invoice would exceed its total amount."""

    code: str = "ALLOCATION_EXCEEDS_INVOICE"

    def __init__(
        self,
        invoice_id: str,
        requested: Decimal,
        outstanding: Decimal,
        total_amount: Decimal,
    ):
        self.invoice_id = invoice_id
        self.requested = requested
        self.outstanding = outstanding
        self.total_amount = total_amount
        super().__init__(
            f"Allocation of {requested} exceeds outstanding amount "
            f"({outstanding} of {total_amount}) on invoice {invoice_id}"
        )


class InvalidAllocationAmountError(AllocationError):
    """An allocation amount is not a finite positive number."""

    code: str = "INVALID_ALLOCATION_AMOUNT"

    def __init__(self, target_id: str, amount: object, reason: str):
        self.target_id = target_id
        self.amount = amount
        self.reason = reason
        super().__init__(
            f"Invalid allocation amount {amount!r} for target {target_id}: {reason}"
        )


class TargetNotFoundError(AllocationError):
    """Allocation target (invoice or customer) does not exist."""

    code: str = "TARGET_NOT_FOUND"

    def __init__(self, target_type: str, target_id: str):
        self.target_type = target_type
        self.target_id = target_id
        super().__init__(f"Allocation target not found: {target_type} {target_id}")


class TargetCustomerMismatchError(AllocationError):
    """Allocation target belongs to a different customer than the payment."""

    code: str = "TARGET_CUSTOMER_MISMATCH"

    def __init__(
        self,
        target_type: str,
        target_id: str,
        payment_customer_id: str,
        target_customer_id: str,
    ):
        self.target_type = target_type
        self.target_id = target_id
        self.payment_customer_id = payment_customer_id
        self.target_customer_id = target_customer_id
        super().__init__(
            f"{target_type} {target_id} belongs to customer {target_customer_id}, "
            f"payment belongs to customer {payment_customer_id}"
        )


# Reallocation exceptions


class ReallocationError(DairyLedgerError):
    """Base exception for reversal / reallocation errors."""

    code: str = "REALLOCATION_ERROR"


class ReallocationRequiredError(ReallocationError):
    """
    An edit needs its allocations reversed and re-supplied first.

    Raised when a payment's face amount changes while allocation rows exist
    and no new breakdown was supplied, or when an invoice with allocation
    rows is deleted without asking for reallocation.
    """

    code: str = "REALLOCATION_REQUIRED"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Reallocation required for {entity_type} {entity_id}: {reason}")


class AllocationConflictError(ReallocationError):
    """Another transaction allocated to the entity after it was read and before it was locked."""

    code: str = "ALLOCATION_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Allocation conflict on {entity_type} {entity_id}: "
            "allocations were changed by another transaction"
        )


# Payment exceptions


class PaymentError(DairyLedgerError):
    """Base exception for payment errors."""

    code: str = "PAYMENT_ERROR"


class PaymentNotFoundError(PaymentError):
    """Payment with given ID was not found."""

    code: str = "PAYMENT_NOT_FOUND"

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Payment not found: {payment_id}")


class InvalidPaymentAmountError(PaymentError):
    """Payment face value is not a finite positive amount."""

    code: str = "INVALID_PAYMENT_AMOUNT"

    def __init__(self, amount: object, reason: str):
        self.amount = amount
        self.reason = reason
        super().__init__(f"Invalid payment amount {amount!r}: {reason}")


# Ledger record exceptions


class LedgerRecordError(DairyLedgerError):
    """Base exception for customer / invoice record errors."""

    code: str = "LEDGER_RECORD_ERROR"


class CustomerNotFoundError(LedgerRecordError):
    """Customer with given ID was not found."""

    code: str = "CUSTOMER_NOT_FOUND"

    def __init__(self, customer_id: str):
        self.customer_id = customer_id
        super().__init__(f"Customer not found: {customer_id}")


class InvoiceNotFoundError(LedgerRecordError):
    """Invoice with given ID was not found."""

    code: str = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice not found: {invoice_id}")


class InvalidLedgerAmountError(LedgerRecordError):
    """Opening balance or invoice total is negative or not finite."""

    code: str = "INVALID_LEDGER_AMOUNT"

    def __init__(self, field: str, amount: object, reason: str):
        self.field = field
        self.amount = amount
        self.reason = reason
        super().__init__(f"Invalid {field} {amount!r}: {reason}")


# Immutability exceptions


class ImmutabilityError(DairyLedgerError):
    """Base exception for immutability violations."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify an immutable historical fact."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify immutable {entity_type} {entity_id}: {reason}"
        )
