"""
ORM-Level Immutability Enforcement.

A customer's opening balance is a historical fact recorded once at
onboarding.  It is never edited to "pay it down"; payments against it are
recorded as rows in ``opening_balance_payments`` and the remaining debt is
derived (see ``OutstandingSelector.effective_opening_balance``).

This module registers a ``before_update`` listener that fires before the
UPDATE reaches the database:

    session.flush()
         |
         v
    [before_update] --> _check_customer_opening_balance() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if the check passes)

If the check fails the flush aborts, so the surrounding transaction never
commits the change.

Usage:
    from dairy_ledger.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup
"""

from sqlalchemy import event
from sqlalchemy.orm.attributes import get_history

from dairy_ledger.exceptions import ImmutabilityViolationError
from dairy_ledger.logging_config import get_logger

logger = get_logger("db.immutability")


def _check_customer_opening_balance(mapper, connection, target):
    """Prevent updates to Customer.opening_balance once persisted."""
    history = get_history(target, "opening_balance")
    if not history.deleted:
        return

    old_value = history.deleted[0]
    new_value = history.added[0] if history.added else None
    if old_value == new_value:
        return

    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "Customer",
            "entity_id": str(target.id),
            "field": "opening_balance",
            "old_value": str(old_value),
            "new_value": str(new_value),
        },
    )
    raise ImmutabilityViolationError(
        entity_type="Customer",
        entity_id=str(target.id),
        reason="opening_balance is recorded once at onboarding and never modified",
    )


def register_immutability_listeners():
    """
    Register immutability enforcement event listeners.

    Safe to call more than once.
    """
    from dairy_ledger.models.customer import Customer

    if not event.contains(Customer, "before_update", _check_customer_opening_balance):
        event.listen(Customer, "before_update", _check_customer_opening_balance)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that need to violate the rule on purpose.
    """
    from dairy_ledger.models.customer import Customer

    if event.contains(Customer, "before_update", _check_customer_opening_balance):
        event.remove(Customer, "before_update", _check_customer_opening_balance)
