"""Read-only selectors.  They never add, delete, flush or commit."""

from dairy_ledger.selectors.allocation_selector import AllocationSelector
from dairy_ledger.selectors.base import BaseSelector
from dairy_ledger.selectors.credit_selector import CreditSelector
from dairy_ledger.selectors.outstanding_selector import OutstandingSelector

__all__ = [
    "AllocationSelector",
    "BaseSelector",
    "CreditSelector",
    "OutstandingSelector",
]
