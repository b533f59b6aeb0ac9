"""
Domain layer - pure functional core.

No database access, no clock reads, no I/O.  Services call into these
functions with plain values and persist the results.
"""

from dairy_ledger.domain.allocation_rules import (
    derive_allocation_status,
    derive_invoice_status,
    lines_total,
    normalize_requests,
)
from dairy_ledger.domain.clock import Clock, DeterministicClock, SystemClock
from dairy_ledger.domain.dtos import (
    AllocationLine,
    AllocationRequest,
    AllocationResult,
    AllocationStatus,
    InvoiceStatus,
    ReconcileOutcome,
    ReversalResult,
    TargetType,
    TrackerAction,
)
from dairy_ledger.domain.values import MONEY_QUANTUM, ZERO, money_sum, to_money

__all__ = [
    "AllocationLine",
    "AllocationRequest",
    "AllocationResult",
    "AllocationStatus",
    "Clock",
    "DeterministicClock",
    "InvoiceStatus",
    "MONEY_QUANTUM",
    "ReconcileOutcome",
    "ReversalResult",
    "SystemClock",
    "TargetType",
    "TrackerAction",
    "ZERO",
    "derive_allocation_status",
    "derive_invoice_status",
    "lines_total",
    "money_sum",
    "normalize_requests",
    "to_money",
]
