"""Flush-only write services.  Callers own commit and rollback."""

from dairy_ledger.services.aggregates import AggregateService
from dairy_ledger.services.allocation_engine import AllocationEngine
from dairy_ledger.services.base import BaseService
from dairy_ledger.services.ledger_records import LedgerRecordService
from dairy_ledger.services.reversal_service import ReversalService
from dairy_ledger.services.unapplied_tracker import UnappliedPaymentTracker

__all__ = [
    "AggregateService",
    "AllocationEngine",
    "BaseService",
    "LedgerRecordService",
    "ReversalService",
    "UnappliedPaymentTracker",
]
