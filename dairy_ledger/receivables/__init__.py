"""Receivables module - transaction-owning entry point for callers."""

from dairy_ledger.receivables.service import ReceivablesService

__all__ = ["ReceivablesService"]
