"""
dairy_ledger - payment allocation and outstanding-balance reconciliation.

Callers go through ``dairy_ledger.receivables.ReceivablesService``; the
services, selectors and domain packages underneath it are the building
blocks.
"""

__version__ = "0.1.0"
