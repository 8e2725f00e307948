"""Inventory lot ledger and duplicate reconciliation engine."""

__version__ = "1.0.0"
