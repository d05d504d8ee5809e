"""Ledger model: pure calculations and the in-memory aggregate store."""

from budgetpilot.ledger.calculations import (
    compute_line_item_actual,
    compute_line_item_actual_from_requests,
    compute_remaining,
    compute_transaction_total,
    compute_variance,
    sort_purchase_requests,
    sort_transactions,
)
from budgetpilot.ledger.store import LedgerStore, StoreSnapshot, Touch

__all__ = [
    "LedgerStore",
    "StoreSnapshot",
    "Touch",
    "compute_line_item_actual",
    "compute_line_item_actual_from_requests",
    "compute_remaining",
    "compute_transaction_total",
    "compute_variance",
    "sort_purchase_requests",
    "sort_transactions",
]
