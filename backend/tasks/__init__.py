# tasks/__init__.py
from tasks.reconciliation import reconcile_once, reconciliation_loop

__all__ = [
    "reconcile_once",
    "reconciliation_loop",
]
