"""
Ledger aggregates.

Recomputes envelope (available = assigned - activity) and account balance
aggregates after any transaction mutation.
"""

from .recalculator import (
    InvariantViolation,
    LedgerRecalculator,
    compute_activity,
    compute_available,
    compute_balance,
)

__all__ = [
    "InvariantViolation",
    "LedgerRecalculator",
    "compute_activity",
    "compute_available",
    "compute_balance",
]
