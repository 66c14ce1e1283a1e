"""
State store for tokens, the budget ledger and sync progress.
"""

from .sqlite_store import StateStore

__all__ = ["StateStore"]
