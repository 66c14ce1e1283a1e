"""
CLI runner module.

Provides commands:
- sync / watch: Import unread bank alerts
- authorize / revoke: Manage stored OAuth tokens
- accounts / add-account / domains: Link bank sender domains to accounts
- flags / resolve-flag: Review flagged transactions
- status: Store statistics and ledger invariants
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
