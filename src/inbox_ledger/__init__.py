"""
Bank notification email → transaction extraction → envelope budget.

A deterministic, testable pipeline that turns unread bank alert emails into
budget transactions with confidence flags, strict deduplication by source
message, and consistent category/account aggregates.
"""

__version__ = "0.1.0"
