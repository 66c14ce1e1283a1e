"""
Canonical data shapes.

- budget: persisted entities (accounts, categories, transactions, flags)
- candidate: transient extraction result and its normalization rules
"""

from .budget import (
    Account,
    AccountType,
    Category,
    Flag,
    FlagReason,
    TokenRecord,
    Transaction,
    TransactionStatus,
    money_str,
    to_money,
)
from .candidate import (
    Confidence,
    ParsedTransactionCandidate,
    TransactionType,
    coerce_amount,
    normalize_sign,
    resolve_transaction_date,
)

__all__ = [
    "Account",
    "AccountType",
    "Category",
    "Confidence",
    "Flag",
    "FlagReason",
    "ParsedTransactionCandidate",
    "TokenRecord",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    "coerce_amount",
    "money_str",
    "normalize_sign",
    "resolve_transaction_date",
    "to_money",
]
