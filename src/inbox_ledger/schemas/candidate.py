"""
Parsed transaction candidate (transient).

A candidate is what the extractors produce from one email. It is never
persisted directly; it becomes a Transaction only after the sender matched
an account and the dedup check passed.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional


class TransactionType(str, Enum):
    """Kind of bank event reported by the email."""

    PURCHASE = "purchase"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER = "transfer"
    FEE = "fee"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "TransactionType":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.UNKNOWN


class Confidence(str, Enum):
    """Extractor's self-reported certainty."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def parse(cls, value: Any) -> "Confidence":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.LOW


# Types whose amount is always an outflow / inflow
DEBIT_TYPES = frozenset({TransactionType.PURCHASE, TransactionType.WITHDRAWAL, TransactionType.FEE})
CREDIT_TYPES = frozenset({TransactionType.DEPOSIT})


@dataclass
class ParsedTransactionCandidate:
    """Structured, confidence-scored transaction extracted from an email."""

    date: str  # YYYY-MM-DD
    payee: str
    amount: Decimal  # Signed: negative for debits
    transaction_type: TransactionType = TransactionType.UNKNOWN
    confidence: Confidence = Confidence.LOW
    notes: Optional[str] = None
    extraction_strategy: str = ""
    category_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "date": self.date,
            "payee": self.payee,
            "amount": f"{self.amount:.2f}",
            "transactionType": self.transaction_type.value,
            "confidence": self.confidence.value,
            "notes": self.notes,
            "extraction_strategy": self.extraction_strategy,
            "category_id": self.category_id,
        }


def coerce_amount(value: Any) -> Optional[Decimal]:
    """
    Coerce a model- or regex-supplied amount to Decimal.

    Accepts numbers and strings such as "-45.67", "$1,234.50", "(12.00)".
    Returns None when the value is not numeric.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        amount = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
        return amount if amount.is_finite() else None
    if not isinstance(value, str):
        return None

    text = value.strip()
    negative = text.startswith("-") or (text.startswith("(") and text.endswith(")"))
    cleaned = re.sub(r"[^\d.]", "", text)
    if not cleaned or cleaned.count(".") > 1:
        return None
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    return -amount if negative else amount


def normalize_sign(amount: Decimal, transaction_type: TransactionType) -> tuple[Decimal, bool]:
    """
    Enforce the sign convention for the given transaction type.

    Purchases, withdrawals and fees are negative; deposits are positive.
    Transfers and unknown types keep the sign they came with.

    Returns:
        Tuple of (normalized amount, whether the sign was flipped)
    """
    if transaction_type in DEBIT_TYPES and amount > 0:
        return -amount, True
    if transaction_type in CREDIT_TYPES and amount < 0:
        return -amount, True
    return amount, False


def parse_iso_date(value: Any) -> Optional[date]:
    """Parse a YYYY-MM-DD string (time part tolerated), else None."""
    if not isinstance(value, str):
        return None
    try:
        return datetime.strptime(value.strip()[:10], "%Y-%m-%d").date()
    except ValueError:
        return None


def resolve_transaction_date(
    model_date: Optional[str],
    body_dates: list[date],
    received_at: Optional[datetime],
    today: Optional[date] = None,
) -> str:
    """
    Choose the transaction date.

    Precedence:
    1. A proposed date (from the model or the regex extractor) that is not
       after the received date, when the body confirms it by full date or
       by month and day, or when the body has no date at all.
    2. The first body date not after the received date.
    3. The email's received date.
    4. Today, only when nothing else is known.
    """
    today = today or date.today()
    received = received_at.date() if received_at else None

    proposed = parse_iso_date(model_date)
    if proposed and proposed <= (received or today):
        month_days = {(d.month, d.day) for d in body_dates}
        if not body_dates or proposed in body_dates or (proposed.month, proposed.day) in month_days:
            return proposed.isoformat()

    if body_dates:
        if received:
            for candidate in body_dates:
                if candidate <= received:
                    return candidate.isoformat()
        return body_dates[0].isoformat()

    if received:
        return received.isoformat()
    return today.isoformat()
