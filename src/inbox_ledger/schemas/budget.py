"""
Budget entities (SSOT).

Accounts, categories (envelopes), transactions and their review flags.
All monetary values are Decimal with two decimal places; the state store
keeps them as TEXT so that aggregates stay exact.
"""

import sqlite3
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional

CENT = Decimal("0.01")


def to_money(value: Decimal | str | int | float | None) -> Decimal:
    """Normalize a value to a two-decimal Decimal (None → 0.00)."""
    if value is None:
        return Decimal("0.00")
    if isinstance(value, float):
        value = Decimal(str(value))
    elif not isinstance(value, Decimal):
        value = Decimal(value)
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def money_str(value: Decimal) -> str:
    """Storage representation of a money value."""
    return f"{to_money(value):.2f}"


class AccountType(str, Enum):
    """Kind of bank account."""

    CHECKING = "checking"
    SAVINGS = "savings"
    CREDIT = "credit"


class TransactionStatus(str, Enum):
    """Clearing status of a transaction."""

    UNCLEARED = "uncleared"
    CLEARED = "cleared"
    RECONCILED = "reconciled"


class FlagReason(str, Enum):
    """Why a transaction needs review."""

    CURRENCY_MISMATCH = "currency_mismatch"
    LOW_CONFIDENCE = "low_confidence"
    MISSING_CATEGORY = "missing_category"
    UNUSUAL_AMOUNT = "unusual_amount"


@dataclass
class Account:
    """A bank account; cleared_balance is the sum of its transactions."""

    id: int
    user_id: str
    name: str
    type: AccountType
    cleared_balance: Decimal = Decimal("0.00")
    email_domain: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Account":
        """Create from database row."""
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            type=AccountType(row["type"]),
            cleared_balance=to_money(row["cleared_balance"]),
            email_domain=row["email_domain"],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "cleared_balance": money_str(self.cleared_balance),
            "email_domain": self.email_domain,
        }


@dataclass
class Category:
    """A budget envelope. Invariant: available == assigned - activity."""

    id: int
    user_id: str
    name: str
    group: str
    assigned: Decimal = Decimal("0.00")
    activity: Decimal = Decimal("0.00")
    available: Decimal = Decimal("0.00")

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Category":
        """Create from database row."""
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            group=row["group_name"],
            assigned=to_money(row["assigned"]),
            activity=to_money(row["activity"]),
            available=to_money(row["available"]),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "group": self.group,
            "assigned": money_str(self.assigned),
            "activity": money_str(self.activity),
            "available": money_str(self.available),
        }


@dataclass
class Flag:
    """Review annotation on a transaction. Never deleted, only resolved."""

    reason: FlagReason
    message: str
    created_at: str  # ISO timestamp
    resolved: bool = False
    id: Optional[int] = None
    transaction_id: Optional[int] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Flag":
        """Create from database row."""
        return cls(
            id=row["id"],
            transaction_id=row["transaction_id"],
            reason=FlagReason(row["reason"]),
            message=row["message"],
            created_at=row["created_at"],
            resolved=bool(row["resolved"]),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "reason": self.reason.value,
            "message": self.message,
            "created_at": self.created_at,
            "resolved": self.resolved,
        }


@dataclass
class Transaction:
    """A signed budget transaction (negative = outflow)."""

    id: int
    user_id: str
    date: str  # YYYY-MM-DD
    payee: str
    amount: Decimal
    account_id: int
    status: TransactionStatus = TransactionStatus.UNCLEARED
    category_id: Optional[int] = None
    original_email_id: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[str] = None
    flags: list[Flag] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: sqlite3.Row, flags: Optional[list[Flag]] = None) -> "Transaction":
        """Create from database row."""
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            date=row["date"],
            payee=row["payee"],
            amount=to_money(row["amount"]),
            account_id=row["account_id"],
            status=TransactionStatus(row["status"]),
            category_id=row["category_id"],
            original_email_id=row["original_email_id"],
            notes=row["notes"],
            created_at=row["created_at"],
            flags=flags or [],
        )

    @property
    def has_unresolved_flags(self) -> bool:
        return any(not f.resolved for f in self.flags)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "date": self.date,
            "payee": self.payee,
            "amount": money_str(self.amount),
            "account_id": self.account_id,
            "category_id": self.category_id,
            "status": self.status.value,
            "original_email_id": self.original_email_id,
            "notes": self.notes,
            "flags": [f.to_dict() for f in self.flags],
        }


@dataclass
class TokenRecord:
    """Stored OAuth tokens for one user."""

    user_id: str
    refresh_token: Optional[str]
    access_token: Optional[str]
    expiry: Optional[float]  # Epoch seconds
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "TokenRecord":
        """Create from database row."""
        return cls(
            user_id=row["user_id"],
            refresh_token=row["refresh_token"],
            access_token=row["access_token"],
            expiry=row["expiry"],
            updated_at=row["updated_at"],
        )
