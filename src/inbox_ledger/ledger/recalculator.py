"""
Envelope and account aggregate recomputation.

Aggregates are recomputed from scratch from the transactions that reference
an entity, never adjusted incrementally:

- category.activity  = sum of amounts of its transactions
- category.available = category.assigned - category.activity
- account.cleared_balance = sum of amounts of its transactions (all statuses)

Recalculation always runs on the caller's open connection so that the
triggering mutation and the aggregate update commit (or roll back) together.
The cost is one scan per touched entity, which is fine at personal-finance
volume.
"""

import logging
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

from ..schemas.budget import money_str, to_money

logger = logging.getLogger(__name__)


def compute_activity(amounts: Iterable[Decimal | str]) -> Decimal:
    """Sum of transaction amounts for a category."""
    return to_money(sum((to_money(a) for a in amounts), Decimal("0.00")))


def compute_available(assigned: Decimal, activity: Decimal) -> Decimal:
    """Envelope rule: available = assigned - activity."""
    return to_money(assigned) - to_money(activity)


def compute_balance(amounts: Iterable[Decimal | str]) -> Decimal:
    """Sum of transaction amounts for an account."""
    return to_money(sum((to_money(a) for a in amounts), Decimal("0.00")))


def _distinct(ids: Iterable[int | None]) -> list[int]:
    seen: list[int] = []
    for entity_id in ids:
        if entity_id is not None and entity_id not in seen:
            seen.append(entity_id)
    return seen


@dataclass
class InvariantViolation:
    """An aggregate that does not match its transactions."""

    entity: str  # "category" or "account"
    entity_id: int
    field: str
    stored: Decimal
    expected: Decimal

    def __str__(self) -> str:
        return (
            f"{self.entity} {self.entity_id}: {self.field} is {self.stored}, "
            f"expected {self.expected}"
        )


class LedgerRecalculator:
    """Recomputes category and account aggregates inside a unit of work."""

    def recalculate(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        category_ids: Iterable[int | None] = (),
        account_ids: Iterable[int | None] = (),
    ) -> None:
        """
        Recalculate every distinct category and account given.

        None ids are ignored and an id listed twice (old == new on update)
        is recalculated once.
        """
        for category_id in _distinct(category_ids):
            self.recalculate_category(conn, user_id, category_id)
        for account_id in _distinct(account_ids):
            self.recalculate_account(conn, user_id, account_id)

    def recalculate_category(self, conn: sqlite3.Connection, user_id: str, category_id: int) -> None:
        row = conn.execute(
            "SELECT assigned FROM categories WHERE id = ? AND user_id = ?",
            (category_id, user_id),
        ).fetchone()
        if row is None:
            logger.warning("Category %s not found for user %s, skipping recalculation", category_id, user_id)
            return

        amounts = [
            r["amount"]
            for r in conn.execute(
                "SELECT amount FROM transactions WHERE user_id = ? AND category_id = ?",
                (user_id, category_id),
            )
        ]
        activity = compute_activity(amounts)
        available = compute_available(to_money(row["assigned"]), activity)

        conn.execute(
            "UPDATE categories SET activity = ?, available = ? WHERE id = ? AND user_id = ?",
            (money_str(activity), money_str(available), category_id, user_id),
        )
        logger.debug(
            "Category %s: activity=%s available=%s (%d transactions)",
            category_id, activity, available, len(amounts),
        )

    def recalculate_account(self, conn: sqlite3.Connection, user_id: str, account_id: int) -> None:
        amounts = [
            r["amount"]
            for r in conn.execute(
                "SELECT amount FROM transactions WHERE user_id = ? AND account_id = ?",
                (user_id, account_id),
            )
        ]
        balance = compute_balance(amounts)
        cursor = conn.execute(
            "UPDATE accounts SET cleared_balance = ? WHERE id = ? AND user_id = ?",
            (money_str(balance), account_id, user_id),
        )
        if cursor.rowcount == 0:
            logger.warning("Account %s not found for user %s, skipping recalculation", account_id, user_id)
            return
        logger.debug("Account %s: cleared_balance=%s (%d transactions)", account_id, balance, len(amounts))

    def verify(self, conn: sqlite3.Connection, user_id: str) -> list[InvariantViolation]:
        """Check every category and account of a user against its transactions."""
        violations: list[InvariantViolation] = []

        for cat in conn.execute(
            "SELECT id, assigned, activity, available FROM categories WHERE user_id = ?",
            (user_id,),
        ).fetchall():
            amounts = [
                r["amount"]
                for r in conn.execute(
                    "SELECT amount FROM transactions WHERE user_id = ? AND category_id = ?",
                    (user_id, cat["id"]),
                )
            ]
            activity = compute_activity(amounts)
            if to_money(cat["activity"]) != activity:
                violations.append(
                    InvariantViolation("category", cat["id"], "activity", to_money(cat["activity"]), activity)
                )
            expected_available = compute_available(to_money(cat["assigned"]), to_money(cat["activity"]))
            if to_money(cat["available"]) != expected_available:
                violations.append(
                    InvariantViolation(
                        "category", cat["id"], "available", to_money(cat["available"]), expected_available
                    )
                )

        for acct in conn.execute(
            "SELECT id, cleared_balance FROM accounts WHERE user_id = ?", (user_id,)
        ).fetchall():
            amounts = [
                r["amount"]
                for r in conn.execute(
                    "SELECT amount FROM transactions WHERE user_id = ? AND account_id = ?",
                    (user_id, acct["id"]),
                )
            ]
            balance = compute_balance(amounts)
            if to_money(acct["cleared_balance"]) != balance:
                violations.append(
                    InvariantViolation(
                        "account", acct["id"], "cleared_balance", to_money(acct["cleared_balance"]), balance
                    )
                )

        return violations
