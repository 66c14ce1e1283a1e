"""
SQLite-based state store implementation.

Tables:
- oauth_tokens: One mailbox token record per user
- accounts: Bank accounts with optional linked email domain
- categories: Budget envelopes with assigned/activity/available
- transactions: Signed transactions, unique per (user, original_email_id)
- transaction_flags: Append-only review flags
- payee_rules, sync_state, sync_runs: added by migrations

Every row is namespaced by user_id. Every transaction mutation recalculates
the affected aggregates on the same connection before committing.
"""

import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

from ..errors import DuplicateDomainError, DuplicateTransaction, NotFoundError, PersistenceError
from ..ledger.recalculator import InvariantViolation, LedgerRecalculator
from ..matching.accounts import normalize_domain
from ..schemas.budget import (
    Account,
    AccountType,
    Category,
    Flag,
    TokenRecord,
    Transaction,
    TransactionStatus,
    money_str,
    to_money,
)

_UNSET: Any = object()

# Fields a caller may change through update_transaction()
UPDATABLE_TRANSACTION_FIELDS = frozenset(
    {"date", "payee", "amount", "category_id", "account_id", "status", "notes"}
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class StateStore:
    """
    SQLite-based store for the budget and the import pipeline.

    Provides persistent tracking of:
    - OAuth tokens per user
    - Accounts, categories and transactions
    - Review flags
    - Sync progress and run history

    Each public method is one unit of work on its own connection, so the
    store can be shared between threads.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path | str, run_migrations: bool = True):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.recalculator = LedgerRecalculator()
        self._init_db()
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _write_transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction that takes the database write lock up front.

        Used for read-check-write sequences (dedup, recalculation) so two
        concurrent writers cannot interleave between the read and the write.
        """
        conn = self._get_connection()
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS oauth_tokens (
                    user_id TEXT PRIMARY KEY,
                    refresh_token TEXT,
                    access_token TEXT,
                    expiry REAL,  -- epoch seconds
                    updated_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    type TEXT NOT NULL,
                    cleared_balance TEXT NOT NULL DEFAULT '0.00',
                    email_domain TEXT,
                    created_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS categories (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    group_name TEXT NOT NULL,
                    assigned TEXT NOT NULL DEFAULT '0.00',
                    activity TEXT NOT NULL DEFAULT '0.00',
                    available TEXT NOT NULL DEFAULT '0.00'
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    date TEXT NOT NULL,
                    payee TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    account_id INTEGER NOT NULL,
                    category_id INTEGER,
                    status TEXT NOT NULL,
                    original_email_id TEXT,
                    notes TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT,
                    FOREIGN KEY (account_id) REFERENCES accounts(id),
                    FOREIGN KEY (category_id) REFERENCES categories(id) ON DELETE SET NULL
                )
            """
            )

            # Flags outlive their transaction (audit trail), so no FK here
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS transaction_flags (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    transaction_id INTEGER NOT NULL,
                    reason TEXT NOT NULL,
                    message TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    resolved INTEGER NOT NULL DEFAULT 0,
                    resolved_at TEXT
                )
            """
            )

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_accounts_user ON accounts(user_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_categories_user ON categories(user_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_transactions_account ON transactions(user_id, account_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_transactions_category ON transactions(user_id, category_id)"
            )
            # Dedup key: at most one transaction per source message
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_transactions_email
                ON transactions(user_id, original_email_id)
                WHERE original_email_id IS NOT NULL
            """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_flags_transaction ON transaction_flags(transaction_id)"
            )

            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
            )

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            runner = MigrationRunner(conn)
            runner.run_pending()
        finally:
            conn.close()

    def ping(self) -> None:
        """Fail fast if the database cannot be opened."""
        try:
            with self._transaction() as conn:
                conn.execute("SELECT 1").fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"State store unavailable at {self.db_path}: {e}") from e

    # Token methods

    def save_tokens(
        self,
        user_id: str,
        refresh_token: str | None,
        access_token: str | None,
        expiry: float | None,
    ) -> None:
        """Insert or replace the token record for a user."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO oauth_tokens (user_id, refresh_token, access_token, expiry, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    refresh_token = excluded.refresh_token,
                    access_token = excluded.access_token,
                    expiry = excluded.expiry,
                    updated_at = excluded.updated_at
            """,
                (user_id, refresh_token, access_token, expiry, _now()),
            )

    def update_access_token(
        self,
        user_id: str,
        access_token: str,
        expiry: float,
        refresh_token: str | None = None,
    ) -> None:
        """Store a refreshed access token (and a rotated refresh token, if any)."""
        with self._transaction() as conn:
            if refresh_token:
                conn.execute(
                    """
                    UPDATE oauth_tokens
                    SET access_token = ?, expiry = ?, refresh_token = ?, updated_at = ?
                    WHERE user_id = ?
                """,
                    (access_token, expiry, refresh_token, _now(), user_id),
                )
            else:
                conn.execute(
                    """
                    UPDATE oauth_tokens
                    SET access_token = ?, expiry = ?, updated_at = ?
                    WHERE user_id = ?
                """,
                    (access_token, expiry, _now(), user_id),
                )

    def get_token_record(self, user_id: str) -> TokenRecord | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_tokens WHERE user_id = ?", (user_id,)
            ).fetchone()
            return TokenRecord.from_row(row) if row else None

    def clear_tokens(self, user_id: str) -> bool:
        """Clear all tokens for a user (revoke). Returns False if none stored."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE oauth_tokens
                SET refresh_token = NULL, access_token = NULL, expiry = NULL, updated_at = ?
                WHERE user_id = ?
            """,
                (_now(), user_id),
            )
            return cursor.rowcount > 0

    def list_users_with_refresh_token(self) -> list[str]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT user_id FROM oauth_tokens
                WHERE refresh_token IS NOT NULL AND refresh_token != ''
                ORDER BY user_id
            """
            ).fetchall()
            return [r["user_id"] for r in rows]

    # Account methods

    def _check_domain_free(
        self, conn: sqlite3.Connection, user_id: str, domain: str | None, account_id: int | None
    ) -> None:
        if not domain:
            return
        row = conn.execute(
            "SELECT id, name FROM accounts WHERE user_id = ? AND email_domain = ? AND id IS NOT ?",
            (user_id, domain, account_id),
        ).fetchone()
        if row:
            raise DuplicateDomainError(domain, [row["id"]])

    def add_account(
        self,
        user_id: str,
        name: str,
        account_type: AccountType | str = AccountType.CHECKING,
        email_domain: str | None = None,
    ) -> Account:
        """Create an account. A domain may be linked to one account only."""
        account_type = AccountType(account_type)
        domain = normalize_domain(email_domain)
        with self._write_transaction() as conn:
            self._check_domain_free(conn, user_id, domain, None)
            cursor = conn.execute(
                """
                INSERT INTO accounts (user_id, name, type, cleared_balance, email_domain, created_at)
                VALUES (?, ?, ?, '0.00', ?, ?)
            """,
                (user_id, name, account_type.value, domain, _now()),
            )
            row = conn.execute("SELECT * FROM accounts WHERE id = ?", (cursor.lastrowid,)).fetchone()
            return Account.from_row(row)

    def update_account(
        self,
        user_id: str,
        account_id: int,
        name: str | None = None,
        account_type: AccountType | str | None = None,
        email_domain: Any = _UNSET,
    ) -> Account:
        """Update account fields. Pass email_domain=None to unlink the domain."""
        with self._write_transaction() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE id = ? AND user_id = ?", (account_id, user_id)
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Account {account_id} not found")

            updates: list[str] = []
            params: list[Any] = []
            if name is not None:
                updates.append("name = ?")
                params.append(name)
            if account_type is not None:
                updates.append("type = ?")
                params.append(AccountType(account_type).value)
            if email_domain is not _UNSET:
                domain = normalize_domain(email_domain)
                self._check_domain_free(conn, user_id, domain, account_id)
                updates.append("email_domain = ?")
                params.append(domain)

            if updates:
                params.extend([account_id, user_id])
                conn.execute(
                    f"UPDATE accounts SET {', '.join(updates)} WHERE id = ? AND user_id = ?",
                    params,
                )
            row = conn.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
            return Account.from_row(row)

    def get_account(self, user_id: str, account_id: int) -> Account | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE id = ? AND user_id = ?", (account_id, user_id)
            ).fetchone()
            return Account.from_row(row) if row else None

    def get_accounts(self, user_id: str) -> list[Account]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM accounts WHERE user_id = ? ORDER BY id", (user_id,)
            ).fetchall()
            return [Account.from_row(r) for r in rows]

    # Category methods

    def add_category(
        self,
        user_id: str,
        name: str,
        group: str,
        assigned: Decimal | str | int = 0,
    ) -> Category:
        """Create a category; a new envelope has no activity yet."""
        assigned_value = to_money(assigned)
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO categories (user_id, name, group_name, assigned, activity, available)
                VALUES (?, ?, ?, ?, '0.00', ?)
            """,
                (user_id, name, group, money_str(assigned_value), money_str(assigned_value)),
            )
            row = conn.execute("SELECT * FROM categories WHERE id = ?", (cursor.lastrowid,)).fetchone()
            return Category.from_row(row)

    def get_category(self, user_id: str, category_id: int) -> Category | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM categories WHERE id = ? AND user_id = ?", (category_id, user_id)
            ).fetchone()
            return Category.from_row(row) if row else None

    def get_categories(self, user_id: str) -> list[Category]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM categories WHERE user_id = ? ORDER BY group_name, name",
                (user_id,),
            ).fetchall()
            return [Category.from_row(r) for r in rows]

    def _require_category(self, conn: sqlite3.Connection, user_id: str, category_id: int) -> sqlite3.Row:
        row = conn.execute(
            "SELECT * FROM categories WHERE id = ? AND user_id = ?", (category_id, user_id)
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Category {category_id} not found")
        return row

    def assign_to_category(self, user_id: str, category_id: int, assigned: Decimal | str | int) -> Category:
        """Set the assigned amount of an envelope."""
        with self._write_transaction() as conn:
            self._require_category(conn, user_id, category_id)
            conn.execute(
                "UPDATE categories SET assigned = ? WHERE id = ? AND user_id = ?",
                (money_str(to_money(assigned)), category_id, user_id),
            )
            self.recalculator.recalculate(conn, user_id, category_ids=[category_id])
            row = conn.execute("SELECT * FROM categories WHERE id = ?", (category_id,)).fetchone()
            return Category.from_row(row)

    def move_money(
        self,
        user_id: str,
        from_category_id: int,
        to_category_id: int,
        amount: Decimal | str | int,
    ) -> tuple[Category, Category]:
        """Move assigned money between two envelopes in one unit of work."""
        value = to_money(amount)
        if from_category_id == to_category_id:
            raise ValueError("Cannot move money to the same category")
        with self._write_transaction() as conn:
            source = self._require_category(conn, user_id, from_category_id)
            target = self._require_category(conn, user_id, to_category_id)
            conn.execute(
                "UPDATE categories SET assigned = ? WHERE id = ?",
                (money_str(to_money(source["assigned"]) - value), from_category_id),
            )
            conn.execute(
                "UPDATE categories SET assigned = ? WHERE id = ?",
                (money_str(to_money(target["assigned"]) + value), to_category_id),
            )
            self.recalculator.recalculate(
                conn, user_id, category_ids=[from_category_id, to_category_id]
            )
            rows = [
                conn.execute("SELECT * FROM categories WHERE id = ?", (cid,)).fetchone()
                for cid in (from_category_id, to_category_id)
            ]
            return Category.from_row(rows[0]), Category.from_row(rows[1])

    def delete_category(self, user_id: str, category_id: int) -> bool:
        """Delete a category; its transactions become uncategorized."""
        with self._write_transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM categories WHERE id = ? AND user_id = ?", (category_id, user_id)
            )
            return cursor.rowcount > 0

    # Transaction methods

    def _load_flags(self, conn: sqlite3.Connection, transaction_id: int) -> list[Flag]:
        rows = conn.execute(
            "SELECT * FROM transaction_flags WHERE transaction_id = ? ORDER BY id",
            (transaction_id,),
        ).fetchall()
        return [Flag.from_row(r) for r in rows]

    def _load_transaction(self, conn: sqlite3.Connection, user_id: str, transaction_id: int) -> Transaction | None:
        row = conn.execute(
            "SELECT * FROM transactions WHERE id = ? AND user_id = ?", (transaction_id, user_id)
        ).fetchone()
        if row is None:
            return None
        return Transaction.from_row(row, self._load_flags(conn, transaction_id))

    def _insert_flags(
        self, conn: sqlite3.Connection, user_id: str, transaction_id: int, flags: Iterable[Flag]
    ) -> None:
        for flag in flags:
            conn.execute(
                """
                INSERT INTO transaction_flags
                (user_id, transaction_id, reason, message, created_at, resolved)
                VALUES (?, ?, ?, ?, ?, ?)
            """,
                (
                    user_id,
                    transaction_id,
                    flag.reason.value,
                    flag.message,
                    flag.created_at,
                    int(flag.resolved),
                ),
            )

    def create_transaction(
        self,
        user_id: str,
        date: str,
        payee: str,
        amount: Decimal | str | int,
        account_id: int,
        category_id: int | None = None,
        status: TransactionStatus | str = TransactionStatus.UNCLEARED,
        original_email_id: str | None = None,
        notes: str | None = None,
        flags: Iterable[Flag] = (),
    ) -> Transaction:
        """
        Create a transaction, its flags and the affected aggregates atomically.

        Raises:
            DuplicateTransaction: original_email_id already imported
            NotFoundError: account or category does not belong to the user
        """
        status = TransactionStatus(status)
        with self._write_transaction() as conn:
            if original_email_id:
                existing = conn.execute(
                    "SELECT id FROM transactions WHERE user_id = ? AND original_email_id = ?",
                    (user_id, original_email_id),
                ).fetchone()
                if existing:
                    raise DuplicateTransaction(original_email_id, existing["id"])

            if conn.execute(
                "SELECT 1 FROM accounts WHERE id = ? AND user_id = ?", (account_id, user_id)
            ).fetchone() is None:
                raise NotFoundError(f"Account {account_id} not found")
            if category_id is not None:
                self._require_category(conn, user_id, category_id)

            try:
                cursor = conn.execute(
                    """
                    INSERT INTO transactions
                    (user_id, date, payee, amount, account_id, category_id, status,
                     original_email_id, notes, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        user_id,
                        date,
                        payee,
                        money_str(to_money(amount)),
                        account_id,
                        category_id,
                        status.value,
                        original_email_id,
                        notes,
                        _now(),
                    ),
                )
            except sqlite3.IntegrityError as e:
                if original_email_id and "original_email_id" in str(e):
                    raise DuplicateTransaction(original_email_id) from e
                raise

            transaction_id = cursor.lastrowid
            self._insert_flags(conn, user_id, transaction_id, flags)
            self.recalculator.recalculate(
                conn, user_id, category_ids=[category_id], account_ids=[account_id]
            )
            return self._load_transaction(conn, user_id, transaction_id)

    def update_transaction(self, user_id: str, transaction_id: int, **changes: Any) -> Transaction:
        """
        Update transaction fields and recalculate old and new aggregates.

        Accepted keyword arguments: date, payee, amount, category_id,
        account_id, status, notes.
        """
        unknown = set(changes) - UPDATABLE_TRANSACTION_FIELDS
        if unknown:
            raise ValueError(f"Cannot update transaction fields: {sorted(unknown)}")

        with self._write_transaction() as conn:
            old = self._load_transaction(conn, user_id, transaction_id)
            if old is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")

            if "account_id" in changes and conn.execute(
                "SELECT 1 FROM accounts WHERE id = ? AND user_id = ?",
                (changes["account_id"], user_id),
            ).fetchone() is None:
                raise NotFoundError(f"Account {changes['account_id']} not found")
            if changes.get("category_id") is not None:
                self._require_category(conn, user_id, changes["category_id"])

            updates: list[str] = []
            params: list[Any] = []
            for key, value in changes.items():
                if key == "amount":
                    value = money_str(to_money(value))
                elif key == "status":
                    value = TransactionStatus(value).value
                updates.append(f"{key} = ?")
                params.append(value)

            if updates:
                updates.append("updated_at = ?")
                params.append(_now())
                params.extend([transaction_id, user_id])
                conn.execute(
                    f"UPDATE transactions SET {', '.join(updates)} WHERE id = ? AND user_id = ?",
                    params,
                )

            new_category = changes.get("category_id", old.category_id)
            new_account = changes.get("account_id", old.account_id)
            self.recalculator.recalculate(
                conn,
                user_id,
                category_ids=[old.category_id, new_category],
                account_ids=[old.account_id, new_account],
            )
            return self._load_transaction(conn, user_id, transaction_id)

    def delete_transaction(self, user_id: str, transaction_id: int) -> bool:
        """Delete a transaction and recalculate what it touched. Flags are kept."""
        with self._write_transaction() as conn:
            old = self._load_transaction(conn, user_id, transaction_id)
            if old is None:
                return False
            conn.execute(
                "DELETE FROM transactions WHERE id = ? AND user_id = ?", (transaction_id, user_id)
            )
            self.recalculator.recalculate(
                conn, user_id, category_ids=[old.category_id], account_ids=[old.account_id]
            )
            return True

    def get_transaction(self, user_id: str, transaction_id: int) -> Transaction | None:
        with self._transaction() as conn:
            return self._load_transaction(conn, user_id, transaction_id)

    def find_transaction_by_email_id(self, user_id: str, original_email_id: str) -> Transaction | None:
        """Dedup lookup by source message id."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT id FROM transactions WHERE user_id = ? AND original_email_id = ?",
                (user_id, original_email_id),
            ).fetchone()
            return self._load_transaction(conn, user_id, row["id"]) if row else None

    def list_transactions(
        self,
        user_id: str,
        account_id: int | None = None,
        category_id: int | None = None,
    ) -> list[Transaction]:
        """List transactions, newest first, optionally filtered."""
        query = "SELECT * FROM transactions WHERE user_id = ?"
        params: list[Any] = [user_id]
        if account_id is not None:
            query += " AND account_id = ?"
            params.append(account_id)
        if category_id is not None:
            query += " AND category_id = ?"
            params.append(category_id)
        query += " ORDER BY date DESC, id DESC"

        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
            return [Transaction.from_row(r, self._load_flags(conn, r["id"])) for r in rows]

    # Flag methods

    def add_flags(self, user_id: str, transaction_id: int, flags: Iterable[Flag]) -> list[Flag]:
        """Append flags to an existing transaction."""
        with self._transaction() as conn:
            if conn.execute(
                "SELECT 1 FROM transactions WHERE id = ? AND user_id = ?", (transaction_id, user_id)
            ).fetchone() is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            self._insert_flags(conn, user_id, transaction_id, flags)
            return self._load_flags(conn, transaction_id)

    def resolve_flag(self, user_id: str, flag_id: int) -> bool:
        """Mark a flag resolved. Flags are never deleted."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE transaction_flags SET resolved = 1, resolved_at = ?
                WHERE id = ? AND user_id = ? AND resolved = 0
            """,
                (_now(), flag_id, user_id),
            )
            return cursor.rowcount > 0

    def get_flagged_transactions(self, user_id: str) -> list[Transaction]:
        """Transactions with at least one unresolved flag."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT t.* FROM transactions t
                JOIN transaction_flags f ON f.transaction_id = t.id
                WHERE t.user_id = ? AND f.resolved = 0
                ORDER BY t.date DESC, t.id DESC
            """,
                (user_id,),
            ).fetchall()
            return [Transaction.from_row(r, self._load_flags(conn, r["id"])) for r in rows]

    # Payee rule methods

    def save_payee_rule(self, user_id: str, pattern: str, category_id: int) -> None:
        """Map payees containing `pattern` (case-insensitive) to a category."""
        with self._transaction() as conn:
            self._require_category(conn, user_id, category_id)
            conn.execute(
                """
                INSERT INTO payee_rules (user_id, pattern, category_id, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, pattern) DO UPDATE SET category_id = excluded.category_id
            """,
                (user_id, pattern.strip().lower(), category_id, _now()),
            )

    def match_payee_category(self, user_id: str, payee: str) -> int | None:
        """Category id of the longest payee rule contained in `payee`."""
        payee_lower = payee.lower()
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT pattern, category_id FROM payee_rules
                WHERE user_id = ? ORDER BY LENGTH(pattern) DESC, id
            """,
                (user_id,),
            ).fetchall()
        for row in rows:
            if row["pattern"] and row["pattern"] in payee_lower:
                return row["category_id"]
        return None

    # Sync progress methods

    def get_sync_state(self, user_id: str) -> dict[str, Any] | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM sync_state WHERE user_id = ?", (user_id,)).fetchone()
            return dict(row) if row else None

    def update_sync_state(
        self,
        user_id: str,
        status: str,
        last_processed_at: str | None = None,
        last_message_id: str | None = None,
        pending_count: int = 0,
    ) -> None:
        """Record the resumable watermark for a user."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO sync_state
                (user_id, last_sync_time, last_processed_at, last_message_id, pending_count, status)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    last_sync_time = excluded.last_sync_time,
                    last_processed_at = COALESCE(excluded.last_processed_at, sync_state.last_processed_at),
                    last_message_id = COALESCE(excluded.last_message_id, sync_state.last_message_id),
                    pending_count = excluded.pending_count,
                    status = excluded.status
            """,
                (user_id, _now(), last_processed_at, last_message_id, pending_count, status),
            )

    def record_sync_run(
        self,
        user_id: str,
        started_at: str,
        imported: int,
        skipped: int,
        status: str,
        error_message: str | None = None,
    ) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_runs
                (user_id, started_at, finished_at, imported, skipped, status, error_message)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
                (user_id, started_at, _now(), imported, skipped, status, error_message),
            )
            return cursor.lastrowid or 0

    def get_recent_sync_runs(self, user_id: str | None = None, limit: int = 10) -> list[dict[str, Any]]:
        with self._transaction() as conn:
            if user_id:
                rows = conn.execute(
                    "SELECT * FROM sync_runs WHERE user_id = ? ORDER BY id DESC LIMIT ?",
                    (user_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
            return [dict(r) for r in rows]

    # Consistency and statistics

    def verify_invariants(self, user_id: str) -> list[InvariantViolation]:
        """Compare stored aggregates with a fresh recomputation."""
        with self._transaction() as conn:
            return self.recalculator.verify(conn, user_id)

    def get_stats(self) -> dict[str, Any]:
        """Get store statistics."""
        with self._transaction() as conn:
            stats = {
                "users_authorized": conn.execute(
                    "SELECT COUNT(*) FROM oauth_tokens WHERE refresh_token IS NOT NULL"
                ).fetchone()[0],
                "accounts": conn.execute("SELECT COUNT(*) FROM accounts").fetchone()[0],
                "linked_accounts": conn.execute(
                    "SELECT COUNT(*) FROM accounts WHERE email_domain IS NOT NULL"
                ).fetchone()[0],
                "categories": conn.execute("SELECT COUNT(*) FROM categories").fetchone()[0],
                "transactions": conn.execute("SELECT COUNT(*) FROM transactions").fetchone()[0],
                "imported_transactions": conn.execute(
                    "SELECT COUNT(*) FROM transactions WHERE original_email_id IS NOT NULL"
                ).fetchone()[0],
                "unresolved_flags": conn.execute(
                    "SELECT COUNT(*) FROM transaction_flags WHERE resolved = 0"
                ).fetchone()[0],
            }
            return stats
