"""
Migration 001: payee_rules table.

Maps a lower-cased payee substring to a category for auto-assignment.
"""

import sqlite3

VERSION = 1
NAME = "payee_rules"


def upgrade(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS payee_rules (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            pattern TEXT NOT NULL,
            category_id INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE (user_id, pattern),
            FOREIGN KEY (category_id) REFERENCES categories(id) ON DELETE CASCADE
        )
    """
    )


def downgrade(conn: sqlite3.Connection) -> None:
    conn.execute("DROP TABLE IF EXISTS payee_rules")
