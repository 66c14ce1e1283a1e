"""
Migration 002: sync_state and sync_runs tables.

sync_state holds the per-user watermark so a run cut short by its time
budget resumes where it stopped. sync_runs is the run history shown by
`inbox-ledger status`.
"""

import sqlite3

VERSION = 2
NAME = "sync_progress"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create sync_state and sync_runs."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_state (
            user_id TEXT PRIMARY KEY,
            last_sync_time TEXT NOT NULL,
            last_processed_at TEXT,  -- received time of the newest committed message
            last_message_id TEXT,
            pending_count INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL
        )
    """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            started_at TEXT NOT NULL,
            finished_at TEXT NOT NULL,
            imported INTEGER NOT NULL DEFAULT 0,
            skipped INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL,
            error_message TEXT
        )
    """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_sync_runs_user ON sync_runs(user_id)")


def downgrade(conn: sqlite3.Connection) -> None:
    conn.execute("DROP TABLE IF EXISTS sync_runs")
    conn.execute("DROP TABLE IF EXISTS sync_state")
