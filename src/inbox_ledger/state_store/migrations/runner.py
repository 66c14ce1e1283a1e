"""
Versioned schema changes applied on top of the base schema.

Migration modules are named {version}_{name}.py, e.g. 001_payee_rules.py,
and define:
- VERSION: int
- NAME: str
- upgrade(conn) -> None
- downgrade(conn) -> None  (optional)
"""

import importlib
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class Migration:
    """One loaded migration module."""

    version: int
    name: str
    upgrade: Callable[[sqlite3.Connection], None]
    downgrade: Callable[[sqlite3.Connection], None] | None


def get_all_migrations() -> list[Migration]:
    """Load every migration module in this package, ordered by version."""
    migrations = []
    for py_file in sorted(Path(__file__).parent.glob("[0-9][0-9][0-9]_*.py")):
        module = importlib.import_module(f"{__package__}.{py_file.stem}")
        migrations.append(
            Migration(
                version=module.VERSION,
                name=module.NAME,
                upgrade=module.upgrade,
                downgrade=getattr(module, "downgrade", None),
            )
        )
    return sorted(migrations, key=lambda m: m.version)


class MigrationRunner:
    """Applies and rolls back migrations, tracked in the `migrations` table."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
        """
        )
        self.conn.commit()

    def get_applied_versions(self) -> set[int]:
        rows = self.conn.execute("SELECT version FROM migrations").fetchall()
        return {row[0] for row in rows}

    def get_current_version(self) -> int:
        result = self.conn.execute("SELECT MAX(version) FROM migrations").fetchone()[0]
        return result or 0

    def apply(self, migration: Migration) -> None:
        logger.info("Applying migration %03d: %s", migration.version, migration.name)
        try:
            migration.upgrade(self.conn)
            applied_at = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
            self.conn.execute(
                "INSERT INTO migrations (version, name, applied_at) VALUES (?, ?, ?)",
                (migration.version, migration.name, applied_at),
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            logger.exception("Migration %03d failed", migration.version)
            raise

    def rollback(self, migration: Migration) -> None:
        if migration.downgrade is None:
            raise NotImplementedError(
                f"Migration {migration.version} ({migration.name}) cannot be rolled back"
            )
        logger.info("Rolling back migration %03d: %s", migration.version, migration.name)
        try:
            migration.downgrade(self.conn)
            self.conn.execute("DELETE FROM migrations WHERE version = ?", (migration.version,))
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            logger.exception("Rollback of migration %03d failed", migration.version)
            raise

    def run_pending(self) -> list[int]:
        """Apply every migration not yet recorded. Returns the applied versions."""
        applied = self.get_applied_versions()
        done = []
        for migration in get_all_migrations():
            if migration.version not in applied:
                self.apply(migration)
                done.append(migration.version)
        if done:
            logger.info("Applied %d migrations: %s", len(done), done)
        return done

    def migrate_to(self, target_version: int) -> None:
        """Move the schema up or down to `target_version`."""
        current = self.get_current_version()
        by_version = {m.version: m for m in get_all_migrations()}

        if target_version > current:
            for version in range(current + 1, target_version + 1):
                if version in by_version:
                    self.apply(by_version[version])
        else:
            for version in range(current, target_version, -1):
                if version in by_version:
                    self.rollback(by_version[version])
