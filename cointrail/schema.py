"""
Centralized SQLite Schema Initialization.

Defines the canonical schema for the CoinTrail local database and provides
a single entry-point -- :func:`initialize_schema` -- that creates all
required tables idempotently.  A ``schema_version`` table tracks applied
migrations so that future schema changes can be rolled forward without
losing the local cache.

Migration Strategy
~~~~~~~~~~~~~~~~~~
- **Fresh databases** (version 0): all tables are created in one shot from
  :data:`_TABLE_DEFINITIONS`.
- **Existing databases** (version N > 0): only incremental migrations
  registered in :data:`_MIGRATIONS` are executed, inside one SQLite
  transaction together with the version bump.

Usage::

    from cointrail.logger import StructuredLogger
    from cointrail.schema import initialize_schema

    initialize_schema(db.sqlite, StructuredLogger(name="cointrail.schema"))
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable

from cointrail.logger import StructuredLogger

__all__ = ["CURRENT_SCHEMA_VERSION", "initialize_schema"]

CURRENT_SCHEMA_VERSION: int = 2

_TABLE_DEFINITIONS: list[str] = [
    # -- single-row version tracker -------------------------------------------
    """
    CREATE TABLE IF NOT EXISTS schema_version (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        version INTEGER NOT NULL,
        applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # -- outbound writes made while offline -----------------------------------
    """
    CREATE TABLE IF NOT EXISTS sync_queue (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        table_name TEXT NOT NULL,
        operation TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        payload TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        attempted_at TIMESTAMP,
        error_message TEXT
    )
    """,
    # -- persistent structured audit trail ------------------------------------
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        action TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        details TEXT DEFAULT '{}',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # -- users (mirrors Supabase public.users) --------------------------------
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        full_name TEXT,
        avatar_url TEXT,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    # -- categories (local cache) ---------------------------------------------
    """
    CREATE TABLE IF NOT EXISTS categories (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        type TEXT NOT NULL CHECK (type IN ('income', 'expense')),
        user_id TEXT NOT NULL,
        icon TEXT,
        color TEXT,
        created_at TEXT
    )
    """,
    # -- transactions (local cache) -------------------------------------------
    """
    CREATE TABLE IF NOT EXISTS transactions (
        id TEXT PRIMARY KEY,
        amount TEXT NOT NULL,
        description TEXT NOT NULL,
        category_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        transaction_date TEXT NOT NULL,
        type TEXT NOT NULL CHECK (type IN ('income', 'expense')),
        notes TEXT,
        attachment_url TEXT,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_transactions_user_created
        ON transactions (user_id, created_at DESC)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_categories_user
        ON categories (user_id)
    """,
    # -- local key/value preferences ------------------------------------------
    """
    CREATE TABLE IF NOT EXISTS app_settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # -- encrypted persisted session (single row) -----------------------------
    """
    CREATE TABLE IF NOT EXISTS encrypted_sessions (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        encrypted_payload BLOB NOT NULL,
        nonce BLOB NOT NULL,
        tag BLOB NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
]


def _get_schema_version(conn: sqlite3.Connection) -> int:
    """Return the recorded schema version, or ``0`` for a fresh database."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            version INTEGER NOT NULL,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    row = conn.execute("SELECT version FROM schema_version WHERE id = 1").fetchone()
    return int(row[0]) if row else 0


def _set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    conn.execute(
        """
        INSERT INTO schema_version (id, version, applied_at)
        VALUES (1, ?, CURRENT_TIMESTAMP)
        ON CONFLICT(id) DO UPDATE SET
            version = excluded.version,
            applied_at = CURRENT_TIMESTAMP
        """,
        (version,),
    )


def _create_all_tables(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    for ddl in _TABLE_DEFINITIONS:
        conn.execute(ddl)
    logger.info("Created %d local schema objects.", len(_TABLE_DEFINITIONS))


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return any(row[1] == column for row in rows)


def _migrate_v1_to_v2(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    """Add ``attachment_url`` to caches created before attachments existed."""
    if not _column_exists(conn, "transactions", "attachment_url"):
        conn.execute("ALTER TABLE transactions ADD COLUMN attachment_url TEXT")
        logger.info("Migration v1->v2: added transactions.attachment_url.")


_MIGRATIONS: dict[int, Callable[[sqlite3.Connection, StructuredLogger], None]] = {
    1: _migrate_v1_to_v2,
}


def _run_incremental_migrations(
    conn: sqlite3.Connection,
    from_version: int,
    logger: StructuredLogger,
) -> None:
    for version in range(from_version, CURRENT_SCHEMA_VERSION):
        migration = _MIGRATIONS.get(version)
        if migration is None:
            raise RuntimeError(
                f"No migration registered for schema version {version} -> {version + 1}"
            )
        migration(conn, logger)


def initialize_schema(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    """Create or upgrade the local schema.  Idempotent.

    Raises
    ------
    sqlite3.Error
        When DDL fails; the transaction is rolled back first.
    RuntimeError
        When an existing database needs a migration that is not registered.
    """
    current = _get_schema_version(conn)
    if current == CURRENT_SCHEMA_VERSION:
        logger.debug("Local schema is up to date (v%d).", current)
        return

    try:
        if current == 0:
            _create_all_tables(conn, logger)
        else:
            _run_incremental_migrations(conn, current, logger)
        _set_schema_version(conn, CURRENT_SCHEMA_VERSION)
        conn.commit()
    except (sqlite3.Error, RuntimeError):
        conn.rollback()
        logger.error(
            "Schema initialisation failed at v%d; rolled back.", current, exc_info=True,
        )
        raise

    logger.info(
        "Local schema initialised: v%d -> v%d.", current, CURRENT_SCHEMA_VERSION,
    )
