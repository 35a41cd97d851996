"""
Database Abstraction Layer.

CoinTrail keeps two stores:

- **Supabase (cloud PostgreSQL)**: the authoritative store for profiles,
  categories and transactions, plus Auth and Storage.  Row-level
  security is defined in the Supabase project, not here.

- **SQLite (local)**: a read cache of the user's rows, the outbound
  ``sync_queue`` for writes made while offline, the ``audit_log``,
  ``app_settings`` and the encrypted session cache.

Data access is performed through the Repository pattern.  This module only
manages the raw database *connections*; it contains no query logic.

Usage (dependency injection at app startup)::

    from cointrail.database import DatabaseManager
    from cointrail.logger import StructuredLogger

    db = DatabaseManager(
        supabase_url=config.SUPABASE_URL,
        supabase_key=config.SUPABASE_ANON_KEY.get_secret_value(),
        sqlite_path=config.LOCAL_DB_PATH,
        logger=StructuredLogger(name="cointrail.database"),
    )
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from supabase import create_client, Client as SupabaseClient

from cointrail.logger import StructuredLogger


class DatabaseManager:
    """Manages connections to the local SQLite database and the Supabase project.

    When ``supabase_url`` or ``supabase_key`` is empty the Supabase client
    is **not** created and the application runs in offline mode.  The
    ``supabase`` property then raises ``RuntimeError``, which repositories
    treat as "use the local cache".

    Parameters
    ----------
    supabase_url:
        The Supabase project URL (e.g. ``https://xyz.supabase.co``).
        May be empty to run in offline mode.
    supabase_key:
        The Supabase anonymous key.  May be empty to run in offline mode.
    sqlite_path:
        Filesystem path for the local SQLite database file, or
        ``":memory:"``.
    logger:
        A ``StructuredLogger`` instance for structured JSON log output.
    client:
        A pre-built Supabase client.  Takes precedence over the URL/key
        pair; used by tests and by callers that share one client.
    """

    def __init__(
        self,
        supabase_url: str,
        supabase_key: str,
        sqlite_path: Path,
        logger: StructuredLogger,
        client: Optional[SupabaseClient] = None,
    ) -> None:
        self._logger: StructuredLogger = logger
        self._write_lock: threading.RLock = threading.RLock()
        self._in_batch: bool = False
        self._closed: bool = False

        self._supabase: Optional[SupabaseClient] = client
        if self._supabase is not None:
            self._logger.info("Using injected Supabase client.")
        elif supabase_url and supabase_key:
            try:
                self._supabase = create_client(supabase_url, supabase_key)
                self._logger.info("Supabase client initialized.")
            except (ValueError, TypeError) as exc:
                self._logger.warning(
                    "Supabase credential format error: %s. Running in offline mode.",
                    exc,
                )
            except Exception as exc:
                self._logger.error(
                    "Unexpected Supabase initialization failure: %s. "
                    "Running in offline mode.",
                    exc,
                    exc_info=True,
                )
        else:
            self._logger.warning(
                "Supabase credentials not configured, running in offline mode."
            )

        self._sqlite_conn: sqlite3.Connection = self._connect_sqlite(sqlite_path)

    # ------------------------------------------------------------------
    # Public properties
    # ------------------------------------------------------------------

    @property
    def supabase(self) -> SupabaseClient:
        """Return the initialised Supabase client.

        Raises
        ------
        RuntimeError
            If the Supabase client was not initialised (offline mode).
        """
        if self._supabase is None:
            raise RuntimeError(
                "Supabase client is not initialised. "
                "The application is running in offline mode."
            )
        return self._supabase

    @property
    def is_online(self) -> bool:
        """``True`` when the Supabase client is available."""
        return self._supabase is not None

    @property
    def sqlite(self) -> sqlite3.Connection:
        """Return the initialised SQLite connection."""
        return self._sqlite_conn

    @property
    def write_lock(self) -> threading.RLock:
        """Return the write lock guarding SQLite writes.

        Every INSERT/UPDATE/DELETE followed by ``commit()`` runs under it::

            with db.write_lock:
                db.sqlite.execute("INSERT ...")
                db.sqlite.commit()
        """
        return self._write_lock

    @property
    def in_batch(self) -> bool:
        """``True`` when a :meth:`batch_write` context is active."""
        return self._in_batch

    @contextmanager
    def batch_write(self) -> Generator[None, None, None]:
        """Defer SQLite commits for bulk operations.

        While the context is active repository ``_commit()`` calls become
        no-ops.  On normal exit a single ``commit()`` is issued; on
        exception the transaction is rolled back and the error re-raised.
        Re-entrant: nested blocks join the outer batch.
        """
        if self._in_batch:
            yield
            return

        with self._write_lock:
            self._in_batch = True
            try:
                yield
                self._sqlite_conn.commit()
                self._logger.debug("Batch write committed.")
            except Exception:
                self._sqlite_conn.rollback()
                self._logger.error(
                    "Batch write rolled back due to exception.", exc_info=True,
                )
                raise
            finally:
                self._in_batch = False

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------

    def get_pending_sync_count(self) -> int:
        """Return the number of pending items in the sync queue.

        Returns ``0`` when the table does not exist yet or the query fails.
        """
        with self._write_lock:
            try:
                row = self._sqlite_conn.execute(
                    "SELECT COUNT(*) AS cnt FROM sync_queue WHERE status = 'pending'",
                ).fetchone()
                return int(row["cnt"]) if row else 0
            except sqlite3.Error:
                self._logger.debug(
                    "get_pending_sync_count query failed; returning 0.",
                    exc_info=True,
                )
                return 0

    def close(self) -> None:
        """Close the local SQLite connection.  Safe to call multiple times."""
        with self._write_lock:
            if self._closed:
                return
            try:
                self._sqlite_conn.close()
                self._logger.info("SQLite connection closed.")
            except sqlite3.ProgrammingError:
                pass
            self._closed = True

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _connect_sqlite(self, path: Path) -> sqlite3.Connection:
        """Open (or create) the SQLite database.

        Raises
        ------
        PermissionError
            If the OS denies access to the database file or its directory.
        """
        try:
            conn = sqlite3.connect(str(path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            if str(path) != ":memory:":
                conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA foreign_keys = ON;")
            self._logger.info("SQLite database opened at %s", path)
            return conn
        except (PermissionError, sqlite3.OperationalError) as exc:
            msg = (
                f"Cannot open the local database at '{path}'. "
                "The file or its directory may be read-only or locked by "
                "another process."
            )
            self._logger.error(msg)
            raise PermissionError(msg) from exc
