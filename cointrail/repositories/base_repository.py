"""
Base Repository.

Provides shared infrastructure for all repositories:
- DatabaseManager reference (Supabase + SQLite)
- Logger reference
- Supabase-first reads with SQLite fallback
- Online/offline write dispatch and the ``sync_queue`` for offline writes
- Generic SQLite cache upserts driven by each repository's ``COLUMNS``
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Mapping, Sequence
from typing import Callable, Optional, TypeVar, Union

from supabase import Client as SupabaseClient

from cointrail.database import DatabaseManager
from cointrail.logger import StructuredLogger
from cointrail.utils.general import JsonValue, convert_to_json_safe

T = TypeVar("T")


class RepositoryError(RuntimeError):
    """Raised when Supabase rejects a write while the app is online.

    Attributes
    ----------
    operation:
        Label of the failed repository call, e.g. ``"create (transactions)"``.
    """

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation


class BaseRepository:
    """Base class for all repositories. Receives dependencies via __init__."""

    TABLE: str = ""
    COLUMNS: tuple[str, ...] = ()

    def __init__(self, db: DatabaseManager, logger: StructuredLogger) -> None:
        self._db = db
        self._logger = logger

    @property
    def supabase(self) -> SupabaseClient:
        """Returns the Supabase client for cloud operations."""
        return self._db.supabase

    @property
    def sqlite(self) -> sqlite3.Connection:
        """Returns the SQLite connection for local cache operations."""
        return self._db.sqlite

    @property
    def is_online(self) -> bool:
        return self._db.is_online

    @staticmethod
    def new_id() -> str:
        """Client-generated primary key for rows created while offline."""
        return str(uuid.uuid4())

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _execute_with_fallback(
        self,
        supabase_op: Callable[[], Optional[T]],
        sqlite_op: Callable[[], Optional[T]],
        default_factory: Callable[[], T],
        *,
        operation_name: str,
        on_supabase_success: Optional[Callable[[T], None]] = None,
    ) -> T:
        """Execute a read with Supabase-first, SQLite-fallback semantics.

        Execution order:
        1. Call ``supabase_op()``.  If it returns a non-``None`` value,
           optionally invoke ``on_supabase_success``, then return.
        2. Call ``sqlite_op()``.  If it returns a non-``None`` value, return.
        3. Return ``default_factory()``.

        Parameters
        ----------
        supabase_op:
            Zero-argument callable performing the Supabase query.
        sqlite_op:
            Zero-argument callable performing the SQLite query.
        default_factory:
            Produces the typed default when both sources fail or are empty.
        operation_name:
            Label for log messages, e.g. ``"list_for_user (categories)"``.
        on_supabase_success:
            Optional cache-warming callback invoked with the Supabase
            result.  Its exceptions are logged and never mask the result.
        """
        if self.is_online:
            try:
                result = supabase_op()
                if result is not None:
                    if on_supabase_success is not None:
                        try:
                            on_supabase_success(result)
                        except sqlite3.Error as cache_exc:
                            self._logger.warning(
                                "Post-Supabase callback failed for %s: %s",
                                operation_name,
                                cache_exc,
                            )
                    return result
            except Exception as exc:
                self._logger.warning(
                    "Supabase unavailable for %s: %s", operation_name, exc
                )

        try:
            result = sqlite_op()
            if result is not None:
                return result
        except sqlite3.Error as sqlite_exc:
            self._logger.error(
                "SQLite fallback also failed for %s: %s",
                operation_name,
                sqlite_exc,
            )

        return default_factory()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _remote_write(self, operation_name: str, op: Callable[[], T]) -> T:
        """Run a Supabase write, translating any failure to ``RepositoryError``."""
        try:
            return op()
        except Exception as exc:
            self._logger.error(
                "Supabase write failed for %s: %s", operation_name, exc,
            )
            raise RepositoryError(operation_name, str(exc)) from exc

    def _commit(self) -> None:
        """Commit the SQLite transaction unless a batch is active.

        Inside :meth:`DatabaseManager.batch_write` this is a no-op; the
        batch issues a single commit (or rollback) when it exits.
        """
        if not self._db.in_batch:
            self.sqlite.commit()

    def _cache_rows(self, rows: Sequence[Mapping[str, object]]) -> None:
        """Upsert *rows* into this repository's SQLite cache table.

        Only keys listed in ``COLUMNS`` are written; values are converted
        to JSON-safe scalars first (``Decimal`` -> ``str``, dates -> ISO).
        """
        if not rows:
            return
        columns = ", ".join(self.COLUMNS)
        placeholders = ", ".join("?" for _ in self.COLUMNS)
        values = [
            tuple(convert_to_json_safe(row.get(col)) for col in self.COLUMNS)
            for row in rows
        ]
        with self._db.write_lock:
            self.sqlite.executemany(
                f"INSERT OR REPLACE INTO {self.TABLE} ({columns}) VALUES ({placeholders})",
                values,
            )
            self._commit()

    def discard_pending_sync(self, user_id: str) -> int:
        """Drop this table's queued writes that belong to *user_id*.

        A row belongs to the user when its payload (or any element of a
        batched payload) carries the user's id, when it is the user's
        ``delete_all``, or when it targets a row still cached for the user.
        Must run before the user's cache rows are removed.
        """
        with self._db.write_lock:
            cursor = self.sqlite.execute(
                f"""
                DELETE FROM sync_queue
                WHERE table_name = ? AND status = 'pending' AND (
                    entity_id = ?
                    OR entity_id IN (SELECT id FROM {self.TABLE} WHERE user_id = ?)
                    OR CASE
                        WHEN NOT json_valid(payload) THEN 0
                        WHEN json_type(payload) = 'object'
                            THEN json_extract(payload, '$.user_id') = ?
                        WHEN json_type(payload) = 'array' THEN EXISTS (
                            SELECT 1 FROM json_each(payload) AS item
                            WHERE item.type = 'object'
                                AND json_extract(item.value, '$.user_id') = ?
                        )
                        ELSE 0
                    END
                )
                """,
                (self.TABLE, user_id, user_id, user_id, user_id),
            )
            self._commit()
        if cursor.rowcount:
            self._logger.info(
                "Discarded %d pending %s writes for user %s.",
                cursor.rowcount, self.TABLE, user_id,
            )
        return cursor.rowcount

    def _uncache(self, where: str, params: tuple[object, ...]) -> None:
        with self._db.write_lock:
            self.sqlite.execute(f"DELETE FROM {self.TABLE} WHERE {where}", params)
            self._commit()

    def _queue_pending_sync(
        self,
        operation: str,
        entity_id: str,
        payload: Union[dict[str, JsonValue], list[dict[str, JsonValue]]],
    ) -> None:
        """Record a write for replay by the sync worker once online.

        Args:
            operation: ``insert``, ``update``, ``upsert``, ``delete`` or
                ``delete_all``.
            entity_id: The affected row id (the user id for ``delete_all``).
            payload: JSON-safe dict or list of dicts.
        """
        try:
            with self._db.write_lock:
                self.sqlite.execute(
                    """
                    INSERT INTO sync_queue (table_name, operation, entity_id, payload)
                    VALUES (?, ?, ?, ?)
                    """,
                    (self.TABLE, operation, entity_id, json.dumps(payload, default=str)),
                )
                self._commit()
            self._logger.info(
                "Queued pending sync: %s %s/%s", operation, self.TABLE, entity_id
            )
        except sqlite3.Error as exc:
            self._logger.warning(
                "Failed to queue pending sync for %s/%s: %s",
                self.TABLE,
                entity_id,
                exc,
            )
