"""
Sync Worker Service.

Background daemon thread that replays pending ``sync_queue`` entries to
Supabase.  Repositories enqueue a row there for every write made while
offline; this worker sends them once the Supabase client is available,
oldest first, with exponential backoff on consecutive failed cycles.

:meth:`run_once` drains the queue synchronously and is what the CLI
``sync`` command calls; ``sync --watch`` runs the background loop via
:meth:`start` until interrupted.

Thread Safety
-------------
All SQLite writes acquire ``DatabaseManager.write_lock`` (an ``RLock``)
so the worker never interleaves with writes from the main thread.
"""

from __future__ import annotations

import json
import threading
from typing import Optional

from cointrail.config import AppConfig
from cointrail.database import DatabaseManager
from cointrail.logger import StructuredLogger
from cointrail.models.enums import SyncStatus
from cointrail.services.base_service import BaseService

Payload = dict[str, object] | list[dict[str, object]]


class SyncWorkerService(BaseService):
    """Daemon thread that drains the local ``sync_queue`` to Supabase.

    Parameters
    ----------
    db:
        Initialised ``DatabaseManager``.
    config:
        Provides ``SYNC_INTERVAL_S`` and ``SYNC_MAX_INTERVAL_S``.
    logger:
        Structured JSON logger.
    """

    _BATCH_SIZE: int = 50
    _MAX_RETRY_COUNT: int = 5

    _ALLOWED_TABLES: frozenset[str] = frozenset({
        "transactions",
        "categories",
        "users",
    })

    def __init__(
        self,
        db: DatabaseManager,
        config: AppConfig,
        logger: StructuredLogger,
    ) -> None:
        super().__init__(logger)
        self._db: DatabaseManager = db
        self._base_interval: float = config.SYNC_INTERVAL_S
        self._max_interval: float = config.SYNC_MAX_INTERVAL_S
        self._thread: Optional[threading.Thread] = None
        self._stop_event: threading.Event = threading.Event()
        self._cycle_lock: threading.Lock = threading.Lock()
        self._consecutive_failures: int = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the worker on a daemon thread.  No-op when already running."""
        if self._thread is not None and self._thread.is_alive():
            self._logger.debug("Sync worker already running.")
            return

        self._stop_event.clear()
        self._consecutive_failures = 0
        self._thread = threading.Thread(
            target=self._run_loop,
            name="SyncWorker",
            daemon=True,
        )
        self._thread.start()
        self._logger.info("Sync worker started.")

    def stop(self) -> None:
        """Signal the worker to stop and wait up to 10 s for it to exit."""
        if self._thread is None:
            return

        self._stop_event.set()
        self._thread.join(timeout=10.0)
        if self._thread.is_alive():
            self._logger.warning("Sync worker thread did not terminate within 10 s.")
        else:
            self._logger.info("Sync worker stopped.")
        self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until :meth:`stop` is called or *timeout* elapses.

        Returns ``True`` when the worker was stopped.
        """
        return self._stop_event.wait(timeout)

    def run_once(self) -> int:
        """Replay one batch of pending rows now; return how many were synced.

        Returns ``0`` without touching the queue while offline.
        """
        if not self._db.is_online:
            self._logger.info("Offline; %d writes waiting to sync.", self._db.get_pending_sync_count())
            return 0
        with self._cycle_lock:
            return self._process_pending_queue()

    # ------------------------------------------------------------------
    # Core loop
    # ------------------------------------------------------------------

    def _run_loop(self) -> None:
        try:
            while not self._stop_event.is_set():
                if self._stop_event.wait(timeout=self._calculate_backoff_interval()):
                    break
                if not self._db.is_online:
                    continue

                try:
                    with self._cycle_lock:
                        self._process_pending_queue()
                except Exception:
                    self._consecutive_failures += 1
                    self._logger.warning("Sync cycle failed", exc_info=True)
        except Exception:
            self._logger.error(
                "Sync worker thread terminated due to unhandled exception.",
                exc_info=True,
            )

    def _process_pending_queue(self) -> int:
        with self._db.write_lock:
            rows = self._db.sqlite.execute(
                """
                SELECT id, table_name, operation, entity_id, payload
                FROM sync_queue
                WHERE status = ?
                ORDER BY id ASC
                LIMIT ?
                """,
                (str(SyncStatus.PENDING), self._BATCH_SIZE),
            ).fetchall()

        if not rows:
            self._consecutive_failures = 0
            return 0

        synced_count = 0
        cycle_failed = False
        for row in rows:
            queue_id: int = row["id"]
            try:
                payload: Payload = json.loads(row["payload"])
            except (json.JSONDecodeError, TypeError) as exc:
                self._logger.error(
                    "Malformed JSON payload in sync_queue row %d: %s", queue_id, exc,
                )
                self._mark_failed(queue_id, f"Malformed JSON: {exc}", permanent=True)
                continue

            try:
                self._replay_operation(
                    row["table_name"], row["operation"], row["entity_id"], payload,
                )
            except ValueError as exc:
                self._mark_failed(queue_id, str(exc), permanent=True)
                continue
            except Exception as exc:
                self._logger.warning("Failed to sync queue row %d: %s", queue_id, exc)
                self._mark_failed(queue_id, str(exc))
                cycle_failed = True
                # Later rows may depend on this one; keep queue order.
                break

            self._mark_synced(queue_id)
            synced_count += 1
            self._logger.debug(
                "Synced queue row %d: %s.%s(%s)",
                queue_id, row["table_name"], row["operation"], row["entity_id"],
            )

        self._consecutive_failures = self._consecutive_failures + 1 if cycle_failed else 0
        if synced_count:
            self._logger.info(
                "Sync cycle complete: %d/%d rows synced.", synced_count, len(rows),
            )
        return synced_count

    def _replay_operation(
        self,
        table_name: str,
        operation: str,
        entity_id: str,
        payload: Payload,
    ) -> None:
        """Send one queued write to Supabase.

        Raises
        ------
        ValueError
            If the table or operation is not recognised.
        """
        if table_name not in self._ALLOWED_TABLES:
            raise ValueError(f"Disallowed sync target table: {table_name}")

        table = self._db.supabase.table(table_name)
        if operation == "insert":
            table.upsert(payload).execute()
        elif operation == "update":
            table.update(payload).eq("id", entity_id).execute()
        elif operation == "upsert":
            table.upsert(payload).execute()
        elif operation == "delete":
            table.delete().eq("id", entity_id).execute()
        elif operation == "delete_all":
            table.delete().eq("user_id", entity_id).execute()
        else:
            raise ValueError(f"Unknown sync operation: {operation}")

    # ------------------------------------------------------------------
    # Backoff
    # ------------------------------------------------------------------

    def _calculate_backoff_interval(self) -> float:
        """Base interval, doubled per consecutive failure, capped at the maximum."""
        if self._consecutive_failures == 0:
            return self._base_interval
        backoff = self._base_interval * (2 ** min(self._consecutive_failures, 6))
        return min(backoff, self._max_interval)

    # ------------------------------------------------------------------
    # Mark helpers
    # ------------------------------------------------------------------

    def _mark_synced(self, queue_id: int) -> None:
        with self._db.write_lock:
            self._db.sqlite.execute(
                """
                UPDATE sync_queue
                SET status = ?, attempted_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (str(SyncStatus.SYNCED), queue_id),
            )
            self._db.sqlite.commit()

    def _mark_failed(self, queue_id: int, error_message: str, permanent: bool = False) -> None:
        """Record a failed attempt.

        After ``_MAX_RETRY_COUNT`` attempts (or immediately when
        *permanent*) the row becomes ``permanently_failed`` and is never
        retried; otherwise it stays ``pending``.
        """
        with self._db.write_lock:
            row = self._db.sqlite.execute(
                "SELECT error_message FROM sync_queue WHERE id = ?", (queue_id,),
            ).fetchone()

            attempts = 0
            if row and row["error_message"]:
                attempts = str(row["error_message"]).count("Attempt ")
            attempts += 1

            status = (
                SyncStatus.PERMANENTLY_FAILED
                if permanent or attempts >= self._MAX_RETRY_COUNT
                else SyncStatus.PENDING
            )
            previous = row["error_message"] if row and row["error_message"] else ""
            message = f"{previous}\nAttempt {attempts}: {error_message}".strip()

            self._db.sqlite.execute(
                """
                UPDATE sync_queue
                SET status = ?, attempted_at = CURRENT_TIMESTAMP, error_message = ?
                WHERE id = ?
                """,
                (str(status), message, queue_id),
            )
            self._db.sqlite.commit()
