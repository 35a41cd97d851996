"""
Transaction Repository.

Transaction data access via Supabase (primary) and the SQLite cache.
Every query is scoped by ``user_id`` in addition to the row-level
security configured on the Supabase project.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from cointrail.models.transaction import Transaction
from cointrail.repositories.base_repository import BaseRepository
from cointrail.utils.general import JsonValue, chunked, convert_to_json_safe


class TransactionRepository(BaseRepository):
    """Data access layer for Transaction entities."""

    TABLE = "transactions"
    COLUMNS = (
        "id", "amount", "description", "category_id", "user_id",
        "transaction_date", "type", "notes", "attachment_url",
        "created_at", "updated_at",
    )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_for_user(self, user_id: str) -> list[Transaction]:
        """All transactions of *user_id*, newest ``created_at`` first."""
        def _supabase() -> list[Transaction]:
            response = (
                self.supabase.table(self.TABLE)
                .select("*")
                .eq("user_id", user_id)
                .order("created_at", desc=True)
                .execute()
            )
            return [Transaction(**row) for row in response.data]

        def _sqlite() -> list[Transaction]:
            rows = self.sqlite.execute(
                f"SELECT * FROM {self.TABLE} WHERE user_id = ? ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
            return [Transaction(**dict(row)) for row in rows]

        return self._execute_with_fallback(
            supabase_op=_supabase,
            sqlite_op=_sqlite,
            default_factory=list,
            operation_name="list_for_user (transactions)",
            on_supabase_success=lambda txs: self._replace_user_cache(user_id, txs),
        )

    def get_by_id(self, transaction_id: str, user_id: str) -> Optional[Transaction]:
        def _supabase() -> Optional[Transaction]:
            response = (
                self.supabase.table(self.TABLE)
                .select("*")
                .eq("id", transaction_id)
                .eq("user_id", user_id)
                .execute()
            )
            return Transaction(**response.data[0]) if response.data else None

        def _sqlite() -> Optional[Transaction]:
            row = self.sqlite.execute(
                f"SELECT * FROM {self.TABLE} WHERE id = ? AND user_id = ?",
                (transaction_id, user_id),
            ).fetchone()
            return Transaction(**dict(row)) if row else None

        return self._execute_with_fallback(
            supabase_op=_supabase,
            sqlite_op=_sqlite,
            default_factory=lambda: None,
            operation_name="get_by_id (transactions)",
            on_supabase_success=lambda tx: self._cache_rows([tx.model_dump()]),
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, payload: dict[str, JsonValue]) -> Transaction:
        """Insert one transaction.  *payload* must carry ``user_id``.

        Raises:
            RepositoryError: Supabase rejected the insert while online.
        """
        if self.is_online:
            response = self._remote_write(
                "create (transactions)",
                lambda: self.supabase.table(self.TABLE).insert(payload).execute(),
            )
            created = Transaction(**response.data[0])
            self._cache_rows([created.model_dump()])
            return created

        created = self._local_row(payload)
        self._cache_rows([created.model_dump()])
        self._queue_pending_sync(
            "insert", created.id, convert_to_json_safe(created.model_dump(exclude_none=True)),
        )
        return created

    def create_many(
        self, payloads: list[dict[str, JsonValue]], batch_size: int = 500,
    ) -> int:
        """Insert *payloads* in chunks of *batch_size*; return the row count.

        A failing chunk raises ``RepositoryError``; earlier chunks stay
        committed.
        """
        inserted = 0
        for chunk in chunked(payloads, batch_size):
            rows = list(chunk)
            if self.is_online:
                response = self._remote_write(
                    "create_many (transactions)",
                    lambda: self.supabase.table(self.TABLE).insert(rows).execute(),
                )
                created = [Transaction(**row) for row in response.data]
                self._cache_rows([t.model_dump() for t in created])
            else:
                created = [self._local_row(p) for p in rows]
                self._cache_rows([t.model_dump() for t in created])
                self._queue_pending_sync(
                    "insert",
                    "*",
                    [convert_to_json_safe(t.model_dump(exclude_none=True)) for t in created],
                )
            inserted += len(created)
            self._logger.debug(
                "Inserted transaction chunk of %d (total %d).", len(created), inserted,
            )
        return inserted

    def update(
        self, transaction_id: str, user_id: str, changes: dict[str, JsonValue],
    ) -> Optional[Transaction]:
        """Apply *changes* to a row owned by *user_id*; ``None`` if not found."""
        stamped = {**changes, "updated_at": datetime.now(timezone.utc).isoformat()}

        if self.is_online:
            response = self._remote_write(
                "update (transactions)",
                lambda: (
                    self.supabase.table(self.TABLE)
                    .update(stamped)
                    .eq("id", transaction_id)
                    .eq("user_id", user_id)
                    .execute()
                ),
            )
            if not response.data:
                return None
            updated = Transaction(**response.data[0])
            self._cache_rows([updated.model_dump()])
            return updated

        current = self.get_by_id(transaction_id, user_id)
        if current is None:
            return None
        updated = Transaction.model_validate({**current.model_dump(), **stamped})
        self._cache_rows([updated.model_dump()])
        self._queue_pending_sync("update", transaction_id, stamped)
        return updated

    def delete(self, transaction_id: str, user_id: str) -> None:
        if self.is_online:
            self._remote_write(
                "delete (transactions)",
                lambda: (
                    self.supabase.table(self.TABLE)
                    .delete()
                    .eq("id", transaction_id)
                    .eq("user_id", user_id)
                    .execute()
                ),
            )
        else:
            self._queue_pending_sync("delete", transaction_id, {"user_id": user_id})
        self._uncache("id = ? AND user_id = ?", (transaction_id, user_id))

    def delete_all_for_user(self, user_id: str) -> None:
        if self.is_online:
            self._remote_write(
                "delete_all_for_user (transactions)",
                lambda: (
                    self.supabase.table(self.TABLE)
                    .delete()
                    .eq("user_id", user_id)
                    .execute()
                ),
            )
        else:
            self._queue_pending_sync("delete_all", user_id, {"user_id": user_id})
        self._uncache("user_id = ?", (user_id,))

    def clear_cache(self, user_id: str) -> None:
        """Drop cached rows of *user_id* without touching Supabase."""
        self._uncache("user_id = ?", (user_id,))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _local_row(self, payload: dict[str, JsonValue]) -> Transaction:
        now = datetime.now(timezone.utc)
        return Transaction(
            **{"id": self.new_id(), "created_at": now, "updated_at": now, **payload}
        )

    def _replace_user_cache(self, user_id: str, transactions: list[Transaction]) -> None:
        with self._db.batch_write():
            self._uncache("user_id = ?", (user_id,))
            self._cache_rows([t.model_dump() for t in transactions])
