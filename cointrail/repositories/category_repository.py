"""
Category Repository.

Category data access via Supabase (primary) and the SQLite cache.
"""

from __future__ import annotations

from typing import Optional

from cointrail.models.category import Category
from cointrail.repositories.base_repository import BaseRepository
from cointrail.utils.general import JsonValue, convert_to_json_safe


class CategoryRepository(BaseRepository):
    """Data access layer for Category entities."""

    TABLE = "categories"
    COLUMNS = ("id", "name", "type", "user_id", "icon", "color", "created_at")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_for_user(self, user_id: str) -> list[Category]:
        """All categories owned by *user_id*, ordered by name."""
        def _supabase() -> list[Category]:
            response = (
                self.supabase.table(self.TABLE)
                .select("*")
                .eq("user_id", user_id)
                .order("name")
                .execute()
            )
            return [Category(**row) for row in response.data]

        def _sqlite() -> list[Category]:
            rows = self.sqlite.execute(
                f"SELECT * FROM {self.TABLE} WHERE user_id = ? ORDER BY name COLLATE NOCASE",
                (user_id,),
            ).fetchall()
            return [Category(**dict(row)) for row in rows]

        return self._execute_with_fallback(
            supabase_op=_supabase,
            sqlite_op=_sqlite,
            default_factory=list,
            operation_name="list_for_user (categories)",
            on_supabase_success=lambda cats: self._replace_user_cache(user_id, cats),
        )

    def get_by_id(self, category_id: str, user_id: str) -> Optional[Category]:
        def _supabase() -> Optional[Category]:
            response = (
                self.supabase.table(self.TABLE)
                .select("*")
                .eq("id", category_id)
                .eq("user_id", user_id)
                .execute()
            )
            return Category(**response.data[0]) if response.data else None

        def _sqlite() -> Optional[Category]:
            row = self.sqlite.execute(
                f"SELECT * FROM {self.TABLE} WHERE id = ? AND user_id = ?",
                (category_id, user_id),
            ).fetchone()
            return Category(**dict(row)) if row else None

        return self._execute_with_fallback(
            supabase_op=_supabase,
            sqlite_op=_sqlite,
            default_factory=lambda: None,
            operation_name="get_by_id (categories)",
            on_supabase_success=lambda cat: self._cache_rows([cat.model_dump()]),
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, payload: dict[str, JsonValue]) -> Category:
        """Insert one category.  *payload* must carry ``user_id``."""
        return self.create_many([payload])[0]

    def create_many(self, payloads: list[dict[str, JsonValue]]) -> list[Category]:
        """Insert several categories in one request and return the stored rows.

        Raises:
            RepositoryError: Supabase rejected the insert while online.
        """
        if not payloads:
            return []

        if self.is_online:
            response = self._remote_write(
                "create_many (categories)",
                lambda: self.supabase.table(self.TABLE).insert(payloads).execute(),
            )
            created = [Category(**row) for row in response.data]
            self._cache_rows([c.model_dump() for c in created])
            return created

        created = [Category(id=self.new_id(), **p) for p in payloads]
        rows = [convert_to_json_safe(c.model_dump(exclude_none=True)) for c in created]
        self._cache_rows([c.model_dump() for c in created])
        self._queue_pending_sync("insert", "*", rows)
        return created

    def update(
        self, category_id: str, user_id: str, changes: dict[str, JsonValue],
    ) -> Optional[Category]:
        """Apply *changes* and return the updated row (``None`` if not found)."""
        if self.is_online:
            response = self._remote_write(
                "update (categories)",
                lambda: (
                    self.supabase.table(self.TABLE)
                    .update(changes)
                    .eq("id", category_id)
                    .eq("user_id", user_id)
                    .execute()
                ),
            )
            if not response.data:
                return None
            updated = Category(**response.data[0])
            self._cache_rows([updated.model_dump()])
            return updated

        current = self.get_by_id(category_id, user_id)
        if current is None:
            return None
        updated = Category.model_validate({**current.model_dump(), **changes})
        self._cache_rows([updated.model_dump()])
        self._queue_pending_sync("update", category_id, changes)
        return updated

    def delete(self, category_id: str, user_id: str) -> None:
        if self.is_online:
            self._remote_write(
                "delete (categories)",
                lambda: (
                    self.supabase.table(self.TABLE)
                    .delete()
                    .eq("id", category_id)
                    .eq("user_id", user_id)
                    .execute()
                ),
            )
        else:
            self._queue_pending_sync("delete", category_id, {"user_id": user_id})
        self._uncache("id = ? AND user_id = ?", (category_id, user_id))

    def delete_all_for_user(self, user_id: str) -> None:
        if self.is_online:
            self._remote_write(
                "delete_all_for_user (categories)",
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

    # ------------------------------------------------------------------
    # Cache helpers
    # ------------------------------------------------------------------

    def clear_cache(self, user_id: str) -> None:
        """Drop cached rows of *user_id* without touching Supabase."""
        self._uncache("user_id = ?", (user_id,))

    def _replace_user_cache(self, user_id: str, categories: list[Category]) -> None:
        """Make the cache mirror the server list (drops rows deleted elsewhere)."""
        with self._db.batch_write():
            self._uncache("user_id = ?", (user_id,))
            self._cache_rows([c.model_dump() for c in categories])
