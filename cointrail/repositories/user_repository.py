"""
User Repository.

Profile rows in the Supabase ``users`` table, mirrored to SQLite so the
signed-in identity is available offline.
"""

from __future__ import annotations

from typing import Optional

from cointrail.models.user import User
from cointrail.repositories.base_repository import BaseRepository
from cointrail.utils.general import convert_to_json_safe


class UserRepository(BaseRepository):
    """Data access layer for user profiles."""

    TABLE = "users"
    COLUMNS = ("id", "email", "full_name", "avatar_url", "created_at", "updated_at")

    def get_by_id(self, user_id: str) -> Optional[User]:
        """Fetch a profile by primary key. Tries Supabase first, falls back to SQLite."""
        def _supabase() -> Optional[User]:
            response = (
                self.supabase.table(self.TABLE)
                .select("*")
                .eq("id", user_id)
                .execute()
            )
            return User(**response.data[0]) if response.data else None

        def _sqlite() -> Optional[User]:
            row = self.sqlite.execute(
                f"SELECT * FROM {self.TABLE} WHERE id = ?", (user_id,)
            ).fetchone()
            return User(**dict(row)) if row else None

        return self._execute_with_fallback(
            supabase_op=_supabase,
            sqlite_op=_sqlite,
            default_factory=lambda: None,
            operation_name="get_by_id (users)",
            on_supabase_success=lambda user: self._cache_rows([user.model_dump()]),
        )

    def upsert_profile(self, user: User) -> User:
        """Insert or update the profile row of *user*.

        Profile sync is best effort: when Supabase rejects the write the
        row is cached locally and queued, and *user* is returned as is.
        """
        data = convert_to_json_safe(
            user.model_dump(include=set(self.COLUMNS), exclude_none=True)
        )
        self._cache_rows([user.model_dump()])

        if not self.is_online:
            self._queue_pending_sync("upsert", user.id, data)
            return user

        try:
            response = self.supabase.table(self.TABLE).upsert(data).execute()
        except Exception as exc:
            self._logger.error("Failed to upsert profile to Supabase: %s", exc)
            self._queue_pending_sync("upsert", user.id, data)
            return user

        if not response.data:
            return user
        stored = User(**{**response.data[0], "email_confirmed": user.email_confirmed})
        self._cache_rows([stored.model_dump()])
        self._logger.info("Profile upserted: %s", stored.id)
        return stored
