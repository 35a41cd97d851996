"""
Application Settings Service.

Read/write access to the ``app_settings`` key-value table in the local
SQLite database: the theme preference and the column mappings saved by
the importer.

Like ``SessionCacheService`` this bypasses the repository layer because
``app_settings`` is local preference state, not user data synced to
Supabase.
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
from collections.abc import Sequence
from typing import Optional

from pydantic import TypeAdapter, ValidationError

from cointrail.database import DatabaseManager
from cointrail.logger import StructuredLogger
from cointrail.models.enums import MappedField, Theme

_KEY_THEME: str = "theme"
_KEY_MAPPING_PREFIX: str = "import_mapping:"

_MAPPING_ADAPTER: TypeAdapter[dict[str, MappedField]] = TypeAdapter(dict[str, MappedField])


def header_signature(headers: Sequence[str]) -> str:
    """Stable key for a header row: case and surrounding spaces are ignored."""
    normalised = "\x1f".join(h.strip().lower() for h in headers)
    return hashlib.sha256(normalised.encode("utf-8")).hexdigest()[:16]


class AppSettingsService:
    """Manages persistent local preferences.

    Parameters
    ----------
    db:
        Initialised ``DatabaseManager`` with active SQLite connection.
    logger:
        Structured logger instance.
    """

    def __init__(self, db: DatabaseManager, logger: StructuredLogger) -> None:
        self._db = db
        self._logger = logger

    # ------------------------------------------------------------------
    # Generic key-value access
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[str]:
        """Read a setting value by key.  Returns ``None`` if not found."""
        try:
            row = self._db.sqlite.execute(
                "SELECT value FROM app_settings WHERE key = ?",
                (key,),
            ).fetchone()
            return row["value"] if row is not None else None
        except sqlite3.Error as exc:
            self._logger.warning("Failed to read app_settings[%s]: %s", key, exc)
            return None

    def set(self, key: str, value: str) -> bool:
        """Upsert a setting value.  Returns ``True`` on success."""
        try:
            with self._db.write_lock:
                self._db.sqlite.execute(
                    """
                    INSERT INTO app_settings (key, value)
                    VALUES (?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value      = excluded.value,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (key, value),
                )
                self._db.sqlite.commit()
            self._logger.info("app_settings[%s] updated.", key)
            return True
        except sqlite3.Error as exc:
            self._logger.error("Failed to write app_settings[%s]: %s", key, exc)
            return False

    def delete(self, key: str) -> None:
        try:
            with self._db.write_lock:
                self._db.sqlite.execute("DELETE FROM app_settings WHERE key = ?", (key,))
                self._db.sqlite.commit()
        except sqlite3.Error as exc:
            self._logger.error("Failed to delete app_settings[%s]: %s", key, exc)

    # ------------------------------------------------------------------
    # Theme
    # ------------------------------------------------------------------

    def get_theme(self) -> Theme:
        """Stored theme, ``Theme.DARK`` when unset or unrecognised."""
        stored = self.get(_KEY_THEME)
        try:
            return Theme(stored) if stored else Theme.DARK
        except ValueError:
            self._logger.warning("Ignoring unknown theme value %r.", stored)
            return Theme.DARK

    def set_theme(self, theme: Theme) -> bool:
        return self.set(_KEY_THEME, str(theme))

    def toggle_theme(self) -> Theme:
        new_theme = Theme.LIGHT if self.get_theme() == Theme.DARK else Theme.DARK
        self.set_theme(new_theme)
        return new_theme

    # ------------------------------------------------------------------
    # Saved import mappings
    # ------------------------------------------------------------------

    def get_import_mapping(self, headers: Sequence[str]) -> Optional[dict[str, MappedField]]:
        """Mapping saved for this exact header row, or ``None``.

        Saved mappings whose headers no longer line up are discarded.
        """
        raw = self.get(_KEY_MAPPING_PREFIX + header_signature(headers))
        if raw is None:
            return None
        try:
            mapping = _MAPPING_ADAPTER.validate_json(raw)
        except ValidationError as exc:
            self._logger.warning("Discarding malformed saved mapping: %s", exc)
            return None
        if set(mapping) != set(headers):
            return None
        return mapping

    def save_import_mapping(self, headers: Sequence[str], mapping: dict[str, MappedField]) -> bool:
        payload = json.dumps({header: str(field) for header, field in mapping.items()})
        return self.set(_KEY_MAPPING_PREFIX + header_signature(headers), payload)
