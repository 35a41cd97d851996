"""
Application Configuration.

Pydantic Settings model for the CoinTrail client.
All configuration is loaded from environment variables and .env files.
Inject an AppConfig instance via dependency injection where needed.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings
from pydantic import Field, SecretStr, model_validator


class AppConfig(BaseSettings):
    """Central configuration loaded from environment variables and defaults."""

    # --- Supabase ---
    SUPABASE_URL: str = ""
    SUPABASE_ANON_KEY: SecretStr = SecretStr("")
    STORAGE_BUCKET: str = "attachments"
    PASSWORD_RESET_REDIRECT_URL: str = "http://localhost:5173/update-password"

    # --- Local cache ---
    LOCAL_DB_PATH: Path = Path("cointrail_local.db")

    # --- Import / Export ---
    IMPORT_PREVIEW_ROWS: int = Field(default=5, ge=1)
    IMPORT_BATCH_SIZE: int = Field(default=500, ge=1)
    EXPORT_FILENAME_PREFIX: str = "cointrail-export"
    EXPORT_DATE_FORMAT: str = "%Y-%m-%d"
    SAMPLE_CSV_FILENAME: str = "cointrail_sample.csv"

    # --- Session ---
    SESSION_MAX_AGE_DAYS: int = Field(default=30, ge=1)

    # --- Sync worker ---
    SYNC_INTERVAL_S: float = 30.0
    SYNC_MAX_INTERVAL_S: float = 300.0

    # --- Logging ---
    LOG_FILE: str = "cointrail.log"
    LOG_LEVEL: str = "INFO"
    LOG_CONSOLE_LEVEL: str = "WARNING"
    LOG_MAX_BYTES: int = 5_242_880  # 5 MB
    LOG_BACKUP_COUNT: int = 3

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @model_validator(mode="after")
    def _warn_missing_env(self) -> "AppConfig":
        """Emit a startup warning when Supabase configuration is empty.

        Pydantic silently falls back to defaults when ``.env`` is missing,
        so the operator gets a log line explaining why the client is
        running against the local cache only.
        """
        _log = logging.getLogger("cointrail.config")

        if not self.SUPABASE_URL or not self.SUPABASE_ANON_KEY.get_secret_value():
            _log.warning(
                "SUPABASE_URL / SUPABASE_ANON_KEY not set. "
                "CoinTrail will operate in offline mode."
            )

        return self


# ---------------------------------------------------------------------------
# Module-level singleton factory
# ---------------------------------------------------------------------------

_config_instance: Optional[AppConfig] = None
_config_lock: threading.Lock = threading.Lock()


def get_config() -> AppConfig:
    """Return a cached ``AppConfig`` singleton.

    On first call, creates an ``AppConfig`` instance (reading from ``.env``).
    Subsequent calls return the same instance.  Uses a check-lock-check
    pattern so the fast path never takes the lock.
    """
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = AppConfig()
    return _config_instance


def reset_config() -> None:
    """Drop the cached singleton so the next ``get_config()`` re-reads the env."""
    global _config_instance
    with _config_lock:
        _config_instance = None
