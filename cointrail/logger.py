"""
Structured Logging.

Every CoinTrail component logs through an injected ``StructuredLogger``.
Records are rendered as one JSON object per line and go to two places:

* the rotating log file (``LOG_FILE``), at ``LOG_LEVEL``;
* stderr, at ``LOG_CONSOLE_LEVEL``, so CLI output on stdout stays clean.

Values passed through ``extra=`` keep their JSON type where they have one
(amounts and dates are rendered as strings).  Credential-like keys are
masked before anything is written.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, TextIO

from cointrail.config import get_config
from cointrail.utils.general import JsonValue, convert_to_json_safe

_REDACTED = "***"

_SENSITIVE_KEYS: frozenset[str] = frozenset({
    "password",
    "new_password",
    "access_token",
    "refresh_token",
    "token",
    "api_key",
})


# ---------------------------------------------------------------------------
# Formatter
# ---------------------------------------------------------------------------

class JSONFormatter(logging.Formatter):
    """Render a ``LogRecord`` as a single JSON line.

    Keys: ``timestamp`` (UTC, ISO-8601), ``level``, ``logger_name``,
    ``message``, plus ``extra`` and ``exception`` when present.
    """

    _RESERVED_ATTRS: frozenset[str] = frozenset(
        vars(logging.makeLogRecord({})).keys()
    ) | {"message", "asctime", "taskName"}

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, JsonValue] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger_name": record.name,
            "message": record.getMessage(),
        }

        extra = self._extra_fields(record)
        if extra:
            entry["extra"] = extra

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            entry["exception"] = record.exc_text

        return json.dumps(entry, ensure_ascii=False)

    def _extra_fields(self, record: logging.LogRecord) -> dict[str, JsonValue]:
        fields: dict[str, JsonValue] = {}
        for key, value in vars(record).items():
            if key in self._RESERVED_ATTRS or key.startswith("_"):
                continue
            fields[key] = _REDACTED if key.lower() in _SENSITIVE_KEYS else convert_to_json_safe(value)
        return fields


# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------

def _level_from_name(name: str, default: int) -> int:
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else default


class StructuredLogger:
    """Injectable wrapper around a named ``logging.Logger``.

    Handlers are attached the first time a name is used; later instances
    with the same name share them.  Explicit arguments override the
    ``LOG_*`` settings.

    Usage::

        log = StructuredLogger(name="cointrail.import")
        log.info("Import finished", extra={"imported": 42})
    """

    def __init__(
        self,
        name: str = "cointrail",
        level: Optional[int] = None,
        stream: Optional[TextIO] = None,
        log_file: Optional[str] = None,
        max_bytes: Optional[int] = None,
        backup_count: Optional[int] = None,
        console_level: Optional[int] = None,
    ) -> None:
        cfg = get_config()

        file_level = level if level is not None else _level_from_name(cfg.LOG_LEVEL, logging.INFO)
        stream_level = (
            console_level if console_level is not None
            else _level_from_name(cfg.LOG_CONSOLE_LEVEL, logging.WARNING)
        )

        self._logger: logging.Logger = logging.getLogger(name)
        self._logger.setLevel(min(file_level, stream_level))
        self._logger.propagate = False

        if self._logger.handlers:
            return

        formatter = JSONFormatter()

        console = logging.StreamHandler(stream or sys.stderr)
        console.setLevel(stream_level)
        console.setFormatter(formatter)
        self._logger.addHandler(console)

        file_handler = self._open_log_file(
            Path(log_file or cfg.LOG_FILE),
            max_bytes if max_bytes is not None else cfg.LOG_MAX_BYTES,
            backup_count if backup_count is not None else cfg.LOG_BACKUP_COUNT,
        )
        if file_handler is not None:
            file_handler.setLevel(file_level)
            file_handler.setFormatter(formatter)
            self._logger.addHandler(file_handler)

    def _open_log_file(
        self, path: Path, max_bytes: int, backup_count: int,
    ) -> Optional[RotatingFileHandler]:
        """Rotating handler for *path*, or ``None`` when it cannot be opened."""
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            return RotatingFileHandler(
                filename=str(path),
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
        except OSError as exc:
            self._logger.warning(
                "Log file %s is not writable (%s); logging to the console only.", path, exc,
            )
            return None

    # -- Public attribute -----------------------------------------------------

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    # -- Convenience delegates ------------------------------------------------

    def debug(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.debug(msg, *args, **kwargs)

    def info(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.info(msg, *args, **kwargs)

    def warning(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.error(msg, *args, **kwargs)

    def critical(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.critical(msg, *args, **kwargs)


def get_logger(name: str = "cointrail") -> StructuredLogger:
    return StructuredLogger(name=name)
