"""
Structured Audit Logging Utility.

Every state change (transaction created, category deleted, data reset,
import finished) is logged as one structured JSON object, and optionally
persisted to the local ``audit_log`` table.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional, Union

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from cointrail.logger import StructuredLogger

__all__ = ["AuditEvent", "log_audit_event", "persist_audit_event"]

# Flat scalars only; nested structures do not belong in the audit trail.
DetailValue = Union[str, int, float, bool, None]


class AuditEvent(BaseModel):
    """Schema-validated representation of a single audit trail entry."""

    timestamp: str
    action: str
    entity_type: str
    entity_id: str
    user_id: str
    details: dict[str, DetailValue] = Field(default_factory=dict)


def _build_event(
    action: str,
    entity_type: str,
    entity_id: str,
    user_id: str,
    details: Optional[dict[str, DetailValue]],
) -> AuditEvent:
    return AuditEvent(
        timestamp=datetime.now(timezone.utc).isoformat(),
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        user_id=user_id,
        details=details or {},
    )


def log_audit_event(
    logger: StructuredLogger,
    action: str,
    entity_type: str,
    entity_id: str,
    user_id: str,
    details: Optional[dict[str, DetailValue]] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> None:
    """Log a structured JSON audit event, with optional SQLite persistence.

    Args:
        logger: The logger instance to write to.
        action: What happened (e.g. ``"CREATE"``, ``"DELETE_ALL"``,
            ``"IMPORT"``).
        entity_type: Type of entity affected (e.g. ``"Transaction"``).
        entity_id: Primary key of the affected entity, or ``"*"`` for
            bulk operations.
        user_id: ID of the user who performed the action.
        details: Optional additional context (e.g. counts, amounts).
        conn: Optional SQLite connection.  When provided, the event is
            also written to ``audit_log``; a failure there is logged as a
            warning and does not affect the calling operation.
    """
    event = _build_event(action, entity_type, entity_id, user_id, details)
    logger.info("AUDIT: %s", json.dumps(event.model_dump(), default=str))

    if conn is not None:
        try:
            persist_audit_event(
                conn=conn,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                user_id=user_id,
                details=details,
            )
        except (sqlite3.Error, ValueError) as db_err:
            logger.warning("Failed to persist audit event to SQLite: %s", db_err)


def persist_audit_event(
    conn: sqlite3.Connection,
    action: str,
    entity_type: str,
    entity_id: str,
    user_id: str,
    details: Optional[dict[str, DetailValue]] = None,
) -> None:
    """Write an audit event to the SQLite ``audit_log`` table.

    The event is validated through :class:`AuditEvent` first; a
    :class:`pydantic.ValidationError` propagates so malformed audit data
    is never stored.
    """
    event = _build_event(action, entity_type, entity_id, user_id, details)
    conn.execute(
        """
        INSERT INTO audit_log (timestamp, action, entity_type, entity_id, user_id, details)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            event.timestamp,
            event.action,
            event.entity_type,
            event.entity_id,
            event.user_id,
            json.dumps(event.details, default=str),
        ),
    )
    conn.commit()
