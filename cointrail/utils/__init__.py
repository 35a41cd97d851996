"""Shared utility functions and models.

Convenience re-exports so consumers can ``from cointrail.utils import
log_audit_event``; full module imports remain supported.
"""

from cointrail.utils.audit import AuditEvent, log_audit_event
from cointrail.utils.general import JsonValue, chunked, convert_to_json_safe

__all__ = [
    "AuditEvent",
    "JsonValue",
    "chunked",
    "convert_to_json_safe",
    "log_audit_event",
]
