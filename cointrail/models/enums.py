"""
Shared Enumerations for CoinTrail Models.

StrEnum values compare equal to their string equivalents, so rows coming
back from Supabase (plain strings) validate and compare without casting.
"""

from __future__ import annotations
from enum import StrEnum


class TransactionType(StrEnum):
    """Direction of money flow.  Shared by transactions and categories."""

    INCOME = "income"
    EXPENSE = "expense"


class MappedField(StrEnum):
    """Target field for one column of an imported spreadsheet."""

    DATE = "date"
    DESCRIPTION = "description"
    AMOUNT = "amount"
    TYPE = "type"
    CATEGORY = "category"
    NOTES = "notes"
    IGNORE = "ignore"


class ExportFormat(StrEnum):
    CSV = "csv"
    XLSX = "xlsx"


class PasswordStrength(StrEnum):
    """Registration-form strength meter levels.  ``NONE`` is an empty password."""

    NONE = ""
    WEAK = "weak"
    MEDIUM = "medium"
    STRONG = "strong"


class Theme(StrEnum):
    LIGHT = "light"
    DARK = "dark"


class SyncStatus(StrEnum):
    """Lifecycle of a ``sync_queue`` row."""

    PENDING = "pending"
    SYNCED = "synced"
    PERMANENTLY_FAILED = "permanently_failed"
