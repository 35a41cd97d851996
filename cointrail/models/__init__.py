"""
Data Models Package.

Re-exports the Pydantic models:
    from cointrail.models import Transaction, Category, User
    from cointrail.models import TransactionType, MappedField
"""

from __future__ import annotations

from cointrail.models.enums import (
    ExportFormat,
    MappedField,
    PasswordStrength,
    SyncStatus,
    Theme,
    TransactionType,
)
from cointrail.models.user import User
from cointrail.models.category import Category, category_key
from cointrail.models.transaction import Transaction, TransactionInput, TransactionUpdate

__all__ = [
    "ExportFormat",
    "MappedField",
    "PasswordStrength",
    "SyncStatus",
    "Theme",
    "TransactionType",
    "User",
    "Category",
    "category_key",
    "Transaction",
    "TransactionInput",
    "TransactionUpdate",
]
