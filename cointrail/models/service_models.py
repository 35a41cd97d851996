"""
Service Layer Data Transfer Objects.

Pydantic models for validated input/output at service boundaries.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, Field

from cointrail.models.enums import MappedField

T = TypeVar("T")

__all__ = [
    "ExportFile",
    "ImportPreview",
    "ImportResult",
    "MonthlyTotal",
    "ParsedTable",
    "ServiceResult",
    "Summary",
]


# ---------------------------------------------------------------------------
# Dashboard aggregates
# ---------------------------------------------------------------------------

class Summary(BaseModel):
    """Totals over a set of transactions.

    ``income_change`` and ``expense_change`` are month-over-month percent
    changes (current calendar month against the previous one); ``0`` when
    the previous month has no activity of that type.
    """

    total_income: Decimal = Decimal("0")
    total_expenses: Decimal = Decimal("0")
    balance: Decimal = Decimal("0")
    income_change: Decimal = Decimal("0")
    expense_change: Decimal = Decimal("0")


class MonthlyTotal(BaseModel):
    """Income and expense totals for one ``YYYY-MM`` bucket."""

    month: str
    income: Decimal = Decimal("0")
    expenses: Decimal = Decimal("0")

    @property
    def net(self) -> Decimal:
        return self.income - self.expenses


# ---------------------------------------------------------------------------
# Import / export
# ---------------------------------------------------------------------------

class ParsedTable(BaseModel):
    """A spreadsheet read into header names and string-valued rows."""

    headers: list[str]
    rows: list[dict[str, str]] = Field(default_factory=list)

    def __len__(self) -> int:
        return len(self.rows)


class ImportPreview(BaseModel):
    """Headers, first rows and the suggested column mapping of an upload."""

    headers: list[str]
    rows: list[dict[str, str]]
    total_rows: int = Field(ge=0)
    mapping: dict[str, MappedField]
    missing_fields: list[MappedField] = Field(default_factory=list)


class ImportResult(BaseModel):
    """Outcome of one bulk import."""

    imported: int = 0
    skipped: int = 0
    categories_created: int = 0
    skipped_rows: list[int] = Field(default_factory=list)

    @property
    def message(self) -> str:
        return (
            f"Import complete! {self.imported} transactions added, "
            f"{self.skipped} skipped."
        )


class ExportFile(BaseModel):
    """A rendered export ready to be written to disk."""

    filename: str
    content: bytes
    row_count: int = Field(ge=0)
    media_type: str = "text/csv"


# ---------------------------------------------------------------------------
# Generic service models
# ---------------------------------------------------------------------------

class ServiceResult(BaseModel, Generic[T]):
    """
    Standard service return envelope.

    Every service method returns this, giving the CLI a single contract:
    ``success`` plus either ``data`` or ``error``.  ``status_code``
    follows HTTP conventions (400 validation, 401 auth, 404 not found,
    502 upstream failure, 503 offline).
    """

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    status_code: int = 200
