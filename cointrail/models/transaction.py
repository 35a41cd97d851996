"""
Transaction Model.

``Transaction`` is the persisted row.  ``TransactionInput`` and
``TransactionUpdate`` are the validated payloads accepted by the
transaction store; ``id``, ``user_id`` and timestamps are never taken
from callers.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from cointrail.models.enums import TransactionType


def _coerce_date(v: object) -> object:
    """Accept ``YYYY-MM-DD`` or a full ISO timestamp for a date field.

    Rows imported by older clients stored ``transaction_date`` as an ISO
    timestamp; only the calendar date is kept.
    """
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, str) and len(v) > 10:
        try:
            return datetime.fromisoformat(v.replace("Z", "+00:00")).date()
        except ValueError:
            return v
    return v


class Transaction(BaseModel):
    """Represents one income or expense entry owned by a single user."""

    id: str
    amount: Decimal = Field(gt=0)
    description: str
    category_id: str
    user_id: str
    transaction_date: date
    type: TransactionType
    notes: Optional[str] = None
    attachment_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @field_validator("transaction_date", mode="before")
    @classmethod
    def parse_transaction_date(cls: type[Transaction], v: object) -> object:
        return _coerce_date(v)

    @property
    def signed_amount(self) -> Decimal:
        """Amount with expenses negated, for running balances."""
        return self.amount if self.type == TransactionType.INCOME else -self.amount


class TransactionInput(BaseModel):
    """Fields a caller supplies when recording a new transaction."""

    amount: Decimal = Field(gt=0)
    description: str = Field(min_length=1)
    category_id: str
    transaction_date: date
    type: TransactionType
    notes: Optional[str] = None
    attachment_url: Optional[str] = None

    @field_validator("description", mode="before")
    @classmethod
    def strip_description(cls: type[TransactionInput], v: object) -> object:
        return v.strip() if isinstance(v, str) else v

    @field_validator("transaction_date", mode="before")
    @classmethod
    def parse_transaction_date(cls: type[TransactionInput], v: object) -> object:
        return _coerce_date(v)


class TransactionUpdate(BaseModel):
    """Partial update; unset fields are left untouched."""

    amount: Optional[Decimal] = Field(default=None, gt=0)
    description: Optional[str] = Field(default=None, min_length=1)
    category_id: Optional[str] = None
    transaction_date: Optional[date] = None
    type: Optional[TransactionType] = None
    notes: Optional[str] = None
    attachment_url: Optional[str] = None

    @field_validator("transaction_date", mode="before")
    @classmethod
    def parse_transaction_date(cls: type[TransactionUpdate], v: object) -> object:
        return _coerce_date(v)

    def changes(self) -> dict[str, object]:
        """Only the fields the caller explicitly set."""
        return self.model_dump(exclude_unset=True)
