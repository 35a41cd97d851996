"""
Category Model.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from cointrail.models.enums import TransactionType


class Category(BaseModel):
    """A user-defined bucket for income or expense transactions."""

    id: str
    name: str = Field(min_length=1)
    type: TransactionType
    user_id: str
    icon: Optional[str] = None
    color: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls: type[Category], v: object) -> object:
        return v.strip() if isinstance(v, str) else v

    @property
    def lookup_key(self) -> str:
        """Case-insensitive ``name|type`` key used to de-duplicate categories."""
        return category_key(self.name, self.type)


def category_key(name: str, category_type: str) -> str:
    return f"{name.strip().lower()}|{category_type}"
