"""
User Model.

Mirrors the Supabase ``public.users`` profile row, enriched with the
auth-side ``email_confirmed`` flag.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class User(BaseModel):
    """Represents the signed-in account.

    ``full_name`` comes from the auth ``user_metadata`` written at sign-up
    and is Optional because profiles created elsewhere may not carry it.
    """

    id: str  # Supabase UUID
    email: str
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    email_confirmed: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @property
    def display_name(self) -> str:
        return self.full_name or self.email.split("@")[0]
