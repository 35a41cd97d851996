"""
Authentication & Session State.

Provides an injectable ``SessionManager`` that holds the authenticated
user (``User`` model) and the Supabase tokens for the lifetime of one
process.

Usage::

    from cointrail.auth import SessionManager
    from cointrail.models.user import User

    session = SessionManager()
    session.set_current_user(User(id="abc-123", email="ana@example.com"))
    user = session.get_current_user()
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from cointrail.models.user import User


class AuthenticationError(RuntimeError):
    """Raised when user-scoped data is requested without an active session."""


class SessionManager:
    """Injectable holder for the current authenticated user.

    Pass a single ``SessionManager`` through the composition root so every
    service sees the same session.
    """

    _EXPIRY_SKEW = timedelta(seconds=30)

    def __init__(self) -> None:
        self._lock: threading.RLock = threading.RLock()
        self._current_user: Optional[User] = None
        self._access_token: Optional[str] = None
        self._refresh_token: Optional[str] = None
        self._token_expiry: Optional[datetime] = None

    def set_current_user(self, user: User) -> None:
        with self._lock:
            self._current_user = user

    def get_current_user(self) -> User:
        """Return the authenticated user.

        Raises:
            AuthenticationError: If no user is currently authenticated.
        """
        with self._lock:
            if self._current_user is None:
                raise AuthenticationError(
                    "No user is currently authenticated. Login required."
                )
            return self._current_user

    def set_tokens(
        self,
        access_token: str,
        refresh_token: str,
        expires_at: Optional[int],
    ) -> None:
        """Store Supabase auth tokens.

        Parameters
        ----------
        access_token:
            The short-lived JWT access token.
        refresh_token:
            The long-lived refresh token used to obtain new access tokens.
        expires_at:
            Unix timestamp (seconds) when the access token expires, or
            ``None`` when the server did not report one.
        """
        with self._lock:
            self._access_token = access_token
            self._refresh_token = refresh_token
            self._token_expiry = (
                datetime.fromtimestamp(expires_at, tz=timezone.utc)
                if expires_at is not None else None
            )

    @property
    def access_token(self) -> Optional[str]:
        with self._lock:
            return self._access_token

    @property
    def refresh_token(self) -> Optional[str]:
        with self._lock:
            return self._refresh_token

    @property
    def is_token_expired(self) -> bool:
        """``True`` when the access token has expired (30 s skew) or was never set."""
        with self._lock:
            if self._token_expiry is None:
                return True
            return datetime.now(timezone.utc) >= self._token_expiry - self._EXPIRY_SKEW

    def clear(self) -> None:
        """Remove the current user and tokens, ending the session."""
        with self._lock:
            self._current_user = None
            self._access_token = None
            self._refresh_token = None
            self._token_expiry = None

    @property
    def is_authenticated(self) -> bool:
        with self._lock:
            return self._current_user is not None
