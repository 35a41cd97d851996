"""
Authentication Models.

Pydantic models and enumerations for the contracts between
``AuthService`` and its callers.  Every auth operation returns a
structured ``AuthResult`` rather than raw strings or raised exceptions.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

class AuthErrorCode(StrEnum):
    """Categories of authentication failure.

    ``AuthService`` classifies Supabase errors into these so callers can
    branch on the category (e.g. offer "resend confirmation" only for
    ``EMAIL_NOT_CONFIRMED``).
    """

    INVALID_CREDENTIALS = "invalid_credentials"
    EMAIL_NOT_CONFIRMED = "email_not_confirmed"
    EMAIL_ALREADY_EXISTS = "email_already_exists"
    WEAK_PASSWORD = "weak_password"
    NETWORK_ERROR = "network_error"
    RATE_LIMITED = "rate_limited"
    VALIDATION_ERROR = "validation_error"
    SESSION_EXPIRED = "session_expired"
    OFFLINE = "offline"
    UNKNOWN_ERROR = "unknown_error"


# ---------------------------------------------------------------------------
# Supabase error-code mapping
# ---------------------------------------------------------------------------

SUPABASE_ERROR_MAP: dict[str, tuple[AuthErrorCode, str]] = {
    "invalid_credentials": (
        AuthErrorCode.INVALID_CREDENTIALS,
        "Invalid email or password.",
    ),
    "invalid_login_credentials": (
        AuthErrorCode.INVALID_CREDENTIALS,
        "Invalid email or password.",
    ),
    "invalid_grant": (
        AuthErrorCode.INVALID_CREDENTIALS,
        "Invalid email or password.",
    ),
    "user_not_found": (
        AuthErrorCode.INVALID_CREDENTIALS,
        "Invalid email or password.",
    ),
    "email_not_confirmed": (
        AuthErrorCode.EMAIL_NOT_CONFIRMED,
        "Please confirm your email address before signing in.",
    ),
    "user_already_exists": (
        AuthErrorCode.EMAIL_ALREADY_EXISTS,
        "An account with this email already exists. Try signing in.",
    ),
    "email_exists": (
        AuthErrorCode.EMAIL_ALREADY_EXISTS,
        "An account with this email already exists. Try signing in.",
    ),
    "weak_password": (
        AuthErrorCode.WEAK_PASSWORD,
        "Password is too weak. Choose a longer password.",
    ),
    "over_request_rate_limit": (
        AuthErrorCode.RATE_LIMITED,
        "Too many requests. Please wait a moment and try again.",
    ),
    "over_email_send_rate_limit": (
        AuthErrorCode.RATE_LIMITED,
        "Too many emails sent. Please wait a moment and try again.",
    ),
}


# ---------------------------------------------------------------------------
# Validation result
# ---------------------------------------------------------------------------

class ValidationResult(BaseModel):
    """Result of one client-side field check."""

    is_valid: bool
    error_message: Optional[str] = None

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Unified auth response
# ---------------------------------------------------------------------------

class AuthResult(BaseModel):
    """Unified response for every auth operation.

    Attributes
    ----------
    success:
        ``True`` when the operation completed without error.
    error_code:
        Structured error category (``None`` on success).
    error_message:
        Human-readable error description (``None`` on success).
    message:
        Informational message on success (e.g. "check your inbox").
    user_id, email, full_name:
        Identity of the signed-in or newly registered user.
    requires_confirmation:
        ``True`` after a sign-up that must be confirmed by email before
        the user can sign in.
    is_offline_login:
        ``True`` when the session was restored from the encrypted local
        cache without a Supabase round-trip.
    """

    success: bool
    error_code: Optional[AuthErrorCode] = None
    error_message: Optional[str] = None
    message: Optional[str] = None
    user_id: Optional[str] = None
    email: Optional[str] = None
    full_name: Optional[str] = None
    requires_confirmation: bool = False
    is_offline_login: bool = False

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Rate-limit models
# ---------------------------------------------------------------------------

class RateLimitState(BaseModel):
    """Per-email failed-login counters."""

    failed_attempts: int = 0
    lockout_until: Optional[datetime] = None


class RateLimitStore(BaseModel):
    entries: dict[str, RateLimitState] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Offline session cache model
# ---------------------------------------------------------------------------

class CachedSession(BaseModel):
    """Decrypted payload of the persisted session.

    Attributes
    ----------
    user_id, email, full_name:
        Identity of the cached user.
    refresh_token:
        Supabase refresh token used to resume the session on next start.
    cached_at:
        ISO-8601 UTC timestamp of when the session was written.
    password_hash, password_salt:
        Hex-encoded PBKDF2-HMAC-SHA256 hash and its salt, for verifying
        the password while Supabase is unreachable.
    """

    user_id: str
    email: str
    full_name: Optional[str] = None
    refresh_token: str
    cached_at: str  # ISO-8601 UTC
    password_hash: Optional[str] = None
    password_salt: Optional[str] = None

    model_config = {"from_attributes": True}
