"""
Authentication Service.

Single orchestrator for every authentication concern: login,
registration, logout, session restore and refresh, password reset and
update, confirmation e-mails, rate limiting and error classification.

All methods return typed ``AuthResult`` or ``ValidationResult`` models;
callers never inspect raw Supabase exceptions.
"""

from __future__ import annotations

import re
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from cointrail.auth import SessionManager
from cointrail.config import AppConfig
from cointrail.database import DatabaseManager
from cointrail.logger import StructuredLogger
from cointrail.models.auth_models import (
    SUPABASE_ERROR_MAP,
    AuthErrorCode,
    AuthResult,
    RateLimitState,
    RateLimitStore,
    ValidationResult,
)
from cointrail.models.enums import PasswordStrength
from cointrail.models.user import User
from cointrail.repositories.user_repository import UserRepository
from cointrail.services.session_cache import SessionCacheService


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_EMAIL_RE: re.Pattern[str] = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)

_MAX_FAILED_ATTEMPTS: int = 3
_LOCKOUT_SECONDS: int = 30
_MIN_SIGNUP_PASSWORD: int = 6

# C0 controls, DEL and C1 controls.
_CONTROL_CHAR_RE: re.Pattern[str] = re.compile(r"[\x00-\x1f\x7f-\x9f]")

_OFFLINE_MESSAGE = "Cannot reach the server. Check your internet connection."


class AuthService:
    """Centralised authentication service.

    Parameters
    ----------
    db:
        Initialised database manager (Supabase + SQLite).
    session:
        Injectable session holder for the authenticated user.
    session_cache:
        Encrypted session cache.
    user_repo:
        Profile repository, synced on every successful login.
    config:
        Application configuration (password-reset redirect URL).
    logger:
        Structured JSON logger.
    """

    def __init__(
        self,
        db: DatabaseManager,
        session: SessionManager,
        session_cache: SessionCacheService,
        user_repo: UserRepository,
        config: AppConfig,
        logger: StructuredLogger,
    ) -> None:
        self._db: DatabaseManager = db
        self._session: SessionManager = session
        self._session_cache: SessionCacheService = session_cache
        self._user_repo: UserRepository = user_repo
        self._config: AppConfig = config
        self._logger: StructuredLogger = logger

        self._rate_limit_store: RateLimitStore = RateLimitStore()
        self._rate_lock: threading.Lock = threading.Lock()

    # ==================================================================
    # Validation helpers
    # ==================================================================

    @staticmethod
    def validate_email(email: str) -> ValidationResult:
        if not email or not email.strip():
            return ValidationResult(is_valid=False, error_message="Email address is required.")
        if not _EMAIL_RE.match(email.strip()):
            return ValidationResult(
                is_valid=False, error_message="Please enter a valid email address.",
            )
        return ValidationResult(is_valid=True)

    @staticmethod
    def validate_signup_password(password: str) -> ValidationResult:
        """Sign-up minimum: 6 characters (Supabase's default policy)."""
        if len(password) < _MIN_SIGNUP_PASSWORD:
            return ValidationResult(
                is_valid=False,
                error_message="Password should be at least 6 characters.",
            )
        return ValidationResult(is_valid=True)

    @staticmethod
    def validate_password(password: str) -> ValidationResult:
        """Password-change policy.

        Minimum 8 characters with at least one uppercase letter, one
        lowercase letter and one digit.
        """
        if len(password) < 8:
            return ValidationResult(
                is_valid=False,
                error_message="Password must be at least 8 characters long",
            )
        if not re.search(r"[A-Z]", password):
            return ValidationResult(
                is_valid=False,
                error_message="Password must contain at least one uppercase letter",
            )
        if not re.search(r"[a-z]", password):
            return ValidationResult(
                is_valid=False,
                error_message="Password must contain at least one lowercase letter",
            )
        if not re.search(r"\d", password):
            return ValidationResult(
                is_valid=False,
                error_message="Password must contain at least one number",
            )
        return ValidationResult(is_valid=True)

    @staticmethod
    def validate_name(name: str, field_label: str = "Full name") -> ValidationResult:
        """Reject empty names and control characters (log injection)."""
        stripped = name.strip()
        if not stripped:
            return ValidationResult(is_valid=False, error_message=f"{field_label} is required.")
        if _CONTROL_CHAR_RE.search(stripped):
            return ValidationResult(
                is_valid=False,
                error_message=(
                    f"{field_label} contains invalid characters. "
                    "Only printable characters are allowed."
                ),
            )
        return ValidationResult(is_valid=True)

    @staticmethod
    def normalize_email(email: str) -> str:
        return email.strip().lower()

    @staticmethod
    def password_strength(password: str) -> PasswordStrength:
        """Strength meter shown while typing a new password.

        Empty -> ``NONE``; under 6 characters -> ``WEAK``; 8 or more with
        a digit, an uppercase and a lowercase letter -> ``STRONG``;
        anything else -> ``MEDIUM``.
        """
        if not password:
            return PasswordStrength.NONE
        if len(password) < 6:
            return PasswordStrength.WEAK
        if (
            len(password) >= 8
            and re.search(r"\d", password)
            and re.search(r"[A-Z]", password)
            and re.search(r"[a-z]", password)
        ):
            return PasswordStrength.STRONG
        return PasswordStrength.MEDIUM

    # ==================================================================
    # Rate limiting
    # ==================================================================

    def check_rate_limit(self, email: str) -> tuple[bool, int]:
        """Return ``(is_locked, remaining_seconds)`` for *email*."""
        with self._rate_lock:
            state = self._rate_limit_store.entries.get(email, RateLimitState())
            if state.lockout_until is None:
                return False, 0

            now = datetime.now(tz=timezone.utc)
            if now >= state.lockout_until:
                self._rate_limit_store.entries.pop(email, None)
                return False, 0

            remaining = int((state.lockout_until - now).total_seconds()) + 1
            return True, remaining

    def _record_failed_attempt(self, email: str) -> None:
        with self._rate_lock:
            state = self._rate_limit_store.entries.get(email, RateLimitState())
            state.failed_attempts += 1
            if state.failed_attempts >= _MAX_FAILED_ATTEMPTS:
                state.lockout_until = (
                    datetime.now(tz=timezone.utc) + timedelta(seconds=_LOCKOUT_SECONDS)
                )
                self._logger.warning(
                    "Rate limit engaged for %s: %d failed attempts. Locked for %ds.",
                    email,
                    state.failed_attempts,
                    _LOCKOUT_SECONDS,
                )
            self._rate_limit_store.entries[email] = state

    def _reset_rate_limit(self, email: str) -> None:
        with self._rate_lock:
            self._rate_limit_store.entries.pop(email, None)

    # ==================================================================
    # Login
    # ==================================================================

    def login(self, email: str, password: str) -> AuthResult:
        """Authenticate via Supabase, or against the encrypted cache when offline."""
        email = self.normalize_email(email)

        is_locked, remaining = self.check_rate_limit(email)
        if is_locked:
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.RATE_LIMITED,
                error_message=f"Too many failed attempts. Please wait {remaining} seconds.",
            )

        try:
            response = self._db.supabase.auth.sign_in_with_password({
                "email": email,
                "password": password,
            })
        except RuntimeError:
            return self._offline_login(email, password)
        except Exception as exc:
            return self._classify_error(exc, email=email, event="LOGIN_FAILED")

        user = self._user_from_auth(response.user, fallback_email=email)
        session_data = response.session
        self._start_session(user, session_data)

        if session_data is not None:
            cached_ok = self._session_cache.cache_session(
                user_id=user.id,
                email=user.email,
                full_name=user.full_name,
                refresh_token=session_data.refresh_token,
                password=password,
            )
            if not cached_ok:
                self._logger.warning(
                    "Session caching failed for %s; offline login unavailable.", user.email,
                )

        self._reset_rate_limit(email)
        self._logger.info(
            "User authenticated: %s",
            user.email,
            extra={"event": "LOGIN", "user_id": user.id},
        )
        return AuthResult(
            success=True,
            message="Logged in successfully!",
            user_id=user.id,
            email=user.email,
            full_name=user.full_name,
        )

    def _offline_login(self, email: str, password: str) -> AuthResult:
        cached = self._session_cache.verify_offline_password(email, password)
        if cached is None:
            cached_any = self._session_cache.load_cached_session()
            if cached_any is None or cached_any.email != email:
                return AuthResult(
                    success=False,
                    error_code=AuthErrorCode.OFFLINE,
                    error_message=(
                        "No internet connection. "
                        "Sign in online first to enable offline access."
                    ),
                )
            self._record_failed_attempt(email)
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.INVALID_CREDENTIALS,
                error_message="Invalid email or password.",
            )

        user = User(id=cached.user_id, email=cached.email, full_name=cached.full_name)
        self._session.set_current_user(user)
        self._reset_rate_limit(email)
        self._logger.info(
            "Offline login: %s from encrypted cache.",
            email,
            extra={"event": "OFFLINE_LOGIN", "user_id": cached.user_id},
        )
        return AuthResult(
            success=True,
            user_id=user.id,
            email=user.email,
            full_name=user.full_name,
            is_offline_login=True,
        )

    def _classify_error(
        self, exc: Exception, *, email: Optional[str] = None, event: str,
    ) -> AuthResult:
        """Map a Supabase or network exception to a structured ``AuthResult``.

        Failed logins (when *email* is given) count toward the rate limit,
        except for unconfirmed e-mail addresses.
        """
        if isinstance(exc, (ConnectionError, TimeoutError)):
            self._logger.warning("Network error (%s): %s", event, exc)
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.NETWORK_ERROR,
                error_message=_OFFLINE_MESSAGE,
            )

        code = str(getattr(exc, "code", "") or "").lower()
        text = str(exc).lower().replace(" ", "_")
        for code_key, (error_code, human_message) in SUPABASE_ERROR_MAP.items():
            if code_key == code or code_key in text:
                self._logger.warning(
                    "Auth error (%s): %s", code_key, exc,
                    extra={"event": event, "error_code": code_key},
                )
                if email is not None and error_code != AuthErrorCode.EMAIL_NOT_CONFIRMED:
                    self._record_failed_attempt(email)
                return AuthResult(
                    success=False, error_code=error_code, error_message=human_message,
                )

        if email is not None:
            self._record_failed_attempt(email)
        self._logger.warning(
            "Unknown auth error (%s): %s", event, exc,
            extra={"event": event, "error_code": "unknown"},
        )
        return AuthResult(
            success=False,
            error_code=AuthErrorCode.UNKNOWN_ERROR,
            error_message=str(exc) or "An unexpected error occurred. Please try again later.",
        )

    # ==================================================================
    # Registration
    # ==================================================================

    def register(
        self,
        full_name: str,
        email: str,
        password: str,
        confirm_password: Optional[str] = None,
    ) -> AuthResult:
        """Create an account via Supabase ``sign_up``.

        ``full_name`` travels as user metadata.  When the project requires
        e-mail confirmation Supabase returns no session and the result
        carries ``requires_confirmation=True``.
        """
        for check in (
            self.validate_name(full_name),
            self.validate_email(email),
            self.validate_signup_password(password),
        ):
            if not check.is_valid:
                return AuthResult(
                    success=False,
                    error_code=AuthErrorCode.VALIDATION_ERROR,
                    error_message=check.error_message,
                )
        if confirm_password is not None and confirm_password != password:
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.VALIDATION_ERROR,
                error_message="Passwords don't match!",
            )

        email = self.normalize_email(email)
        full_name = full_name.strip()

        try:
            response = self._db.supabase.auth.sign_up({
                "email": email,
                "password": password,
                "options": {"data": {"full_name": full_name}},
            })
        except RuntimeError:
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.OFFLINE,
                error_message=(
                    "Cannot reach the server. "
                    "An internet connection is required to create an account."
                ),
            )
        except Exception as exc:
            return self._classify_error(exc, event="REGISTER_FAILED")

        user_id = response.user.id if response.user is not None else None
        self._logger.info(
            "User registered: %s", email, extra={"event": "REGISTER", "user_id": user_id},
        )

        if response.session is None:
            return AuthResult(
                success=True,
                message=(
                    "Registration successful! Please check your email "
                    "to confirm your account."
                ),
                user_id=user_id,
                email=email,
                full_name=full_name,
                requires_confirmation=True,
            )

        user = self._user_from_auth(response.user, fallback_email=email)
        self._start_session(user, response.session)
        return AuthResult(
            success=True,
            message="Registration successful! Welcome to CoinTrail.",
            user_id=user.id,
            email=user.email,
            full_name=user.full_name,
        )

    def resend_confirmation_email(self, email: str) -> AuthResult:
        check = self.validate_email(email)
        if not check.is_valid:
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.VALIDATION_ERROR,
                error_message=check.error_message,
            )
        email = self.normalize_email(email)
        try:
            self._db.supabase.auth.resend({"type": "signup", "email": email})
        except RuntimeError:
            return AuthResult(
                success=False, error_code=AuthErrorCode.OFFLINE, error_message=_OFFLINE_MESSAGE,
            )
        except Exception as exc:
            return self._classify_error(exc, event="RESEND_FAILED")

        self._logger.info("Confirmation email resent to %s.", email)
        return AuthResult(success=True, message="Confirmation email sent. Check your inbox.")

    # ==================================================================
    # Logout / session lifecycle
    # ==================================================================

    def logout(self) -> None:
        """Best-effort server sign-out, then clear the session and cache."""
        user_email = "unknown"
        if self._session.is_authenticated:
            user_email = self._session.get_current_user().email

        try:
            self._db.supabase.auth.sign_out()
        except RuntimeError:
            self._logger.debug("Offline; skipping server-side sign_out for %s.", user_email)
        except Exception as exc:
            self._logger.warning("Server-side sign_out failed for %s: %s", user_email, exc)

        self._session.clear()
        self._session_cache.clear_session()
        self._logger.info("User logged out: %s", user_email, extra={"event": "LOGOUT"})

    def restore_session(self) -> AuthResult:
        """Resume the cached session.

        Online, the stored refresh token is exchanged for a fresh session
        (and the rotated token re-cached).  Offline, the cached identity
        is trusted until the cache expires.
        """
        cached = self._session_cache.load_cached_session()
        if cached is None:
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.SESSION_EXPIRED,
                error_message="Not signed in.",
            )

        if not self._db.is_online:
            user = User(id=cached.user_id, email=cached.email, full_name=cached.full_name)
            self._session.set_current_user(user)
            return AuthResult(
                success=True,
                user_id=user.id,
                email=user.email,
                full_name=user.full_name,
                is_offline_login=True,
            )

        try:
            response = self._db.supabase.auth.refresh_session(cached.refresh_token)
        except (ConnectionError, TimeoutError) as exc:
            self._logger.warning("Network error restoring session: %s", exc)
            return AuthResult(
                success=False, error_code=AuthErrorCode.NETWORK_ERROR, error_message=_OFFLINE_MESSAGE,
            )
        except Exception as exc:
            self._logger.warning(
                "Cached refresh token rejected: %s", exc, extra={"event": "SESSION_EXPIRED"},
            )
            self._session_cache.clear_session()
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.SESSION_EXPIRED,
                error_message="Your session has expired. Please sign in again.",
            )

        if response.session is None or response.user is None:
            self._session_cache.clear_session()
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.SESSION_EXPIRED,
                error_message="Your session has expired. Please sign in again.",
            )

        user = self._user_from_auth(response.user, fallback_email=cached.email)
        self._start_session(user, response.session)
        self._session_cache.cache_session(
            user_id=user.id,
            email=user.email,
            full_name=user.full_name,
            refresh_token=response.session.refresh_token,
            password_hash=cached.password_hash,
            password_salt=cached.password_salt,
        )
        return AuthResult(
            success=True, user_id=user.id, email=user.email, full_name=user.full_name,
        )

    def refresh_session_token(self) -> AuthResult:
        """Refresh the access token when it is about to expire.

        Transient network errors are ignored (retry next time); a rejected
        refresh token yields ``SESSION_EXPIRED``.
        """
        if (
            not self._session.is_authenticated
            or not self._session.is_token_expired
            or not self._db.is_online
        ):
            return AuthResult(success=True)

        refresh_token = self._session.refresh_token
        if not refresh_token:
            return AuthResult(success=True)

        try:
            response = self._db.supabase.auth.refresh_session(refresh_token)
        except (ConnectionError, TimeoutError):
            self._logger.debug("Network error during token refresh; will retry.")
            return AuthResult(success=True)
        except Exception as exc:
            self._logger.warning(
                "Token refresh failed: %s. Forcing logout.", exc,
                extra={"event": "SESSION_EXPIRED"},
            )
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.SESSION_EXPIRED,
                error_message="Your session has expired. Please sign in again.",
            )

        if response.session is not None:
            self._session.set_tokens(
                access_token=response.session.access_token,
                refresh_token=response.session.refresh_token,
                expires_at=response.session.expires_at,
            )
            self._logger.info("Session token refreshed.")
        return AuthResult(success=True)

    # ==================================================================
    # Password reset / profile
    # ==================================================================

    def request_password_reset(self, email: str) -> AuthResult:
        """Send a reset link; the same reply whether or not *email* exists."""
        check = self.validate_email(email)
        if not check.is_valid:
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.VALIDATION_ERROR,
                error_message=check.error_message,
            )
        email = self.normalize_email(email)

        try:
            self._db.supabase.auth.reset_password_for_email(
                email, {"redirect_to": self._config.PASSWORD_RESET_REDIRECT_URL},
            )
            self._logger.info(
                "Password reset requested for %s.", email,
                extra={"event": "PASSWORD_RESET_REQUESTED"},
            )
        except RuntimeError:
            return AuthResult(
                success=False, error_code=AuthErrorCode.OFFLINE, error_message=_OFFLINE_MESSAGE,
            )
        except (ConnectionError, TimeoutError):
            return AuthResult(
                success=False, error_code=AuthErrorCode.NETWORK_ERROR, error_message=_OFFLINE_MESSAGE,
            )
        except Exception as exc:
            self._logger.warning("Password reset error for %s: %s", email, exc)

        return AuthResult(
            success=True,
            message="If this email is registered, you will receive a password reset link.",
        )

    def update_profile(self, full_name: str) -> AuthResult:
        """Change the display name stored in the auth user metadata."""
        if not self._session.is_authenticated:
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.SESSION_EXPIRED,
                error_message="Not signed in.",
            )
        check = self.validate_name(full_name)
        if not check.is_valid:
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.VALIDATION_ERROR,
                error_message=check.error_message,
            )
        full_name = full_name.strip()

        try:
            self._db.supabase.auth.update_user({"data": {"full_name": full_name}})
        except RuntimeError:
            return AuthResult(
                success=False, error_code=AuthErrorCode.OFFLINE, error_message=_OFFLINE_MESSAGE,
            )
        except Exception as exc:
            result = self._classify_error(exc, event="PROFILE_UPDATE_FAILED")
            result.error_message = f"Error updating profile: {result.error_message}"
            return result

        user = self._session.get_current_user().model_copy(update={"full_name": full_name})
        self._session.set_current_user(user)
        self._user_repo.upsert_profile(user)
        return AuthResult(
            success=True,
            message="Profile updated successfully!",
            user_id=user.id,
            email=user.email,
            full_name=user.full_name,
        )

    def update_password(self, new_password: str, confirm_password: str) -> AuthResult:
        """Change the password of the signed-in user."""
        if new_password != confirm_password:
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.VALIDATION_ERROR,
                error_message="New passwords do not match",
            )
        check = self.validate_password(new_password)
        if not check.is_valid:
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.VALIDATION_ERROR,
                error_message=check.error_message,
            )

        try:
            self._db.supabase.auth.update_user({"password": new_password})
        except RuntimeError:
            return AuthResult(
                success=False, error_code=AuthErrorCode.OFFLINE, error_message=_OFFLINE_MESSAGE,
            )
        except Exception as exc:
            result = self._classify_error(exc, event="PASSWORD_UPDATE_FAILED")
            result.error_message = f"Error updating password: {result.error_message}"
            return result

        self._logger.info("Password updated.", extra={"event": "PASSWORD_UPDATED"})
        return AuthResult(success=True, message="Password updated successfully!")

    def complete_password_reset(self, new_password: str) -> AuthResult:
        """Set the new password from a recovery session, then sign out."""
        try:
            self._db.supabase.auth.update_user({"password": new_password})
        except RuntimeError:
            return AuthResult(
                success=False, error_code=AuthErrorCode.OFFLINE, error_message=_OFFLINE_MESSAGE,
            )
        except Exception as exc:
            return self._classify_error(exc, event="PASSWORD_RESET_FAILED")

        self.logout()
        return AuthResult(
            success=True, message="Password updated successfully! You can now log in.",
        )

    # ==================================================================
    # Helpers
    # ==================================================================

    def _user_from_auth(self, auth_user: object, fallback_email: str) -> User:
        metadata: dict[str, object] = getattr(auth_user, "user_metadata", None) or {}
        full_name = metadata.get("full_name")
        return User(
            id=str(getattr(auth_user, "id")),
            email=getattr(auth_user, "email", None) or fallback_email,
            full_name=str(full_name) if full_name else None,
            email_confirmed=getattr(auth_user, "email_confirmed_at", None) is not None,
        )

    def _start_session(self, user: User, session_data: object) -> None:
        """Record *user* and tokens, then sync the profile row."""
        self._session.set_current_user(user)
        if session_data is not None:
            self._session.set_tokens(
                access_token=getattr(session_data, "access_token"),
                refresh_token=getattr(session_data, "refresh_token"),
                expires_at=getattr(session_data, "expires_at", None),
            )
        self._user_repo.upsert_profile(user)
