import pytest

from cointrail.auth import AuthenticationError, SessionManager
from cointrail.database import DatabaseManager
from cointrail.guards import require_auth
from cointrail.models.auth_models import AuthErrorCode
from cointrail.models.enums import PasswordStrength
from cointrail.models.user import User
from cointrail.repositories.user_repository import UserRepository
from cointrail.services.auth_service import AuthService
from tests.conftest import FakeApiError

EMAIL = "ben@example.com"
PASSWORD = "Secret123"


@pytest.fixture
def anon_session() -> SessionManager:
    return SessionManager()


@pytest.fixture
def auth(db, anon_session, isolated_config, make_session_cache, logger, fake_supabase) -> AuthService:
    fake_supabase.auth.add_account(EMAIL, PASSWORD, full_name="Ben Doe", user_id="user-ben")
    return AuthService(
        db=db,
        session=anon_session,
        session_cache=make_session_cache(db),
        user_repo=UserRepository(db=db, logger=logger),
        config=isolated_config,
        logger=logger,
    )


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "password, expected",
    [
        ("", PasswordStrength.NONE),
        ("abc", PasswordStrength.WEAK),
        ("abcdef", PasswordStrength.MEDIUM),
        ("abcdefgh", PasswordStrength.MEDIUM),
        ("Abcdefg1", PasswordStrength.STRONG),
    ],
)
def test_password_strength(password, expected):
    assert AuthService.password_strength(password) == expected


def test_profile_password_policy():
    assert not AuthService.validate_password("short").is_valid
    assert not AuthService.validate_password("alllowercase1").is_valid
    assert not AuthService.validate_password("NoDigitsHere").is_valid
    assert AuthService.validate_password("Abcdefg1").is_valid


def test_email_validation():
    assert AuthService.validate_email("ana@example.com").is_valid
    assert not AuthService.validate_email("not-an-email").is_valid


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------

def test_login_success(auth, anon_session, fake_supabase):
    result = auth.login("  BEN@example.com ", PASSWORD)

    assert result.success
    assert result.message == "Logged in successfully!"
    assert anon_session.get_current_user().id == "user-ben"
    assert anon_session.get_current_user().full_name == "Ben Doe"
    assert anon_session.refresh_token is not None
    assert fake_supabase.tables["users"][0]["email"] == EMAIL


def test_login_invalid_credentials(auth, anon_session):
    result = auth.login(EMAIL, "wrong")
    assert not result.success
    assert result.error_code == AuthErrorCode.INVALID_CREDENTIALS
    assert result.error_message == "Invalid email or password."
    assert not anon_session.is_authenticated


def test_login_locks_after_three_failures(auth):
    for _ in range(3):
        auth.login(EMAIL, "wrong")
    result = auth.login(EMAIL, PASSWORD)
    assert result.error_code == AuthErrorCode.RATE_LIMITED
    locked, remaining = auth.check_rate_limit(EMAIL)
    assert locked and 0 < remaining <= 31


def test_unconfirmed_email_is_classified(auth, fake_supabase):
    fake_supabase.auth.error = FakeApiError("Email not confirmed", "email_not_confirmed")
    result = auth.login(EMAIL, PASSWORD)
    assert result.error_code == AuthErrorCode.EMAIL_NOT_CONFIRMED


def test_network_error_is_classified(auth, fake_supabase):
    fake_supabase.auth.error = ConnectionError("connection refused")
    assert auth.login(EMAIL, PASSWORD).error_code == AuthErrorCode.NETWORK_ERROR


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

def test_register_requires_confirmation(auth, fake_supabase, anon_session):
    fake_supabase.auth.require_confirmation = True
    result = auth.register("Cara Diaz", "cara@example.com", "secret1", "secret1")
    assert result.success
    assert result.requires_confirmation
    assert not anon_session.is_authenticated
    _, params = next(c for c in fake_supabase.auth.calls if c[0] == "sign_up")
    assert params["options"]["data"]["full_name"] == "Cara Diaz"


def test_register_signs_in_when_session_returned(auth, anon_session):
    result = auth.register("Cara Diaz", "cara@example.com", "secret1")
    assert result.success
    assert not result.requires_confirmation
    assert anon_session.get_current_user().email == "cara@example.com"


def test_register_validation(auth):
    assert auth.register("", "cara@example.com", "secret1").error_code == AuthErrorCode.VALIDATION_ERROR
    assert auth.register("Cara", "cara@example.com", "12345").error_message == (
        "Password should be at least 6 characters."
    )
    assert auth.register("Cara", "cara@example.com", "secret1", "secret2").error_message == (
        "Passwords don't match!"
    )


def test_register_existing_email(auth):
    result = auth.register("Ben", EMAIL, "secret1")
    assert result.error_code == AuthErrorCode.EMAIL_ALREADY_EXISTS


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------

def test_logout_clears_session_and_cache(auth, anon_session, fake_supabase):
    auth.login(EMAIL, PASSWORD)
    auth.logout()
    assert not anon_session.is_authenticated
    assert ("sign_out", None) in fake_supabase.auth.calls
    assert not auth.restore_session().success


def test_restore_session_refreshes_token(auth, anon_session):
    auth.login(EMAIL, PASSWORD)
    first_token = anon_session.refresh_token
    anon_session.clear()

    result = auth.restore_session()

    assert result.success
    assert anon_session.get_current_user().id == "user-ben"
    assert anon_session.refresh_token != first_token
    # The rotated token was cached, so a second restore works too.
    anon_session.clear()
    assert auth.restore_session().success


def test_restore_without_cache(auth):
    result = auth.restore_session()
    assert result.error_code == AuthErrorCode.SESSION_EXPIRED


def test_offline_login_uses_cached_password(
    auth, make_session_cache, logger, isolated_config, tmp_path,
):
    assert auth.login(EMAIL, PASSWORD).success

    # Same SQLite file and salt as the online login, but no Supabase client.
    offline = DatabaseManager(
        supabase_url="", supabase_key="", sqlite_path=tmp_path / "online.db", logger=logger,
    )
    offline_session = SessionManager()
    offline_auth = AuthService(
        db=offline,
        session=offline_session,
        session_cache=make_session_cache(offline),
        user_repo=UserRepository(db=offline, logger=logger),
        config=isolated_config,
        logger=logger,
    )
    try:
        bad = offline_auth.login(EMAIL, "wrong")
        assert bad.error_code == AuthErrorCode.INVALID_CREDENTIALS

        good = offline_auth.login(EMAIL, PASSWORD)
        assert good.success
        assert good.is_offline_login
        assert offline_session.get_current_user().id == "user-ben"

        assert offline_auth.login("someone@example.com", PASSWORD).error_code == AuthErrorCode.OFFLINE
    finally:
        offline.close()


# ---------------------------------------------------------------------------
# Passwords and profile
# ---------------------------------------------------------------------------

def test_password_reset_is_generic(auth, fake_supabase, isolated_config):
    result = auth.request_password_reset("nobody@example.com")
    assert result.success
    assert result.message == "If this email is registered, you will receive a password reset link."
    _, (email, options) = next(
        c for c in fake_supabase.auth.calls if c[0] == "reset_password_for_email"
    )
    assert email == "nobody@example.com"
    assert options == {"redirect_to": isolated_config.PASSWORD_RESET_REDIRECT_URL}


def test_update_password_checks(auth):
    auth.login(EMAIL, PASSWORD)
    assert auth.update_password("Abcdefg1", "Abcdefg2").error_message == "New passwords do not match"
    assert not auth.update_password("weak", "weak").success
    assert auth.update_password("Abcdefg1", "Abcdefg1").success


def test_complete_password_reset_signs_out(auth, anon_session):
    auth.login(EMAIL, PASSWORD)
    result = auth.complete_password_reset("Abcdefg1")
    assert result.message == "Password updated successfully! You can now log in."
    assert not anon_session.is_authenticated


def test_update_profile(auth, anon_session, fake_supabase):
    auth.login(EMAIL, PASSWORD)
    result = auth.update_profile("Benjamin Doe")
    assert result.success
    assert anon_session.get_current_user().full_name == "Benjamin Doe"
    assert ("update_user", {"data": {"full_name": "Benjamin Doe"}}) in fake_supabase.auth.calls


def test_resend_confirmation(auth, fake_supabase):
    assert auth.resend_confirmation_email("cara@example.com").success
    assert ("resend", {"type": "signup", "email": "cara@example.com"}) in fake_supabase.auth.calls


def test_refresh_session_token_when_expired(auth, anon_session):
    auth.login(EMAIL, PASSWORD)
    old_refresh = anon_session.refresh_token
    anon_session.set_tokens("stale", old_refresh, expires_at=0)
    assert anon_session.is_token_expired

    assert auth.refresh_session_token().success

    assert anon_session.access_token != "stale"
    assert anon_session.refresh_token != old_refresh
    assert not anon_session.is_token_expired


def test_refresh_with_revoked_token_expires_session(auth, anon_session):
    auth.login(EMAIL, PASSWORD)
    anon_session.set_tokens("stale", "revoked", expires_at=0)
    assert auth.refresh_session_token().error_code == AuthErrorCode.SESSION_EXPIRED


def test_require_auth_guard(anon_session):
    guarded = require_auth(anon_session)(lambda: "ok")
    with pytest.raises(AuthenticationError):
        guarded()
    anon_session.set_current_user(User(id="u", email="u@example.com"))
    assert guarded() == "ok"
