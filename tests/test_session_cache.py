from datetime import datetime, timedelta, timezone

import pytest
from Crypto.Cipher import AES

from cointrail.services.session_cache import SessionCacheService


@pytest.fixture
def cache(db, make_session_cache) -> SessionCacheService:
    return make_session_cache(db)


def _store(cache: SessionCacheService, **overrides) -> bool:
    params = {
        "user_id": "user-1",
        "email": "ana@example.com",
        "full_name": "Ana",
        "refresh_token": "refresh-1",
        "password": "Secret123",
    }
    params.update(overrides)
    return cache.cache_session(**params)


def test_round_trip(cache, db):
    assert _store(cache)

    loaded = cache.load_cached_session()

    assert loaded.user_id == "user-1"
    assert loaded.refresh_token == "refresh-1"
    assert loaded.password_hash and loaded.password_salt
    raw = db.sqlite.execute("SELECT encrypted_payload FROM encrypted_sessions").fetchone()[0]
    assert b"refresh-1" not in raw


def test_single_row_is_replaced(cache, db):
    _store(cache)
    _store(cache, refresh_token="refresh-2")
    assert db.sqlite.execute("SELECT COUNT(*) FROM encrypted_sessions").fetchone()[0] == 1
    assert cache.load_cached_session().refresh_token == "refresh-2"


def test_offline_password_check(cache):
    _store(cache)
    assert cache.verify_offline_password("ana@example.com", "Secret123").user_id == "user-1"
    assert cache.verify_offline_password("ana@example.com", "secret123") is None
    assert cache.verify_offline_password("other@example.com", "Secret123") is None


def test_carried_over_hash_still_verifies(cache):
    _store(cache)
    first = cache.load_cached_session()
    _store(
        cache,
        refresh_token="refresh-2",
        password=None,
        password_hash=first.password_hash,
        password_salt=first.password_salt,
    )
    assert cache.verify_offline_password("ana@example.com", "Secret123") is not None


def test_session_without_password_cannot_log_in_offline(cache):
    _store(cache, password=None)
    assert cache.verify_offline_password("ana@example.com", "Secret123") is None


def test_expired_session_is_ignored(db, logger, tmp_path):
    cache = SessionCacheService(
        db=db, logger=logger, max_age_days=1, salt_path=tmp_path / "salt", iterations=1_000,
    )
    _store(cache)
    assert cache.load_cached_session() is not None

    # Re-encrypt the same identity with a stale timestamp.
    stale = cache.load_cached_session().model_copy(
        update={"cached_at": (datetime.now(timezone.utc) - timedelta(days=2)).isoformat()},
    )
    key = cache._derive_key()
    cipher = AES.new(key, AES.MODE_GCM)
    ciphertext, tag = cipher.encrypt_and_digest(stale.model_dump_json().encode("utf-8"))
    db.sqlite.execute(
        "UPDATE encrypted_sessions SET encrypted_payload = ?, nonce = ?, tag = ? WHERE id = 1",
        (ciphertext, cipher.nonce, tag),
    )
    db.sqlite.commit()

    assert cache.load_cached_session() is None


def test_tampered_payload_is_rejected(cache, db):
    _store(cache)
    db.sqlite.execute("UPDATE encrypted_sessions SET tag = ? WHERE id = 1", (b"\x00" * 16,))
    db.sqlite.commit()
    assert cache.load_cached_session() is None


def test_different_salt_cannot_decrypt(cache, db, logger, tmp_path):
    _store(cache)
    other = SessionCacheService(
        db=db, logger=logger, salt_path=tmp_path / "other_salt", iterations=1_000,
    )
    assert other.load_cached_session() is None


def test_clear(cache):
    _store(cache)
    cache.clear_session()
    assert cache.load_cached_session() is None
    cache.clear_session()


def test_salt_file_is_private(cache, tmp_path):
    _store(cache)
    salt = tmp_path / "session_salt"
    assert len(salt.read_bytes()) == 32
    assert salt.stat().st_mode & 0o777 == 0o600
