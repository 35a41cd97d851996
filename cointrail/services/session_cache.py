"""
Encrypted Session Cache Service.

Persists the Supabase refresh token and the signed-in identity in the
local ``encrypted_sessions`` table so the CLI can resume a session on the
next invocation, and verify the password when Supabase is unreachable.

Security model
--------------
- The AES key is derived at runtime from machine identity (hostname and
  OS username) via PBKDF2-HMAC-SHA256 with a per-machine random salt
  stored at ``~/.cointrail_session_salt`` (mode 0600).  The key is never
  written to disk.
- Payloads are encrypted with AES-256-GCM (authenticated encryption).
- Cached sessions expire after ``SESSION_MAX_AGE_DAYS``.
- Logout deletes the row.
"""

from __future__ import annotations

import getpass
import hashlib
import hmac
import json
import os
import socket
import sqlite3
import stat
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from Crypto.Cipher import AES
from Crypto.Hash import SHA256
from Crypto.Protocol.KDF import PBKDF2

from cointrail.database import DatabaseManager
from cointrail.logger import StructuredLogger
from cointrail.models.auth_models import CachedSession


class SessionCacheService:
    """Manages the encrypted, single-row session cache.

    This service talks to SQLite directly rather than through a
    repository: the cached session is auth infrastructure, not user data.

    Parameters
    ----------
    db:
        Initialised ``DatabaseManager``.
    logger:
        Structured JSON logger.
    max_age_days:
        Days a cached session stays valid.
    salt_path:
        Location of the per-machine salt file.
    iterations:
        PBKDF2 iteration count for both the AES key and the offline
        password hash.
    """

    _PBKDF2_ITERATIONS: int = 600_000
    _KEY_LENGTH: int = 32  # 256 bits
    _SALT_FILENAME: str = ".cointrail_session_salt"

    def __init__(
        self,
        db: DatabaseManager,
        logger: StructuredLogger,
        max_age_days: int = 30,
        salt_path: Optional[Path] = None,
        iterations: Optional[int] = None,
    ) -> None:
        self._db: DatabaseManager = db
        self._logger: StructuredLogger = logger
        self._max_age_days: int = max_age_days
        self._salt_path: Path = salt_path or Path.home() / self._SALT_FILENAME
        self._iterations: int = iterations or self._PBKDF2_ITERATIONS

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def cache_session(
        self,
        user_id: str,
        email: str,
        full_name: Optional[str],
        refresh_token: str,
        password: Optional[str] = None,
        password_hash: Optional[str] = None,
        password_salt: Optional[str] = None,
    ) -> bool:
        """Encrypt and persist the session.

        When *password* is given its PBKDF2 hash is stored alongside so
        that :meth:`verify_offline_password` can authenticate offline.
        A previously computed *password_hash*/*password_salt* pair can be
        carried over instead (session restore rotates the refresh token
        without knowing the password).

        Returns ``False`` (after logging) when encryption or the write
        fails; caching is never critical to the login itself.
        """
        if password:
            password_hash, password_salt = self.hash_password(password)

        session = CachedSession(
            user_id=user_id,
            email=email,
            full_name=full_name,
            refresh_token=refresh_token,
            cached_at=datetime.now(tz=timezone.utc).isoformat(),
            password_hash=password_hash,
            password_salt=password_salt,
        )
        plaintext: bytes = session.model_dump_json().encode("utf-8")

        try:
            key: bytes = self._derive_key()
            cipher = AES.new(key, AES.MODE_GCM)
            ciphertext, tag = cipher.encrypt_and_digest(plaintext)
            nonce: bytes = cipher.nonce
        except (OSError, ValueError) as exc:
            self._logger.warning("Failed to encrypt session payload: %s", exc)
            return False

        try:
            with self._db.write_lock:
                self._db.sqlite.execute(
                    """
                    INSERT INTO encrypted_sessions (id, encrypted_payload, nonce, tag)
                    VALUES (1, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        encrypted_payload = excluded.encrypted_payload,
                        nonce             = excluded.nonce,
                        tag               = excluded.tag,
                        created_at        = CURRENT_TIMESTAMP
                    """,
                    (ciphertext, nonce, tag),
                )
                self._db.sqlite.commit()
        except sqlite3.Error as exc:
            self._logger.warning("Failed to write encrypted session: %s", exc)
            return False

        self._logger.info("Session cached for %s.", email)
        return True

    def load_cached_session(self) -> Optional[CachedSession]:
        """Decrypt the cached session.

        Returns ``None`` when no row exists, decryption fails (corrupted
        data or a different machine identity), the payload is malformed,
        or the session is older than ``max_age_days``.
        """
        try:
            row = self._db.sqlite.execute(
                "SELECT encrypted_payload, nonce, tag FROM encrypted_sessions WHERE id = 1",
            ).fetchone()
        except sqlite3.Error as exc:
            self._logger.warning("Failed to read cached session: %s", exc)
            return None

        if row is None:
            self._logger.debug("No cached session found.")
            return None

        try:
            key: bytes = self._derive_key()
            cipher = AES.new(key, AES.MODE_GCM, nonce=row["nonce"])
            plaintext: bytes = cipher.decrypt_and_verify(row["encrypted_payload"], row["tag"])
        except (ValueError, KeyError, OSError) as exc:
            self._logger.warning(
                "Decryption of cached session failed (corrupted data or "
                "machine identity changed): %s",
                exc,
            )
            return None

        try:
            session = CachedSession(**json.loads(plaintext.decode("utf-8")))
        except (json.JSONDecodeError, TypeError, ValueError) as exc:
            self._logger.warning("Cached session payload is malformed: %s", exc)
            return None

        try:
            expiry = datetime.fromisoformat(session.cached_at) + timedelta(days=self._max_age_days)
        except ValueError as exc:
            self._logger.warning(
                "Could not parse cached_at timestamp '%s': %s", session.cached_at, exc,
            )
            return None

        if datetime.now(tz=timezone.utc) > expiry:
            self._logger.info(
                "Cached session for %s expired (cached at %s, max age %d days).",
                session.email,
                session.cached_at,
                self._max_age_days,
            )
            return None

        return session

    def clear_session(self) -> None:
        """Delete the cached session.  Safe when none exists."""
        try:
            with self._db.write_lock:
                self._db.sqlite.execute("DELETE FROM encrypted_sessions WHERE id = 1")
                self._db.sqlite.commit()
            self._logger.info("Cached session cleared.")
        except sqlite3.Error as exc:
            self._logger.error("Failed to clear cached session: %s", exc)

    def verify_offline_password(self, email: str, password: str) -> Optional[CachedSession]:
        """Return the cached session when *email* matches and *password* verifies."""
        cached = self.load_cached_session()
        if cached is None or cached.email != email:
            return None

        if cached.password_hash is None or cached.password_salt is None:
            self._logger.warning(
                "Cached session for %s has no password hash. Online login required.",
                email,
            )
            return None

        computed_hash: str = hashlib.pbkdf2_hmac(
            "sha256",
            password.encode("utf-8"),
            bytes.fromhex(cached.password_salt),
            iterations=self._iterations,
        ).hex()

        if not hmac.compare_digest(computed_hash, cached.password_hash):
            self._logger.warning("Offline password verification failed for %s.", email)
            return None

        self._logger.info("Offline password verified for %s.", email)
        return cached

    def hash_password(self, password: str) -> tuple[str, str]:
        """Return a ``(hex_hash, hex_salt)`` PBKDF2-HMAC-SHA256 pair."""
        salt: bytes = os.urandom(32)
        pw_hash: str = hashlib.pbkdf2_hmac(
            "sha256", password.encode("utf-8"), salt, iterations=self._iterations,
        ).hex()
        return pw_hash, salt.hex()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _derive_key(self) -> bytes:
        """Derive the 256-bit AES key from ``hostname:username`` and the salt.

        A database file copied to another machine or OS account cannot be
        decrypted; the entropy comes from the random per-machine salt.

        Raises
        ------
        OSError
            If the salt file cannot be created or read.
        """
        secret: str = f"{socket.gethostname()}:{getpass.getuser()}"
        return PBKDF2(
            password=secret,
            salt=self._get_or_create_salt(),
            dkLen=self._KEY_LENGTH,
            count=self._iterations,
            hmac_hash_module=SHA256,
        )

    def _get_or_create_salt(self) -> bytes:
        """Return the per-machine salt, creating it (mode 0600) on first use."""
        if self._salt_path.exists():
            data: bytes = self._salt_path.read_bytes()
            if len(data) == 32:
                return data
            self._logger.warning(
                "Salt file has unexpected length (%d); regenerating.", len(data),
            )
        salt: bytes = os.urandom(32)
        self._salt_path.write_bytes(salt)
        self._salt_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        self._logger.info("Per-machine session salt created at %s.", self._salt_path)
        return salt
