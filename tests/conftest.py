"""Shared fixtures: isolated config, temp SQLite databases and a fake Supabase client."""

from __future__ import annotations

import copy
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Callable, Optional

import pytest

from cointrail.auth import SessionManager
from cointrail.config import AppConfig, get_config, reset_config
from cointrail.database import DatabaseManager
from cointrail.logger import StructuredLogger
from cointrail.models.user import User
from cointrail.schema import initialize_schema
from cointrail.services import ServiceContainer, create_services
from cointrail.services.session_cache import SessionCacheService

USER_ID = "0b6c7f5e-0000-4000-8000-000000000001"
USER_EMAIL = "ana@example.com"


# ---------------------------------------------------------------------------
# Fake Supabase
# ---------------------------------------------------------------------------

class FakeApiError(Exception):
    """Mimics the ``code`` attribute of Supabase client errors."""

    def __init__(self, message: str, code: str = "") -> None:
        super().__init__(message)
        self.code = code


class FakeResponse:
    def __init__(self, data: Any) -> None:
        self.data = data


class FakeQuery:
    """Chainable subset of the PostgREST query builder."""

    def __init__(self, client: FakeSupabase, table: str) -> None:
        self._client = client
        self._table = table
        self._action = "select"
        self._payload: Any = None
        self._filters: list[tuple[str, Any]] = []
        self._order: Optional[tuple[str, bool]] = None

    def select(self, *_columns: str) -> FakeQuery:
        self._action = "select"
        return self

    def insert(self, payload: Any) -> FakeQuery:
        self._action, self._payload = "insert", payload
        return self

    def upsert(self, payload: Any) -> FakeQuery:
        self._action, self._payload = "upsert", payload
        return self

    def update(self, payload: dict[str, Any]) -> FakeQuery:
        self._action, self._payload = "update", payload
        return self

    def delete(self) -> FakeQuery:
        self._action = "delete"
        return self

    def eq(self, column: str, value: Any) -> FakeQuery:
        self._filters.append((column, value))
        return self

    def order(self, column: str, desc: bool = False) -> FakeQuery:
        self._order = (column, desc)
        return self

    def _matches(self, row: dict[str, Any]) -> bool:
        return all(str(row.get(col)) == str(val) for col, val in self._filters)

    def execute(self) -> FakeResponse:
        self._client.calls.append((self._table, self._action))
        error = self._client.failures.get(self._table)
        if error is not None:
            raise error

        rows = self._client.tables.setdefault(self._table, [])
        if self._action == "select":
            found = [copy.deepcopy(r) for r in rows if self._matches(r)]
            if self._order is not None:
                column, desc = self._order
                found.sort(key=lambda r: str(r.get(column) or ""), reverse=desc)
            return FakeResponse(found)

        if self._action in ("insert", "upsert"):
            items = self._payload if isinstance(self._payload, list) else [self._payload]
            stored = []
            for item in items:
                row = self._client.with_defaults(self._table, item)
                existing = next((r for r in rows if r["id"] == row["id"]), None)
                if existing is not None and self._action == "upsert":
                    existing.update(row)
                    stored.append(copy.deepcopy(existing))
                    continue
                if existing is not None:
                    raise FakeApiError("duplicate key value violates unique constraint", "23505")
                rows.append(row)
                stored.append(copy.deepcopy(row))
            return FakeResponse(stored)

        if self._action == "update":
            updated = []
            for row in rows:
                if self._matches(row):
                    row.update(copy.deepcopy(self._payload))
                    updated.append(copy.deepcopy(row))
            return FakeResponse(updated)

        removed = [r for r in rows if self._matches(r)]
        self._client.tables[self._table] = [r for r in rows if not self._matches(r)]
        return FakeResponse(removed)


class FakeAuth:
    """In-memory stand-in for ``client.auth``."""

    def __init__(self) -> None:
        self.accounts: dict[str, dict[str, Any]] = {}
        self.refresh_tokens: dict[str, str] = {}
        self.error: Optional[Exception] = None
        self.require_confirmation = False
        self.calls: list[tuple[str, Any]] = []

    def add_account(self, email: str, password: str, full_name: Optional[str] = None,
                    user_id: Optional[str] = None) -> str:
        user_id = user_id or str(uuid.uuid4())
        self.accounts[email] = {"id": user_id, "password": password, "full_name": full_name}
        return user_id

    def _check_error(self) -> None:
        if self.error is not None:
            raise self.error

    def _auth_user(self, email: str) -> SimpleNamespace:
        account = self.accounts[email]
        return SimpleNamespace(
            id=account["id"],
            email=email,
            user_metadata={"full_name": account["full_name"]} if account["full_name"] else {},
            email_confirmed_at="2025-01-01T00:00:00Z",
        )

    def _new_session(self, email: str) -> SimpleNamespace:
        token = f"refresh-{uuid.uuid4()}"
        self.refresh_tokens[token] = email
        return SimpleNamespace(
            access_token=f"access-{uuid.uuid4()}",
            refresh_token=token,
            expires_at=int(time.time()) + 3600,
        )

    def sign_in_with_password(self, credentials: dict[str, str]) -> SimpleNamespace:
        self.calls.append(("sign_in_with_password", credentials["email"]))
        self._check_error()
        account = self.accounts.get(credentials["email"])
        if account is None or account["password"] != credentials["password"]:
            raise FakeApiError("Invalid login credentials", "invalid_credentials")
        email = credentials["email"]
        return SimpleNamespace(user=self._auth_user(email), session=self._new_session(email))

    def sign_up(self, params: dict[str, Any]) -> SimpleNamespace:
        self.calls.append(("sign_up", params))
        self._check_error()
        email = params["email"]
        if email in self.accounts:
            raise FakeApiError("User already registered", "user_already_exists")
        self.add_account(email, params["password"], params["options"]["data"].get("full_name"))
        session = None if self.require_confirmation else self._new_session(email)
        return SimpleNamespace(user=self._auth_user(email), session=session)

    def sign_out(self) -> None:
        self.calls.append(("sign_out", None))

    def refresh_session(self, refresh_token: str) -> SimpleNamespace:
        self.calls.append(("refresh_session", refresh_token))
        self._check_error()
        email = self.refresh_tokens.pop(refresh_token, None)
        if email is None:
            raise FakeApiError("Invalid Refresh Token: Refresh Token Not Found", "refresh_token_not_found")
        return SimpleNamespace(user=self._auth_user(email), session=self._new_session(email))

    def reset_password_for_email(self, email: str, options: dict[str, str]) -> None:
        self.calls.append(("reset_password_for_email", (email, options)))
        self._check_error()

    def resend(self, params: dict[str, str]) -> None:
        self.calls.append(("resend", params))
        self._check_error()

    def update_user(self, attributes: dict[str, Any]) -> SimpleNamespace:
        self.calls.append(("update_user", attributes))
        self._check_error()
        return SimpleNamespace(user=None)


class FakeBucket:
    def __init__(self, client: FakeSupabase, name: str) -> None:
        self._client = client
        self._name = name

    def upload(self, path: str, content: bytes, options: Optional[dict[str, str]] = None) -> None:
        if self._client.storage_error is not None:
            raise self._client.storage_error
        self._client.files[path] = content

    def get_public_url(self, path: str) -> str:
        return f"https://fake.supabase.co/storage/v1/object/public/{self._name}/{path}"

    def remove(self, paths: list[str]) -> None:
        for path in paths:
            if path not in self._client.files:
                raise FakeApiError("Object not found", "404")
            del self._client.files[path]


class FakeRpc:
    def __init__(self, client: FakeSupabase, name: str) -> None:
        self._client = client
        self._name = name

    def execute(self) -> FakeResponse:
        self._client.calls.append(("rpc", self._name))
        error = self._client.failures.get(f"rpc:{self._name}")
        if error is not None:
            raise error
        if self._name == "reset_user_data":
            self._client.tables["transactions"] = []
            self._client.tables["categories"] = []
        return FakeResponse(None)


class FakeSupabase:
    """Just enough of ``supabase.Client`` for the repositories and services."""

    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.failures: dict[str, Exception] = {}
        self.calls: list[tuple[str, str]] = []
        self.files: dict[str, bytes] = {}
        self.storage_error: Optional[Exception] = None
        self.auth = FakeAuth()
        self.storage = SimpleNamespace(from_=lambda name: FakeBucket(self, name))

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rpc(self, name: str, params: Optional[dict[str, Any]] = None) -> FakeRpc:
        return FakeRpc(self, name)

    def fail(self, target: str, error: Optional[Exception] = None) -> None:
        """Make every call on *target* (table name or ``rpc:<name>``) raise."""
        self.failures[target] = error or FakeApiError("backend unavailable")

    def recover(self, target: str) -> None:
        self.failures.pop(target, None)

    @staticmethod
    def with_defaults(table: str, item: dict[str, Any]) -> dict[str, Any]:
        now = datetime.now(timezone.utc).isoformat()
        row = {"id": str(uuid.uuid4()), "created_at": now, **copy.deepcopy(item)}
        if table in ("transactions", "users"):
            row.setdefault("updated_at", now)
        return row


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    """Fresh settings per test, never read from a developer ``.env``."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("SUPABASE_ANON_KEY", "")
    monkeypatch.setenv("LOG_FILE", str(tmp_path / "logs" / "cointrail.log"))
    reset_config()
    yield get_config()
    reset_config()


@pytest.fixture
def logger() -> StructuredLogger:
    return StructuredLogger(name="cointrail.tests")


@pytest.fixture
def fake_supabase() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture
def db(tmp_path: Path, logger: StructuredLogger, fake_supabase: FakeSupabase) -> DatabaseManager:
    """Online database manager: fake Supabase plus a temp SQLite file."""
    manager = DatabaseManager(
        supabase_url="",
        supabase_key="",
        sqlite_path=tmp_path / "online.db",
        logger=logger,
        client=fake_supabase,
    )
    initialize_schema(manager.sqlite, logger)
    yield manager
    manager.close()


@pytest.fixture
def offline_db(tmp_path: Path, logger: StructuredLogger) -> DatabaseManager:
    manager = DatabaseManager(
        supabase_url="",
        supabase_key="",
        sqlite_path=tmp_path / "offline.db",
        logger=logger,
    )
    initialize_schema(manager.sqlite, logger)
    yield manager
    manager.close()


@pytest.fixture
def session() -> SessionManager:
    """A session with the test user signed in."""
    manager = SessionManager()
    manager.set_current_user(User(id=USER_ID, email=USER_EMAIL, full_name="Ana Test"))
    return manager


@pytest.fixture
def make_session_cache(tmp_path: Path, logger: StructuredLogger) -> Callable[[DatabaseManager], SessionCacheService]:
    def _make(manager: DatabaseManager) -> SessionCacheService:
        return SessionCacheService(
            db=manager,
            logger=logger,
            salt_path=tmp_path / "session_salt",
            iterations=1_000,
        )
    return _make


@pytest.fixture
def services(
    db: DatabaseManager,
    session: SessionManager,
    isolated_config: AppConfig,
    make_session_cache: Callable[[DatabaseManager], SessionCacheService],
) -> ServiceContainer:
    return create_services(
        db=db, config=isolated_config, session=session, session_cache=make_session_cache(db),
    )


@pytest.fixture
def offline_services(
    offline_db: DatabaseManager,
    session: SessionManager,
    isolated_config: AppConfig,
    make_session_cache: Callable[[DatabaseManager], SessionCacheService],
) -> ServiceContainer:
    return create_services(
        db=offline_db,
        config=isolated_config,
        session=session,
        session_cache=make_session_cache(offline_db),
    )
