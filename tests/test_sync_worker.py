from datetime import date
from pathlib import Path

import pytest

from cointrail.database import DatabaseManager
from cointrail.models.enums import SyncStatus, TransactionType
from cointrail.services import create_services
from cointrail.services.sync_worker import SyncWorkerService


@pytest.fixture
def reconnected(tmp_path: Path, logger, fake_supabase, offline_db):
    """The offline cache file, reopened with a Supabase client."""
    manager = DatabaseManager(
        supabase_url="",
        supabase_key="",
        sqlite_path=tmp_path / "offline.db",
        logger=logger,
        client=fake_supabase,
    )
    yield manager
    manager.close()


@pytest.fixture
def worker(reconnected, isolated_config, logger) -> SyncWorkerService:
    return SyncWorkerService(db=reconnected, config=isolated_config, logger=logger)


def _queue_rows(manager: DatabaseManager) -> list[dict]:
    rows = manager.sqlite.execute(
        "SELECT table_name, operation, status, error_message FROM sync_queue ORDER BY id",
    ).fetchall()
    return [dict(r) for r in rows]


def _offline_writes(offline_services) -> None:
    category = offline_services["category_service"].add("Food", TransactionType.EXPENSE).data
    offline_services["transaction_store"].add({
        "amount": "8.40",
        "description": "Sandwich",
        "category_id": category.id,
        "transaction_date": date(2025, 7, 30),
        "type": TransactionType.EXPENSE,
    })


def test_offline_writes_replay_in_order(offline_services, offline_db, worker, reconnected, fake_supabase):
    _offline_writes(offline_services)
    assert offline_db.get_pending_sync_count() == 2

    assert worker.run_once() == 2

    category = fake_supabase.tables["categories"][0]
    transaction = fake_supabase.tables["transactions"][0]
    assert category["name"] == "Food"
    assert transaction["category_id"] == category["id"]
    assert transaction["amount"] == "8.40"
    assert fake_supabase.calls[:2] == [("categories", "upsert"), ("transactions", "upsert")]
    assert reconnected.get_pending_sync_count() == 0
    assert all(r["status"] == SyncStatus.SYNCED for r in _queue_rows(reconnected))


def test_replay_is_idempotent(offline_services, worker, reconnected, fake_supabase):
    _offline_writes(offline_services)
    worker.run_once()
    reconnected.sqlite.execute("UPDATE sync_queue SET status = 'pending'")
    reconnected.sqlite.commit()

    assert worker.run_once() == 2
    assert len(fake_supabase.tables["transactions"]) == 1


def test_failure_stops_cycle_and_keeps_order(offline_services, worker, reconnected, fake_supabase):
    _offline_writes(offline_services)
    fake_supabase.fail("categories")

    assert worker.run_once() == 0

    rows = _queue_rows(reconnected)
    assert [r["status"] for r in rows] == [SyncStatus.PENDING, SyncStatus.PENDING]
    assert rows[0]["error_message"].startswith("Attempt 1:")
    assert rows[1]["error_message"] is None
    assert "transactions" not in fake_supabase.tables
    assert worker._calculate_backoff_interval() == 60.0

    fake_supabase.recover("categories")
    assert worker.run_once() == 2
    assert worker._calculate_backoff_interval() == 30.0


def test_row_fails_permanently_after_five_attempts(offline_services, worker, reconnected, fake_supabase):
    offline_services["category_service"].add("Food", TransactionType.EXPENSE)
    fake_supabase.fail("categories")

    for _ in range(5):
        worker.run_once()

    row = _queue_rows(reconnected)[0]
    assert row["status"] == SyncStatus.PERMANENTLY_FAILED
    assert row["error_message"].count("Attempt ") == 5
    assert reconnected.get_pending_sync_count() == 0


def test_malformed_rows_are_skipped(worker, reconnected, fake_supabase):
    reconnected.sqlite.executemany(
        "INSERT INTO sync_queue (table_name, operation, entity_id, payload) VALUES (?, ?, ?, ?)",
        [
            ("transactions", "insert", "a", "{not json"),
            ("audit_log", "insert", "b", "{}"),
            ("categories", "merge", "c", "{}"),
            ("categories", "upsert", "d", '{"id": "d", "name": "Rent", "type": "expense"}'),
        ],
    )
    reconnected.sqlite.commit()

    assert worker.run_once() == 1

    statuses = [r["status"] for r in _queue_rows(reconnected)]
    assert statuses == [
        SyncStatus.PERMANENTLY_FAILED,
        SyncStatus.PERMANENTLY_FAILED,
        SyncStatus.PERMANENTLY_FAILED,
        SyncStatus.SYNCED,
    ]
    assert fake_supabase.tables["categories"][0]["name"] == "Rent"


def test_offline_deletes_replay(offline_services, worker, fake_supabase):
    fake_supabase.tables["categories"] = [
        {"id": "keep", "name": "Salary", "type": "income", "user_id": "someone-else"},
    ]
    categories = offline_services["category_service"]
    food = categories.add("Food", TransactionType.EXPENSE).data
    categories.delete(food.id)

    assert worker.run_once() == 2
    assert [c["id"] for c in fake_supabase.tables["categories"]] == ["keep"]


def test_run_once_offline_is_noop(offline_services, offline_db, isolated_config, logger):
    _offline_writes(offline_services)
    offline_worker = SyncWorkerService(db=offline_db, config=isolated_config, logger=logger)
    assert offline_worker.run_once() == 0
    assert offline_db.get_pending_sync_count() == 2


def test_start_and_stop(worker):
    worker.start()
    assert worker.is_running
    worker.stop()
    assert not worker.is_running


def test_reset_discards_queued_writes(
    offline_services, worker, reconnected, session, isolated_config, make_session_cache, fake_supabase,
):
    _offline_writes(offline_services)
    reconnected.sqlite.execute(
        "INSERT INTO sync_queue (table_name, operation, entity_id, payload) VALUES (?, ?, ?, ?)",
        ("categories", "upsert", "x", '{"id": "x", "name": "Rent", "type": "expense", "user_id": "someone-else"}'),
    )
    reconnected.sqlite.commit()

    online = create_services(
        db=reconnected,
        config=isolated_config,
        session=session,
        session_cache=make_session_cache(reconnected),
    )
    assert online["data_reset_service"].reset_user_data().success
    assert reconnected.get_pending_sync_count() == 1

    assert worker.run_once() == 1
    assert fake_supabase.tables.get("transactions", []) == []
    assert [c["user_id"] for c in fake_supabase.tables["categories"]] == ["someone-else"]
