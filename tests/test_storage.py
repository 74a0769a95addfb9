"""Tests for ticketdesk.storage.schema — base creation, migrations, constraints."""

from __future__ import annotations

import logging
import sqlite3
from unittest.mock import MagicMock

import pytest

from ticketdesk.storage.connection import ConnectionManager
from ticketdesk.storage.executor import QueryExecutor
from ticketdesk.storage.schema import (
    MIGRATIONS,
    SCHEMA_STATEMENTS,
    create_tables,
    initialize_schema,
    list_tables,
)

EXPECTED_TABLES = {
    "departments",
    "blocks",
    "locations",
    "users",
    "services",
    "requests",
    "request_activities",
    "request_links",
    "system_settings",
    "schema_migrations",
}

EXPECTED_INDEXES = {
    "idx_requests_status",
    "idx_requests_created_by",
    "idx_requests_assigned_to",
    "idx_requests_created_at",
    "idx_request_activities_request_id",
}

NOW = "2025-06-15T08:00:00+00:00"


class RecordingExecutor(QueryExecutor):
    """QueryExecutor that remembers every statement it was asked to run."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.statements: list[str] = []

    def execute(self, sql, params=(), **kwargs):
        self.statements.append(sql)
        return super().execute(sql, params, **kwargs)


@pytest.fixture()
def db_path(tmp_path):
    """Return a database path inside a temporary directory."""
    return str(tmp_path / "test.db")


@pytest.fixture()
def executor(db_path):
    connections = ConnectionManager(db_path)
    yield RecordingExecutor(connections, sleep=lambda _: None)
    connections.close()


@pytest.fixture()
def initialized(executor):
    initialize_schema(executor)
    return executor


def _columns(executor, table: str) -> set[str]:
    return {row["name"] for row in executor.query_rows(f"PRAGMA table_info({table})")}


def _seed_user(executor, user_id: str = "u-1", email: str = "nurse@example.org") -> None:
    executor.execute_write(
        'INSERT INTO users (id, email, password, "firstName", "lastName", "createdAt", "updatedAt") '
        "VALUES (?, ?, ?, ?, ?, ?, ?)",
        (user_id, email, "hash", "Ada", "Lovelace", NOW, NOW),
    )


def _seed_request(executor, request_id: str = "r-1", **overrides) -> None:
    values = {
        "locationId": None,
        "assignedToId": None,
        "createdById": "u-1",
    }
    values.update(overrides)
    executor.execute_write(
        'INSERT INTO requests (id, "requestId", "serviceType", title, "createdById", '
        '"assignedToId", "locationId", "createdAt", "updatedAt") '
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            request_id, f"REQ-{request_id}", "MAINTENANCE", "Leaking tap",
            values["createdById"], values["assignedToId"], values["locationId"], NOW, NOW,
        ),
    )


def _seed_location(executor, location_id: str = "l-1", block_id: str = "b-1") -> None:
    executor.execute_write("INSERT OR IGNORE INTO blocks (id, name) VALUES (?, ?)", (block_id, f"Block {block_id}"))
    executor.execute_write(
        'INSERT INTO locations (id, "blockId", name) VALUES (?, ?, ?)',
        (location_id, block_id, f"Ward {location_id}"),
    )


# --- Table and index existence ---


def test_initialize_creates_all_tables(initialized):
    assert list_tables(initialized) == EXPECTED_TABLES


def test_initialize_creates_indexes(initialized):
    rows = initialized.query_rows("SELECT name FROM sqlite_master WHERE type='index' AND name LIKE 'idx_%'")
    assert {row["name"] for row in rows} == EXPECTED_INDEXES


def test_initialize_is_idempotent(executor):
    initialize_schema(executor)
    tables_before = list_tables(executor)

    assert initialize_schema(executor) == []  # Should not raise
    assert list_tables(executor) == tables_before


def test_fresh_database_records_non_destructive_migrations(initialized):
    versions = {r["version"] for r in initialized.query_rows("SELECT version FROM schema_migrations")}
    expected = {m.version for m in MIGRATIONS if not m.destructive}
    assert versions == expected


def test_fresh_tables_have_current_shape(initialized):
    assert "isActive" in _columns(initialized, "locations")
    assert "locationId" in _columns(initialized, "users")
    assert {"serviceId", "scheduledDate", "scheduledTime", "recurring", "recurringPattern"} <= _columns(
        initialized, "requests"
    )


def test_statements_are_create_if_absent():
    for statement in SCHEMA_STATEMENTS:
        assert "IF NOT EXISTS" in statement


# --- Additive migrations ---


def test_missing_column_added_once(executor):
    # a database created before locations had isActive
    executor.execute_write("CREATE TABLE blocks (id TEXT PRIMARY KEY, name TEXT UNIQUE NOT NULL)")
    executor.execute_write(
        'CREATE TABLE locations (id TEXT PRIMARY KEY, "blockId" TEXT NOT NULL, name TEXT NOT NULL)'
    )
    executor.execute_write("INSERT INTO blocks (id, name) VALUES ('b-1', 'North')")
    executor.execute_write("INSERT INTO locations (id, \"blockId\", name) VALUES ('l-1', 'b-1', 'ICU')")

    ran = initialize_schema(executor)

    assert "add_locations_isActive" in ran
    assert "isActive" in _columns(executor, "locations")
    # existing rows pick up the column default
    assert executor.query_row('SELECT "isActive" FROM locations WHERE id = ?', ("l-1",)) == {"isActive": 1}
    alters = [s for s in executor.statements if s.startswith("ALTER TABLE locations")]
    assert len(alters) == 1

    # second boot: no further DDL for that column
    executor.statements.clear()
    assert initialize_schema(executor) == []
    assert not [s for s in executor.statements if "ALTER TABLE" in s]


def test_present_column_detected_without_marker(executor):
    # columns already present but no migrations recorded yet
    create_tables(executor)
    executor.statements.clear()

    initialize_schema(executor)

    assert not [s for s in executor.statements if "ALTER TABLE" in s]


def test_duplicate_column_race_is_swallowed(executor, monkeypatch):
    create_tables(executor)
    # probe reports the column missing, as if another process added it meanwhile
    monkeypatch.setattr("ticketdesk.storage.schema._column_exists", lambda *a: False)

    initialize_schema(executor)  # Should not raise

    assert "isActive" in _columns(executor, "locations")


def test_unexpected_probe_error_is_fatal():
    executor = MagicMock()
    executor.query_rows.side_effect = [[], sqlite3.DatabaseError("file is not a database")]

    with pytest.raises(sqlite3.DatabaseError, match="file is not a database"):
        initialize_schema(executor)


def test_base_creation_failure_is_fatal(caplog):
    executor = MagicMock()
    executor.execute_write.side_effect = sqlite3.OperationalError("disk I/O error")

    with pytest.raises(sqlite3.OperationalError, match="disk I/O error"):
        create_tables(executor)

    assert executor.execute_write.call_count == 1
    assert "Schema statement failed" in caplog.text


# --- Destructive migration ---


def test_destructive_migration_skipped_by_default(initialized):
    _seed_user(initialized)
    _seed_request(initialized)
    initialized.execute_write(
        'INSERT INTO request_links (id, "requestId", "linkType", token) VALUES (?, ?, ?, ?)',
        ("lnk-1", "r-1", "SMS", "tok-1"),
    )

    initialize_schema(initialized)

    assert initialized.query_row("SELECT COUNT(*) AS n FROM request_links") == {"n": 1}


def test_pending_destructive_migration_is_reported_at_info(initialized, caplog):
    with caplog.at_level(logging.INFO, logger="ticketdesk.storage.schema"):
        initialize_schema(initialized)
        initialize_schema(initialized)

    pending = [r for r in caplog.records if "Destructive migrations pending" in r.getMessage()]
    assert len(pending) == 2
    assert all(r.levelno == logging.INFO for r in pending)
    assert "recreate_request_links" in pending[0].getMessage()
    assert not [r for r in caplog.records if r.levelno >= logging.WARNING]


def test_destructive_migration_runs_once_when_enabled(initialized):
    _seed_user(initialized)
    _seed_request(initialized)
    initialized.execute_write(
        'INSERT INTO request_links (id, "requestId", "linkType", token) VALUES (?, ?, ?, ?)',
        ("lnk-1", "r-1", "SMS", "tok-1"),
    )

    ran = initialize_schema(initialized, allow_destructive=True)

    assert ran == ["recreate_request_links"]
    assert "request_links" in list_tables(initialized)
    assert initialized.query_row("SELECT COUNT(*) AS n FROM request_links") == {"n": 0}

    initialized.execute_write(
        'INSERT INTO request_links (id, "requestId", "linkType", token) VALUES (?, ?, ?, ?)',
        ("lnk-2", "r-1", "SMS", "tok-2"),
    )
    assert initialize_schema(initialized, allow_destructive=True) == []
    assert initialized.query_row("SELECT COUNT(*) AS n FROM request_links") == {"n": 1}


# --- Constraint enforcement ---


def test_foreign_key_enforcement(initialized):
    with pytest.raises(sqlite3.IntegrityError):
        _seed_request(initialized, createdById="nobody")


def test_unique_email(initialized):
    _seed_user(initialized, "u-1", "same@example.org")
    with pytest.raises(sqlite3.IntegrityError):
        _seed_user(initialized, "u-2", "same@example.org")


def test_unique_location_name_per_block(initialized):
    _seed_location(initialized, "l-1", "b-1")
    with pytest.raises(sqlite3.IntegrityError):
        initialized.execute_write(
            'INSERT INTO locations (id, "blockId", name) VALUES (?, ?, ?)',
            ("l-2", "b-1", "Ward l-1"),
        )


def test_deleting_block_cascades_to_locations(initialized):
    _seed_location(initialized, "l-1", "b-1")

    initialized.execute_write("DELETE FROM blocks WHERE id = ?", ("b-1",))

    assert initialized.query_row("SELECT id FROM locations WHERE id = ?", ("l-1",)) is None


def test_deleting_request_cascades_to_activities(initialized):
    _seed_user(initialized)
    _seed_request(initialized)
    initialized.execute_write(
        'INSERT INTO request_activities (id, "requestId", "userId", action) VALUES (?, ?, ?, ?)',
        ("act-1", "r-1", "u-1", "CREATED"),
    )

    assert initialized.execute_write("DELETE FROM requests WHERE id = ?", ("r-1",)) == 1
    assert initialized.query_rows("SELECT id FROM request_activities") == []


def test_deleting_assignee_nulls_reference(initialized):
    _seed_user(initialized, "u-1", "creator@example.org")
    _seed_user(initialized, "u-2", "tech@example.org")
    _seed_location(initialized)
    _seed_request(initialized, assignedToId="u-2", locationId="l-1")

    initialized.execute_write("DELETE FROM users WHERE id = ?", ("u-2",))
    initialized.execute_write("DELETE FROM locations WHERE id = ?", ("l-1",))

    row = initialized.query_row('SELECT "assignedToId", "locationId" FROM requests WHERE id = ?', ("r-1",))
    assert row == {"assignedToId": None, "locationId": None}


def test_creator_cannot_be_deleted_while_referenced(initialized):
    _seed_user(initialized)
    _seed_request(initialized)

    with pytest.raises(sqlite3.IntegrityError):
        initialized.execute_write("DELETE FROM users WHERE id = ?", ("u-1",))


def test_caller_timestamps_are_kept(initialized):
    _seed_user(initialized)
    row = initialized.query_row('SELECT "createdAt" FROM users WHERE id = ?', ("u-1",))
    assert row == {"createdAt": NOW}
