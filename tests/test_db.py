"""Tests for schema, migrations, and the transaction unit of work."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from ava.db import (
    SCHEMA_VERSION,
    _utcnow,
    connect,
    get_connection,
    inspect_sqlite_integrity,
    new_id,
    parse_timestamp,
    transaction,
)
from ava.errors import StorageError
from ava.events import EventLog


def _columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def test_fresh_db_is_at_current_schema_version(db_conn):
    assert db_conn.execute("PRAGMA user_version").fetchone()[0] == SCHEMA_VERSION
    assert {"slack_channel", "slack_thread_ts", "paused_at", "resumed_at"} <= _columns(
        db_conn, "task_sessions"
    )
    assert "related_event_id" in _columns(db_conn, "task_events")


def test_indexes_created(db_conn):
    names = {
        row["name"]
        for row in db_conn.execute("SELECT name FROM sqlite_master WHERE type = 'index'")
    }
    assert "idx_task_sessions_scope" in names
    assert "idx_block_reports_session_resolved" in names


def test_migrates_v1_file_without_thread_columns(tmp_path: Path):
    db_path = tmp_path / "old.db"
    raw = sqlite3.connect(db_path)
    raw.executescript(
        """
        CREATE TABLE task_sessions (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            workspace_id TEXT NOT NULL,
            issue_provider TEXT NOT NULL,
            issue_id TEXT,
            issue_title TEXT NOT NULL,
            initial_summary TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'in_progress',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            paused_at TEXT,
            resumed_at TEXT
        );
        PRAGMA user_version = 1;
        """
    )
    raw.close()

    conn = get_connection(db_path)
    try:
        assert {"slack_channel", "slack_thread_ts"} <= _columns(conn, "task_sessions")
        assert conn.execute("PRAGMA user_version").fetchone()[0] == SCHEMA_VERSION
    finally:
        conn.close()


def test_reopen_is_idempotent(db_conn_path):
    conn, db_path = db_conn_path
    again = get_connection(db_path)
    try:
        assert again.execute("PRAGMA user_version").fetchone()[0] == SCHEMA_VERSION
    finally:
        again.close()


def test_unopenable_path_is_storage_error(tmp_path: Path):
    with pytest.raises(StorageError) as excinfo:
        get_connection(tmp_path)
    assert isinstance(excinfo.value.__cause__, sqlite3.Error)
    assert excinfo.value.code == "storage_failure"


def test_connect_wraps_errors_raised_in_block(db_conn_path):
    _conn, db_path = db_conn_path
    with pytest.raises(StorageError):
        with connect(db_path) as conn:
            conn.execute("SELECT * FROM no_such_table")


def test_event_version_uniqueness_enforced(db_conn, new_session):
    sid = new_session()
    with pytest.raises(sqlite3.IntegrityError):
        db_conn.execute(
            "INSERT INTO task_events (id, task_session_id, event_type, version, created_at) "
            "VALUES (?, ?, 'updated', 0, ?)",
            (new_id(), sid, _utcnow()),
        )
    db_conn.rollback()


def test_transaction_commits_on_success(db_conn, new_session):
    sid = new_session()
    with transaction(db_conn):
        EventLog(db_conn).append(sid, "updated", created_at=_utcnow(), summary="hi")
    assert EventLog(db_conn).versions(sid) == [0, 1]


def test_transaction_rolls_back_on_error(db_conn, new_session):
    sid = new_session()
    with pytest.raises(RuntimeError), transaction(db_conn):
        EventLog(db_conn).append(sid, "updated", created_at=_utcnow(), summary="hi")
        raise RuntimeError("boom")
    assert EventLog(db_conn).versions(sid) == [0]


def test_transaction_wraps_sqlite_errors(db_conn, new_session):
    sid = new_session()
    with pytest.raises(StorageError) as excinfo, transaction(db_conn):
        EventLog(db_conn).append(sid, "updated", created_at=_utcnow(), summary="one")
        db_conn.execute(
            "INSERT INTO task_events (id, task_session_id, event_type, version, created_at) "
            "VALUES (?, ?, 'updated', 1, ?)",
            (new_id(), sid, _utcnow()),
        )
    assert "INSERT" not in excinfo.value.message
    assert EventLog(db_conn).versions(sid) == [0]


def test_timestamps_have_millisecond_precision():
    ts = _utcnow()
    assert ts.endswith("Z")
    assert len(ts.split(".")[1]) == 4  # "123Z"
    assert parse_timestamp(ts).tzinfo is not None


def test_integrity_check(db_conn):
    report = inspect_sqlite_integrity(db_conn)
    assert report["ok"] is True
    assert report["schema_version"] == SCHEMA_VERSION
