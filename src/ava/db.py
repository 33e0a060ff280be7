"""SQLite database for ava state."""

from __future__ import annotations

import contextlib
import logging
import sqlite3
import uuid
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import TypedDict

from ava.errors import StorageError
from ava.paths import DEFAULT_DB_PATH

log = logging.getLogger(__name__)

VALID_ISSUE_PROVIDERS = ("github", "manual")
ACTIVE_SUBSCRIPTION_STATUSES = ("active", "trialing")
VALID_SUBSCRIPTION_STATUSES = {"active", "trialing", "past_due", "canceled", "incomplete"}


def _utcnow() -> str:
    """ISO 8601 UTC timestamp with millisecond precision."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def parse_timestamp(value: str) -> datetime:
    """Parse a stored timestamp (with or without fractional seconds)."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


# Bump when adding migrations. 0 = fresh file.
SCHEMA_VERSION = 2

SCHEMA = """\
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    name TEXT,
    email TEXT,
    slack_id TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

CREATE TABLE IF NOT EXISTS workspaces (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    notification_channel TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

CREATE TABLE IF NOT EXISTS subscriptions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL UNIQUE REFERENCES users(id),
    status TEXT NOT NULL,
    current_period_end TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

CREATE TABLE IF NOT EXISTS task_sessions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id),
    workspace_id TEXT NOT NULL REFERENCES workspaces(id),
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

CREATE TABLE IF NOT EXISTS task_events (
    id TEXT PRIMARY KEY,
    task_session_id TEXT NOT NULL REFERENCES task_sessions(id),
    event_type TEXT NOT NULL,
    version INTEGER NOT NULL,
    summary TEXT,
    reason TEXT,
    raw_context TEXT NOT NULL DEFAULT '{}',
    related_event_id TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (task_session_id, version)
);

CREATE TABLE IF NOT EXISTS block_reports (
    id TEXT PRIMARY KEY,
    task_session_id TEXT NOT NULL REFERENCES task_sessions(id),
    reason TEXT NOT NULL,
    raw_context TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    resolved_at TEXT
);

CREATE TABLE IF NOT EXISTS pause_reports (
    id TEXT PRIMARY KEY,
    task_session_id TEXT NOT NULL REFERENCES task_sessions(id),
    reason TEXT NOT NULL,
    raw_context TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    resumed_at TEXT
);

CREATE TABLE IF NOT EXISTS completions (
    id TEXT PRIMARY KEY,
    task_session_id TEXT NOT NULL UNIQUE REFERENCES task_sessions(id),
    pr_url TEXT NOT NULL,
    summary TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""


# -- Row TypedDicts matching table schemas --


class UserRow(TypedDict):
    id: str
    name: str | None
    email: str | None
    slack_id: str | None
    created_at: str


class WorkspaceRow(TypedDict):
    id: str
    name: str
    notification_channel: str | None
    created_at: str


class SubscriptionRow(TypedDict):
    id: str
    user_id: str
    status: str
    current_period_end: str | None
    created_at: str
    updated_at: str


class TaskSessionRow(TypedDict):
    id: str
    user_id: str
    workspace_id: str
    issue_provider: str
    issue_id: str | None
    issue_title: str
    initial_summary: str
    status: str
    created_at: str
    updated_at: str
    paused_at: str | None
    resumed_at: str | None
    slack_channel: str | None
    slack_thread_ts: str | None


class TaskEventRow(TypedDict):
    id: str
    task_session_id: str
    event_type: str
    version: int
    summary: str | None
    reason: str | None
    raw_context: str
    related_event_id: str | None
    created_at: str


class BlockReportRow(TypedDict):
    id: str
    task_session_id: str
    reason: str
    raw_context: str
    created_at: str
    resolved_at: str | None


class PauseReportRow(TypedDict):
    id: str
    task_session_id: str
    reason: str
    raw_context: str
    created_at: str
    resumed_at: str | None


class CompletionRow(TypedDict):
    id: str
    task_session_id: str
    pr_url: str
    summary: str
    created_at: str


def get_connection(
    db_path: Path = DEFAULT_DB_PATH, *, timeout: float = 10.0
) -> sqlite3.Connection:
    """Open a connection with schema applied.

    *timeout* bounds how long a writer waits for the database lock, so no
    store call blocks indefinitely. A file that cannot be opened or migrated
    raises :class:`StorageError`.
    """
    conn = None
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        conn = sqlite3.connect(str(db_path), timeout=timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={int(timeout * 1000)}")
        conn.executescript(SCHEMA)

        current_version = conn.execute("PRAGMA user_version").fetchone()[0]
        if current_version < SCHEMA_VERSION:
            _migrate(conn, current_version)
            _create_indexes(conn)
            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            conn.commit()
    except (sqlite3.Error, OSError) as exc:
        if conn is not None:
            conn.close()
        log.error("Cannot open database %s: %s", db_path, exc)
        raise StorageError() from exc
    return conn


@contextlib.contextmanager
def connect(db_path: Path = DEFAULT_DB_PATH, *, timeout: float = 10.0):
    """Context manager wrapper for get_connection().

    Usage:
        with connect() as conn:
            do_stuff(conn)
    # conn.close() is guaranteed even on exceptions.

    A ``sqlite3.Error`` escaping the block, such as a failed read, is
    re-raised as :class:`StorageError`.
    """
    conn = get_connection(db_path, timeout=timeout)
    try:
        yield conn
    except sqlite3.Error as exc:
        log.error("Database error: %s", exc)
        raise StorageError() from exc
    finally:
        conn.close()


@contextlib.contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a unit of work under a write lock.

    ``BEGIN IMMEDIATE`` takes the database write lock up front, so the
    status read, the conditional status write, and the event version
    assignment inside the block see no interleaved writer. Commits on
    success, rolls back on any exception. ``sqlite3.Error`` surfaces as
    :class:`StorageError`.
    """
    try:
        if conn.in_transaction:
            conn.commit()
        conn.execute("BEGIN IMMEDIATE")
    except sqlite3.Error as exc:
        log.error("Failed to open transaction: %s", exc)
        raise StorageError() from exc
    try:
        yield conn
    except sqlite3.Error as exc:
        conn.rollback()
        log.error("Transaction rolled back: %s", exc)
        raise StorageError() from exc
    except BaseException:
        conn.rollback()
        raise
    try:
        conn.commit()
    except sqlite3.Error as exc:
        conn.rollback()
        log.error("Commit failed: %s", exc)
        raise StorageError() from exc


def _table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def _add_column_if_missing(
    conn: sqlite3.Connection, table: str, column: str, col_def: str, cols: set[str]
) -> None:
    if column not in cols:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_def}")


def _migrate_to_v1(conn: sqlite3.Connection) -> None:
    """Initial schema; every table comes from SCHEMA."""


def _migrate_to_v2(conn: sqlite3.Connection) -> None:
    """Thread linkage columns on task_sessions."""
    cols = _table_columns(conn, "task_sessions")
    _add_column_if_missing(conn, "task_sessions", "slack_channel", "TEXT", cols)
    _add_column_if_missing(conn, "task_sessions", "slack_thread_ts", "TEXT", cols)


_MIGRATIONS = [
    (1, _migrate_to_v1),
    (2, _migrate_to_v2),
]


def _migrate(conn: sqlite3.Connection, from_version: int) -> None:
    """Run schema migrations from from_version to SCHEMA_VERSION.

    Each migration is idempotent so it is safe for both upgraded files and
    fresh ones. Commit is handled by the caller.
    """
    for version, migration_fn in _MIGRATIONS:
        if from_version < version:
            migration_fn(conn)


def _create_indexes(conn: sqlite3.Connection) -> None:
    """Create non-PK indexes for common query patterns. Idempotent."""
    conn.executescript("""
        CREATE INDEX IF NOT EXISTS idx_task_sessions_scope
            ON task_sessions(workspace_id, user_id, updated_at);
        CREATE INDEX IF NOT EXISTS idx_task_sessions_user_id ON task_sessions(user_id);
        CREATE INDEX IF NOT EXISTS idx_task_sessions_status ON task_sessions(status);
        CREATE INDEX IF NOT EXISTS idx_task_events_session_type
            ON task_events(task_session_id, event_type);
        CREATE INDEX IF NOT EXISTS idx_block_reports_session_resolved
            ON block_reports(task_session_id, resolved_at);
        CREATE INDEX IF NOT EXISTS idx_pause_reports_session_id
            ON pause_reports(task_session_id);
    """)


def inspect_sqlite_integrity(conn: sqlite3.Connection) -> dict:
    """Run ``PRAGMA quick_check`` and report the schema version."""
    rows = conn.execute("PRAGMA quick_check").fetchall()
    messages = [str(row[0]) for row in rows]
    return {
        "ok": messages == ["ok"],
        "messages": messages,
        "schema_version": conn.execute("PRAGMA user_version").fetchone()[0],
    }
