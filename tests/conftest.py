"""Shared test fixtures: template DB for fast per-test isolation."""

import shutil
import sqlite3
import tempfile
from pathlib import Path

import pytest

from ava.accounts import AccountStore
from ava.db import get_connection
from ava.engine import Issue, LifecycleEngine, Scope

WORKSPACE_ID = "ws1"
USER_ID = "u1"
OTHER_WORKSPACE_ID = "ws2"
OTHER_USER_ID = "u2"
DEFAULT_CHANNEL = "C-DEFAULT"


@pytest.fixture(scope="session")
def _db_template_path() -> Path:
    """Create a single template DB with full schema + default accounts.

    Two workspaces and two users: ``ws1``/``u1`` is the default scope,
    ``ws2``/``u2`` exists for out-of-scope checks.
    """
    fd, path_str = tempfile.mkstemp(suffix=".db")
    path = Path(path_str)
    try:
        conn = get_connection(path)
        accounts = AccountStore(conn)
        accounts.add_workspace(
            "Acme", workspace_id=WORKSPACE_ID, notification_channel=DEFAULT_CHANNEL
        )
        accounts.add_workspace("Other", workspace_id=OTHER_WORKSPACE_ID)
        accounts.add_user(user_id=USER_ID, name="Ada", email="ada@example.com", slack_id="U01")
        accounts.add_user(user_id=OTHER_USER_ID, name="Bob", email="bob@example.com")
        conn.close()
        yield path
    finally:
        path.unlink(missing_ok=True)


@pytest.fixture()
def db_conn(tmp_path: Path, _db_template_path: Path) -> sqlite3.Connection:
    """Per-test DB connection with schema + default accounts pre-loaded."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture()
def db_conn_path(tmp_path: Path, _db_template_path: Path) -> tuple[sqlite3.Connection, Path]:
    """Per-test DB connection + path (for tests that re-open the DB)."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn, db_path
    finally:
        conn.close()


@pytest.fixture()
def scope() -> Scope:
    return Scope(workspace_id=WORKSPACE_ID, user_id=USER_ID)


@pytest.fixture()
def engine(db_conn: sqlite3.Connection) -> LifecycleEngine:
    return LifecycleEngine(db_conn)


@pytest.fixture()
def new_session(engine: LifecycleEngine, scope: Scope):
    """Factory: start a manual-issue session in the default scope, return its id."""

    def _make(title: str = "X") -> str:
        result = engine.start(scope, Issue(provider="manual", title=title), "begin")
        assert result.ok, result
        return result.value.session["id"]

    return _make
