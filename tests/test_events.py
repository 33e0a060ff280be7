"""Tests for the append-only event log."""

from __future__ import annotations

import json

import pytest

from ava.db import _utcnow, transaction
from ava.events import EVENT_KINDS, THREAD_LINKED, EventLog, is_technical


def test_append_assigns_next_version(db_conn, new_session):
    sid = new_session()
    log = EventLog(db_conn)
    with transaction(db_conn):
        first = log.append(sid, "updated", created_at=_utcnow(), summary="a")
        second = log.append(sid, "updated", created_at=_utcnow(), summary="b")
    assert (first["version"], second["version"]) == (1, 2)
    assert log.versions(sid) == [0, 1, 2]


def test_versions_are_per_session(db_conn, new_session):
    one = new_session("one")
    two = new_session("two")
    log = EventLog(db_conn)
    assert log.next_version(one) == 1
    assert log.next_version(two) == 1
    assert log.next_version("no-such-session") == 0


def test_raw_context_stored_as_json(db_conn, new_session):
    sid = new_session()
    log = EventLog(db_conn)
    with transaction(db_conn):
        event = log.append(
            sid, "updated", created_at=_utcnow(), summary="x", raw_context={"b": 1, "a": [2]}
        )
    assert json.loads(event["raw_context"]) == {"a": [2], "b": 1}
    stored = db_conn.execute(
        "SELECT raw_context FROM task_events WHERE id = ?", (event["id"],)
    ).fetchone()
    assert stored["raw_context"] == event["raw_context"]


def test_unknown_kind_rejected(db_conn, new_session):
    sid = new_session()
    with pytest.raises(ValueError, match="Unknown event kind"):
        EventLog(db_conn).append(sid, "teleported", created_at=_utcnow())


def test_recent_hides_technical_kinds(db_conn, new_session):
    sid = new_session()
    log = EventLog(db_conn)
    with transaction(db_conn):
        log.append(sid, THREAD_LINKED, created_at=_utcnow())
    assert [e["event_type"] for e in log.recent(sid)] == ["started"]
    assert [e["event_type"] for e in log.recent(sid, include_technical=True)] == [
        "thread_linked",
        "started",
    ]


def test_latest_of_kind(db_conn, new_session):
    sid = new_session()
    log = EventLog(db_conn)
    with transaction(db_conn):
        log.append(sid, "updated", created_at=_utcnow(), summary="old")
        log.append(sid, "updated", created_at=_utcnow(), summary="new")
    assert log.latest_of_kind(sid, "updated")["summary"] == "new"
    assert log.latest_of_kind(sid, "completed") is None


def test_only_thread_linked_is_technical():
    assert [k for k in EVENT_KINDS if is_technical(k)] == [THREAD_LINKED]
