"""Read-side queries shared by the CLI and the MCP tools.

All functions are DB reads plus pure enrichment. Nothing here writes.
No Click imports, no stdout/stderr output.
"""

from __future__ import annotations

import json
import sqlite3
from typing import Any

from ava import events
from ava.db import TaskEventRow, TaskSessionRow, parse_timestamp
from ava.engine import Scope, summarize_session
from ava.errors import NotFoundError
from ava.events import EventLog
from ava.sessions import SessionStore
from ava.status import COMPLETED


def _decode_context(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def event_to_dict(event: TaskEventRow) -> dict[str, Any]:
    return {
        "id": event["id"],
        "kind": event["event_type"],
        "version": event["version"],
        "summary": event["summary"],
        "reason": event["reason"],
        "raw_context": _decode_context(event["raw_context"]),
        "related_event_id": event["related_event_id"],
        "created_at": event["created_at"],
    }


def _require_session(
    conn: sqlite3.Connection, scope: Scope, session_id: str
) -> TaskSessionRow:
    session = SessionStore(conn).get(session_id, scope.workspace_id, scope.user_id)
    if session is None:
        raise NotFoundError(f"Task session '{session_id}' not found.")
    return session


def list_events(
    conn: sqlite3.Connection,
    session_id: str,
    *,
    limit: int = 50,
    include_technical: bool = False,
    scope: Scope | None = None,
) -> list[dict[str, Any]]:
    """Events for a session, most recent first.

    Technical kinds (thread linkage) are stored but left out unless
    *include_technical* is set. With *scope*, a session outside it raises
    :class:`NotFoundError`.
    """
    if scope is not None:
        _require_session(conn, scope, session_id)
    rows = EventLog(conn).recent(session_id, limit=limit, include_technical=include_technical)
    return [event_to_dict(row) for row in rows]


# -- durations --


def duration_seconds(start_ts: str | None, end_ts: str | None) -> int | None:
    if not start_ts or not end_ts:
        return None
    try:
        seconds = (parse_timestamp(end_ts) - parse_timestamp(start_ts)).total_seconds()
    except ValueError:
        return None
    return max(int(seconds), 0)


def format_duration_seconds(seconds: int) -> str:
    if seconds < 60:
        return f"{seconds}s"
    minutes = seconds // 60
    secs = seconds % 60
    if minutes < 60:
        return f"{minutes}m {secs}s" if secs else f"{minutes}m"
    hours = minutes // 60
    rem_mins = minutes % 60
    return f"{hours}h {rem_mins}m" if rem_mins else f"{hours}h"


def format_duration_value(seconds: int | None) -> str:
    if seconds is None:
        return "-"
    return format_duration_seconds(max(int(seconds), 0))


def enrich_session(conn: sqlite3.Connection, session: TaskSessionRow) -> dict[str, Any]:
    """Session summary plus derived fields.

    Completed sessions get ``completed_at`` and ``duration_seconds``, measured
    from session creation to the "completed" event.
    """
    out = summarize_session(session)
    if session["status"] == COMPLETED:
        completed = EventLog(conn).latest_of_kind(session["id"], events.COMPLETED)
        completed_at = completed["created_at"] if completed else None
        seconds = duration_seconds(session["created_at"], completed_at)
        out["completed_at"] = completed_at
        out["duration_seconds"] = seconds
        out["duration"] = format_duration_value(seconds)
    return out


def list_sessions(
    conn: sqlite3.Connection,
    workspace_id: str,
    user_id: str,
    *,
    status: str | None = None,
    limit: int = 50,
) -> list[dict[str, Any]]:
    """Sessions most recently updated first, enriched with derived fields."""
    rows = SessionStore(conn).list_scoped(workspace_id, user_id, status=status, limit=limit)
    return [enrich_session(conn, row) for row in rows]


def get_session_detail(
    conn: sqlite3.Connection, scope: Scope, session_id: str, *, event_limit: int = 20
) -> dict[str, Any]:
    """Session with open blocks, completion, thread link and recent visible events."""
    session = _require_session(conn, scope, session_id)
    store = SessionStore(conn)
    detail = enrich_session(conn, session)
    detail["open_blocks"] = [
        {"id": b["id"], "reason": b["reason"], "created_at": b["created_at"]}
        for b in store.list_open_blocks(session_id)
    ]
    completion = store.get_completion(session_id)
    detail["completion"] = (
        {
            "id": completion["id"],
            "pr_url": completion["pr_url"],
            "summary": completion["summary"],
            "created_at": completion["created_at"],
        }
        if completion
        else None
    )
    detail["thread"] = (
        {"channel": session["slack_channel"], "thread_ts": session["slack_thread_ts"]}
        if session["slack_thread_ts"]
        else None
    )
    detail["events"] = list_events(conn, session_id, limit=event_limit)
    return detail
