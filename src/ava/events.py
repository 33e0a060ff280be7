"""Event log store: append-only, per-session versioned task events."""

from __future__ import annotations

import json
import sqlite3
from typing import Any, cast

from ava.db import TaskEventRow, new_id

STARTED = "started"
UPDATED = "updated"
BLOCKED = "blocked"
BLOCK_RESOLVED = "block_resolved"
PAUSED = "paused"
RESUMED = "resumed"
COMPLETED = "completed"
CANCELLED = "cancelled"
THREAD_LINKED = "thread_linked"

EVENT_KINDS = (
    STARTED,
    UPDATED,
    BLOCKED,
    BLOCK_RESOLVED,
    PAUSED,
    RESUMED,
    COMPLETED,
    CANCELLED,
    THREAD_LINKED,
)

# Kept for bookkeeping, hidden from default listings.
TECHNICAL_EVENT_KINDS = frozenset({THREAD_LINKED})


def is_technical(kind: str) -> bool:
    return kind in TECHNICAL_EVENT_KINDS


class EventLog:
    """Append-only task event sequence behind one connection.

    ``append`` must run inside :func:`ava.db.transaction`: the next version
    is read and written under the same write lock, and the
    ``UNIQUE(task_session_id, version)`` constraint rejects any duplicate
    that slips past it.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def next_version(self, session_id: str) -> int:
        row = self.conn.execute(
            "SELECT COALESCE(MAX(version), -1) + 1 AS next FROM task_events "
            "WHERE task_session_id = ?",
            (session_id,),
        ).fetchone()
        return row["next"]

    def append(
        self,
        session_id: str,
        kind: str,
        *,
        created_at: str,
        summary: str | None = None,
        reason: str | None = None,
        raw_context: dict[str, Any] | None = None,
        related_event_id: str | None = None,
    ) -> TaskEventRow:
        if kind not in EVENT_KINDS:
            raise ValueError(f"Unknown event kind '{kind}'")
        event_id = new_id()
        version = self.next_version(session_id)
        context = json.dumps(raw_context or {}, sort_keys=True)
        self.conn.execute(
            "INSERT INTO task_events "
            "(id, task_session_id, event_type, version, summary, reason, raw_context, "
            "related_event_id, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                event_id,
                session_id,
                kind,
                version,
                summary,
                reason,
                context,
                related_event_id,
                created_at,
            ),
        )
        return cast(
            TaskEventRow,
            {
                "id": event_id,
                "task_session_id": session_id,
                "event_type": kind,
                "version": version,
                "summary": summary,
                "reason": reason,
                "raw_context": context,
                "related_event_id": related_event_id,
                "created_at": created_at,
            },
        )

    def recent(
        self, session_id: str, *, limit: int = 50, include_technical: bool = False
    ) -> list[TaskEventRow]:
        """Events newest first. Technical kinds are filtered unless requested."""
        query = "SELECT * FROM task_events WHERE task_session_id = ?"
        params: list[object] = [session_id]
        if not include_technical:
            placeholders = ",".join("?" for _ in TECHNICAL_EVENT_KINDS)
            query += f" AND event_type NOT IN ({placeholders})"
            params.extend(sorted(TECHNICAL_EVENT_KINDS))
        query += " ORDER BY created_at DESC, version DESC LIMIT ?"
        params.append(limit)
        rows = self.conn.execute(query, params).fetchall()
        return [cast(TaskEventRow, dict(row)) for row in rows]

    def versions(self, session_id: str) -> list[int]:
        rows = self.conn.execute(
            "SELECT version FROM task_events WHERE task_session_id = ? ORDER BY version",
            (session_id,),
        ).fetchall()
        return [row["version"] for row in rows]

    def latest_of_kind(self, session_id: str, kind: str) -> TaskEventRow | None:
        row = self.conn.execute(
            "SELECT * FROM task_events WHERE task_session_id = ? AND event_type = ? "
            "ORDER BY version DESC LIMIT 1",
            (session_id, kind),
        ).fetchone()
        return cast(TaskEventRow, dict(row)) if row else None
