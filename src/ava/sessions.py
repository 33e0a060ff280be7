"""Session store: the current-state row per task session and its child records.

Methods here never commit. The lifecycle engine composes them inside one
:func:`ava.db.transaction` together with the event log append.
"""

from __future__ import annotations

import json
import sqlite3
from typing import Any, cast

from ava.db import (
    BlockReportRow,
    CompletionRow,
    PauseReportRow,
    TaskSessionRow,
    new_id,
)

# Columns a status transition may stamp alongside the status itself.
_TRANSITION_COLUMNS = {"paused_at", "resumed_at"}


def _dump_context(raw_context: dict[str, Any] | None) -> str:
    return json.dumps(raw_context or {}, sort_keys=True)


class SessionStore:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    # -- task sessions --

    def create(
        self,
        *,
        user_id: str,
        workspace_id: str,
        issue_provider: str,
        issue_id: str | None,
        issue_title: str,
        initial_summary: str,
        created_at: str,
        session_id: str | None = None,
    ) -> TaskSessionRow:
        sid = session_id or new_id()
        self.conn.execute(
            "INSERT INTO task_sessions "
            "(id, user_id, workspace_id, issue_provider, issue_id, issue_title, "
            "initial_summary, status, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, 'in_progress', ?, ?)",
            (
                sid,
                user_id,
                workspace_id,
                issue_provider,
                issue_id,
                issue_title,
                initial_summary,
                created_at,
                created_at,
            ),
        )
        row = self.get(sid, workspace_id)
        assert row is not None
        return row

    def get(
        self, session_id: str, workspace_id: str, user_id: str | None = None
    ) -> TaskSessionRow | None:
        """Lookup a session inside a workspace (and user, when given) scope."""
        query = "SELECT * FROM task_sessions WHERE id = ? AND workspace_id = ?"
        params: list[str] = [session_id, workspace_id]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        row = self.conn.execute(query, params).fetchone()
        return cast(TaskSessionRow, dict(row)) if row else None

    def transition(
        self,
        session_id: str,
        *,
        expected_status: str,
        new_status: str,
        now: str,
        **stamps: str,
    ) -> bool:
        """Conditionally move a session from *expected_status* to *new_status*.

        Returns False when the stored status no longer matches, so a writer
        acting on a stale read cannot overwrite a newer status.
        """
        unknown = set(stamps) - _TRANSITION_COLUMNS
        if unknown:
            raise ValueError(f"Unknown transition columns: {sorted(unknown)}")
        extra_clauses = "".join(f", {column} = ?" for column in stamps)
        cursor = self.conn.execute(
            f"UPDATE task_sessions SET status = ?, updated_at = ?{extra_clauses} "
            "WHERE id = ? AND status = ?",
            (new_status, now, *stamps.values(), session_id, expected_status),
        )
        return cursor.rowcount > 0

    def touch(self, session_id: str, now: str) -> None:
        self.conn.execute(
            "UPDATE task_sessions SET updated_at = ? WHERE id = ?", (now, session_id)
        )

    def link_thread(self, session_id: str, *, channel: str, thread_ts: str) -> None:
        self.conn.execute(
            "UPDATE task_sessions SET slack_channel = ?, slack_thread_ts = ? WHERE id = ?",
            (channel, thread_ts, session_id),
        )

    def list_scoped(
        self,
        workspace_id: str,
        user_id: str,
        *,
        status: str | None = None,
        limit: int = 50,
    ) -> list[TaskSessionRow]:
        """List sessions most recently updated first."""
        query = "SELECT * FROM task_sessions WHERE workspace_id = ? AND user_id = ?"
        params: list[object] = [workspace_id, user_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY updated_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        rows = self.conn.execute(query, params).fetchall()
        return [cast(TaskSessionRow, dict(row)) for row in rows]

    # -- block reports --

    def add_block_report(
        self,
        session_id: str,
        *,
        reason: str,
        created_at: str,
        raw_context: dict[str, Any] | None = None,
    ) -> BlockReportRow:
        block_id = new_id()
        context = _dump_context(raw_context)
        self.conn.execute(
            "INSERT INTO block_reports (id, task_session_id, reason, raw_context, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (block_id, session_id, reason, context, created_at),
        )
        return cast(
            BlockReportRow,
            {
                "id": block_id,
                "task_session_id": session_id,
                "reason": reason,
                "raw_context": context,
                "created_at": created_at,
                "resolved_at": None,
            },
        )

    def get_open_block(self, session_id: str, block_id: str) -> BlockReportRow | None:
        row = self.conn.execute(
            "SELECT * FROM block_reports "
            "WHERE id = ? AND task_session_id = ? AND resolved_at IS NULL",
            (block_id, session_id),
        ).fetchone()
        return cast(BlockReportRow, dict(row)) if row else None

    def resolve_block_report(self, block_id: str, resolved_at: str) -> bool:
        cursor = self.conn.execute(
            "UPDATE block_reports SET resolved_at = ? WHERE id = ? AND resolved_at IS NULL",
            (resolved_at, block_id),
        )
        return cursor.rowcount > 0

    def list_open_blocks(self, session_id: str) -> list[BlockReportRow]:
        rows = self.conn.execute(
            "SELECT * FROM block_reports WHERE task_session_id = ? AND resolved_at IS NULL "
            "ORDER BY created_at DESC, rowid DESC",
            (session_id,),
        ).fetchall()
        return [cast(BlockReportRow, dict(row)) for row in rows]

    def count_open_blocks(self, session_id: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) AS cnt FROM block_reports "
            "WHERE task_session_id = ? AND resolved_at IS NULL",
            (session_id,),
        ).fetchone()
        return row["cnt"]

    def list_block_reports(self, session_id: str, *, limit: int = 50) -> list[BlockReportRow]:
        rows = self.conn.execute(
            "SELECT * FROM block_reports WHERE task_session_id = ? "
            "ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (session_id, limit),
        ).fetchall()
        return [cast(BlockReportRow, dict(row)) for row in rows]

    # -- pause reports --

    def add_pause_report(
        self,
        session_id: str,
        *,
        reason: str,
        created_at: str,
        raw_context: dict[str, Any] | None = None,
    ) -> PauseReportRow:
        pause_id = new_id()
        context = _dump_context(raw_context)
        self.conn.execute(
            "INSERT INTO pause_reports (id, task_session_id, reason, raw_context, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (pause_id, session_id, reason, context, created_at),
        )
        return cast(
            PauseReportRow,
            {
                "id": pause_id,
                "task_session_id": session_id,
                "reason": reason,
                "raw_context": context,
                "created_at": created_at,
                "resumed_at": None,
            },
        )

    def close_open_pause(self, session_id: str, resumed_at: str) -> str | None:
        """Mark the latest open pause report resumed. Returns its id, if any."""
        row = self.conn.execute(
            "SELECT id FROM pause_reports WHERE task_session_id = ? AND resumed_at IS NULL "
            "ORDER BY created_at DESC, rowid DESC LIMIT 1",
            (session_id,),
        ).fetchone()
        if not row:
            return None
        self.conn.execute(
            "UPDATE pause_reports SET resumed_at = ? WHERE id = ?", (resumed_at, row["id"])
        )
        return row["id"]

    # -- completions --

    def add_completion(
        self, session_id: str, *, pr_url: str, summary: str, created_at: str
    ) -> CompletionRow:
        completion_id = new_id()
        self.conn.execute(
            "INSERT INTO completions (id, task_session_id, pr_url, summary, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (completion_id, session_id, pr_url, summary, created_at),
        )
        return cast(
            CompletionRow,
            {
                "id": completion_id,
                "task_session_id": session_id,
                "pr_url": pr_url,
                "summary": summary,
                "created_at": created_at,
            },
        )

    def get_completion(self, session_id: str) -> CompletionRow | None:
        row = self.conn.execute(
            "SELECT * FROM completions WHERE task_session_id = ?", (session_id,)
        ).fetchone()
        return cast(CompletionRow, dict(row)) if row else None
