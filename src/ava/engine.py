"""Lifecycle engine: guarded task session transitions.

Every operation reads the session's stored status, writes the new status
and appends exactly one event inside a single :func:`ava.db.transaction`.
Failures come back as :class:`~ava.errors.Err`; nothing is committed on
an error path.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from ava import events, status
from ava.db import (
    VALID_ISSUE_PROVIDERS,
    BlockReportRow,
    CompletionRow,
    PauseReportRow,
    TaskEventRow,
    TaskSessionRow,
    _utcnow,
    transaction,
)
from ava.errors import AvaError, Err, InputError, InvalidStateError, NotFoundError, Ok
from ava.events import EventLog
from ava.sessions import SessionStore

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Scope:
    """Caller scope. ``user_id`` narrows lookups when the caller knows it."""

    workspace_id: str
    user_id: str | None = None


@dataclass(frozen=True)
class Issue:
    provider: str
    title: str
    id: str | None = None


@dataclass
class TransitionOutcome:
    session: TaskSessionRow
    event: TaskEventRow
    previous_status: str | None = None
    block: BlockReportRow | None = None
    pause: PauseReportRow | None = None
    completion: CompletionRow | None = None
    unresolved_blocks: list[BlockReportRow] = field(default_factory=list)

    @property
    def kind(self) -> str:
        return self.event["event_type"]

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "session": summarize_session(self.session),
            "event": {
                "id": self.event["id"],
                "kind": self.event["event_type"],
                "version": self.event["version"],
                "created_at": self.event["created_at"],
            },
        }
        if self.block is not None:
            out["block_id"] = self.block["id"]
        if self.pause is not None:
            out["pause_id"] = self.pause["id"]
        if self.completion is not None:
            out["completion_id"] = self.completion["id"]
        if self.kind == events.COMPLETED:
            out["unresolved_blocks"] = [
                {"id": b["id"], "reason": b["reason"], "created_at": b["created_at"]}
                for b in self.unresolved_blocks
            ]
        return out


def summarize_session(session: TaskSessionRow) -> dict[str, Any]:
    return {
        "id": session["id"],
        "status": session["status"],
        "workspace_id": session["workspace_id"],
        "user_id": session["user_id"],
        "issue": {
            "provider": session["issue_provider"],
            "id": session["issue_id"],
            "title": session["issue_title"],
        },
        "initial_summary": session["initial_summary"],
        "created_at": session["created_at"],
        "updated_at": session["updated_at"],
        "paused_at": session["paused_at"],
        "resumed_at": session["resumed_at"],
    }


def _require(value: str | None, name: str) -> str:
    if value is None or not value.strip():
        raise InputError(f"{name} must not be empty.")
    return value.strip()


class LifecycleEngine:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self.sessions = SessionStore(conn)
        self.events = EventLog(conn)

    # -- plumbing --

    def _run(
        self, operation: str, session_id: str | None, work: Callable[[], TransitionOutcome]
    ) -> Ok[TransitionOutcome] | Err[AvaError]:
        try:
            with transaction(self.conn):
                outcome = work()
        except AvaError as exc:
            log.debug("%s rejected for session %s: %s", operation, session_id, exc.message)
            return Err(exc)
        log.info(
            "session %s: %s -> %s (v%d)",
            outcome.session["id"],
            outcome.previous_status or "-",
            outcome.session["status"],
            outcome.event["version"],
        )
        return Ok(outcome)

    def _load(self, scope: Scope, session_id: str, operation: str) -> TaskSessionRow:
        session = self.sessions.get(session_id, scope.workspace_id, scope.user_id)
        if session is None:
            raise NotFoundError(f"Task session '{session_id}' not found.")
        if not status.can_apply(operation, session["status"]):
            raise InvalidStateError(operation, session["status"])
        return session

    def _move(
        self,
        session: TaskSessionRow,
        operation: str,
        new_status: str,
        now: str,
        **stamps: str,
    ) -> None:
        moved = self.sessions.transition(
            session["id"],
            expected_status=session["status"],
            new_status=new_status,
            now=now,
            **stamps,
        )
        if not moved:
            # Another writer changed the status after our read.
            row = self.conn.execute(
                "SELECT status FROM task_sessions WHERE id = ?", (session["id"],)
            ).fetchone()
            raise InvalidStateError(operation, row["status"] if row else session["status"])

    def _reload(self, scope: Scope, session_id: str) -> TaskSessionRow:
        session = self.sessions.get(session_id, scope.workspace_id, scope.user_id)
        assert session is not None
        return session

    # -- transitions --

    def start(
        self,
        scope: Scope,
        issue: Issue,
        initial_summary: str,
        raw_context: dict[str, Any] | None = None,
    ) -> Ok[TransitionOutcome] | Err[AvaError]:
        try:
            user_id = _require(scope.user_id, "user_id")
            title = _require(issue.title, "issue title")
            summary = _require(initial_summary, "initial_summary")
            if issue.provider not in VALID_ISSUE_PROVIDERS:
                raise InputError(
                    f"Invalid issue provider '{issue.provider}'. "
                    f"Must be one of: {list(VALID_ISSUE_PROVIDERS)}"
                )
        except InputError as exc:
            return Err(exc)

        def work() -> TransitionOutcome:
            if not self.conn.execute(
                "SELECT 1 FROM workspaces WHERE id = ?", (scope.workspace_id,)
            ).fetchone():
                raise NotFoundError(f"Workspace '{scope.workspace_id}' not found.")
            if not self.conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone():
                raise NotFoundError(f"User '{user_id}' not found.")
            now = _utcnow()
            session = self.sessions.create(
                user_id=user_id,
                workspace_id=scope.workspace_id,
                issue_provider=issue.provider,
                issue_id=issue.id,
                issue_title=title,
                initial_summary=summary,
                created_at=now,
            )
            event = self.events.append(
                session["id"],
                events.STARTED,
                created_at=now,
                summary=summary,
                raw_context=raw_context,
            )
            return TransitionOutcome(session=session, event=event)

        return self._run("start", None, work)

    def update(
        self,
        scope: Scope,
        session_id: str,
        summary: str,
        raw_context: dict[str, Any] | None = None,
    ) -> Ok[TransitionOutcome] | Err[AvaError]:
        try:
            summary = _require(summary, "summary")
        except InputError as exc:
            return Err(exc)

        def work() -> TransitionOutcome:
            session = self._load(scope, session_id, "update")
            now = _utcnow()
            self.sessions.touch(session_id, now)
            event = self.events.append(
                session_id, events.UPDATED, created_at=now, summary=summary, raw_context=raw_context
            )
            return TransitionOutcome(
                session=self._reload(scope, session_id),
                event=event,
                previous_status=session["status"],
            )

        return self._run("update", session_id, work)

    def report_block(
        self,
        scope: Scope,
        session_id: str,
        reason: str,
        raw_context: dict[str, Any] | None = None,
    ) -> Ok[TransitionOutcome] | Err[AvaError]:
        """Open a block report. Rejected while another block is still open."""
        try:
            reason = _require(reason, "reason")
        except InputError as exc:
            return Err(exc)

        def work() -> TransitionOutcome:
            session = self._load(scope, session_id, "report_block")
            open_blocks = self.sessions.list_open_blocks(session_id)
            if open_blocks:
                raise InvalidStateError(
                    "report_block",
                    session["status"],
                    f"Session already has an open block report ({open_blocks[0]['id']}); "
                    "resolve it first.",
                )
            now = _utcnow()
            block = self.sessions.add_block_report(
                session_id, reason=reason, created_at=now, raw_context=raw_context
            )
            self._move(session, "report_block", status.BLOCKED, now)
            event = self.events.append(
                session_id, events.BLOCKED, created_at=now, reason=reason, raw_context=raw_context
            )
            return TransitionOutcome(
                session=self._reload(scope, session_id),
                event=event,
                previous_status=session["status"],
                block=block,
            )

        return self._run("report_block", session_id, work)

    def resolve_block(
        self, scope: Scope, session_id: str, block_id: str
    ) -> Ok[TransitionOutcome] | Err[AvaError]:
        """Close an open block report.

        The session returns to ``in_progress`` only when no other block
        report remains open. A paused session stays paused.
        """

        def work() -> TransitionOutcome:
            session = self.sessions.get(session_id, scope.workspace_id, scope.user_id)
            if session is None:
                raise NotFoundError(f"Task session '{session_id}' not found.")
            block = self.sessions.get_open_block(session_id, block_id)
            if block is None:
                raise NotFoundError(f"Open block report '{block_id}' not found.")
            if not status.can_apply("resolve_block", session["status"]):
                raise InvalidStateError("resolve_block", session["status"])
            now = _utcnow()
            self.sessions.resolve_block_report(block_id, now)
            block["resolved_at"] = now
            if session["status"] == status.PAUSED or self.sessions.count_open_blocks(session_id):
                self.sessions.touch(session_id, now)
            else:
                self._move(session, "resolve_block", status.IN_PROGRESS, now)
            event = self.events.append(
                session_id,
                events.BLOCK_RESOLVED,
                created_at=now,
                reason=block["reason"],
                related_event_id=block_id,
            )
            return TransitionOutcome(
                session=self._reload(scope, session_id),
                event=event,
                previous_status=session["status"],
                block=block,
            )

        return self._run("resolve_block", session_id, work)

    def pause(
        self,
        scope: Scope,
        session_id: str,
        reason: str,
        raw_context: dict[str, Any] | None = None,
    ) -> Ok[TransitionOutcome] | Err[AvaError]:
        try:
            reason = _require(reason, "reason")
        except InputError as exc:
            return Err(exc)

        def work() -> TransitionOutcome:
            session = self._load(scope, session_id, "pause")
            now = _utcnow()
            pause = self.sessions.add_pause_report(
                session_id, reason=reason, created_at=now, raw_context=raw_context
            )
            self._move(session, "pause", status.PAUSED, now, paused_at=now)
            event = self.events.append(
                session_id, events.PAUSED, created_at=now, reason=reason, raw_context=raw_context
            )
            return TransitionOutcome(
                session=self._reload(scope, session_id),
                event=event,
                previous_status=session["status"],
                pause=pause,
            )

        return self._run("pause", session_id, work)

    def resume(
        self,
        scope: Scope,
        session_id: str,
        summary: str,
        raw_context: dict[str, Any] | None = None,
    ) -> Ok[TransitionOutcome] | Err[AvaError]:
        """Resume a paused session.

        Closes the open pause report. Rejected while a block report is still
        open; resolve it first.
        """
        try:
            summary = _require(summary, "summary")
        except InputError as exc:
            return Err(exc)

        def work() -> TransitionOutcome:
            session = self._load(scope, session_id, "resume")
            if self.sessions.count_open_blocks(session_id):
                raise InvalidStateError(
                    "resume", session["status"], "Resolve blocking issues before resuming."
                )
            now = _utcnow()
            pause_id = self.sessions.close_open_pause(session_id, now)
            self._move(session, "resume", status.IN_PROGRESS, now, resumed_at=now)
            event = self.events.append(
                session_id,
                events.RESUMED,
                created_at=now,
                summary=summary,
                raw_context=raw_context,
                related_event_id=pause_id,
            )
            return TransitionOutcome(
                session=self._reload(scope, session_id),
                event=event,
                previous_status=session["status"],
            )

        return self._run("resume", session_id, work)

    def complete(
        self, scope: Scope, session_id: str, pr_url: str, summary: str
    ) -> Ok[TransitionOutcome] | Err[AvaError]:
        """Complete a session. Open block reports never prevent completion.

        They stay unresolved and are returned in ``unresolved_blocks``.
        """
        try:
            pr_url = _require(pr_url, "pr_url")
            summary = _require(summary, "summary")
        except InputError as exc:
            return Err(exc)

        def work() -> TransitionOutcome:
            session = self._load(scope, session_id, "complete")
            now = _utcnow()
            unresolved = self.sessions.list_open_blocks(session_id)
            completion = self.sessions.add_completion(
                session_id, pr_url=pr_url, summary=summary, created_at=now
            )
            self._move(session, "complete", status.COMPLETED, now)
            event = self.events.append(
                session_id,
                events.COMPLETED,
                created_at=now,
                summary=summary,
                raw_context={"pr_url": pr_url},
            )
            return TransitionOutcome(
                session=self._reload(scope, session_id),
                event=event,
                previous_status=session["status"],
                completion=completion,
                unresolved_blocks=unresolved,
            )

        return self._run("complete", session_id, work)

    def cancel(
        self, scope: Scope, session_id: str, reason: str | None = None
    ) -> Ok[TransitionOutcome] | Err[AvaError]:
        reason = reason.strip() if reason and reason.strip() else None

        def work() -> TransitionOutcome:
            session = self._load(scope, session_id, "cancel")
            now = _utcnow()
            self._move(session, "cancel", status.CANCELLED, now)
            event = self.events.append(
                session_id, events.CANCELLED, created_at=now, reason=reason
            )
            return TransitionOutcome(
                session=self._reload(scope, session_id),
                event=event,
                previous_status=session["status"],
            )

        return self._run("cancel", session_id, work)

    def link_thread(
        self, scope: Scope, session_id: str, channel: str, thread_ts: str
    ) -> Ok[TransitionOutcome] | Err[AvaError]:
        """Remember where the session's notifications are threaded.

        Allowed in every status; the status itself is left untouched.
        """
        try:
            channel = _require(channel, "channel")
            thread_ts = _require(thread_ts, "thread_ts")
        except InputError as exc:
            return Err(exc)

        def work() -> TransitionOutcome:
            session = self._load(scope, session_id, "link_thread")
            now = _utcnow()
            self.sessions.link_thread(session_id, channel=channel, thread_ts=thread_ts)
            event = self.events.append(
                session_id,
                events.THREAD_LINKED,
                created_at=now,
                raw_context={"channel": channel, "thread_ts": thread_ts},
            )
            return TransitionOutcome(
                session=self._reload(scope, session_id),
                event=event,
                previous_status=session["status"],
            )

        return self._run("link_thread", session_id, work)
