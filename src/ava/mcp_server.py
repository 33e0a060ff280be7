"""MCP tool surface for agents. Run with: ava-mcp (stdio transport).

Every tool returns a JSON string: the success envelope with ``"ok": true``,
or ``{"ok": false, "error": {...}}`` for a typed error.
"""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any

from mcp.server.fastmcp import FastMCP

from ava.config import Settings, configure_logging, load_settings
from ava.db import connect
from ava.engine import Issue, Scope
from ava.errors import AvaError, Err, InputError
from ava.queries import list_events, list_sessions
from ava.service import TaskSessionService
from ava.status import normalize_status_filter

log = logging.getLogger(__name__)

server = FastMCP("ava")


@lru_cache(maxsize=1)
def _settings() -> Settings:
    return load_settings()


def _scope(workspace_id: str | None, user_id: str | None) -> Scope:
    settings = _settings()
    workspace = workspace_id or settings.workspace
    if not workspace:
        raise InputError("workspace_id is required (or set AVA_WORKSPACE).")
    return Scope(workspace_id=workspace, user_id=user_id or settings.user)


def _error(error: AvaError) -> str:
    return json.dumps({"ok": False, "error": error.to_dict()})


def _check_limit(limit: int) -> None:
    if limit < 1:
        raise InputError("limit must be at least 1.")


def _run(operation: str, call) -> str:
    """Open a connection, run one service call and render its result."""
    settings = _settings()
    try:
        with connect(settings.db_path, timeout=settings.db_timeout) as conn:
            result = call(TaskSessionService.from_settings(conn, settings))
    except AvaError as e:
        return _error(e)
    if isinstance(result, Err):
        return _error(result.error)
    log.debug("%s ok", operation)
    return json.dumps({"ok": True, **result.value}, default=str)


@server.tool()
def start_task(
    issue_title: str,
    initial_summary: str,
    issue_provider: str = "manual",
    issue_id: str | None = None,
    workspace_id: str | None = None,
    user_id: str | None = None,
    raw_context: dict[str, Any] | None = None,
) -> str:
    """Start a task session. Returns the session id used by every other tool."""
    issue = Issue(provider=issue_provider, title=issue_title, id=issue_id)
    return _run(
        "start_task",
        lambda svc: svc.start(_scope(workspace_id, user_id), issue, initial_summary, raw_context),
    )


@server.tool()
def update_task(
    session_id: str,
    summary: str,
    workspace_id: str | None = None,
    user_id: str | None = None,
    raw_context: dict[str, Any] | None = None,
) -> str:
    """Post a progress update for a task session."""
    return _run(
        "update_task",
        lambda svc: svc.update(_scope(workspace_id, user_id), session_id, summary, raw_context),
    )


@server.tool()
def report_blocked(
    session_id: str,
    reason: str,
    workspace_id: str | None = None,
    user_id: str | None = None,
    raw_context: dict[str, Any] | None = None,
) -> str:
    """Report that work is blocked. Returns the block id needed to resolve it."""
    return _run(
        "report_blocked",
        lambda svc: svc.report_block(
            _scope(workspace_id, user_id), session_id, reason, raw_context
        ),
    )


@server.tool()
def resolve_blocked(
    session_id: str,
    block_id: str,
    workspace_id: str | None = None,
    user_id: str | None = None,
) -> str:
    """Resolve an open block report."""
    return _run(
        "resolve_blocked",
        lambda svc: svc.resolve_block(_scope(workspace_id, user_id), session_id, block_id),
    )


@server.tool()
def pause_task(
    session_id: str,
    reason: str,
    workspace_id: str | None = None,
    user_id: str | None = None,
    raw_context: dict[str, Any] | None = None,
) -> str:
    """Pause a task session."""
    return _run(
        "pause_task",
        lambda svc: svc.pause(_scope(workspace_id, user_id), session_id, reason, raw_context),
    )


@server.tool()
def resume_task(
    session_id: str,
    summary: str,
    workspace_id: str | None = None,
    user_id: str | None = None,
    raw_context: dict[str, Any] | None = None,
) -> str:
    """Resume a paused task session."""
    return _run(
        "resume_task",
        lambda svc: svc.resume(_scope(workspace_id, user_id), session_id, summary, raw_context),
    )


@server.tool()
def complete_task(
    session_id: str,
    pr_url: str,
    summary: str,
    workspace_id: str | None = None,
    user_id: str | None = None,
) -> str:
    """Complete a task session. Lists any block reports still open."""
    return _run(
        "complete_task",
        lambda svc: svc.complete(_scope(workspace_id, user_id), session_id, pr_url, summary),
    )


@server.tool()
def cancel_task(
    session_id: str,
    reason: str | None = None,
    workspace_id: str | None = None,
    user_id: str | None = None,
) -> str:
    """Cancel a task session."""
    return _run(
        "cancel_task",
        lambda svc: svc.cancel(_scope(workspace_id, user_id), session_id, reason),
    )


@server.tool()
def list_tasks(
    status: str | None = None,
    limit: int = 20,
    workspace_id: str | None = None,
    user_id: str | None = None,
) -> str:
    """List your task sessions, most recently updated first."""
    settings = _settings()
    try:
        scope = _scope(workspace_id, user_id)
        if not scope.user_id:
            raise InputError("user_id is required (or set AVA_USER).")
        _check_limit(limit)
        try:
            status_filter = normalize_status_filter(status)
        except ValueError as e:
            raise InputError(str(e)) from None
        with connect(settings.db_path, timeout=settings.db_timeout) as conn:
            rows = list_sessions(
                conn, scope.workspace_id, scope.user_id, status=status_filter, limit=limit
            )
    except AvaError as e:
        return _error(e)
    return json.dumps({"ok": True, "sessions": rows}, default=str)


@server.tool()
def list_task_events(
    session_id: str,
    limit: int = 50,
    include_technical_events: bool = False,
    workspace_id: str | None = None,
    user_id: str | None = None,
) -> str:
    """List a session's events, most recent first."""
    settings = _settings()
    try:
        scope = _scope(workspace_id, user_id)
        _check_limit(limit)
        with connect(settings.db_path, timeout=settings.db_timeout) as conn:
            rows = list_events(
                conn,
                session_id,
                limit=limit,
                include_technical=include_technical_events,
                scope=scope,
            )
    except AvaError as e:
        return _error(e)
    return json.dumps({"ok": True, "events": rows}, default=str)


def main() -> None:
    configure_logging(_settings().log_level)
    server.run(transport="stdio")


if __name__ == "__main__":
    main()
