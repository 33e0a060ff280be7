"""Tests for the CLI commands."""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from ava.cli import main
from ava.status import STATUS_REFERENCE_SCHEMA

BASE_ENV = {
    "AVA_NOTIFY_MODE": "off",
    "AVA_WORKSPACE": None,
    "AVA_USER": None,
    "AVA_DB_PATH": None,
    "AVA_LOG_LEVEL": None,
}


@pytest.fixture()
def ava(tmp_path: Path):
    """Invoke the CLI against a per-test DB; returns (result, parsed JSON or None)."""
    runner = CliRunner()
    base_args = ["--db", str(tmp_path / "cli.db"), "--config", str(tmp_path / "none.toml")]

    def _invoke(*args: str, env: dict | None = None):
        result = runner.invoke(main, [*base_args, *args], env={**BASE_ENV, **(env or {})})
        try:
            payload = json.loads(result.output)
        except json.JSONDecodeError:
            payload = None
        return result, payload

    return _invoke


@pytest.fixture()
def seeded(ava):
    ava("workspace", "add", "Acme", "--id", "acme", "--channel", "C0123")
    ava("user", "add", "--id", "u1", "--name", "Ada", "--slack-id", "U01")
    return ava


def _start(ava, title: str = "Fix login") -> str:
    result, payload = ava(
        "session", "start", "-w", "acme", "-u", "u1", "--title", title, "--summary", "Starting"
    )
    assert result.exit_code == 0, result.output
    return payload["session"]["id"]


def test_help_status(ava):
    result, payload = ava("help-status")
    assert result.exit_code == 0
    assert payload["schema"] == STATUS_REFERENCE_SCHEMA
    statuses = [s["status"] for s in payload["session_statuses"]]
    assert statuses == ["in_progress", "blocked", "paused", "completed", "cancelled"]
    assert "completed" not in payload["operations"]["update"]


def test_db_check(ava):
    result, payload = ava("db", "check")
    assert result.exit_code == 0
    assert payload["ok"] is True


def test_unknown_command_suggests(ava):
    result, payload = ava("sesion")
    assert result.exit_code != 0
    assert payload["ok"] is False
    assert payload["error"]["code"] == "usage"
    assert "Did you mean: session" in payload["error"]["message"]


def test_missing_workspace_is_usage_error(seeded):
    result, payload = seeded("session", "update", "s1", "--summary", "x")
    assert result.exit_code == 2
    assert payload["error"]["code"] == "usage"
    assert "AVA_WORKSPACE" in payload["error"]["message"]


def test_workspace_and_user_from_env(seeded):
    env = {"AVA_WORKSPACE": "acme", "AVA_USER": "u1"}
    result, payload = seeded("session", "start", "--title", "T", "--summary", "S", env=env)
    assert result.exit_code == 0, result.output
    assert payload["session"]["workspace_id"] == "acme"
    assert payload["session"]["user_id"] == "u1"


def test_session_lifecycle(seeded):
    sid = _start(seeded)

    result, payload = seeded("session", "block", sid, "-w", "acme", "--reason", "Need creds")
    assert result.exit_code == 0
    assert payload["ok"] is True
    assert payload["session"]["status"] == "blocked"
    block_id = payload["block_id"]

    _, payload = seeded("session", "unblock", sid, block_id, "-w", "acme")
    assert payload["session"]["status"] == "in_progress"

    _, payload = seeded("session", "pause", sid, "-w", "acme", "--reason", "Lunch")
    assert payload["session"]["status"] == "paused"
    assert payload["pause_id"]

    _, payload = seeded("session", "resume", sid, "-w", "acme", "--summary", "Back")
    assert payload["session"]["status"] == "in_progress"

    _, payload = seeded(
        "session", "update", sid, "-w", "acme", "--summary", "Tests pass",
        "--context", '{"files": 3}',
    )
    assert payload["event"]["kind"] == "updated"
    assert payload["notification"] == {"delivered": False, "reason": "disabled"}

    _, payload = seeded(
        "session", "complete", sid, "-w", "acme", "--pr-url", "https://x/pr/1", "--summary", "Done"
    )
    assert payload["session"]["status"] == "completed"
    assert payload["event"]["version"] == 6
    assert payload["unresolved_blocks"] == []

    _, events = seeded("session", "events", sid, "-w", "acme")
    assert [e["kind"] for e in events] == [
        "completed",
        "updated",
        "resumed",
        "paused",
        "block_resolved",
        "blocked",
        "started",
    ]
    assert events[1]["raw_context"] == {"files": 3}


def test_invalid_transition_is_json_error(seeded):
    sid = _start(seeded)
    seeded("session", "cancel", sid, "-w", "acme", "--reason", "dup")

    result, payload = seeded("session", "pause", sid, "-w", "acme", "--reason", "x")
    assert result.exit_code == 1
    assert payload["ok"] is False
    assert payload["error"]["code"] == "invalid_state"
    assert payload["error"]["status"] == "cancelled"
    assert payload["error"]["operation"] == "pause"


def test_unknown_session_not_found(seeded):
    result, payload = seeded("session", "update", "nope", "-w", "acme", "--summary", "x")
    assert result.exit_code == 1
    assert payload["error"]["code"] == "not_found"


def test_other_workspace_cannot_see_session(seeded):
    sid = _start(seeded)
    seeded("workspace", "add", "Other", "--id", "other")
    _, payload = seeded("session", "show", sid, "-w", "other")
    assert payload["error"]["code"] == "not_found"


def test_bad_context_json(seeded):
    sid = _start(seeded)
    result, payload = seeded(
        "session", "update", sid, "-w", "acme", "--summary", "x", "--context", "[1, 2]"
    )
    assert result.exit_code == 2
    assert payload["error"]["code"] == "usage"
    assert "JSON object" in payload["error"]["message"]


def test_plan_limit_error(seeded):
    for n in range(5):
        _start(seeded, f"task {n}")
    result, payload = seeded(
        "session", "start", "-w", "acme", "-u", "u1", "--title", "sixth", "--summary", "S"
    )
    assert result.exit_code == 1
    assert payload["error"]["code"] == "plan_limit_exceeded"
    assert payload["error"]["limit"] == 5
    assert payload["error"]["upgrade_url"].endswith("/docs/pricing")

    seeded("user", "subscription", "u1", "--status", "active")
    result, payload = seeded(
        "session", "start", "-w", "acme", "-u", "u1", "--title", "sixth", "--summary", "S"
    )
    assert result.exit_code == 0, result.output


def test_user_subscription_show(seeded):
    _start(seeded)
    result, payload = seeded("user", "subscription", "u1")
    assert result.exit_code == 0
    assert payload == {"subscription": None, "active": False, "session_count": 1}


def test_user_subscription_unknown_user(seeded):
    _, payload = seeded("user", "subscription", "ghost")
    assert payload["error"]["code"] == "error"
    assert "ava user list" in payload["error"]["message"]


def test_session_list_and_show(seeded):
    first = _start(seeded, "first")
    second = _start(seeded, "second")
    seeded("session", "cancel", second, "-w", "acme")
    seeded("session", "link-thread", first, "-w", "acme", "--channel", "C9", "--thread-ts", "17.1")

    _, rows = seeded("session", "list", "-w", "acme", "-u", "u1", "--status", "inProgress")
    assert [r["id"] for r in rows] == [first]

    _, detail = seeded("session", "show", first, "-w", "acme")
    assert detail["thread"] == {"channel": "C9", "thread_ts": "17.1"}
    assert [e["kind"] for e in detail["events"]] == ["started"]

    _, events = seeded("session", "events", first, "-w", "acme", "--all")
    assert [e["kind"] for e in events] == ["thread_linked", "started"]


def test_workspace_set_channel(seeded):
    result, payload = seeded("workspace", "set-channel", "acme", "C777")
    assert result.exit_code == 0
    assert payload == {"workspace_id": "acme", "notification_channel": "C777"}

    _, payload = seeded("workspace", "set-channel", "ghost", "C1")
    assert payload["ok"] is False
    assert "ava workspace add" in payload["error"]["message"]


def test_invalid_notify_mode_env(ava):
    result, payload = ava("help-status", env={"AVA_NOTIFY_MODE": "carrier-pigeon"})
    assert result.exit_code == 2
    assert payload["error"]["code"] == "usage"
    assert "notify_mode" in payload["error"]["message"]


def test_notify_watch_prints_messages(ava):
    message = {"template": "task_updated", "session_id": "s1", "workspace_id": "acme"}
    with (
        patch("ava.queue.get_redis", return_value=MagicMock()),
        patch("ava.queue.NotificationSubscriber") as MockSubscriber,
    ):
        MockSubscriber.return_value = iter([None, message, message])
        result, _ = ava("notify", "watch", "--session", "s1", "--count", "1", "--timeout", "1")

    assert result.exit_code == 0
    lines = [json.loads(line) for line in result.output.splitlines()]
    assert lines == [message]
    assert MockSubscriber.call_args.kwargs["session_id"] == "s1"
    assert MockSubscriber.call_args.kwargs["cursor"] == "$"


@pytest.mark.parametrize(
    "args",
    [
        ("session", "list", "-w", "ws1", "-u", "u1"),
        ("session", "start", "-w", "ws1", "-u", "u1", "--title", "T", "--summary", "S"),
        ("db", "check"),
    ],
)
def test_unopenable_db_is_storage_failure(tmp_path, args):
    result = CliRunner().invoke(
        main,
        ["--db", str(tmp_path), "--config", str(tmp_path / "none.toml"), *args],
        env=BASE_ENV,
    )
    assert result.exit_code == 1
    payload = json.loads(result.output)
    assert payload == {
        "ok": False,
        "error": {"code": "storage_failure", "message": "Storage operation failed."},
    }


def test_failed_read_is_storage_failure(seeded):
    with patch("ava.cli.list_sessions", side_effect=sqlite3.OperationalError("disk I/O error")):
        result, payload = seeded("session", "list", "-w", "acme", "-u", "u1")
    assert result.exit_code == 1
    assert payload["error"]["code"] == "storage_failure"
    assert "disk I/O" not in result.output
