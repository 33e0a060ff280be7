"""Tests for the task session service: guard, engine and notification dispatch."""

from __future__ import annotations

import logging
from unittest.mock import patch

import pytest
from jsonschema import ValidationError
from redis.exceptions import ConnectionError as RedisConnectionError

from ava.config import Settings
from ava.engine import Issue
from ava.errors import Err, InvalidStateError, NotFoundError
from ava.queue import QueueMessenger, StreamMessenger
from ava.service import TaskSessionService, messenger_for
from ava.sessions import SessionStore


class RecordingMessenger:
    def __init__(self, fail: Exception | None = None) -> None:
        self.sent: list[dict] = []
        self.fail = fail

    def dispatch(self, payload: dict) -> str:
        if self.fail is not None:
            raise self.fail
        self.sent.append(payload)
        return f"receipt-{len(self.sent)}"


@pytest.fixture()
def messenger() -> RecordingMessenger:
    return RecordingMessenger()


@pytest.fixture()
def service(db_conn, messenger) -> TaskSessionService:
    return TaskSessionService(db_conn, messenger=messenger)


def _start(service, scope, title: str = "Fix login"):
    return service.start(scope, Issue(provider="manual", title=title), "looking into it").unwrap()


def test_start_dispatches_started_notification(service, scope, messenger):
    envelope = _start(service, scope)

    assert envelope["session"]["status"] == "in_progress"
    assert envelope["event"]["kind"] == "started"
    assert envelope["event"]["version"] == 0
    assert envelope["notification"] == {
        "delivered": True,
        "template": "task_started",
        "receipt": "receipt-1",
    }
    [sent] = messenger.sent
    assert sent["template"] == "task_started"
    assert sent["user_name"] == "Ada"
    assert sent["session_id"] == envelope["session"]["id"]


def test_full_lifecycle_dispatch_order(service, scope, messenger):
    sid = _start(service, scope)["session"]["id"]
    block_id = service.report_block(scope, sid, "need creds").unwrap()["block_id"]
    service.resolve_block(scope, sid, block_id).unwrap()
    service.pause(scope, sid, "lunch").unwrap()
    service.resume(scope, sid, "back").unwrap()
    service.update(scope, sid, "almost").unwrap()
    service.complete(scope, sid, "https://example.com/pr/1", "done").unwrap()

    assert [m["template"] for m in messenger.sent] == [
        "task_started",
        "task_blocked",
        "block_resolved",
        "task_paused",
        "task_resumed",
        "task_updated",
        "task_completed",
    ]


def test_dispatch_failure_does_not_undo_transition(db_conn, scope, caplog):
    service = TaskSessionService(
        db_conn, messenger=RecordingMessenger(fail=RedisConnectionError("refused"))
    )
    with caplog.at_level(logging.WARNING, logger="ava.service"):
        envelope = _start(service, scope)

    assert envelope["notification"]["delivered"] is False
    assert envelope["notification"]["reason"] == "dispatch_failed"
    assert "refused" in envelope["notification"]["error"]
    assert "Notification dispatch failed" in caplog.text
    session = SessionStore(db_conn).get(envelope["session"]["id"], "ws1")
    assert session is not None
    assert session["status"] == "in_progress"


def test_invalid_payload_is_not_dispatched(service, scope, messenger):
    sid = _start(service, scope)["session"]["id"]
    messenger.sent.clear()
    with patch("ava.service.validate_payload") as mock_validate:
        mock_validate.side_effect = ValidationError("bad shape")
        envelope = service.update(scope, sid, "x").unwrap()

    assert envelope["notification"]["reason"] == "invalid_payload"
    assert messenger.sent == []
    assert envelope["event"]["version"] == 1


def test_no_messenger_reports_disabled(db_conn, scope):
    envelope = _start(TaskSessionService(db_conn), scope)
    assert envelope["notification"] == {"delivered": False, "reason": "disabled"}


def test_link_thread_is_not_announced(service, scope, messenger):
    sid = _start(service, scope)["session"]["id"]
    envelope = service.link_thread(scope, sid, "C1", "1700.1").unwrap()

    assert envelope["event"]["kind"] == "thread_linked"
    assert envelope["notification"] == {"delivered": False, "reason": "not_announced"}
    assert len(messenger.sent) == 1


def test_completion_with_thread_adds_reaction(service, scope, messenger):
    sid = _start(service, scope)["session"]["id"]
    service.link_thread(scope, sid, "C1", "1700.1").unwrap()
    envelope = service.complete(scope, sid, "https://example.com/pr/2", "done").unwrap()

    assert envelope["notification"]["template"] == "task_completed"
    assert envelope["notification"]["reaction"]["template"] == "reaction"
    assert [m["template"] for m in messenger.sent][-2:] == ["task_completed", "reaction"]
    assert messenger.sent[-1]["thread_ts"] == "1700.1"


def test_completion_without_thread_has_no_reaction(service, scope, messenger):
    sid = _start(service, scope)["session"]["id"]
    envelope = service.complete(scope, sid, "https://example.com/pr/3", "done").unwrap()
    assert "reaction" not in envelope["notification"]
    assert envelope["unresolved_blocks"] == []


def test_rejected_transition_sends_nothing(service, scope, messenger):
    sid = _start(service, scope)["session"]["id"]
    service.cancel(scope, sid).unwrap()
    messenger.sent.clear()

    result = service.update(scope, sid, "too late")
    assert isinstance(result, Err)
    assert isinstance(result.error, InvalidStateError)
    assert messenger.sent == []


def test_unknown_session_not_found(service, scope):
    result = service.pause(scope, "missing", "x")
    assert isinstance(result.error, NotFoundError)


def test_messenger_for_modes():
    assert messenger_for(Settings(notify_mode="off")) is None
    with patch("ava.service.get_redis"):
        assert isinstance(messenger_for(Settings(notify_mode="stream")), StreamMessenger)
        with patch("ava.queue.Queue"):
            assert isinstance(messenger_for(Settings(notify_mode="queue")), QueueMessenger)


def test_from_settings_uses_upgrade_url(db_conn):
    settings = Settings(notify_mode="off", base_url="https://ava.example.com/")
    service = TaskSessionService.from_settings(db_conn, settings)
    assert service.messenger is None
    assert service.guard.upgrade_url == "https://ava.example.com/docs/pricing"
