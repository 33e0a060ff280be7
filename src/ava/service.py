"""Task session use cases: plan limit guard -> engine -> notification.

Every method returns ``Ok(envelope)`` or ``Err(error)``. The envelope is
the transition outcome plus a ``notification`` entry describing what
happened to the outbound payload. Notification problems are logged and
reported there; they never turn a committed transition into a failure.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any

from jsonschema import ValidationError
from redis.exceptions import RedisError

from ava.accounts import AccountStore
from ava.config import Settings
from ava.engine import Issue, LifecycleEngine, Scope, TransitionOutcome
from ava.errors import AvaError, Err, Ok
from ava.events import STARTED
from ava.notifications import (
    NotificationPayload,
    ReactionPayload,
    project_notification,
    project_reaction,
    serialize_payload,
    validate_payload,
)
from ava.plan_limit import FREE_PLAN_LIMIT, PlanLimitGuard
from ava.queue import Messenger, QueueMessenger, StreamMessenger, get_redis

log = logging.getLogger(__name__)

Envelope = dict[str, Any]


def messenger_for(settings: Settings) -> Messenger | None:
    """Messenger selected by ``notify_mode``; None when notifications are off."""
    if settings.notify_mode == "off":
        return None
    redis = get_redis(settings.redis_url, timeout=settings.redis_timeout)
    if settings.notify_mode == "queue":
        return QueueMessenger(redis)
    return StreamMessenger(redis)


class TaskSessionService:
    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        messenger: Messenger | None = None,
        upgrade_url: str = Settings().upgrade_url,
        plan_limit: int = FREE_PLAN_LIMIT,
    ) -> None:
        self.conn = conn
        self.engine = LifecycleEngine(conn)
        self.accounts = AccountStore(conn)
        self.guard = PlanLimitGuard(self.accounts, upgrade_url=upgrade_url, limit=plan_limit)
        self.messenger = messenger

    @classmethod
    def from_settings(cls, conn: sqlite3.Connection, settings: Settings) -> TaskSessionService:
        return cls(conn, messenger=messenger_for(settings), upgrade_url=settings.upgrade_url)

    # -- use cases --

    def start(
        self,
        scope: Scope,
        issue: Issue,
        initial_summary: str,
        raw_context: dict[str, Any] | None = None,
    ) -> Ok[Envelope] | Err[AvaError]:
        if scope.user_id:
            allowed = self.guard.check(scope.user_id)
            if isinstance(allowed, Err):
                return allowed
        return self._finish(self.engine.start(scope, issue, initial_summary, raw_context))

    def update(
        self,
        scope: Scope,
        session_id: str,
        summary: str,
        raw_context: dict[str, Any] | None = None,
    ) -> Ok[Envelope] | Err[AvaError]:
        return self._finish(self.engine.update(scope, session_id, summary, raw_context))

    def report_block(
        self,
        scope: Scope,
        session_id: str,
        reason: str,
        raw_context: dict[str, Any] | None = None,
    ) -> Ok[Envelope] | Err[AvaError]:
        return self._finish(self.engine.report_block(scope, session_id, reason, raw_context))

    def resolve_block(
        self, scope: Scope, session_id: str, block_id: str
    ) -> Ok[Envelope] | Err[AvaError]:
        return self._finish(self.engine.resolve_block(scope, session_id, block_id))

    def pause(
        self,
        scope: Scope,
        session_id: str,
        reason: str,
        raw_context: dict[str, Any] | None = None,
    ) -> Ok[Envelope] | Err[AvaError]:
        return self._finish(self.engine.pause(scope, session_id, reason, raw_context))

    def resume(
        self,
        scope: Scope,
        session_id: str,
        summary: str,
        raw_context: dict[str, Any] | None = None,
    ) -> Ok[Envelope] | Err[AvaError]:
        return self._finish(self.engine.resume(scope, session_id, summary, raw_context))

    def complete(
        self, scope: Scope, session_id: str, pr_url: str, summary: str
    ) -> Ok[Envelope] | Err[AvaError]:
        return self._finish(self.engine.complete(scope, session_id, pr_url, summary))

    def cancel(
        self, scope: Scope, session_id: str, reason: str | None = None
    ) -> Ok[Envelope] | Err[AvaError]:
        return self._finish(self.engine.cancel(scope, session_id, reason))

    def link_thread(
        self, scope: Scope, session_id: str, channel: str, thread_ts: str
    ) -> Ok[Envelope] | Err[AvaError]:
        return self._finish(self.engine.link_thread(scope, session_id, channel, thread_ts))

    # -- after commit --

    def _finish(
        self, result: Ok[TransitionOutcome] | Err[AvaError]
    ) -> Ok[Envelope] | Err[AvaError]:
        if isinstance(result, Err):
            return result
        outcome = result.value
        envelope = outcome.to_dict()
        envelope["notification"] = self._notify(outcome)
        return Ok(envelope)

    def _notify(self, outcome: TransitionOutcome) -> dict[str, Any]:
        """Project, validate and dispatch. Never raises for delivery problems."""
        if self.messenger is None:
            return {"delivered": False, "reason": "disabled"}
        try:
            workspace = self.accounts.get_workspace(outcome.session["workspace_id"])
            user = None
            if outcome.kind == STARTED:
                user = self.accounts.get_user(outcome.session["user_id"])
        except sqlite3.Error as exc:
            log.warning("Notification lookup failed for %s: %s", outcome.session["id"], exc)
            return {"delivered": False, "reason": "dispatch_failed", "error": str(exc)}
        assert workspace is not None

        payload = project_notification(outcome, workspace, user)
        if payload is None:
            return {"delivered": False, "reason": "not_announced"}
        delivery = self._dispatch(outcome.session["id"], payload)

        reaction = project_reaction(outcome, workspace)
        if reaction is not None and delivery["delivered"]:
            delivery["reaction"] = self._dispatch(outcome.session["id"], reaction)
        return delivery

    def _dispatch(
        self, session_id: str, payload: NotificationPayload | ReactionPayload
    ) -> dict[str, Any]:
        assert self.messenger is not None
        data = serialize_payload(payload)
        template = data["template"]
        try:
            validate_payload(data)
        except ValidationError as exc:
            log.warning(
                "Notification payload invalid for session %s (%s): %s",
                session_id,
                template,
                exc.message,
            )
            return {
                "delivered": False,
                "template": template,
                "reason": "invalid_payload",
                "error": exc.message,
            }
        try:
            receipt = self.messenger.dispatch(data)
        except (RedisError, OSError) as exc:
            log.warning(
                "Notification dispatch failed for session %s (%s): %s", session_id, template, exc
            )
            return {
                "delivered": False,
                "template": template,
                "reason": "dispatch_failed",
                "error": str(exc),
            }
        return {"delivered": True, "template": template, "receipt": receipt}
