"""Notification projector: committed transitions -> typed outbound payloads.

Each template is its own payload class. :func:`project_notification` picks
the variant for a transition, :func:`serialize_payload` turns it into the
tagged dict handed to a messenger, and :func:`validate_payload` checks that
dict against the template's JSON schema before it leaves the process.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Any

from jsonschema import validate

from ava import events
from ava.db import TaskSessionRow, UserRow, WorkspaceRow
from ava.engine import TransitionOutcome

COMPLETED_REACTION = "white_check_mark"


@dataclass(frozen=True)
class _Common:
    workspace_id: str
    user_id: str
    session_id: str
    channel: str | None
    thread_ts: str | None


@dataclass(frozen=True)
class StartedPayload(_Common):
    issue_provider: str
    issue_id: str | None
    issue_title: str
    initial_summary: str
    user_name: str | None
    user_email: str | None
    user_slack_id: str | None


@dataclass(frozen=True)
class UpdatedPayload(_Common):
    summary: str


@dataclass(frozen=True)
class BlockedPayload(_Common):
    block_id: str
    reason: str


@dataclass(frozen=True)
class BlockResolvedPayload(_Common):
    block_id: str
    block_reason: str


@dataclass(frozen=True)
class PausedPayload(_Common):
    pause_id: str
    reason: str


@dataclass(frozen=True)
class ResumedPayload(_Common):
    summary: str


@dataclass(frozen=True)
class CompletedPayload(_Common):
    completion_id: str
    pr_url: str
    summary: str


@dataclass(frozen=True)
class CancelledPayload(_Common):
    reason: str | None


@dataclass(frozen=True)
class ReactionPayload(_Common):
    """Emoji reaction on the session's thread root."""

    emoji: str


NotificationPayload = (
    StartedPayload
    | UpdatedPayload
    | BlockedPayload
    | BlockResolvedPayload
    | PausedPayload
    | ResumedPayload
    | CompletedPayload
    | CancelledPayload
)

# payload class -> template tag
TEMPLATES: dict[type, str] = {
    StartedPayload: "task_started",
    UpdatedPayload: "task_updated",
    BlockedPayload: "task_blocked",
    BlockResolvedPayload: "block_resolved",
    PausedPayload: "task_paused",
    ResumedPayload: "task_resumed",
    CompletedPayload: "task_completed",
    CancelledPayload: "task_cancelled",
    ReactionPayload: "reaction",
}


# -- JSON schemas --

_NULLABLE_STRING = {"type": ["string", "null"]}
_STRING = {"type": "string", "minLength": 1}

_COMMON_PROPERTIES = {
    "workspace_id": _STRING,
    "user_id": _STRING,
    "session_id": _STRING,
    "channel": _NULLABLE_STRING,
    "thread_ts": _NULLABLE_STRING,
}


def _schema(template: str, **properties: dict) -> dict[str, Any]:
    props = {"template": {"const": template}, **_COMMON_PROPERTIES, **properties}
    return {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "title": template,
        "type": "object",
        "properties": props,
        "required": sorted(props),
        "additionalProperties": False,
    }


SCHEMAS: dict[str, dict[str, Any]] = {
    "task_started": _schema(
        "task_started",
        issue_provider={"enum": ["github", "manual"]},
        issue_id=_NULLABLE_STRING,
        issue_title=_STRING,
        initial_summary=_STRING,
        user_name=_NULLABLE_STRING,
        user_email=_NULLABLE_STRING,
        user_slack_id=_NULLABLE_STRING,
    ),
    "task_updated": _schema("task_updated", summary=_STRING),
    "task_blocked": _schema("task_blocked", block_id=_STRING, reason=_STRING),
    "block_resolved": _schema("block_resolved", block_id=_STRING, block_reason=_STRING),
    "task_paused": _schema("task_paused", pause_id=_STRING, reason=_STRING),
    "task_resumed": _schema("task_resumed", summary=_STRING),
    "task_completed": _schema(
        "task_completed", completion_id=_STRING, pr_url=_STRING, summary=_STRING
    ),
    "task_cancelled": _schema("task_cancelled", reason=_NULLABLE_STRING),
    "reaction": _schema("reaction", emoji=_STRING, channel=_STRING, thread_ts=_STRING),
}


# -- projection --


def _common(session: TaskSessionRow, workspace: WorkspaceRow) -> dict[str, Any]:
    return {
        "workspace_id": session["workspace_id"],
        "user_id": session["user_id"],
        "session_id": session["id"],
        "channel": session["slack_channel"] or workspace["notification_channel"],
        "thread_ts": session["slack_thread_ts"],
    }


def project_notification(
    outcome: TransitionOutcome, workspace: WorkspaceRow, user: UserRow | None = None
) -> NotificationPayload | None:
    """Map a committed transition onto its notification payload.

    Returns None for technical events, which are never announced.
    """
    session = outcome.session
    event = outcome.event
    common = _common(session, workspace)
    kind = event["event_type"]

    if kind == events.STARTED:
        return StartedPayload(
            **common,
            issue_provider=session["issue_provider"],
            issue_id=session["issue_id"],
            issue_title=session["issue_title"],
            initial_summary=session["initial_summary"],
            user_name=user["name"] if user else None,
            user_email=user["email"] if user else None,
            user_slack_id=user["slack_id"] if user else None,
        )
    if kind == events.UPDATED:
        return UpdatedPayload(**common, summary=event["summary"] or "")
    if kind == events.BLOCKED:
        block = outcome.block
        assert block is not None
        return BlockedPayload(**common, block_id=block["id"], reason=block["reason"])
    if kind == events.BLOCK_RESOLVED:
        assert outcome.block is not None
        return BlockResolvedPayload(
            **common, block_id=outcome.block["id"], block_reason=outcome.block["reason"]
        )
    if kind == events.PAUSED:
        assert outcome.pause is not None
        return PausedPayload(**common, pause_id=outcome.pause["id"], reason=outcome.pause["reason"])
    if kind == events.RESUMED:
        return ResumedPayload(**common, summary=event["summary"] or "")
    if kind == events.COMPLETED:
        assert outcome.completion is not None
        return CompletedPayload(
            **common,
            completion_id=outcome.completion["id"],
            pr_url=outcome.completion["pr_url"],
            summary=outcome.completion["summary"],
        )
    if kind == events.CANCELLED:
        return CancelledPayload(**common, reason=event["reason"])
    if events.is_technical(kind):
        return None
    raise ValueError(f"No notification template for event kind '{kind}'")


def project_reaction(
    outcome: TransitionOutcome, workspace: WorkspaceRow
) -> ReactionPayload | None:
    """Completion reaction on the thread root, when the session has a thread."""
    session = outcome.session
    if outcome.kind != events.COMPLETED or not session["slack_thread_ts"]:
        return None
    return ReactionPayload(**_common(session, workspace), emoji=COMPLETED_REACTION)


# -- serialization --


def template_of(payload: NotificationPayload | ReactionPayload) -> str:
    try:
        return TEMPLATES[type(payload)]
    except KeyError:
        raise TypeError(f"Unsupported notification payload {type(payload).__name__}") from None


def serialize_payload(payload: NotificationPayload | ReactionPayload) -> dict[str, Any]:
    """Tagged dict form. Raises TypeError for anything that is not a known variant."""
    return {"template": template_of(payload), **asdict(payload)}


def validate_payload(data: dict[str, Any]) -> None:
    """Raise ``jsonschema.ValidationError`` if *data* does not match its template."""
    template = data.get("template")
    if template not in SCHEMAS:
        raise ValueError(f"Unknown notification template {template!r}")
    validate(instance=data, schema=SCHEMAS[template])


# -- chat rendering --


def _section(text: str) -> dict[str, Any]:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}


def _button(label: str, action_id: str, value: str, style: str | None = None) -> dict[str, Any]:
    button: dict[str, Any] = {
        "type": "button",
        "text": {"type": "plain_text", "text": label},
        "value": value,
        "action_id": action_id,
    }
    if style:
        button["style"] = style
    return button


def render_message(data: dict[str, Any]) -> dict[str, Any]:
    """Render a serialized payload as chat-ready ``{"text", "blocks"}``."""
    template = data["template"]
    sid = data["session_id"]
    buttons: list[dict[str, Any]] = []

    if template == "task_started":
        issue_id = f" ({data['issue_id']})" if data["issue_id"] else ""
        if data["user_slack_id"]:
            started_by = f"<@{data['user_slack_id']}>"
        else:
            started_by = data["user_name"] or data["user_email"] or "unknown user"
        lines = [
            ":rocket: Task started",
            f"Title: {data['issue_title']}{issue_id}",
            f"Session ID: {sid}",
            f"Issue Provider: {data['issue_provider']}",
            f"Started by: {started_by}",
            "",
            f"Summary: {data['initial_summary']}",
        ]
        buttons = [
            _button("Complete", "complete_task", sid, "primary"),
            _button("Report block", "report_blocked", sid, "danger"),
            _button("Pause", "pause_task", sid),
        ]
    elif template == "task_updated":
        lines = [":arrow_forward: Progress update", f"Summary: {data['summary']}"]
    elif template == "task_blocked":
        lines = [":warning: Task blocked", f"Reason: {data['reason']}"]
        value = json.dumps({"task_session_id": sid, "block_report_id": data["block_id"]})
        buttons = [_button("Resolve", "resolve_blocked", value, "primary")]
    elif template == "block_resolved":
        lines = [":white_check_mark: Block resolved", f"Previous issue: {data['block_reason']}"]
    elif template == "task_paused":
        lines = [":pause_button: Task paused", f"Reason: {data['reason']}"]
        buttons = [_button("Resume", "resume_task", sid, "primary")]
    elif template == "task_resumed":
        lines = [":arrow_forward: Task resumed", f"Summary: {data['summary']}"]
    elif template == "task_completed":
        lines = [
            ":white_check_mark: Task completed",
            f"Summary: {data['summary']}",
            f"PR: {data['pr_url']}",
        ]
    elif template == "task_cancelled":
        lines = [":x: Task cancelled"]
        if data["reason"]:
            lines.append(f"Reason: {data['reason']}")
    elif template == "reaction":
        return {"text": f":{data['emoji']}:", "blocks": []}
    else:
        raise ValueError(f"Unknown notification template {template!r}")

    text = "\n".join(lines)
    blocks = [_section(text)]
    if buttons:
        blocks.append({"type": "actions", "elements": buttons})
    return {"text": text, "blocks": blocks}
