"""Session status vocabulary, transition table, and status reference."""

from __future__ import annotations

from typing import Any

IN_PROGRESS = "in_progress"
BLOCKED = "blocked"
PAUSED = "paused"
COMPLETED = "completed"
CANCELLED = "cancelled"

VALID_SESSION_STATUSES = (IN_PROGRESS, BLOCKED, PAUSED, COMPLETED, CANCELLED)
SESSION_TERMINAL_STATUSES = frozenset({COMPLETED, CANCELLED})
SESSION_ACTIVE_STATUSES = frozenset({IN_PROGRESS, BLOCKED, PAUSED})

# operation -> statuses it may start from. "start" has no source status.
VALID_FROM: dict[str, frozenset[str]] = {
    "update": frozenset({IN_PROGRESS, BLOCKED, PAUSED}),
    "report_block": frozenset({IN_PROGRESS}),
    "resolve_block": frozenset({BLOCKED, PAUSED}),
    "pause": frozenset({IN_PROGRESS, BLOCKED}),
    "resume": frozenset({PAUSED}),
    "complete": frozenset({IN_PROGRESS, BLOCKED, PAUSED}),
    "cancel": SESSION_ACTIVE_STATUSES,
    "link_thread": frozenset(VALID_SESSION_STATUSES),
}

ALLOWED_TRANSITIONS: dict[str, tuple[str, ...]] = {
    IN_PROGRESS: (BLOCKED, PAUSED, COMPLETED, CANCELLED),
    BLOCKED: (IN_PROGRESS, PAUSED, COMPLETED, CANCELLED),
    PAUSED: (IN_PROGRESS, COMPLETED, CANCELLED),
    COMPLETED: (),
    CANCELLED: (),
}

# CLI/tool-facing filter names -> stored status
STATUS_FILTERS = {
    "inProgress": IN_PROGRESS,
    "in_progress": IN_PROGRESS,
    "blocked": BLOCKED,
    "paused": PAUSED,
    "completed": COMPLETED,
    "cancelled": CANCELLED,
}


def is_terminal(status: str) -> bool:
    return status in SESSION_TERMINAL_STATUSES


def can_apply(operation: str, status: str) -> bool:
    """Return whether *operation* may run against a session in *status*."""
    try:
        return status in VALID_FROM[operation]
    except KeyError:
        raise ValueError(f"Unknown operation '{operation}'") from None


def normalize_status_filter(value: str | None) -> str | None:
    if value is None:
        return None
    try:
        return STATUS_FILTERS[value.strip()]
    except KeyError:
        raise ValueError(
            f"Invalid status '{value}'. Must be one of: {sorted(set(STATUS_FILTERS.values()))}"
        ) from None


STATUS_REFERENCE_SCHEMA = "ava_status_reference_v1"

SESSION_STATUS_LIFECYCLE = [
    {
        "status": IN_PROGRESS,
        "meaning": "Agent is actively working on the session.",
        "typical_transitions": list(ALLOWED_TRANSITIONS[IN_PROGRESS]),
    },
    {
        "status": BLOCKED,
        "meaning": "Work is stalled on an external dependency with one open block report.",
        "typical_transitions": list(ALLOWED_TRANSITIONS[BLOCKED]),
    },
    {
        "status": PAUSED,
        "meaning": "Work was voluntarily suspended; resume to continue.",
        "typical_transitions": list(ALLOWED_TRANSITIONS[PAUSED]),
    },
    {
        "status": COMPLETED,
        "meaning": "Work finished and a completion was recorded. Terminal.",
        "typical_transitions": [],
    },
    {
        "status": CANCELLED,
        "meaning": "Work was abandoned. Terminal.",
        "typical_transitions": [],
    },
]


def get_status_reference() -> dict[str, Any]:
    return {
        "schema": STATUS_REFERENCE_SCHEMA,
        "session_statuses": SESSION_STATUS_LIFECYCLE,
        "operations": {op: sorted(statuses) for op, statuses in VALID_FROM.items()},
    }
