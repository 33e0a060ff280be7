"""Users, workspaces, and subscriptions.

:class:`AccountStore` is also the quota collaborator consulted by the
plan limit guard (``active_subscription`` / ``session_count``).
"""

from __future__ import annotations

import sqlite3
from typing import cast

from ava.db import (
    ACTIVE_SUBSCRIPTION_STATUSES,
    VALID_SUBSCRIPTION_STATUSES,
    SubscriptionRow,
    UserRow,
    WorkspaceRow,
    _utcnow,
    new_id,
)


class AccountStore:
    """Account rows behind one connection. Writes here commit immediately."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    # -- users --

    def add_user(
        self,
        *,
        user_id: str | None = None,
        name: str | None = None,
        email: str | None = None,
        slack_id: str | None = None,
    ) -> UserRow:
        uid = user_id or new_id()
        now = _utcnow()
        self.conn.execute(
            "INSERT INTO users (id, name, email, slack_id, created_at) VALUES (?, ?, ?, ?, ?)",
            (uid, name, email, slack_id, now),
        )
        self.conn.commit()
        return cast(
            UserRow,
            {"id": uid, "name": name, "email": email, "slack_id": slack_id, "created_at": now},
        )

    def get_user(self, user_id: str) -> UserRow | None:
        row = self.conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return cast(UserRow, dict(row)) if row else None

    def list_users(self) -> list[UserRow]:
        rows = self.conn.execute("SELECT * FROM users ORDER BY created_at").fetchall()
        return [cast(UserRow, dict(row)) for row in rows]

    # -- workspaces --

    def add_workspace(
        self,
        name: str,
        *,
        workspace_id: str | None = None,
        notification_channel: str | None = None,
    ) -> WorkspaceRow:
        wid = workspace_id or new_id()
        now = _utcnow()
        self.conn.execute(
            "INSERT INTO workspaces (id, name, notification_channel, created_at) "
            "VALUES (?, ?, ?, ?)",
            (wid, name, notification_channel, now),
        )
        self.conn.commit()
        return cast(
            WorkspaceRow,
            {
                "id": wid,
                "name": name,
                "notification_channel": notification_channel,
                "created_at": now,
            },
        )

    def get_workspace(self, workspace_id: str) -> WorkspaceRow | None:
        row = self.conn.execute(
            "SELECT * FROM workspaces WHERE id = ?", (workspace_id,)
        ).fetchone()
        return cast(WorkspaceRow, dict(row)) if row else None

    def set_notification_channel(self, workspace_id: str, channel: str | None) -> bool:
        cursor = self.conn.execute(
            "UPDATE workspaces SET notification_channel = ? WHERE id = ?",
            (channel, workspace_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    # -- subscriptions --

    def set_subscription(
        self, user_id: str, status: str, *, current_period_end: str | None = None
    ) -> SubscriptionRow:
        """Upsert the user's subscription status."""
        if status not in VALID_SUBSCRIPTION_STATUSES:
            raise ValueError(
                f"Invalid subscription status '{status}'. "
                f"Must be one of: {sorted(VALID_SUBSCRIPTION_STATUSES)}"
            )
        now = _utcnow()
        self.conn.execute(
            "INSERT INTO subscriptions "
            "(id, user_id, status, current_period_end, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(user_id) DO UPDATE SET status = excluded.status, "
            "current_period_end = excluded.current_period_end, "
            "updated_at = excluded.updated_at",
            (new_id(), user_id, status, current_period_end, now, now),
        )
        self.conn.commit()
        sub = self.get_subscription(user_id)
        assert sub is not None
        return sub

    def get_subscription(self, user_id: str) -> SubscriptionRow | None:
        row = self.conn.execute(
            "SELECT * FROM subscriptions WHERE user_id = ?", (user_id,)
        ).fetchone()
        return cast(SubscriptionRow, dict(row)) if row else None

    def active_subscription(self, user_id: str) -> bool:
        placeholders = ",".join("?" for _ in ACTIVE_SUBSCRIPTION_STATUSES)
        row = self.conn.execute(
            "SELECT 1 FROM subscriptions "
            f"WHERE user_id = ? AND status IN ({placeholders}) "
            "AND (current_period_end IS NULL OR current_period_end > ?)",
            (user_id, *ACTIVE_SUBSCRIPTION_STATUSES, _utcnow()),
        ).fetchone()
        return row is not None

    def session_count(self, user_id: str) -> int:
        """Count every session the user owns, regardless of status."""
        row = self.conn.execute(
            "SELECT COUNT(*) AS cnt FROM task_sessions WHERE user_id = ?", (user_id,)
        ).fetchone()
        return row["cnt"]
