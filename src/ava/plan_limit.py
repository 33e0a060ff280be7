"""Free-plan session quota, consulted before a session is started."""

from __future__ import annotations

import logging
import sqlite3
from typing import Protocol

from ava.errors import Err, Ok, PlanLimitError, StorageError

log = logging.getLogger(__name__)

FREE_PLAN_LIMIT = 5


class QuotaSource(Protocol):
    def active_subscription(self, user_id: str) -> bool: ...

    def session_count(self, user_id: str) -> int: ...


class PlanLimitGuard:
    """Reject session creation once a free user owns ``limit`` sessions.

    The subscription lookup and the count are plain reads outside the start
    transaction. Two concurrent starts at ``limit - 1`` can both pass.
    """

    def __init__(
        self, quota: QuotaSource, *, upgrade_url: str, limit: int = FREE_PLAN_LIMIT
    ) -> None:
        self.quota = quota
        self.upgrade_url = upgrade_url
        self.limit = limit

    def check(self, user_id: str) -> Ok[None] | Err[PlanLimitError] | Err[StorageError]:
        try:
            if self.quota.active_subscription(user_id):
                return Ok(None)
            count = self.quota.session_count(user_id)
        except sqlite3.Error as exc:
            log.error("Quota lookup failed for user %s: %s", user_id, exc)
            return Err(StorageError())
        if count >= self.limit:
            log.info("Plan limit reached for user %s (%d/%d)", user_id, count, self.limit)
            return Err(PlanLimitError(self.limit, self.upgrade_url))
        return Ok(None)
