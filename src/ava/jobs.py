"""rq jobs for notification delivery."""

from __future__ import annotations

import logging
from typing import Any

from rq import get_current_job

log = logging.getLogger(__name__)


def deliver_notification(message: dict[str, Any]) -> str:
    """Worker side of :class:`ava.queue.QueueMessenger`.

    Appends the message to the notification stream on the Redis the job was
    enqueued on. Raising lets rq retry.
    """
    from ava.queue import append_to_stream, get_redis

    job = get_current_job()
    redis = job.connection if job is not None else get_redis()
    entry_id = append_to_stream(redis, message)
    log.info(
        "Delivered %s for session %s (%s)",
        message.get("template"),
        message.get("session_id"),
        entry_id,
    )
    return entry_id


def on_delivery_failure(job, _connection, _exc_type, exc_value, _traceback):
    """Callback when a delivery job fails. Logs only; the transition stands."""
    message = job.args[0] if job.args else {}
    log.warning(
        "Notification %s for session %s failed: %s",
        message.get("template"),
        message.get("session_id"),
        exc_value,
    )
