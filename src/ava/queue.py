"""Notification messengers over Redis Streams and rq.

The lifecycle engine never talks to Redis. After a transition commits, the
service layer hands the serialized payload to one of the messengers here:

- :class:`StreamMessenger` appends it to ``ava:notifications:stream``
  (``XADD``), where chat-side consumers pick it up.
- :class:`QueueMessenger` enqueues an rq job that performs the same append
  from a worker, with retries.

:class:`NotificationSubscriber` tails the stream for ``ava notify watch``.
"""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from datetime import UTC, datetime
from typing import Any, Protocol

from redis import Redis
from redis.exceptions import RedisError
from rq import Callback, Queue, Retry

from ava.config import load_settings
from ava.notifications import render_message

log = logging.getLogger(__name__)

QUEUE_NOTIFY = "ava:notify"
NOTIFY_STREAM = "ava:notifications:stream"
# Max entries retained in the stream
NOTIFY_STREAM_MAXLEN = int(os.environ.get("AVA_NOTIFY_STREAM_MAXLEN", "1000"))

FAILURE_TTL = 7 * 24 * 3600  # 7 days
DELIVERY_RETRY = Retry(max=3, interval=[5, 30, 120])
DELIVERY_JOB_TIMEOUT = 30

MESSAGE_VERSION = 1  # Bump when the stream message shape changes


def get_redis(url: str | None = None, *, timeout: float = 5.0) -> Redis:
    """Redis client whose socket operations give up after *timeout* seconds.

    Without *url*, connects to the configured ``redis_url``.
    """
    return Redis.from_url(
        url or load_settings().redis_url,
        socket_timeout=timeout,
        socket_connect_timeout=timeout,
    )


def build_message(payload: dict[str, Any]) -> dict[str, Any]:
    """Wrap a serialized payload with delivery metadata and rendered text."""
    return {
        "notification_id": str(uuid.uuid4()),
        "v": MESSAGE_VERSION,
        "ts": datetime.now(UTC).isoformat(),
        "template": payload["template"],
        "workspace_id": payload["workspace_id"],
        "session_id": payload["session_id"],
        "payload": payload,
        "message": render_message(payload),
    }


def append_to_stream(redis: Redis, message: dict[str, Any]) -> str:
    entry_id = redis.xadd(
        NOTIFY_STREAM,
        {"data": json.dumps(message)},
        maxlen=NOTIFY_STREAM_MAXLEN,
        approximate=True,
    )
    return entry_id.decode() if isinstance(entry_id, bytes) else str(entry_id)


class Messenger(Protocol):
    def dispatch(self, payload: dict[str, Any]) -> str:
        """Hand off *payload*; return a receipt id. Raises on failure."""
        ...


class StreamMessenger:
    def __init__(self, redis: Redis) -> None:
        self.redis = redis

    def dispatch(self, payload: dict[str, Any]) -> str:
        return append_to_stream(self.redis, build_message(payload))


class QueueMessenger:
    def __init__(self, redis: Redis) -> None:
        self.queue = Queue(QUEUE_NOTIFY, connection=redis, default_timeout=DELIVERY_JOB_TIMEOUT)

    def dispatch(self, payload: dict[str, Any]) -> str:
        from ava.jobs import deliver_notification

        message = build_message(payload)
        job = self.queue.enqueue(
            deliver_notification,
            message,
            job_id=f"notify-{message['notification_id']}",
            retry=DELIVERY_RETRY,
            on_failure=Callback("ava.jobs.on_delivery_failure"),
            failure_ttl=FAILURE_TTL,
            description=f"{message['template']} for {message['session_id']}",
        )
        return job.id


class NotificationSubscriber:
    """Iterator over dispatched notifications with optional filtering.

    Uses ``XREAD BLOCK`` on the notification stream. Returns the decoded
    message, or ``None`` when ``timeout`` seconds pass without a match.
    When Redis is unreachable ``__next__`` sleeps for ``timeout`` and
    returns ``None``.
    """

    def __init__(
        self,
        redis: Redis | None = None,
        *,
        workspace_id: str | None = None,
        session_id: str | None = None,
        timeout: float = 30.0,
        cursor: str = "$",
    ):
        self.workspace_id = workspace_id
        self.session_id = session_id
        self.timeout = timeout
        self._cursor = cursor  # "$" = only new entries, "0" = from beginning
        self._redis: Redis | None
        try:
            self._redis = redis or get_redis()
            self._redis.ping()
        except RedisError:
            log.warning("Redis unavailable; notification watch will idle")
            self._redis = None

    def __iter__(self):
        return self

    @staticmethod
    def _decode(entry_id, fields) -> dict | None:
        data = fields.get("data") or fields.get(b"data")
        if not data:
            return None
        if isinstance(data, bytes):
            data = data.decode()
        try:
            message = json.loads(data)
        except (json.JSONDecodeError, TypeError):
            return None
        if not isinstance(message, dict):
            return None
        message["_stream_id"] = entry_id.decode() if isinstance(entry_id, bytes) else entry_id
        return message

    def _matches(self, message: dict) -> bool:
        if self.workspace_id and message.get("workspace_id") != self.workspace_id:
            return False
        return not (self.session_id and message.get("session_id") != self.session_id)

    def __next__(self) -> dict | None:
        if self._redis is None:
            time.sleep(self.timeout)
            return None
        while True:
            result = self._redis.xread(
                {NOTIFY_STREAM: self._cursor}, block=int(self.timeout * 1000), count=10
            )
            if not result:
                return None
            for _stream_name, entries in result:
                for entry_id, fields in entries:
                    self._cursor = entry_id
                    message = self._decode(entry_id, fields)
                    if message is not None and self._matches(message):
                        return message
