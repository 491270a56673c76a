"""
Notification queue.

Workflow code never talks to the mail provider. Services stage notifications
in a per-request `NotificationOutbox`; after the request transaction commits
the outbox is pushed onto a `NotificationQueue` (a Redis list in production)
and `worker.py` delivers them. Enqueue failures are logged and counted,
never raised.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable
from uuid import uuid4

import redis.asyncio as aioredis

from portivo.config import settings
from portivo.middleware.metrics import notification_failures_total, notifications_enqueued_total

logger = logging.getLogger(__name__)

QUEUE_KEY = "portivo:notifications:queue"


class NotificationKind(str, Enum):
    APPROVAL_REQUESTED = "approval-requested"
    APPROVAL_RESPONDED = "approval-responded"
    PROJECT_UPDATE_POSTED = "project-update-posted"
    INVOICE_SENT = "invoice-sent"
    MESSAGE_POSTED = "message-posted"
    MEMBER_INVITED = "member-invited"
    SIGN_IN = "sign-in"


@dataclass
class Notification:
    kind: NotificationKind
    recipient_email: str
    template_data: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid4().hex)
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    attempts: int = 0

    def to_json(self) -> str:
        payload = asdict(self)
        payload["kind"] = self.kind.value
        return json.dumps(payload, default=str)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "Notification":
        payload = json.loads(raw)
        payload["kind"] = NotificationKind(payload["kind"])
        return cls(**payload)


class NotificationQueue:
    """Base queue. Subclasses implement `push`."""

    async def push(self, notification: Notification) -> None:
        raise NotImplementedError

    async def enqueue(
        self,
        kind: NotificationKind,
        recipient_email: str,
        template_data: dict[str, Any] | None = None,
    ) -> bool:
        return await self.enqueue_notification(
            Notification(kind=kind, recipient_email=recipient_email, template_data=template_data or {})
        )

    async def enqueue_notification(self, notification: Notification) -> bool:
        kind = notification.kind.value
        try:
            await self.push(notification)
        except Exception:
            logger.warning(
                "Failed to enqueue %s notification for %s",
                kind,
                notification.recipient_email,
                exc_info=True,
                extra={"kind": kind},
            )
            notification_failures_total.labels(kind=kind, stage="enqueue").inc()
            return False
        notifications_enqueued_total.labels(kind=kind).inc()
        return True


class RedisNotificationQueue(NotificationQueue):
    """LPUSH / BRPOP over a single Redis list."""

    def __init__(self, redis_url: str | None = None, key: str = QUEUE_KEY):
        self.redis_url = redis_url or settings.redis_url
        self.key = key
        self._redis: aioredis.Redis | None = None

    def _client(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    async def push(self, notification: Notification) -> None:
        await self._client().lpush(self.key, notification.to_json())

    async def pop(self, timeout: int = 5) -> Notification | None:
        item = await self._client().brpop(self.key, timeout=timeout)
        if item is None:
            return None
        _, raw = item
        return Notification.from_json(raw)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


class NotificationOutbox:
    """
    Side effects staged during one unit of work.

    Notifications and ``after_commit`` actions are released by ``flush`` once
    the request transaction has committed; ``rollback`` drops them and runs
    the ``on_rollback`` cleanups instead. A failing action is logged and the
    rest still run.
    """

    def __init__(self):
        self.pending: list[Notification] = []
        self._after_commit: list[Callable[[], Awaitable[None]]] = []
        self._on_rollback: list[Callable[[], Awaitable[None]]] = []

    def add(
        self,
        kind: NotificationKind,
        recipient_email: str | None,
        template_data: dict[str, Any] | None = None,
    ) -> None:
        if not recipient_email:
            return
        self.pending.append(
            Notification(kind=kind, recipient_email=recipient_email, template_data=template_data or {})
        )

    def add_many(
        self,
        kind: NotificationKind,
        recipient_emails: list[str],
        template_data: dict[str, Any] | None = None,
    ) -> None:
        for email in dict.fromkeys(recipient_emails):
            self.add(kind, email, dict(template_data or {}))

    def after_commit(self, action: Callable[[], Awaitable[None]]) -> None:
        self._after_commit.append(action)

    def on_rollback(self, action: Callable[[], Awaitable[None]]) -> None:
        self._on_rollback.append(action)

    def discard(self) -> None:
        self.pending.clear()
        self._after_commit.clear()

    async def rollback(self) -> None:
        self.discard()
        actions, self._on_rollback = self._on_rollback, []
        await _run_actions(actions, "rollback")

    async def flush(self, queue: NotificationQueue) -> int:
        """Push everything staged and run after-commit actions; returns how many notifications were accepted."""
        pending, self.pending = self.pending, []
        actions, self._after_commit = self._after_commit, []
        self._on_rollback.clear()
        sent = 0
        for notification in pending:
            if await queue.enqueue_notification(notification):
                sent += 1
        await _run_actions(actions, "after-commit")
        return sent


async def _run_actions(actions: list[Callable[[], Awaitable[None]]], stage: str) -> None:
    for action in actions:
        try:
            await action()
        except Exception:
            logger.warning("%s action %r failed", stage, action, exc_info=True)


_queue: RedisNotificationQueue | None = None


def get_notification_queue() -> NotificationQueue:
    global _queue
    if _queue is None:
        _queue = RedisNotificationQueue()
    return _queue


def portal_url(workspace_slug: str, *path: str) -> str:
    """Client-facing link, e.g. ``portal_url("acme", "projects", pid)``."""
    suffix = "/".join(p.strip("/") for p in path if p)
    base = f"{settings.app_url.rstrip('/')}/portal/{workspace_slug}"
    return f"{base}/{suffix}" if suffix else base


def dashboard_url(*path: str) -> str:
    suffix = "/".join(p.strip("/") for p in path if p)
    base = f"{settings.app_url.rstrip('/')}/dashboard"
    return f"{base}/{suffix}" if suffix else base
