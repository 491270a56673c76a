"""
Notification worker: delivers queued e-mails through Resend.

Run with: python worker.py

Each job is retried (re-queued) up to MAX_DELIVERY_ATTEMPTS times; after that
it is dropped with an error log. Delivery never touches the database, so a
slow provider cannot hold a request transaction open.
"""

import asyncio
import logging

from portivo.config import settings
from portivo.middleware.logging_config import configure_logging
from portivo.middleware.metrics import notification_failures_total, notifications_sent_total
from portivo.services.email_service import EmailDeliveryError, ResendEmailSender
from portivo.services.notifications import Notification, NotificationQueue, QUEUE_KEY, RedisNotificationQueue

logger = logging.getLogger("worker")

MAX_DELIVERY_ATTEMPTS = 3


async def process_notification(
    notification: Notification,
    sender: ResendEmailSender,
    queue: NotificationQueue,
) -> bool:
    """Deliver one notification; re-queue it on failure. Returns True when sent."""
    notification.attempts += 1
    try:
        message_id = await sender.deliver(notification)
    except (EmailDeliveryError, KeyError, ValueError) as exc:
        notification_failures_total.labels(kind=notification.kind.value, stage="delivery").inc()
        if notification.attempts < MAX_DELIVERY_ATTEMPTS:
            logger.warning(
                "Delivery of %s to %s failed (attempt %d): %s; re-queued",
                notification.kind.value, notification.recipient_email, notification.attempts, exc,
            )
            await queue.push(notification)
        else:
            logger.error(
                "Giving up on %s to %s after %d attempts: %s",
                notification.kind.value, notification.recipient_email, notification.attempts, exc,
            )
        return False

    notifications_sent_total.labels(kind=notification.kind.value).inc()
    logger.info(
        "Delivered %s to %s (%s)", notification.kind.value, notification.recipient_email, message_id,
        extra={"kind": notification.kind.value, "notification_id": notification.id},
    )
    return True


async def main():
    """Block-pop the notification queue until cancelled."""
    configure_logging(settings.log_level, settings.log_format)
    queue = RedisNotificationQueue()
    sender = ResendEmailSender()
    logger.info("Worker started, listening on %s", QUEUE_KEY)

    try:
        while True:
            try:
                notification = await queue.pop(timeout=5)
                if notification is None:
                    continue
                await process_notification(notification, sender, queue)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Worker loop error: %s", exc, exc_info=True)
                await asyncio.sleep(2)
    finally:
        await queue.close()


if __name__ == "__main__":
    asyncio.run(main())
