"""
Payment notifications via Redis pub/sub.

Emission happens after the ledger commit, is bounded by
NOTIFICATION_TIMEOUT_SECONDS and never raises: a lost notification is
logged and counted, the money movement stands.
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable

from paycore.core.config import settings
from paycore.core.metrics import notification_failures_counter
from paycore.db import redis as redis_module

logger = logging.getLogger(__name__)

PAYMENT_SUCCESS = "payment_success"
PAYMENT_FAILED = "payment_failed"
EARNINGS_CREDITED = "earnings_credited"
REFUND_PROCESSED = "refund_processed"
CHARGEBACK_RECEIVED = "chargeback_received"
TRANSACTION_VOIDED = "transaction_voided"
SUBSCRIPTION_ACTIVATED = "subscription_activated"
SUBSCRIPTION_RENEWED = "subscription_renewed"
SUBSCRIPTION_PAYMENT_FAILED = "subscription_payment_failed"
SUBSCRIPTION_SUSPENDED = "subscription_suspended"
SUBSCRIPTION_CANCELLED = "subscription_cancelled"
SUBSCRIPTION_EXPIRED = "subscription_expired"


@dataclass
class Notification:
    user_id: str
    notification_type: str
    data: Dict[str, Any] = field(default_factory=dict)


def channel_for(user_id: str) -> str:
    return f"user:{user_id}:payments"


async def publish_notification(notification: Notification) -> bool:
    """Publish one notification. Returns False instead of raising."""
    channel = channel_for(notification.user_id)
    message = json.dumps({
        "type": notification.notification_type,
        "data": notification.data,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }, default=str)

    try:
        client = redis_module.get_async_redis_client()
        if client is None:
            raise RuntimeError("No event loop for the Redis client")
        receivers = await asyncio.wait_for(
            client.publish(channel, message),
            timeout=settings.NOTIFICATION_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        logger.warning(
            f"Notification {notification.notification_type} to {channel} timed out "
            f"after {settings.NOTIFICATION_TIMEOUT_SECONDS}s"
        )
        notification_failures_counter.labels(notification_type=notification.notification_type).inc()
        return False
    except Exception as e:
        logger.error(
            f"Failed to publish notification {notification.notification_type} to {channel}: {e}",
            exc_info=True
        )
        notification_failures_counter.labels(notification_type=notification.notification_type).inc()
        return False

    logger.debug(f"Notification {notification.notification_type} published to {channel} ({receivers} subscriber(s))")
    return True


async def emit_notifications(notifications: Iterable[Notification]) -> int:
    """Background task body: publish everything, return how many went out"""
    sent = 0
    for notification in notifications:
        if await publish_notification(notification):
            sent += 1
    return sent
