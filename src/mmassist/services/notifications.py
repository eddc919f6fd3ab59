import json
import logging
import time
from typing import Any, Dict, List, Optional, Protocol

import httpx
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..settings import get_settings
from .redis import RedisPublisher, get_redis_publisher

logger = logging.getLogger(__name__)

START_EVENT = "universal.start"
RESULT_EVENT = "streaming.response"


def channel_key(thread_id: str) -> str:
    return f"chat.{thread_id}"


def start_event(model: str) -> Dict[str, Any]:
    return {"type": START_EVENT, "model": model, "timestamp": time.time()}


class NotificationChannel(Protocol):
    async def publish_batch(self, events: List[Dict[str, Any]], channel_key: str) -> None:
        ...


class LoggingNotificationChannel:
    """Used when no broker is configured; events only reach the log."""

    async def publish_batch(self, events: List[Dict[str, Any]], channel_key: str) -> None:
        logger.debug("Notification batch (%d) on %s", len(events), channel_key)


class RedisNotificationChannel:
    """Publishes each event of a batch on the Redis channel named by the key."""

    def __init__(self, publisher: RedisPublisher) -> None:
        self._publisher = publisher

    async def publish_batch(self, events: List[Dict[str, Any]], channel_key: str) -> None:
        for event in events:
            await self._publisher.publish(channel_key, event)
        logger.debug("Published %d event(s) on %s", len(events), channel_key)

    async def close(self) -> None:
        await self._publisher.close()


# Lazy singleton, connected on first use
_channel_instance: Optional[NotificationChannel] = None


async def get_notification_channel() -> NotificationChannel:
    """Return the Redis channel when Redis is configured and reachable, else a logging one."""
    global _channel_instance
    if _channel_instance is not None:
        return _channel_instance
    publisher = get_redis_publisher()
    if publisher is None:
        _channel_instance = LoggingNotificationChannel()
        return _channel_instance
    try:
        await publisher.connect()
        _channel_instance = RedisNotificationChannel(publisher)
    except (RedisConnectionError, RedisTimeoutError, ConnectionError, TimeoutError) as e:
        logger.warning("Notification channel unavailable (Redis): %s", e)
        _channel_instance = LoggingNotificationChannel()
    return _channel_instance


async def close_notification_channel() -> None:
    """Close the Redis connection behind the channel. Idempotent."""
    global _channel_instance
    if isinstance(_channel_instance, RedisNotificationChannel):
        await _channel_instance.close()
        logger.debug("Notification channel (Redis) closed")
    _channel_instance = None


async def send_result_webhook(url: str, payload: Dict[str, Any], timeout: Optional[float] = None) -> bool:
    """POST the chat result to a caller-supplied webhook. Failures are only logged."""
    timeout = timeout or get_settings().webhook_timeout_seconds
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(
                url,
                content=json.dumps(payload, default=str),
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()
    except httpx.HTTPError as e:
        logger.error("Webhook delivery to %s failed: %s", url, e)
        return False
    logger.info("Webhook delivered to %s", url)
    return True
