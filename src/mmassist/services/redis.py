import json
import logging
from typing import Any, Dict

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..settings import get_settings

logger = logging.getLogger(__name__)


class RedisPublisher:
    """Publishes JSON events on Redis pub/sub channels."""

    def __init__(self, url: str) -> None:
        """Create a publisher for the given URL (e.g. redis://localhost:6379/0)."""
        self._url = url
        self._client: Redis | None = None

    async def connect(self) -> None:
        """Establish connection to Redis. Idempotent."""
        if self._client is not None:
            return
        self._client = Redis.from_url(
            self._url,
            decode_responses=True,
        )
        try:
            await self._client.ping()
            logger.info("Redis connection established: %s", self._url.split("@")[-1])
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ping failed: %s", e)
            await self._client.aclose()
            self._client = None
            raise

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    @property
    def client(self) -> Redis | None:
        return self._client

    async def publish(self, channel: str, event: Dict[str, Any]) -> int:
        """Publish one event. Returns the number of receivers, 0 on failure."""
        if self._client is None:
            return 0
        try:
            return int(await self._client.publish(channel, json.dumps(event, default=str)))
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis publish on %s failed: %s", channel, e)
            return 0


def get_redis_publisher() -> RedisPublisher | None:
    """Return a publisher if redis_url is configured, else None."""
    settings = get_settings()
    if not settings.redis_url or not settings.redis_url.strip():
        return None
    return RedisPublisher(settings.redis_url.strip())
