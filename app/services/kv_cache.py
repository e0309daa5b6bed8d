"""Short-lived key-value cache backed by Redis."""

from __future__ import annotations

import logging

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class RedisCache:
    """Best-effort string cache; any Redis failure behaves like a miss."""

    def __init__(self, client: redis.Redis | None) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str | None) -> "RedisCache":
        if not url:
            logger.info("REDIS_URL is not set; trending responses will not be cached")
            return cls(None)
        client = redis.from_url(
            url,
            decode_responses=True,
            encoding="utf-8",
            socket_connect_timeout=5,
            socket_timeout=5,
            health_check_interval=30,
        )
        return cls(client)

    async def get(self, key: str) -> str | None:
        if self._client is None:
            return None
        try:
            value = await self._client.get(key)
        except (redis.RedisError, OSError) as exc:
            logger.warning("Failed to get key '%s' from Redis: %s", key, exc)
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str, ttl: int) -> bool:
        """Store ``value`` under ``key`` for ``ttl`` seconds."""

        if self._client is None:
            return False
        try:
            result = await self._client.setex(key, ttl, value)
        except (redis.RedisError, OSError) as exc:
            logger.warning("Failed to set key '%s' in Redis: %s", key, exc)
            return False
        return bool(result)

    async def close(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.aclose()
        except (redis.RedisError, OSError) as exc:
            logger.warning("Failed to close Redis client: %s", exc)
        finally:
            self._client = None
