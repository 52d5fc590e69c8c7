"""
Redis Cache Module

Namespaced JSON cache used to share exchange-rate quotes between process
instances. The Redis client is created by `connect_redis` and owned by the
caller.
"""

import json
from datetime import timedelta
from typing import Any, Optional, Union

from redis.asyncio import ConnectionPool, Redis

from fulfillment.config.logging import get_logger
from fulfillment.config.settings import RedisSettings

logger = get_logger(__name__)


async def connect_redis(settings: RedisSettings) -> Redis:
    """Create a pooled Redis client and verify it answers"""
    pool = ConnectionPool.from_url(
        settings.get_url(),
        max_connections=settings.max_connections,
        socket_timeout=settings.socket_timeout,
        decode_responses=settings.decode_responses,
    )
    client = Redis(connection_pool=pool)

    try:
        await client.ping()
        logger.info("Redis connection established")
    except Exception as e:
        logger.error("Redis connection failed", error=str(e))
        await client.aclose()
        await pool.disconnect()
        raise

    return client


class CacheManager:
    """
    Cache manager with namespace support and automatic key generation.

    Example:
        cache = CacheManager(client, "rates", default_ttl=3600)
        await cache.set("quotes", quotes)
        quotes = await cache.get("quotes")
    """

    def __init__(self, client: Redis, namespace: str, default_ttl: int = 3600):
        self.client = client
        self.namespace = namespace
        self.default_ttl = default_ttl

    def _key(self, key: str) -> str:
        """Generate namespaced key"""
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        """
        Get value from cache.

        Returns:
            Cached value or None if not found
        """
        value = await self.client.get(self._key(key))

        if value is None:
            return None

        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[Union[int, timedelta]] = None,
    ) -> bool:
        """
        Set value in cache.

        Args:
            key: Cache key
            value: Value to cache (will be JSON serialized)
            ttl: Time-to-live in seconds or timedelta

        Returns:
            True if successful
        """
        try:
            serialized = json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            logger.warning("Failed to serialize value for cache", key=key, error=str(e))
            return False

        ttl = ttl or self.default_ttl
        if isinstance(ttl, timedelta):
            ttl = int(ttl.total_seconds())
        await self.client.setex(self._key(key), ttl, serialized)
        return True
