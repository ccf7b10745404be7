"""
Redis Cache Module

Response caching for the analytics API with:
- Connection pooling
- JSON serialization
- TTL management
- Namespace invalidation

Redis is optional. When it is disabled, not yet connected, or failing, every
lookup is a miss and every write is skipped, so the API keeps serving from
the database.
"""

import json
from datetime import timedelta
from typing import Any, Optional, Union

import structlog
from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import RedisError

from booking_cdc.config import get_settings

logger = structlog.get_logger(__name__)

# Global Redis connection
_redis_pool: Optional[ConnectionPool] = None
_redis_client: Optional[Redis] = None


async def init_redis() -> Optional[Redis]:
    """Initialize Redis connection pool; returns None when caching is unavailable"""
    global _redis_pool, _redis_client

    if _redis_client is not None:
        return _redis_client

    settings = get_settings()
    if not settings.redis.enabled:
        logger.info("Redis caching disabled")
        return None

    pool = ConnectionPool.from_url(
        settings.redis.get_url(),
        max_connections=settings.redis.max_connections,
        socket_timeout=settings.redis.socket_timeout,
        decode_responses=settings.redis.decode_responses,
    )
    client = Redis(connection_pool=pool)

    try:
        await client.ping()
    except (RedisError, OSError) as e:
        logger.warning("Redis unavailable, caching disabled", error=str(e))
        await pool.disconnect()
        return None

    _redis_pool, _redis_client = pool, client
    logger.info("Redis connection established")
    return _redis_client


async def close_redis() -> None:
    """Close Redis connection pool"""
    global _redis_pool, _redis_client

    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None

    if _redis_pool:
        await _redis_pool.disconnect()
        _redis_pool = None
        logger.info("Redis connection closed")


def get_redis() -> Optional[Redis]:
    """Get Redis client instance, None when not connected"""
    return _redis_client


async def check_redis_health() -> dict:
    client = get_redis()
    if client is None:
        return {"status": "disabled"}
    try:
        await client.ping()
        return {"status": "healthy"}
    except (RedisError, OSError) as e:
        return {"status": "unhealthy", "error": str(e)}


async def cache_get(key: str) -> Optional[Any]:
    """
    Get value from cache.

    Args:
        key: Cache key

    Returns:
        Cached value or None if not found
    """
    client = get_redis()
    if client is None:
        return None

    try:
        value = await client.get(key)
    except RedisError as e:
        logger.warning("Cache read failed", key=key, error=str(e))
        return None

    if value is None:
        return None

    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


async def cache_set(
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
        True if the value was stored
    """
    client = get_redis()
    if client is None:
        return False

    try:
        serialized = json.dumps(value, default=str)
    except (TypeError, ValueError) as e:
        logger.warning("Failed to serialize value for cache", key=key, error=str(e))
        return False

    try:
        if ttl:
            if isinstance(ttl, timedelta):
                ttl = int(ttl.total_seconds())
            await client.setex(key, ttl, serialized)
        else:
            await client.set(key, serialized)
    except RedisError as e:
        logger.warning("Cache write failed", key=key, error=str(e))
        return False

    return True


async def cache_delete_pattern(pattern: str) -> int:
    """Delete all keys matching pattern"""
    client = get_redis()
    if client is None:
        return 0

    try:
        keys = [key async for key in client.scan_iter(match=pattern)]
        if not keys:
            return 0
        return await client.delete(*keys)
    except RedisError as e:
        logger.warning("Cache invalidation failed", pattern=pattern, error=str(e))
        return 0


class CacheManager:
    """
    Cache manager with namespace support and automatic key generation.

    Example:
        cache = CacheManager("snapshots")
        await cache.set(window.key, payload, ttl=60)
        payload = await cache.get(window.key)
    """

    def __init__(self, namespace: str, default_ttl: int = 3600):
        self.namespace = namespace
        self.default_ttl = default_ttl

    def _key(self, key: str) -> str:
        """Generate namespaced key"""
        return f"booking_cdc:{self.namespace}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        return await cache_get(self._key(key))

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        return await cache_set(self._key(key), value, ttl or self.default_ttl)

    async def invalidate_all(self) -> int:
        """Invalidate all keys in namespace"""
        return await cache_delete_pattern(self._key("*"))


snapshot_cache = CacheManager("snapshots", default_ttl=60)
