import json
from typing import Any, Dict, Optional

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from decision_explorer.core.config import get_settings

logger = structlog.get_logger(__name__)

# Session.info key holding keys to drop once the transaction commits
PENDING_INVALIDATIONS = "cache_invalidations"


class CacheManager:
    """Read-through JSON cache on Redis; every failure degrades to a cache miss"""

    def __init__(self, redis_client: Optional[redis.Redis] = None, enabled: Optional[bool] = None):
        self.redis_client = redis_client
        self._enabled = enabled

    @property
    def enabled(self) -> bool:
        if self._enabled is not None:
            return self._enabled
        return get_settings().redis.CACHE_ENABLED

    async def _get_redis_client(self) -> redis.Redis:
        """Get Redis client for caching"""
        if not self.redis_client:
            settings = get_settings()
            self.redis_client = redis.from_url(
                str(settings.redis.REDIS_URL),
                decode_responses=True,
                socket_timeout=settings.redis.REDIS_TIMEOUT,
                socket_connect_timeout=settings.redis.REDIS_TIMEOUT,
            )
        return self.redis_client

    async def get(self, cache_key: str) -> Optional[Dict[str, Any]]:
        if not self.enabled:
            return None
        try:
            redis_client = await self._get_redis_client()
            cached_data = await redis_client.get(cache_key)
            if cached_data:
                logger.debug("Cache hit", cache_key=cache_key)
                return json.loads(cached_data)
            return None
        except (redis.RedisError, OSError, ValueError) as e:
            logger.warning("Cache retrieval failed", cache_key=cache_key, error=str(e))
            return None

    async def set(self, cache_key: str, data: Dict[str, Any], ttl: Optional[int] = None) -> None:
        if not self.enabled:
            return
        ttl = ttl or get_settings().redis.PATHWAY_CACHE_TTL
        try:
            redis_client = await self._get_redis_client()
            await redis_client.setex(cache_key, ttl, json.dumps(data, default=str))
            logger.debug("Value cached", cache_key=cache_key, ttl=ttl)
        except (redis.RedisError, OSError) as e:
            logger.warning("Cache storage failed", cache_key=cache_key, error=str(e))

    async def invalidate(self, cache_key: str) -> None:
        if not self.enabled:
            return
        try:
            redis_client = await self._get_redis_client()
            await redis_client.delete(cache_key)
            logger.debug("Cache invalidated", cache_key=cache_key)
        except (redis.RedisError, OSError) as e:
            logger.warning("Cache invalidation failed", cache_key=cache_key, error=str(e))

    async def invalidate_after_commit(self, db: AsyncSession, cache_key: str) -> None:
        """
        Drop the key now and again once the session commits.

        A reader that misses the cache before the commit lands still sees the
        old row and re-caches it; the second delete clears that entry.
        """
        await self.invalidate(cache_key)
        db.info.setdefault(PENDING_INVALIDATIONS, {})[cache_key] = self

    async def ping(self) -> bool:
        redis_client = await self._get_redis_client()
        return await redis_client.ping()

    async def close(self) -> None:
        if self.redis_client:
            await self.redis_client.aclose()
            self.redis_client = None


async def invalidate_committed(session: AsyncSession) -> None:
    """Run the invalidations a committed session deferred"""
    pending: Dict[str, CacheManager] = session.info.pop(PENDING_INVALIDATIONS, {})
    for cache_key, cache in pending.items():
        await cache.invalidate(cache_key)


def discard_pending(session: AsyncSession) -> None:
    session.info.pop(PENDING_INVALIDATIONS, None)


# Global cache manager instance
cache_manager = CacheManager()


__all__ = ["CacheManager", "cache_manager", "invalidate_committed", "discard_pending"]
