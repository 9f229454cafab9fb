"""
Best-effort JSON cache for read aggregates.
A cache failure is logged and treated as a miss; it never fails a request.
"""

import logging
from typing import Optional, Dict, Any

from marketplace.core.config import config
from marketplace.db.redis_client import redis_manager

logger = logging.getLogger(__name__)


class CacheService:
    """Thin wrapper over the Redis manager with key helpers and TTLs from config."""

    def __init__(self):
        self.cache_config = None

    async def _get_configs(self):
        if not self.cache_config:
            self.cache_config = await config.get_cache_config()

    @staticmethod
    def service_review_stats_key(service_id: int) -> str:
        return f"reviews:service:{service_id}:stats"

    @staticmethod
    def event_rsvp_stats_key(event_id: int) -> str:
        return f"rsvps:event:{event_id}:stats"

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        await self._get_configs()
        if not self.cache_config["enable_cache"]:
            return None
        try:
            cached = await redis_manager.get_json(key)
            if cached is not None:
                logger.debug(f"Cache hit: {key}")
            return cached
        except Exception as e:
            logger.error(f"Cache read failed for {key}: {e}")
            return None

    async def set(self, key: str, value: Dict[str, Any], ttl_name: str) -> None:
        await self._get_configs()
        if not self.cache_config["enable_cache"]:
            return
        try:
            await redis_manager.set_json(key, value, self.cache_config[ttl_name])
        except Exception as e:
            logger.error(f"Cache write failed for {key}: {e}")

    async def invalidate(self, *keys: str) -> None:
        await self._get_configs()
        if not self.cache_config["enable_cache"]:
            return
        for key in keys:
            try:
                await redis_manager.delete(key)
            except Exception as e:
                logger.error(f"Cache invalidation failed for {key}: {e}")


# Global cache service instance
cache_service = CacheService()
