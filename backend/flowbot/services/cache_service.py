# /flowbot/services/cache_service.py

import logging
from typing import Optional
import redis.asyncio as redis

from flowbot.config.settings import settings
from flowbot.utils.circuit_breaker import CircuitBreaker
from flowbot.utils.metrics import cache_operations

# Redis-backed key/value store with per-key expiry. Every failure is logged,
# counted and degraded to "absent" (reads) or a no-op (writes), so a Redis
# outage never aborts a conversation mid-flight.

logger = logging.getLogger(__name__)


class CacheService:
    def __init__(self, redis_url: str):
        try:
            self.redis_pool = redis.ConnectionPool.from_url(redis_url, max_connections=20)
            self.redis = redis.Redis(connection_pool=self.redis_pool)
        except Exception as e:
            logger.critical(f"Failed to configure Redis at {redis_url}: {e}")
            self.redis = None
        self.circuit_breaker = CircuitBreaker("redis")

    async def get(self, key: str) -> Optional[str]:
        if not self.redis: return None
        try:
            result = await self.circuit_breaker.call(self.redis.get, key)
            cache_operations.labels(operation="get", status="hit" if result else "miss").inc()
            if result is None:
                return None
            return result.decode('utf-8') if isinstance(result, bytes) else str(result)
        except Exception as e:
            cache_operations.labels(operation="get", status="error").inc()
            logger.warning(f"Cache get failed for key {key}: {e}")
            return None

    async def set(self, key: str, value: str, ttl: int):
        if not self.redis: return
        try:
            await self.circuit_breaker.call(self.redis.set, key, value, ex=ttl)
            cache_operations.labels(operation="set", status="success").inc()
        except Exception as e:
            cache_operations.labels(operation="set", status="error").inc()
            logger.warning(f"Cache set failed for key {key}: {e}")

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        """SET NX with expiry. Returns True when this call created the key."""
        if not self.redis: return True
        try:
            created = await self.circuit_breaker.call(self.redis.set, key, value, ex=ttl, nx=True)
            cache_operations.labels(operation="set_nx", status="success" if created else "exists").inc()
            return bool(created)
        except Exception as e:
            cache_operations.labels(operation="set_nx", status="error").inc()
            logger.warning(f"Cache set_if_absent failed for key {key}: {e}")
            return True

    async def delete(self, *keys: str):
        if not self.redis or not keys: return
        try:
            await self.circuit_breaker.call(self.redis.delete, *keys)
            cache_operations.labels(operation="delete", status="success").inc()
        except Exception as e:
            cache_operations.labels(operation="delete", status="error").inc()
            logger.warning(f"Cache delete failed for keys {keys}: {e}")

    async def ping(self) -> bool:
        if not self.redis: return False
        return bool(await self.redis.ping())

    async def close(self):
        if self.redis:
            await self.redis.aclose()


cache_service = CacheService(settings.redis_url)
