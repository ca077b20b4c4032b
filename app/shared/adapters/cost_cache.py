"""
Cost Analysis Result Caching

Cost analysis re-downloads and re-parses every selected export, so results
are cached per customer, period and day:
1. Redis backend when REDIS_URL is configured (shared across instances)
2. In-memory backend otherwise
3. TTL from COST_ANALYSIS_CACHE_TTL_SECONDS

The cache is best-effort: backend failures are logged and treated as misses.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError

from app.schemas.costs import CostAnalysis
from app.shared.core.config import get_settings

logger = structlog.get_logger()

KEY_PREFIX = "costlens:cost-analysis"


class CacheBackend(ABC):
    """Abstract base class for cache backends."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        pass

    @abstractmethod
    async def delete_pattern(self, pattern: str) -> int:
        """Delete keys matching a trailing-* pattern. Returns count deleted."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        pass


class InMemoryCache(CacheBackend):
    """
    Process-local cache for development and single-instance deployments.
    """

    def __init__(self):
        self._store: Dict[str, tuple[str, datetime]] = {}

    async def get(self, key: str) -> Optional[str]:
        if key not in self._store:
            return None

        value, expires_at = self._store[key]
        if datetime.now(timezone.utc) > expires_at:
            del self._store[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._store[key] = (value, datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds))

    async def delete_pattern(self, pattern: str) -> int:
        prefix = pattern.rstrip("*")
        to_delete = [k for k in self._store if k.startswith(prefix)]
        for k in to_delete:
            del self._store[k]
        return len(to_delete)

    async def health_check(self) -> bool:
        return True


class RedisCache(CacheBackend):
    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self._client: Optional[aioredis.Redis] = None

    def _get_client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5
            )
        return self._client

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._get_client().get(key)
        except aioredis.RedisError as e:
            logger.warning("redis_get_failed", key=key, error=str(e))
            return None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self._get_client().setex(key, ttl_seconds, value)
        except aioredis.RedisError as e:
            logger.warning("redis_set_failed", key=key, error=str(e))

    async def delete_pattern(self, pattern: str) -> int:
        client = self._get_client()
        try:
            deleted = 0
            async for key in client.scan_iter(match=pattern, count=100):
                deleted += await client.delete(key)
            return deleted
        except aioredis.RedisError as e:
            logger.warning("redis_delete_pattern_failed", pattern=pattern, error=str(e))
            return 0

    async def health_check(self) -> bool:
        try:
            return bool(await self._get_client().ping())
        except aioredis.RedisError:
            return False


class CostCache:
    """
    High-level caching API for cost analysis results.

    Usage:
        cache = await get_cost_cache()
        cached = await cache.get_analysis(customer_id, "mtd", 30, today)
        if cached is None:
            analysis = await service.analyze(...)
            await cache.set_analysis(customer_id, "mtd", 30, today, analysis)
    """

    def __init__(self, backend: CacheBackend, ttl_seconds: int = 900):
        self.backend = backend
        self.ttl_seconds = ttl_seconds

    def _key(self, customer_id: str, period: str, days: Optional[int], day: date) -> str:
        return f"{KEY_PREFIX}:{customer_id}:{period}:{days or '-'}:{day.isoformat()}"

    async def get_analysis(
        self, customer_id: str, period: str, days: Optional[int], day: date
    ) -> Optional[CostAnalysis]:
        cached = await self.backend.get(self._key(customer_id, period, days, day))
        if not cached:
            logger.debug("cache_miss", type="cost_analysis", customer_id=customer_id)
            return None
        try:
            analysis = CostAnalysis.model_validate_json(cached)
        except ValidationError:
            # Written by an older schema; recompute
            logger.warning("cache_entry_invalid", type="cost_analysis", customer_id=customer_id)
            return None
        logger.debug("cache_hit", type="cost_analysis", customer_id=customer_id)
        return analysis

    async def set_analysis(
        self, customer_id: str, period: str, days: Optional[int], day: date, analysis: CostAnalysis
    ) -> None:
        await self.backend.set(
            self._key(customer_id, period, days, day),
            analysis.model_dump_json(by_alias=True),
            self.ttl_seconds
        )

    async def invalidate_customer(self, customer_id: str) -> int:
        deleted = await self.backend.delete_pattern(f"{KEY_PREFIX}:{customer_id}:*")
        logger.info("cache_invalidated", customer_id=customer_id, keys_deleted=deleted)
        return deleted

    async def health_check(self) -> Dict[str, Any]:
        healthy = await self.backend.health_check()
        backend_type = "redis" if isinstance(self.backend, RedisCache) else "memory"
        return {"healthy": healthy, "backend": backend_type, "ttl_seconds": self.ttl_seconds}


_cache_instance: Optional[CostCache] = None


async def get_cost_cache() -> CostCache:
    """
    Uses Redis if REDIS_URL is configured and reachable, otherwise in-memory.
    """
    global _cache_instance

    if _cache_instance is None:
        settings = get_settings()
        backend: CacheBackend
        if settings.REDIS_URL:
            backend = RedisCache(settings.REDIS_URL)
            if await backend.health_check():
                logger.info("cost_cache_initialized", backend="redis")
            else:
                logger.warning("redis_unhealthy_using_memory")
                backend = InMemoryCache()
        else:
            backend = InMemoryCache()
            logger.info("cost_cache_initialized", backend="memory")

        _cache_instance = CostCache(backend, ttl_seconds=settings.COST_ANALYSIS_CACHE_TTL_SECONDS)

    return _cache_instance
