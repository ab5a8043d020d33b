"""Redis client management and the link projection cache.

This module provides a singleton Redis client with connection management
plus :class:`LinkProjectionCache`, the read-through cache in front of the
hot-path projection query.

Flow Diagram — LinkProjectionCache.get()
========================================
::
    ┌─────────────┐
    │  resolver   │
    │  lookup     │
    └──────┬──────┘
           ▼
    ┌─────────────┐   Redis error
    │ GET link:*  │ ─────────────▶ warning logged, treated as a miss
    └──────┬──────┘
    HIT?   │
    ┌──────┴──────┐
    │ NO          │ YES
    ▼             ▼
┌─────────┐  ┌──────────────┐
│ return  │  │ validate JSON│ ── corrupt ──▶ delete key, miss
│ None    │  │ projection   │
└─────────┘  └──────────────┘

How to Use
===========
**Step 1 — Use in FastAPI endpoints**::
    @app.get("/links")
    async def get_links(cache: redis.Redis = Depends(get_redis)):
        ...

**Step 2 — Wrap the client for projections**::
    projections = LinkProjectionCache(client, ttl_seconds=300)
    await projections.set(projection)
    await projections.invalidate("Ab3xQ9")

**Step 3 — Cleanup on shutdown**::
    await close_redis()

Key Behaviours
===============
- Redis client is created lazily on first access and reused.
- Only links without a click limit are cached; their projection cannot go
  stale through redirects alone.
- Every mutation of a link invalidates its key.
- Redis being down never fails a request; the store is the source of truth.

Functions:
    get_redis():  FastAPI dependency for the Redis client.
    close_redis():  Cleanup function for shutdown.
"""

import logging

import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import RedisError

from app.config import get_settings
from app.enums import CacheStatus
from app.metrics import LINK_CACHE_LOOKUPS_TOTAL
from app.schemas import LinkProjection

__all__ = ["close_redis", "get_redis", "LinkProjectionCache"]

settings = get_settings()

logger = logging.getLogger(__name__)

redis_client: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    global redis_client
    if redis_client is None:
        redis_client = redis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
        )
    return redis_client


async def close_redis() -> None:
    global redis_client
    if redis_client is not None:
        await redis_client.aclose()
        redis_client = None


class LinkProjectionCache:
    """JSON projections keyed by short code."""

    KEY_PREFIX = "link:"

    def __init__(self, client: redis.Redis | None, ttl_seconds: int) -> None:
        self._client = client
        self._ttl = ttl_seconds

    @classmethod
    def key(cls, code: str) -> str:
        return f"{cls.KEY_PREFIX}{code}"

    @staticmethod
    def is_cacheable(projection: LinkProjection) -> bool:
        return not projection.has_click_limit

    async def get(self, code: str) -> LinkProjection | None:
        if self._client is None:
            LINK_CACHE_LOOKUPS_TOTAL.labels(cache_status=CacheStatus.BYPASS.value).inc()
            return None

        try:
            cached = await self._client.get(self.key(code))
        except RedisError:
            logger.warning(f"Cache read failed for short code: {code}", exc_info=True)
            LINK_CACHE_LOOKUPS_TOTAL.labels(cache_status=CacheStatus.BYPASS.value).inc()
            return None

        if not cached:
            LINK_CACHE_LOOKUPS_TOTAL.labels(cache_status=CacheStatus.MISS.value).inc()
            return None

        try:
            projection = LinkProjection.model_validate_json(cached)
        except ValidationError:
            logger.error(f"Cache deserialization error for {code}; dropping entry")
            await self.invalidate(code)
            LINK_CACHE_LOOKUPS_TOTAL.labels(cache_status=CacheStatus.MISS.value).inc()
            return None

        LINK_CACHE_LOOKUPS_TOTAL.labels(cache_status=CacheStatus.HIT.value).inc()
        return projection

    async def set(self, projection: LinkProjection) -> None:
        if self._client is None or not self.is_cacheable(projection):
            return
        try:
            await self._client.set(self.key(projection.short_code), projection.model_dump_json(), ex=self._ttl)
        except RedisError:
            logger.warning(f"Cache write failed for short code: {projection.short_code}", exc_info=True)

    async def invalidate(self, *codes: str | None) -> None:
        keys = [self.key(code) for code in codes if code]
        if self._client is None or not keys:
            return
        try:
            await self._client.delete(*keys)
        except RedisError:
            logger.warning(f"Cache invalidation failed for: {', '.join(keys)}", exc_info=True)
