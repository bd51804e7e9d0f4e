"""
Redis connection and JSON read-through cache.
Redis is optional at runtime: cache misses and connection errors fall through
to the underlying query.
"""
import json
import logging

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "pushops:"

_redis_client = None


async def get_redis():
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from src.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client


async def cached_json(cache_key: str, query_fn, ttl: int) -> dict:
    """Return the cached JSON value for cache_key, or run query_fn and cache it."""
    full_key = f"{CACHE_KEY_PREFIX}{cache_key}"
    try:
        redis = await get_redis()
        cached = await redis.get(full_key)
        if cached:
            raw = cached.decode() if isinstance(cached, bytes) else str(cached)
            return json.loads(raw)
    except Exception as e:
        logger.debug("Cache read failed for %s: %s", cache_key, str(e))

    result = await query_fn()

    try:
        redis = await get_redis()
        await redis.set(full_key, json.dumps(result, default=str), ex=ttl)
    except Exception as e:
        logger.debug("Cache write failed for %s: %s", cache_key, str(e))

    return result
