"""Redis client and small read-through cache helpers.

Provides:
- create_redis: Redis client from a URL with decode_responses.
- _cache_key: Namespaced cache key.
- cached_lookup: Read-through cache for slow, rarely-changing lookups (channel slugs).
  Only found values are cached, so a channel created later becomes visible at once.
"""
import json
import logging
from typing import Any, Callable, Optional

import redis

logger = logging.getLogger(__name__)


def create_redis(url: str) -> redis.Redis:
    """Return a Redis client configured from a URL.

    Returns:
        redis.Redis: Client with decode_responses=True.
    """
    return redis.from_url(url, decode_responses=True)


def _cache_key(namespace: str, key: Any) -> str:
    return f"kb:cache:{namespace}:{key}"


def cached_lookup(
    r: Optional[redis.Redis],
    namespace: str,
    key: Any,
    loader: Callable[[], Any],
    ttl_seconds: int,
) -> Any:
    """Return the cached value for (namespace, key), loading and storing it on a miss.

    Cache failures are logged and fall through to the loader.

    Args:
        r: Redis client, or None to disable caching.
        namespace: Logical cache namespace.
        key: Lookup key within the namespace.
        loader: Callable producing the value; a None result is not cached.
        ttl_seconds: Expiry for stored values.
    """
    if r is None:
        return loader()
    ck = _cache_key(namespace, key)
    try:
        raw = r.get(ck)
        if raw is not None:
            return json.loads(raw)
    except (redis.RedisError, ValueError):
        logger.warning("Cache read failed for %s", ck, exc_info=True)

    value = loader()
    if value is not None:
        try:
            r.setex(ck, ttl_seconds, json.dumps(value))
        except redis.RedisError:
            logger.warning("Cache write failed for %s", ck, exc_info=True)
    return value
