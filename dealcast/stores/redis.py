"""Redis store for caching, counters and distributed locks.

Handles:
- Caching with TTL policies
- Distributed locks (prevent duplicate in-flight model calls)
- Atomic per-day quota counters (Lua check-and-increment)

TTL policies:
- Generated copy: 24 hours (COPY_CACHE_TTL_SECONDS)
- Quota counters: until end of the quota day
- Copy generation locks: LLM timeout plus a margin (at least COPY_LOCK_TTL_SECONDS)
- Publish history: PUBLISH_DEDUPE_HOURS
"""

import logging

import redis.asyncio as redis

from dealcast.settings import get_settings

# TTL constants (in seconds)
TTL_COPY_LOCK = 60  # 1 minute

# Key prefixes
PREFIX_COPY = "copy:"
PREFIX_QUOTA = "quota:"
PREFIX_LOCK = "lock:"
PREFIX_POSTED = "posted:"

# Redis client (initialized on startup)
_redis: redis.Redis | None = None
logger = logging.getLogger("uvicorn.error")


async def init_redis(client: redis.Redis | None = None) -> None:
    """Initialize Redis connection.

    Args:
        client: Optional pre-built client (tests inject fakeredis).
    """
    global _redis
    if client is not None:
        _redis = client
        return
    settings = get_settings()
    _redis = redis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
    )
    # Validate connectivity early (especially for `rediss://` in production).
    await _redis.ping()
    logger.info("Redis connected")


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


def _get_redis() -> redis.Redis:
    """Get Redis client instance."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis


def is_redis_initialized() -> bool:
    return _redis is not None


# ============================================================
# Generic cache operations
# ============================================================


async def cache_get(key: str) -> str | None:
    """Get value from cache.

    Args:
        key: Cache key.

    Returns:
        Cached value or None if not found.
    """
    return await _get_redis().get(key)


async def cache_set(key: str, value: str, ttl: int) -> None:
    """Set value in cache with TTL.

    Args:
        key: Cache key.
        value: Value to cache.
        ttl: Time-to-live in seconds.
    """
    await _get_redis().setex(key, ttl, value)


async def cache_delete(key: str) -> None:
    await _get_redis().delete(key)


async def cache_delete_pattern(pattern: str) -> int:
    """Delete every key matching a glob pattern (SCAN, never KEYS).

    Returns:
        Number of keys deleted.
    """
    client = _get_redis()
    deleted = 0
    batch: list[str] = []
    async for key in client.scan_iter(match=pattern, count=500):
        batch.append(key)
        if len(batch) >= 500:
            deleted += await client.delete(*batch)
            batch = []
    if batch:
        deleted += await client.delete(*batch)
    return deleted


# ============================================================
# Distributed locks
# ============================================================


async def acquire_lock(key: str, ttl: int = TTL_COPY_LOCK) -> bool:
    """Acquire a distributed lock.

    Args:
        key: Lock key (e.g., copy fingerprint).
        ttl: Lock timeout in seconds.

    Returns:
        True if lock acquired, False if already locked.
    """
    lock_key = f"{PREFIX_LOCK}{key}"
    # SET NX (only if not exists) with TTL
    result = await _get_redis().set(lock_key, "1", nx=True, ex=ttl)
    return result is not None


async def release_lock(key: str) -> None:
    """Release a distributed lock.

    Args:
        key: Lock key.
    """
    await cache_delete(f"{PREFIX_LOCK}{key}")
