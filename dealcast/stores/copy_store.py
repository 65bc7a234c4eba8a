"""Copy cache and quota counter store.

Two implementations of the same interface:
- RedisCopyStore: production; counters use a Lua script so check-and-increment is
  one atomic step across processes.
- MemoryCopyStore: single-process fallback when Redis is not configured (and tests).

Keys:
- copy:{rule_id}:{listing_id}:{fingerprint}  -> generated text (TTL)
- quota:{rule_id}:{YYYY-MM-DD}               -> generations reserved that day
- posted:{rule_id}:{kind}:{channel}:{listing} -> message id of the last publish (TTL)
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import time
from typing import Protocol

from dealcast.stores import redis as redis_store
from dealcast.stores.redis import PREFIX_COPY, PREFIX_POSTED, PREFIX_QUOTA

logger = logging.getLogger("uvicorn.error")

# KEYS[1]=counter, ARGV[1]=limit, ARGV[2]=ttl seconds. Returns new count or -1.
_RESERVE_LUA = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local limit = tonumber(ARGV[1])
if current >= limit then
  return -1
end
local n = redis.call('INCR', KEYS[1])
if n == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[2]))
end
return n
"""

# KEYS[1]=counter. Never goes below zero.
_RELEASE_LUA = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
if current > 0 then
  return redis.call('DECR', KEYS[1])
end
return 0
"""


def copy_key(rule_id: int, listing_id: str, fingerprint: str) -> str:
    return f"{PREFIX_COPY}{rule_id}:{listing_id}:{fingerprint}"


def quota_key(rule_id: int, day: str) -> str:
    return f"{PREFIX_QUOTA}{rule_id}:{day}"


def posted_key(rule_id: int, channel: str, listing_id: str) -> str:
    return f"{PREFIX_POSTED}{rule_id}:{channel}:{listing_id}"


class CopyStore(Protocol):
    async def get_copy(self, rule_id: int, listing_id: str, fingerprint: str) -> str | None: ...

    async def set_copy(self, rule_id: int, listing_id: str, fingerprint: str, text: str, ttl: int) -> None: ...

    async def reserve_quota(self, rule_id: int, day: str, limit: int, ttl: int) -> int | None: ...

    async def release_quota(self, rule_id: int, day: str) -> None: ...

    async def get_usage(self, rule_id: int, day: str) -> int: ...

    async def reset_quota(self, rule_id: int | None, day: str | None = None) -> int: ...

    async def invalidate_copy(self, rule_id: int | None, listing_id: str | None = None) -> int: ...

    async def acquire_lock(self, key: str, ttl: int) -> bool: ...

    async def release_lock(self, key: str) -> None: ...

    async def was_published(self, rule_id: int, channel: str, listing_id: str) -> bool: ...

    async def mark_published(self, rule_id: int, channel: str, listing_id: str, message_id: str, ttl: int) -> None: ...


class RedisCopyStore:
    """Copy store backed by the shared Redis client."""

    def __init__(self) -> None:
        self._reserve_script = None
        self._release_script = None
        self._scripts_client = None

    def _scripts(self):
        client = redis_store._get_redis()
        # Re-register when the client was swapped (tests, reconnects).
        if self._scripts_client is not client:
            self._reserve_script = client.register_script(_RESERVE_LUA)
            self._release_script = client.register_script(_RELEASE_LUA)
            self._scripts_client = client
        return self._reserve_script, self._release_script

    async def get_copy(self, rule_id: int, listing_id: str, fingerprint: str) -> str | None:
        return await redis_store.cache_get(copy_key(rule_id, listing_id, fingerprint))

    async def set_copy(self, rule_id: int, listing_id: str, fingerprint: str, text: str, ttl: int) -> None:
        await redis_store.cache_set(copy_key(rule_id, listing_id, fingerprint), text, ttl)

    async def reserve_quota(self, rule_id: int, day: str, limit: int, ttl: int) -> int | None:
        """Atomically take one slot of the day's quota.

        Returns:
            The new counter value, or None when the quota is exhausted.
        """
        if limit <= 0:
            return None
        reserve, _ = self._scripts()
        n = int(await reserve(keys=[quota_key(rule_id, day)], args=[limit, ttl]))
        return None if n < 0 else n

    async def release_quota(self, rule_id: int, day: str) -> None:
        _, release = self._scripts()
        await release(keys=[quota_key(rule_id, day)])

    async def get_usage(self, rule_id: int, day: str) -> int:
        value = await redis_store.cache_get(quota_key(rule_id, day))
        return int(value) if value else 0

    async def reset_quota(self, rule_id: int | None, day: str | None = None) -> int:
        rule_part = "*" if rule_id is None else str(rule_id)
        if day is not None and rule_id is not None:
            key = quota_key(rule_id, day)
            existed = await redis_store.cache_get(key) is not None
            await redis_store.cache_delete(key)
            return 1 if existed else 0
        return await redis_store.cache_delete_pattern(f"{PREFIX_QUOTA}{rule_part}:{day or '*'}")

    async def invalidate_copy(self, rule_id: int | None, listing_id: str | None = None) -> int:
        rule_part = "*" if rule_id is None else str(rule_id)
        return await redis_store.cache_delete_pattern(f"{PREFIX_COPY}{rule_part}:{listing_id or '*'}:*")

    async def acquire_lock(self, key: str, ttl: int) -> bool:
        return await redis_store.acquire_lock(key, ttl=ttl)

    async def release_lock(self, key: str) -> None:
        await redis_store.release_lock(key)

    async def was_published(self, rule_id: int, channel: str, listing_id: str) -> bool:
        return await redis_store.cache_get(posted_key(rule_id, channel, listing_id)) is not None

    async def mark_published(self, rule_id: int, channel: str, listing_id: str, message_id: str, ttl: int) -> None:
        await redis_store.cache_set(posted_key(rule_id, channel, listing_id), message_id, ttl)


class MemoryCopyStore:
    """In-process copy store. Not shared across workers."""

    def __init__(self) -> None:
        self._values: dict[str, tuple[str, float | None]] = {}
        self._lock = asyncio.Lock()

    def _get(self, key: str) -> str | None:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            del self._values[key]
            return None
        return value

    def _set(self, key: str, value: str, ttl: int | None) -> None:
        expires_at = time.monotonic() + ttl if ttl else None
        self._values[key] = (value, expires_at)

    def _delete_pattern(self, pattern: str) -> int:
        keys = [k for k in self._values if fnmatch.fnmatchcase(k, pattern)]
        for k in keys:
            del self._values[k]
        return len(keys)

    async def get_copy(self, rule_id: int, listing_id: str, fingerprint: str) -> str | None:
        return self._get(copy_key(rule_id, listing_id, fingerprint))

    async def set_copy(self, rule_id: int, listing_id: str, fingerprint: str, text: str, ttl: int) -> None:
        self._set(copy_key(rule_id, listing_id, fingerprint), text, ttl)

    async def reserve_quota(self, rule_id: int, day: str, limit: int, ttl: int) -> int | None:
        if limit <= 0:
            return None
        key = quota_key(rule_id, day)
        async with self._lock:
            current = int(self._get(key) or 0)
            if current >= limit:
                return None
            entry = self._values.get(key)
            expires_at = entry[1] if entry else time.monotonic() + ttl
            self._values[key] = (str(current + 1), expires_at)
            return current + 1

    async def release_quota(self, rule_id: int, day: str) -> None:
        key = quota_key(rule_id, day)
        async with self._lock:
            current = int(self._get(key) or 0)
            if current > 0:
                self._values[key] = (str(current - 1), self._values[key][1])

    async def get_usage(self, rule_id: int, day: str) -> int:
        return int(self._get(quota_key(rule_id, day)) or 0)

    async def reset_quota(self, rule_id: int | None, day: str | None = None) -> int:
        rule_part = "*" if rule_id is None else str(rule_id)
        async with self._lock:
            return self._delete_pattern(f"{PREFIX_QUOTA}{rule_part}:{day or '*'}")

    async def invalidate_copy(self, rule_id: int | None, listing_id: str | None = None) -> int:
        rule_part = "*" if rule_id is None else str(rule_id)
        return self._delete_pattern(f"{PREFIX_COPY}{rule_part}:{listing_id or '*'}:*")

    async def acquire_lock(self, key: str, ttl: int) -> bool:
        lock_key = f"lock:{key}"
        async with self._lock:
            if self._get(lock_key) is not None:
                return False
            self._set(lock_key, "1", ttl)
            return True

    async def release_lock(self, key: str) -> None:
        self._values.pop(f"lock:{key}", None)

    async def was_published(self, rule_id: int, channel: str, listing_id: str) -> bool:
        return self._get(posted_key(rule_id, channel, listing_id)) is not None

    async def mark_published(self, rule_id: int, channel: str, listing_id: str, message_id: str, ttl: int) -> None:
        self._set(posted_key(rule_id, channel, listing_id), message_id, ttl)


_redis_store: RedisCopyStore | None = None
_memory_store: MemoryCopyStore | None = None


def get_copy_store() -> CopyStore:
    """Redis-backed store when Redis is up, otherwise a process-local one."""
    global _redis_store, _memory_store
    if redis_store.is_redis_initialized():
        if _redis_store is None:
            _redis_store = RedisCopyStore()
        return _redis_store
    if _memory_store is None:
        logger.warning("Redis not initialized; using in-process copy store (quotas are per-process)")
        _memory_store = MemoryCopyStore()
    return _memory_store
