# common/cache_utils.py
from __future__ import annotations

import asyncio
import hashlib
import os
import re
import urllib.parse
import uuid
from contextlib import asynccontextmanager
from functools import cache as memoize_cache
from typing import (
    TYPE_CHECKING,
    Any,
    TypeVar,
    cast,
)

import orjson
import redis.asyncio as aioredis
import structlog
from django.conf import settings
from django.core.cache import cache
from redis.exceptions import RedisError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

T = TypeVar("T")

log = structlog.get_logger(__name__).bind(component="CacheUtils")

_RELEASE_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
else
    return 0
end
"""


class LockUnavailable(Exception):
    """The distributed lock could not be acquired (Redis down or wait exceeded)."""


# ===================================================================
# 0.  Core helpers
# ===================================================================
def _dumps(obj: Any) -> bytes:
    return orjson.dumps(obj)


def _loads(raw: bytes) -> Any:
    return orjson.loads(raw)


# ===================================================================
# 1.  Cache-key builder
# ===================================================================
def build_cache_key(prefix: str, **params: Any) -> str:
    """
    Builds a stable, URL-safe cache key from a prefix and query parameters.
    Falls back to an MD5 hash when the resulting key would exceed 250 bytes.
    """
    HASH_SALT = "civstats-cache-salt"
    MEMCACHED_MAX = 250

    if not params:
        return prefix

    query = urllib.parse.urlencode(sorted(params.items()), doseq=True)
    key = f"{prefix}:{query}"

    if len(key) <= MEMCACHED_MAX:
        return key

    digest = hashlib.md5(f"{query}:{HASH_SALT}".encode(), usedforsecurity=False).hexdigest()
    cut = MEMCACHED_MAX - len(digest) - 1
    return f"{prefix[:cut]}:{digest}"


# ===================================================================
# 2.  Shared Redis client
# ===================================================================
def _redis_location() -> str:
    try:
        location = settings.CACHES["default"]["LOCATION"]
        if isinstance(location, list | tuple):
            return location[0] if location else "redis://127.0.0.1:6379/1"
        if isinstance(location, str) and location.startswith(("redis://", "rediss://", "unix://")):
            return re.split(r"[,;]", location)[0].strip()
    except (KeyError, AttributeError):
        pass
    return os.getenv("REDIS_URL", "redis://127.0.0.1:6379/1")


@memoize_cache
def get_redis_client() -> aioredis.Redis:
    return aioredis.from_url(_redis_location(), decode_responses=True)


# ===================================================================
# 3.  Distributed lock
# ===================================================================
@asynccontextmanager
async def redis_lock(
    key: str,
    *,
    timeout: int = 10,
    retry_delay: float = 0.05,
    max_wait: float | None = None,
) -> AsyncIterator[None]:
    """
    SET NX lock with a token-checked release.

    Raises `LockUnavailable` if Redis cannot be reached or `max_wait`
    seconds pass without acquiring it.
    """
    token = str(uuid.uuid4())
    redis = get_redis_client()
    lock_key = f"lock:{key}"
    deadline = None if max_wait is None else asyncio.get_running_loop().time() + max_wait

    try:
        while not await redis.set(lock_key, token, nx=True, ex=timeout):
            if deadline is not None and asyncio.get_running_loop().time() >= deadline:
                raise LockUnavailable(lock_key)
            await asyncio.sleep(retry_delay)
    except RedisError as exc:
        raise LockUnavailable(lock_key) from exc

    try:
        yield
    finally:
        try:
            await redis.eval(_RELEASE_SCRIPT, 1, lock_key, token)
        except RedisError as exc:
            log.warning("Lock release failed", key=lock_key, err=repr(exc))


# ===================================================================
# 4.  get-or-set with double-checked locking
# ===================================================================
async def _produce[T](producer: Callable[[], T | Awaitable[T]]) -> T:
    result: T | Awaitable[T] = producer()
    if asyncio.iscoroutine(result):
        result = await cast("Awaitable[T]", result)
    return cast("T", result)


async def _store(key: str, value: Any, ttl: int) -> None:
    try:
        data = _dumps(value)
        await cache.aset(key, data, timeout=ttl)
        log.debug("Cache set", key=key, size_kb=f"{len(data) / 1024:.1f}")
    except Exception:
        log.exception("Failed to cache key", key=key)


async def aget_or_set[T](
    key: str,
    producer: Callable[[], T | Awaitable[T]],
    *,
    ttl: int = 300,
    lock_timeout: int = 30,
    should_cache: Callable[[T], bool] | None = None,
) -> T:
    """
    Single-flight cache fill.

    `should_cache(value)` returning False keeps a freshly produced value out
    of the cache. Without Redis the producer runs unlocked.
    """
    # 1ᵗʰ check
    raw = await cache.aget(key)
    if raw is not None:
        return cast("T", _loads(raw))

    try:
        async with redis_lock(key, timeout=lock_timeout, max_wait=lock_timeout):
            # 2ⁿᵈ check
            raw = await cache.aget(key)
            if raw is not None:
                return cast("T", _loads(raw))
            value = await _produce(producer)
            if should_cache is None or should_cache(value):
                await _store(key, value, ttl)
            return value
    except LockUnavailable:
        log.warning("Lock unavailable, producing without single-flight", key=key)

    value = await _produce(producer)
    if should_cache is None or should_cache(value):
        await _store(key, value, ttl)
    return value


# ===================================================================
# 5.  Misc async helpers
# ===================================================================
async def adelete(key: str) -> int:
    return await cache.adelete(key)


def delete_pattern(pattern: str) -> int:
    """Drop every response-cache entry matching a glob (django-redis only)."""
    if not hasattr(cache, "delete_pattern"):
        log.info("Cache backend has no delete_pattern; skipping", pattern=pattern)
        return 0
    return cache.delete_pattern(pattern)


# ===================================================================
# 6.  JSON convenience wrappers
# ===================================================================
async def aset_json(key: str, value: Any, ttl: int | None = None) -> None:
    await cache.aset(key, _dumps(value), timeout=ttl)
