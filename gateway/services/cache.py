"""
Shared cache store - the single source of truth for the Sankhya token and
the response cache used by the data fetchers.

Backends:
- RedisBackend: shared by every process instance (production)
- MemoryBackend: in-process store with TTL and LRU eviction (single instance, tests)

CacheManager sits on top of a backend for response caching: it never lets a
backend failure reach the caller, a failed read is simply a miss.
"""

import asyncio
import hashlib
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import redis.asyncio as redis
from loguru import logger

from gateway.settings import Settings


def _seconds(ttl: float | timedelta) -> float:
    if isinstance(ttl, timedelta):
        return ttl.total_seconds()
    return float(ttl)


def _key_part(value: Any) -> str:
    text = "" if value is None else str(value)
    return text.replace("\\", "\\\\").replace(":", "\\:")


class CacheBackend(ABC):
    """Key-value store with per-key expiration, values are JSON documents."""

    @abstractmethod
    async def get(self, key: str) -> Any | None: ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: float | timedelta) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> bool: ...

    @abstractmethod
    async def set_if_absent(
        self, key: str, value: Any, ttl: float | timedelta
    ) -> bool:
        """Atomically store `value` only when `key` does not exist."""
        ...

    @abstractmethod
    async def delete_if_equals(self, key: str, value: Any) -> bool:
        """Atomically delete `key` only while it still holds `value`."""
        ...

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int: ...

    async def close(self) -> None:
        return None


@dataclass
class MemoryEntry:
    """A single stored value with its absolute expiry."""

    raw: str
    stored_at: float
    expires_at: float

    def is_expired(self, now: float | None = None) -> bool:
        return (now if now is not None else time.monotonic()) >= self.expires_at


class MemoryBackend(CacheBackend):
    """
    In-process backend with TTL and LRU eviction.

    Values are stored JSON-encoded so callers get copies, the same way they
    would from Redis.
    """

    def __init__(self, max_size: int = 1000):
        self._data: dict[str, MemoryEntry] = {}
        self._max_size = max_size
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> MemoryEntry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.is_expired():
            del self._data[key]
            return None
        return entry

    def _store(self, key: str, value: Any, ttl: float | timedelta) -> None:
        now = time.monotonic()
        if len(self._data) >= self._max_size and key not in self._data:
            self._evict_oldest()
        self._data[key] = MemoryEntry(
            raw=json.dumps(value, default=str),
            stored_at=now,
            expires_at=now + _seconds(ttl),
        )

    def _evict_oldest(self) -> None:
        expired = [k for k, v in self._data.items() if v.is_expired()]
        for key in expired:
            del self._data[key]
        if expired or not self._data:
            return
        oldest_key = min(self._data, key=lambda k: self._data[k].stored_at)
        del self._data[oldest_key]

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            entry = self._live(key)
            return json.loads(entry.raw) if entry else None

    async def set(self, key: str, value: Any, ttl: float | timedelta) -> None:
        async with self._lock:
            self._store(key, value, ttl)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._data.pop(key, None) is not None

    async def set_if_absent(
        self, key: str, value: Any, ttl: float | timedelta
    ) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._store(key, value, ttl)
            return True

    async def delete_if_equals(self, key: str, value: Any) -> bool:
        async with self._lock:
            entry = self._live(key)
            if entry is None or json.loads(entry.raw) != value:
                return False
            del self._data[key]
            return True

    async def delete_prefix(self, prefix: str) -> int:
        async with self._lock:
            keys = [k for k in self._data if k.startswith(prefix)]
            for key in keys:
                del self._data[key]
            return len(keys)

    def __len__(self) -> int:
        return len(self._data)


class RedisBackend(CacheBackend):
    """Redis backend shared by all gateway instances."""

    # Compare-and-delete so a holder can only remove the value it wrote
    _DELETE_IF_EQUALS = """
    if redis.call('GET', KEYS[1]) == ARGV[1] then
        return redis.call('DEL', KEYS[1])
    end
    return 0
    """

    def __init__(
        self,
        url: str,
        prefix: str = "gateway:",
        client: redis.Redis | None = None,
    ):
        self._prefix = prefix
        self._redis = client or redis.from_url(url, decode_responses=True)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    @staticmethod
    def _px(ttl: float | timedelta) -> int:
        return max(1, int(_seconds(ttl) * 1000))

    async def get(self, key: str) -> Any | None:
        raw = await self._redis.get(self._key(key))
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl: float | timedelta) -> None:
        await self._redis.set(
            self._key(key), json.dumps(value, default=str), px=self._px(ttl)
        )

    async def delete(self, key: str) -> bool:
        return await self._redis.delete(self._key(key)) > 0

    async def set_if_absent(
        self, key: str, value: Any, ttl: float | timedelta
    ) -> bool:
        result = await self._redis.set(
            self._key(key),
            json.dumps(value, default=str),
            px=self._px(ttl),
            nx=True,
        )
        return bool(result)

    async def delete_if_equals(self, key: str, value: Any) -> bool:
        result = await self._redis.eval(
            self._DELETE_IF_EQUALS,
            1,
            self._key(key),
            json.dumps(value, default=str),
        )
        return bool(result)

    async def delete_prefix(self, prefix: str) -> int:
        count = 0
        async for key in self._redis.scan_iter(match=f"{self._key(prefix)}*"):
            count += await self._redis.delete(key)
        return count

    async def close(self) -> None:
        await self._redis.aclose()


def create_backend(settings: Settings) -> CacheBackend:
    """Redis when REDIS_URL is configured, otherwise an in-process store."""
    if settings.redis_url:
        logger.info("Using Redis cache backend")
        return RedisBackend(settings.redis_url, prefix=settings.cache_prefix)

    logger.warning(
        "REDIS_URL not configured, using in-memory cache "
        "(token renewal is not coordinated across instances)"
    )
    return MemoryBackend(max_size=settings.memory_cache_max_size)


class CacheManager:
    """
    Response cache on top of a CacheBackend.

    Usage:
        cache = CacheManager(backend)

        # Try to get from cache
        cached = await cache.get("products:list:1:50")
        if cached is not None:
            return cached

        # Fetch fresh data and cache it
        data = await fetch_data()
        await cache.set("products:list:1:50", data, ttl=timedelta(hours=1))
    """

    def __init__(self, backend: CacheBackend, debug: bool = False):
        self.backend = backend
        self._debug = debug
        self._stats = CacheStats()

    @staticmethod
    def generate_key(namespace: str, *parts: Any) -> str:
        """Generate a deterministic cache key from a namespace and parameters."""
        # Escape separators inside parts
        rendered = ":".join(_key_part(p) for p in parts)
        full_key = f"{namespace}:{rendered}" if parts else namespace

        # Hash long keys
        if len(full_key) > 200:
            hash_val = hashlib.md5(full_key.encode()).hexdigest()[:16]
            return f"{namespace}:{hash_val}"

        return full_key

    async def get(self, key: str) -> Any | None:
        """Get value from cache, None on miss or backend failure."""
        try:
            value = await self.backend.get(key)
        except Exception as e:
            self._stats.errors += 1
            logger.warning(f"Cache read failed for {key[:50]}, treating as miss: {e}")
            return None

        if value is None:
            self._stats.misses += 1
            self._log(f"MISS: {key[:50]}")
        else:
            self._stats.hits += 1
            self._log(f"HIT: {key[:50]}")
        return value

    async def set(self, key: str, value: Any, ttl: float | timedelta) -> None:
        """Set value in cache. Failures are logged and ignored."""
        try:
            await self.backend.set(key, value, ttl)
            self._log(f"SET: {key[:50]} (TTL: {_seconds(ttl)}s)")
        except Exception as e:
            self._stats.errors += 1
            logger.warning(f"Cache write failed for {key[:50]}: {e}")

    async def delete(self, key: str) -> bool:
        """Delete a specific key from cache."""
        try:
            return await self.backend.delete(key)
        except Exception as e:
            self._stats.errors += 1
            logger.warning(f"Cache delete failed for {key[:50]}: {e}")
            return False

    async def invalidate(self, prefix: str) -> int:
        """
        Invalidate all keys starting with a prefix.

        Returns:
            Number of entries invalidated
        """
        try:
            count = await self.backend.delete_prefix(prefix)
        except Exception as e:
            self._stats.errors += 1
            logger.warning(f"Cache invalidation failed for '{prefix}': {e}")
            return 0

        if count:
            self._log(f"INVALIDATE: {count} entries matching '{prefix}'")
        return count

    def get_stats(self) -> "CacheStats":
        """Get cache statistics."""
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[CacheManager] {message}")


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    errors: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "errors": self.errors,
            "hit_rate": f"{self.hit_rate:.2%}",
        }
