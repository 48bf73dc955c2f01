"""Fast cache tier implementations.

Defines the FastTier ABC and two concrete implementations:
- RedisFastTier: production tier using redis.asyncio with JSON serialization
- InMemoryFastTier: dict-based tier with TTL, for testing/dev

Unlike a plain best-effort cache, the fast tier reports connectivity
problems by raising CacheUnavailable; the tiered store decides how to
degrade (and bounds every call with a timeout).

The factory function get_fast_tier() selects the implementation from
settings: an empty redis_url selects the in-memory tier.
"""

from __future__ import annotations

import fnmatch
import json
import time
from abc import ABC, abstractmethod
from typing import Any

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from framesense.config import Settings
from framesense.errors import CacheUnavailable

log = structlog.get_logger(__name__)


class FastTier(ABC):
    """Abstract interface all fast tiers must implement."""

    name: str = "fast"

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return cached value for key, or None if not found / expired."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int) -> None:
        """Store value under key with TTL in seconds."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete key from cache (no-op if key does not exist)."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Return True if key exists and has not expired."""

    @abstractmethod
    async def expire(self, key: str, ttl: int) -> bool:
        """Reset the TTL of an existing key. Returns False if key is absent."""

    @abstractmethod
    async def keys(self, pattern: str, limit: int | None = None) -> list[str]:
        """Return keys matching a glob pattern."""

    @abstractmethod
    async def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern. Returns deleted count."""

    @abstractmethod
    async def ping(self) -> bool:
        """Return True if the tier is reachable."""

    @abstractmethod
    async def flush_all(self) -> None:
        """Remove ALL keys from the tier. Use with caution."""

    @abstractmethod
    async def info(self) -> dict[str, Any]:
        """Return backend-specific info/stats dict."""

    async def close(self) -> None:
        """Release connections held by the tier."""


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisFastTier(FastTier):
    """Fast tier backed by Redis.

    Values are JSON-serialised so they round-trip cleanly without pickle
    security risks. The client is created lazily on first call so
    construction never blocks or touches the network.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 0.5) -> None:
        self._redis_url = redis_url
        self._socket_timeout = socket_timeout
        self._client: aioredis.Redis | None = None

    def _get_client(self) -> aioredis.Redis:
        """Return or create the Redis client (lazy init)."""
        if self._client is None:
            self._client = aioredis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_timeout,
            )
        return self._client

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._get_client().get(key)
        except RedisError as exc:
            raise CacheUnavailable(f"redis get failed: {exc}") from exc
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        serialised = json.dumps(value, default=str)
        try:
            await self._get_client().setex(key, max(1, ttl), serialised)
        except RedisError as exc:
            raise CacheUnavailable(f"redis set failed: {exc}") from exc

    async def delete(self, key: str) -> None:
        try:
            await self._get_client().delete(key)
        except RedisError as exc:
            raise CacheUnavailable(f"redis delete failed: {exc}") from exc

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self._get_client().exists(key))
        except RedisError as exc:
            raise CacheUnavailable(f"redis exists failed: {exc}") from exc

    async def expire(self, key: str, ttl: int) -> bool:
        try:
            return bool(await self._get_client().expire(key, max(1, ttl)))
        except RedisError as exc:
            raise CacheUnavailable(f"redis expire failed: {exc}") from exc

    async def keys(self, pattern: str, limit: int | None = None) -> list[str]:
        """Collect matching keys with SCAN (never the blocking KEYS command)."""
        found: list[str] = []
        try:
            async for key in self._get_client().scan_iter(match=pattern, count=100):
                found.append(key)
                if limit is not None and len(found) >= limit:
                    break
        except RedisError as exc:
            raise CacheUnavailable(f"redis scan failed: {exc}") from exc
        return found

    async def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern using SCAN + DEL."""
        client = self._get_client()
        deleted = 0
        try:
            async for key in client.scan_iter(match=pattern, count=100):
                deleted += await client.delete(key)
        except RedisError as exc:
            raise CacheUnavailable(f"redis delete_pattern failed: {exc}") from exc
        log.debug("cache.redis.pattern_deleted", pattern=pattern, deleted=deleted)
        return deleted

    async def ping(self) -> bool:
        try:
            return bool(await self._get_client().ping())
        except RedisError as exc:
            log.warning("cache.redis.ping_failed", error=str(exc))
            return False

    async def flush_all(self) -> None:
        try:
            await self._get_client().flushdb()
        except RedisError as exc:
            raise CacheUnavailable(f"redis flush failed: {exc}") from exc
        log.info("cache.redis.flushed_all")

    async def info(self) -> dict[str, Any]:
        try:
            client = self._get_client()
            redis_info = await client.info()
            dbsize = await client.dbsize()
            return {
                "backend": "redis",
                "url": self._redis_url,
                "connected": True,
                "used_memory_human": redis_info.get("used_memory_human", "unknown"),
                "keyspace_hits": redis_info.get("keyspace_hits", 0),
                "keyspace_misses": redis_info.get("keyspace_misses", 0),
                "db_size": dbsize,
            }
        except RedisError as exc:
            return {
                "backend": "redis",
                "url": self._redis_url,
                "connected": False,
                "error": str(exc),
            }

    async def close(self) -> None:
        """Close the Redis connection pool."""
        if self._client is not None:
            try:
                await self._client.aclose()
            except RedisError as exc:
                log.warning("cache.redis.close_failed", error=str(exc))
            self._client = None


# ---------------------------------------------------------------------------
# In-memory backend (testing / dev fallback)
# ---------------------------------------------------------------------------


class _FastEntry:
    """Single entry stored by InMemoryFastTier."""

    __slots__ = ("value", "expires_at")

    def __init__(self, value: Any, ttl: int) -> None:
        self.value = value
        self.expires_at: float = time.monotonic() + ttl

    @property
    def is_expired(self) -> bool:
        return time.monotonic() >= self.expires_at


class InMemoryFastTier(FastTier):
    """Dict-backed fast tier with TTL support.

    Values are JSON round-tripped on write so callers see the same shapes
    they would get back from Redis. Each method is a handful of dict
    operations with no await in between, which keeps them atomic on a single
    event loop. Set `available = False` to simulate an outage.
    """

    name = "memory"

    def __init__(self) -> None:
        self._store: dict[str, _FastEntry] = {}
        self.available = True
        self._hits: int = 0
        self._misses: int = 0

    def _check(self) -> None:
        if not self.available:
            raise CacheUnavailable("in-memory fast tier disabled")

    def _live(self, key: str) -> _FastEntry | None:
        entry = self._store.get(key)
        if entry is not None and entry.is_expired:
            del self._store[key]
            return None
        return entry

    async def get(self, key: str) -> Any | None:
        self._check()
        entry = self._live(key)
        if entry is None:
            self._misses += 1
            return None
        self._hits += 1
        return json.loads(entry.value)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        self._check()
        self._store[key] = _FastEntry(json.dumps(value, default=str), ttl)

    async def delete(self, key: str) -> None:
        self._check()
        self._store.pop(key, None)

    async def exists(self, key: str) -> bool:
        self._check()
        return self._live(key) is not None

    async def expire(self, key: str, ttl: int) -> bool:
        self._check()
        entry = self._live(key)
        if entry is None:
            return False
        entry.expires_at = time.monotonic() + ttl
        return True

    async def keys(self, pattern: str, limit: int | None = None) -> list[str]:
        self._check()
        found = [
            k for k, v in list(self._store.items())
            if not v.is_expired and fnmatch.fnmatchcase(k, pattern)
        ]
        return found if limit is None else found[:limit]

    async def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern (fnmatch semantics)."""
        self._check()
        to_delete = [k for k in self._store if fnmatch.fnmatchcase(k, pattern)]
        for k in to_delete:
            del self._store[k]
        return len(to_delete)

    async def ping(self) -> bool:
        return self.available

    async def flush_all(self) -> None:
        self._check()
        self._store.clear()
        self._hits = 0
        self._misses = 0
        log.info("cache.memory.flushed_all")

    async def info(self) -> dict[str, Any]:
        expired = [k for k, v in self._store.items() if v.is_expired]
        for k in expired:
            del self._store[k]

        total_requests = self._hits + self._misses
        hit_rate = self._hits / total_requests if total_requests > 0 else 0.0

        return {
            "backend": "memory",
            "connected": self.available,
            "total_keys": len(self._store),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(hit_rate, 4),
        }


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def get_fast_tier(settings: Settings) -> FastTier:
    """Return the fast tier selected by settings.

    Args:
        settings: Application Settings instance.

    Returns:
        RedisFastTier when redis_url is set, otherwise InMemoryFastTier.
    """
    if settings.redis_url:
        log.info("cache.fast_tier_selected", backend="redis", url=settings.redis_url)
        return RedisFastTier(
            settings.redis_url,
            socket_timeout=settings.fast_tier_timeout_seconds,
        )

    log.info("cache.fast_tier_selected", backend="memory")
    return InMemoryFastTier()
