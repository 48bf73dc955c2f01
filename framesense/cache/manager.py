"""Two-tier cache store: fast (Redis) in front of durable (SQL).

Entry lifecycle:

    absent -> fast hit | durable hit -> (promoted to fast) -> expired/evicted -> absent

- get(): fast tier first; durable tier only for strategies stored durably.
  A durable hit is promoted into the fast tier with min(remaining TTL, cap).
- set(): JSON-serialise, gzip when the strategy asks for it and the payload
  is over the threshold, then write to the strategy's tier. Durable writes
  are mirrored into the fast tier with a capped TTL.

  A compressed payload is stored as the envelope
  {"compressed": true, "algorithm": "gzip", "data": <base64>, "original_size": n}.
  Only dicts whose keys are a subset of those four (with a boolean
  "compressed" and a "data" key) are read as envelopes; a plain value of that
  exact shape is stored as {"compressed": false, "data": value} so it reads
  back unchanged.
- invalidate(): glob pattern against the fast tier plus the equivalent LIKE
  pattern against the durable tier.

Nothing here raises to the caller because of a cache problem: unreachable
tiers, slow tiers (every call is bounded by the per-tier timeout) and
undecodable payloads all degrade to "miss" / False.

Background maintenance (start()/stop()):
- warming scan: expired durable rows that were popular become warming
  candidates (re-populating them is up to the caller)
- cleanup: expired durable rows are deleted
- popular reset: the in-memory popular-query table is dropped
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import gzip
import json
import time
import zlib
from collections import Counter
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog

from framesense.cache.backend import FastTier
from framesense.cache.durable import DurableStore, WarmingCandidate
from framesense.cache.key_strategy import KeyStrategy, ServiceStrategy, StorageTier
from framesense.cache.perceptual import hash_similarity
from framesense.config import Settings, get_settings
from framesense.errors import CacheUnavailable, CompressionFailure
from framesense.health import (
    ComponentHealth,
    ComponentStatus,
    SystemHealth,
    build_system_health,
    probe,
)
from framesense.telemetry.metrics import RoutingMetrics

log = structlog.get_logger(__name__)

T = TypeVar("T")

COMPRESSION_ALGORITHM = "gzip"

_DECOMPRESSION_ERRORS = (
    binascii.Error,
    EOFError,
    OSError,
    ValueError,
    zlib.error,
)

ENVELOPE_KEYS = frozenset({"compressed", "algorithm", "data", "original_size"})


def _is_envelope(stored: Any) -> bool:
    return (
        isinstance(stored, dict)
        and isinstance(stored.get("compressed"), bool)
        and "data" in stored
        and stored.keys() <= ENVELOPE_KEYS
    )


def _escape(value: Any) -> Any:
    """Wrap a plain value that would otherwise be read back as an envelope."""
    if _is_envelope(value):
        return {"compressed": False, "data": value}
    return value


@dataclass(frozen=True)
class CacheLookup:
    """Result of a cache read. source is one of fast, durable, miss, error."""
    key: str
    source: str
    value: Any = None

    @property
    def hit(self) -> bool:
        return self.source in ("fast", "durable")


@dataclass(frozen=True)
class SimilarMatch:
    """A cached value whose image hash is close to the requested one."""
    key: str
    value: Any
    similarity: float
    source: str


class TieredCacheStore:
    """Cache manager over a FastTier and an optional DurableStore.

    Both tiers are injected; a store without a durable tier behaves as a
    fast-tier-only cache (durable strategies fall back to fast storage).
    """

    def __init__(
        self,
        fast: FastTier,
        durable: DurableStore | None = None,
        *,
        key_strategy: KeyStrategy | None = None,
        settings: Settings | None = None,
        metrics: RoutingMetrics | None = None,
    ) -> None:
        self._fast = fast
        self._durable = durable
        self._settings = settings or get_settings()
        self._keys = key_strategy or KeyStrategy(memo_size=self._settings.hash_memo_size)
        self._metrics = metrics or RoutingMetrics()
        self._timeouts = {
            "fast": self._settings.fast_tier_timeout_seconds,
            "durable": self._settings.durable_tier_timeout_seconds,
        }

        # key -> lookups since the last reset; only mutated between awaits
        self._popular: Counter[str] = Counter()
        self._warming_candidates: list[WarmingCandidate] = []
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def key_strategy(self) -> KeyStrategy:
        return self._keys

    @property
    def metrics(self) -> RoutingMetrics:
        return self._metrics

    # ------------------------------------------------------------------
    # Tier call helpers
    # ------------------------------------------------------------------

    async def _call(
        self,
        tier: str,
        op: str,
        key: str,
        call: Callable[[], Awaitable[T]],
    ) -> tuple[bool, T | None]:
        """Run one tier operation under the timeout; (ok, result)."""
        try:
            async with asyncio.timeout(self._timeouts[tier]):
                return True, await call()
        except (CacheUnavailable, TimeoutError) as exc:
            log.warning(
                f"cache.{tier}.{op}_failed",
                key=key,
                error=str(exc) or type(exc).__name__,
            )
            return False, None

    def _strategy_for(self, key: str) -> ServiceStrategy | None:
        service_type = self._keys.service_type_for_key(key)
        return self._keys.get_strategy(service_type) if service_type else None

    def _uses_durable(self, strategy: ServiceStrategy | None) -> bool:
        return (
            self._durable is not None
            and strategy is not None
            and strategy.storage_tier is StorageTier.DURABLE
        )

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    def _compress(self, serialised: bytes) -> str:
        try:
            packed = gzip.compress(serialised, compresslevel=self._settings.compression_level)
        except (OSError, ValueError, zlib.error) as exc:
            raise CompressionFailure(str(exc)) from exc
        return base64.b64encode(packed).decode("ascii")

    def _wrap(self, value: Any, strategy: ServiceStrategy) -> tuple[Any, bool]:
        """Return (stored form, compressed flag) for value."""
        serialised = json.dumps(value, default=str, separators=(",", ":")).encode("utf-8")
        if not strategy.compress or len(serialised) <= self._settings.compression_threshold_bytes:
            return _escape(value), False

        try:
            data = self._compress(serialised)
        except CompressionFailure as exc:
            log.warning(
                "cache.compression_failed",
                service_type=strategy.service_id,
                size=len(serialised),
                error=str(exc),
            )
            return _escape(value), False

        self._metrics.record_compression_saving(len(serialised) - len(data))
        return {
            "compressed": True,
            "algorithm": COMPRESSION_ALGORITHM,
            "data": data,
            "original_size": len(serialised),
        }, True

    @staticmethod
    def _unwrap(stored: Any) -> Any:
        """Inverse of _wrap.

        Raises:
            CompressionFailure: the envelope cannot be decoded
        """
        if not _is_envelope(stored):
            return stored
        if stored["compressed"] is False:
            return stored["data"]
        if stored.get("algorithm") != COMPRESSION_ALGORITHM:
            raise CompressionFailure(f"unsupported algorithm {stored.get('algorithm')!r}")
        try:
            raw = gzip.decompress(base64.b64decode(stored["data"], validate=True))
            return json.loads(raw.decode("utf-8"))
        except (TypeError, *_DECOMPRESSION_ERRORS) as exc:
            raise CompressionFailure(str(exc)) from exc

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get(self, key: str, strategy: ServiceStrategy | None = None) -> CacheLookup:
        """Look key up in the fast tier, then (if applicable) the durable tier.

        Never raises for cache problems; the lookup's source is "error" when
        every tier consulted was unavailable.
        """
        strategy = strategy or self._strategy_for(key)
        self._popular[key] += 1
        saving = strategy.estimated_saving if strategy else 0.0

        fast_ok, stored = await self._call("fast", "get", key, lambda: self._fast.get(key))
        if stored is not None:
            try:
                value = self._unwrap(stored)
            except CompressionFailure as exc:
                log.warning("cache.decompression_failed", key=key, tier="fast", error=str(exc))
                await self._call("fast", "delete", key, lambda: self._fast.delete(key))
            else:
                return self._hit(key, "fast", value, strategy, saving)

        durable_ok = False
        if self._uses_durable(strategy):
            durable = self._durable
            durable_ok, row = await self._call(
                "durable", "get", key, lambda: durable.get(key, cost_saved=saving)
            )
            if row is not None:
                try:
                    stored = json.loads(row.data)
                    value = self._unwrap(stored)
                except (ValueError, CompressionFailure) as exc:
                    log.warning("cache.decompression_failed", key=key, tier="durable", error=str(exc))
                else:
                    ttl = min(row.remaining_ttl, self._settings.promotion_ttl_cap_seconds)
                    if ttl > 0:
                        promoted, _ = await self._call(
                            "fast", "promote", key, lambda: self._fast.set(key, stored, ttl)
                        )
                        log.debug("cache.promoted", key=key, ttl=ttl, ok=promoted)
                    return self._hit(key, "durable", value, strategy, saving)

        source = "miss" if fast_ok or durable_ok else "error"
        self._metrics.record_cache_lookup(source)
        log.debug("cache.get.miss", key=key, source=source)
        return CacheLookup(key=key, source=source)

    def _hit(
        self,
        key: str,
        source: str,
        value: Any,
        strategy: ServiceStrategy | None,
        saving: float,
    ) -> CacheLookup:
        self._metrics.record_cache_lookup(source)
        if strategy is not None:
            self._metrics.record_cost_saved(strategy.service_id, saving)
        log.debug("cache.get.hit", key=key, source=source)
        return CacheLookup(key=key, source=source, value=value)

    async def set(self, key: str, value: Any, strategy: ServiceStrategy) -> bool:
        """Store value under key following strategy's tier/TTL/compression policy.

        Returns:
            True if at least the primary tier for the strategy accepted the write.
        """
        try:
            stored, compressed = self._wrap(value, strategy)
        except (TypeError, ValueError) as exc:
            log.warning("cache.serialise_failed", key=key, error=str(exc))
            return False

        ttl = strategy.ttl_seconds
        if self._uses_durable(strategy):
            durable = self._durable
            data = json.dumps(stored, default=str, separators=(",", ":"))
            ok, _ = await self._call(
                "durable",
                "set",
                key,
                lambda: durable.upsert(
                    key,
                    data,
                    compressed=compressed,
                    service_type=strategy.service_id,
                    ttl=ttl,
                ),
            )
            self._metrics.record_cache_write("durable", ok)
            mirror_ttl = min(ttl, self._settings.promotion_ttl_cap_seconds)
            mirrored, _ = await self._call(
                "fast", "set", key, lambda: self._fast.set(key, stored, mirror_ttl)
            )
            self._metrics.record_cache_write("fast", mirrored)
            success = ok or mirrored
        else:
            success, _ = await self._call("fast", "set", key, lambda: self._fast.set(key, stored, ttl))
            self._metrics.record_cache_write("fast", success)

        log.debug(
            "cache.set",
            key=key,
            service_type=strategy.service_id,
            ttl=ttl,
            compressed=compressed,
            ok=success,
        )
        return success

    async def invalidate(self, pattern: str) -> int:
        """Remove fast-tier keys and durable rows matching a glob pattern."""
        _, fast_removed = await self._call(
            "fast", "invalidate", pattern, lambda: self._fast.delete_pattern(pattern)
        )
        durable_removed = 0
        if self._durable is not None:
            durable = self._durable
            _, removed = await self._call(
                "durable", "invalidate", pattern, lambda: durable.delete_like(pattern)
            )
            durable_removed = removed or 0

        total = (fast_removed or 0) + durable_removed
        self._metrics.record_invalidated(total)
        log.info(
            "cache.invalidated",
            pattern=pattern,
            fast=fast_removed or 0,
            durable=durable_removed,
        )
        return total

    async def clear(self) -> int:
        """Flush both tiers."""
        return await self.invalidate("*")

    async def find_similar(
        self,
        service_type: str,
        image_hash: str,
        *,
        threshold: float | None = None,
        match: Mapping[str, str] | None = None,
    ) -> SimilarMatch | None:
        """Find the cached entry of service_type whose image hash is closest.

        Args:
            service_type: Strategy id to search within
            image_hash: Perceptual hash of the requested image
            threshold: Minimum percent match (defaults to settings)
            match: Other key components that must be equal (e.g. questionHash)

        Returns:
            The best match at or above threshold, or None.
        """
        strategy = self._keys.get_strategy(service_type)
        hash_field = next(
            (f for f in ("imageHash", "faceHash") if f in strategy.placeholders), None
        )
        if hash_field is None:
            return None

        limit = self._settings.similarity_scan_limit
        minimum = self._settings.similarity_threshold if threshold is None else threshold
        pattern = f"{strategy.prefix}*"

        _, fast_keys = await self._call(
            "fast", "scan", pattern, lambda: self._fast.keys(pattern, limit)
        )
        candidates = list(fast_keys or [])
        if self._uses_durable(strategy):
            durable = self._durable
            _, durable_keys = await self._call(
                "durable", "scan", pattern, lambda: durable.keys_like(pattern, limit)
            )
            candidates.extend(k for k in durable_keys or [] if k not in candidates)

        ranked: list[tuple[float, str]] = []
        for key in candidates:
            parts = self._keys.parse_key(service_type, key)
            if parts is None:
                continue
            if match and any(parts.get(name) != value for name, value in match.items()):
                continue
            similarity = hash_similarity(parts[hash_field], image_hash)
            if similarity >= minimum:
                ranked.append((similarity, key))

        for similarity, key in sorted(ranked, reverse=True):
            lookup = await self.get(key, strategy)
            if lookup.hit:
                log.info(
                    "cache.similar_found",
                    service_type=service_type,
                    key=key,
                    similarity=similarity,
                )
                return SimilarMatch(
                    key=key,
                    value=lookup.value,
                    similarity=similarity,
                    source=lookup.source,
                )
        return None

    # ------------------------------------------------------------------
    # Popularity / warming / cleanup
    # ------------------------------------------------------------------

    def popular_keys(self, min_count: int | None = None) -> list[tuple[str, int]]:
        """Keys looked up at least min_count times since the last reset."""
        threshold = min_count or self._settings.warming_popular_threshold
        return [(k, n) for k, n in self._popular.most_common() if n >= threshold]

    def reset_popular(self) -> int:
        """Drop the popular-query table; returns how many keys it held."""
        dropped = len(self._popular)
        self._popular = Counter()
        log.info("cache.popular_reset", dropped=dropped)
        return dropped

    @property
    def warming_candidates(self) -> list[WarmingCandidate]:
        return list(self._warming_candidates)

    async def run_warming_scan(self) -> list[WarmingCandidate]:
        """Refresh the list of expired-but-popular durable entries."""
        if self._durable is None:
            return []
        durable = self._durable
        ok, found = await self._call(
            "durable",
            "warming_scan",
            "*",
            lambda: durable.popular_expired(
                self._settings.warming_popular_threshold,
                self._settings.warming_max_items,
            ),
        )
        if ok:
            self._warming_candidates = list(found or [])
            self._metrics.warming_candidates.set(len(self._warming_candidates))
            log.info("cache.warming_scan", candidates=len(self._warming_candidates))
        return self.warming_candidates

    async def run_cleanup(self) -> int:
        """Delete expired durable rows; returns how many were removed."""
        if self._durable is None:
            return 0
        durable = self._durable
        _, removed = await self._call("durable", "cleanup", "*", durable.purge_expired)
        log.info("cache.cleanup", removed=removed or 0)
        return removed or 0

    async def _periodic(self, name: str, interval: float, job: Callable[[], Any]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                result = job()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                log.error("cache.maintenance_failed", job=name, error=str(exc))

    def start(self) -> None:
        """Launch the background maintenance loops (idempotent)."""
        if self._tasks:
            return
        jobs: list[tuple[str, float, Callable[[], Any]]] = [
            ("warming", self._settings.warming_interval_seconds, self.run_warming_scan),
            ("cleanup", self._settings.cleanup_interval_seconds, self.run_cleanup),
            ("popular_reset", self._settings.popular_reset_interval_seconds, self.reset_popular),
        ]
        self._tasks = [
            asyncio.create_task(self._periodic(name, interval, job), name=f"cache-{name}")
            for name, interval, job in jobs
        ]
        log.info("cache.maintenance_started", jobs=[name for name, _, _ in jobs])

    async def stop(self) -> None:
        """Cancel the background loops and wait for them to finish."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            log.info("cache.maintenance_stopped")

    async def close(self) -> None:
        await self.stop()
        await self._fast.close()
        if self._durable is not None:
            await self._durable.close()

    # ------------------------------------------------------------------
    # Health / stats
    # ------------------------------------------------------------------

    async def health_check(self) -> SystemHealth:
        """Probe each tier with a bounded ping."""
        components: dict[str, ComponentHealth] = {
            "fast_tier": await probe(self._fast.ping, timeout=self._timeouts["fast"]),
        }
        if self._durable is not None:
            components["durable_tier"] = await probe(
                self._durable.ping, timeout=self._timeouts["durable"]
            )
        else:
            components["durable_tier"] = ComponentHealth(
                status=ComponentStatus.UNKNOWN,
                details={"message": "durable tier not configured"},
            )
        health = build_system_health(components)
        log.info(
            "cache.health_check",
            status=health.status,
            components={k: v.status for k, v in components.items()},
        )
        return health

    def stats(self) -> dict[str, Any]:
        snapshot = self._metrics.snapshot()
        return {
            "cache": dict(snapshot["cache"]),
            "cost_savings": {
                "total": snapshot["cost_savings"]["total"],
                "by_service": dict(snapshot["cost_savings"]["by_service"]),
            },
            "popular_keys": len(self._popular),
            "warming_candidates": len(self._warming_candidates),
            "key_strategy": self._keys.stats(),
            "collected_at": time.time(),
        }
