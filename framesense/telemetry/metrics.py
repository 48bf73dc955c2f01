"""Prometheus instrumentation for the routing core.

Each RoutingMetrics instance owns its own CollectorRegistry so several
routers (or test cases) can coexist in one process without duplicate
timeseries errors.

Metrics exported:
- framesense_cache_requests_total: cache lookups by source (fast, durable, miss, error)
- framesense_cache_writes_total: cache writes by tier and status
- framesense_cache_compression_saved_bytes_total: bytes saved by gzip
- framesense_cache_cost_saved_usd_total: estimated spend avoided by hits, per service type
- framesense_cache_invalidated_total: entries removed by pattern invalidation
- framesense_cache_warming_candidates: size of the latest warming candidate list
- framesense_fallback_invocations_total: fallback chain executions
- framesense_fallback_outcomes_total: fallback results by outcome and step
- framesense_dispatch_total: upstream dispatches by service and status
- framesense_route_requests_total: routed requests by outcome
- framesense_route_duration_seconds: end-to-end routing latency
"""

from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

import structlog
from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

log = structlog.get_logger(__name__)

CACHE_SOURCES = ("fast", "durable", "miss", "error")


class RoutingMetrics:
    """Counter/timer sink shared by the cache store, fallback manager and router."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry(auto_describe=True)

        # ------------------------------------------------------------------ #
        # Cache
        # ------------------------------------------------------------------ #
        self.cache_requests = Counter(
            "framesense_cache_requests",
            "Cache lookups by source tier",
            ["source"],
            registry=self.registry,
        )
        self.cache_writes = Counter(
            "framesense_cache_writes",
            "Cache writes by tier and status",
            ["tier", "status"],
            registry=self.registry,
        )
        self.compression_saved_bytes = Counter(
            "framesense_cache_compression_saved_bytes",
            "Bytes saved by compressing cached payloads",
            registry=self.registry,
        )
        self.cost_saved = Counter(
            "framesense_cache_cost_saved_usd",
            "Estimated upstream spend avoided by cache hits",
            ["service_type"],
            registry=self.registry,
        )
        self.invalidated = Counter(
            "framesense_cache_invalidated",
            "Entries removed by pattern invalidation",
            registry=self.registry,
        )
        self.warming_candidates = Gauge(
            "framesense_cache_warming_candidates",
            "Entries in the most recent warming candidate list",
            registry=self.registry,
        )

        # ------------------------------------------------------------------ #
        # Fallback / dispatch
        # ------------------------------------------------------------------ #
        self.fallback_invocations = Counter(
            "framesense_fallback_invocations",
            "Fallback chain executions",
            registry=self.registry,
        )
        self.fallback_outcomes = Counter(
            "framesense_fallback_outcomes",
            "Fallback results by outcome and the step that produced them",
            ["outcome", "step"],
            registry=self.registry,
        )
        self.dispatches = Counter(
            "framesense_dispatch",
            "Upstream service dispatches",
            ["service", "status"],
            registry=self.registry,
        )

        # ------------------------------------------------------------------ #
        # Router
        # ------------------------------------------------------------------ #
        self.route_requests = Counter(
            "framesense_route_requests",
            "Routed requests by outcome",
            ["outcome"],
            registry=self.registry,
        )
        self.route_duration = Histogram(
            "framesense_route_duration_seconds",
            "End-to-end routing latency in seconds",
            buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
            registry=self.registry,
        )

    # ------------------------------------------------------------------ #
    # Recording helpers
    # ------------------------------------------------------------------ #

    def record_cache_lookup(self, source: str) -> None:
        self.cache_requests.labels(source=source).inc()

    def record_cache_write(self, tier: str, ok: bool) -> None:
        self.cache_writes.labels(tier=tier, status="ok" if ok else "failed").inc()

    def record_compression_saving(self, saved_bytes: int) -> None:
        if saved_bytes > 0:
            self.compression_saved_bytes.inc(saved_bytes)

    def record_cost_saved(self, service_type: str, amount: float) -> None:
        if amount > 0:
            self.cost_saved.labels(service_type=service_type).inc(amount)

    def record_invalidated(self, count: int) -> None:
        if count > 0:
            self.invalidated.inc(count)

    def record_fallback(self, outcome: str, step: str) -> None:
        self.fallback_invocations.inc()
        self.fallback_outcomes.labels(outcome=outcome, step=step).inc()

    def record_dispatch(self, service: str, ok: bool) -> None:
        self.dispatches.labels(service=service, status="ok" if ok else "failed").inc()

    def record_route(self, outcome: str, duration_seconds: float) -> None:
        self.route_requests.labels(outcome=outcome).inc()
        self.route_duration.observe(duration_seconds)

    # ------------------------------------------------------------------ #
    # Read side
    # ------------------------------------------------------------------ #

    def _value(self, name: str, labels: dict[str, str] | None = None) -> float:
        return self.registry.get_sample_value(name, labels or {}) or 0.0

    def _by_label(self, sample_name: str, label: str) -> dict[str, float]:
        values: dict[str, float] = {}
        for family in self.registry.collect():
            for sample in family.samples:
                if sample.name == sample_name and label in sample.labels:
                    key = sample.labels[label]
                    values[key] = values.get(key, 0.0) + sample.value
        return values

    def snapshot(self) -> Mapping[str, Any]:
        """Return a read-only view of the current counter totals."""
        lookups = {
            source: self._value("framesense_cache_requests_total", {"source": source})
            for source in CACHE_SOURCES
        }
        hits = lookups["fast"] + lookups["durable"]
        total = sum(lookups.values())

        outcomes = self._by_label("framesense_fallback_outcomes_total", "outcome")
        invocations = self._value("framesense_fallback_invocations_total")
        cost_by_service = self._by_label("framesense_cache_cost_saved_usd_total", "service_type")

        return MappingProxyType({
            "cache": MappingProxyType({
                "total_requests": int(total),
                "fast_hits": int(lookups["fast"]),
                "durable_hits": int(lookups["durable"]),
                "misses": int(lookups["miss"]),
                "errors": int(lookups["error"]),
                "hit_rate": round(hits / total, 4) if total else 0.0,
                "compression_saved_bytes": int(
                    self._value("framesense_cache_compression_saved_bytes_total")
                ),
                "invalidated": int(self._value("framesense_cache_invalidated_total")),
                "warming_candidates": int(
                    self._value("framesense_cache_warming_candidates")
                ),
            }),
            "cost_savings": MappingProxyType({
                "total": round(sum(cost_by_service.values()), 6),
                "by_service": MappingProxyType(
                    {k: round(v, 6) for k, v in cost_by_service.items()}
                ),
            }),
            "fallback": MappingProxyType({
                "invocations": int(invocations),
                "successes": int(outcomes.get("success", 0.0)),
                "degraded": int(outcomes.get("degraded", 0.0)),
                "success_rate": (
                    round(outcomes.get("success", 0.0) / invocations, 4)
                    if invocations
                    else 0.0
                ),
            }),
            "routes": MappingProxyType(
                {k: int(v) for k, v in self._by_label(
                    "framesense_route_requests_total", "outcome"
                ).items()}
            ),
        })

    def render(self) -> bytes:
        """Return the registry in Prometheus exposition format."""
        return generate_latest(self.registry)
