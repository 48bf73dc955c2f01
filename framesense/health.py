"""
Component-level health reporting.

The cache store and the router both report health as a SystemHealth: one
ComponentHealth per cache tier or upstream service, each with the probe
latency, plus an aggregate status.

Health status levels:
- healthy: all components operational
- degraded: a non-critical component is failing (the core keeps serving,
  e.g. without cache)
- unhealthy: a critical component is failing

Example:
    {
        "status": "degraded",
        "timestamp": "2026-02-16T12:34:56Z",
        "components": {
            "fast_tier": {"status": "degraded", "latency_ms": null, "error": "timeout"},
            "durable_tier": {"status": "healthy", "latency_ms": 3.4}
        }
    }
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog

log = structlog.get_logger(__name__)


class ComponentStatus(StrEnum):
    """Health status for individual components."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class ComponentHealth:
    """Health check result for a single component."""
    status: ComponentStatus
    latency_ms: float | None = None
    details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "latency_ms": self.latency_ms,
            "details": self.details,
            "error": self.error,
        }


@dataclass
class SystemHealth:
    """Overall health status."""
    status: ComponentStatus
    timestamp: str
    components: dict[str, ComponentHealth]

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "status": self.status,
            "timestamp": self.timestamp,
            "components": {
                name: comp.to_dict() for name, comp in self.components.items()
            },
        }


async def probe(
    check: Callable[[], Awaitable[bool]],
    *,
    timeout: float,
    failure_status: ComponentStatus = ComponentStatus.DEGRADED,
) -> ComponentHealth:
    """Run a boolean health probe under a timeout and time it.

    Args:
        check: Coroutine factory returning True when the component is healthy
        timeout: Seconds before the probe counts as failed
        failure_status: Status reported when the probe fails or times out

    Returns:
        ComponentHealth with latency_ms on success
    """
    start = time.perf_counter()
    try:
        async with asyncio.timeout(timeout):
            ok = await check()
    except TimeoutError:
        return ComponentHealth(status=failure_status, error="health probe timeout")
    except Exception as exc:
        log.warning("health.probe_failed", error=str(exc))
        return ComponentHealth(status=failure_status, error=str(exc))

    latency_ms = round((time.perf_counter() - start) * 1000, 2)
    if not ok:
        return ComponentHealth(
            status=failure_status,
            latency_ms=latency_ms,
            error="component reported unavailable",
        )
    return ComponentHealth(status=ComponentStatus.HEALTHY, latency_ms=latency_ms)


def aggregate_status(components: Mapping[str, ComponentHealth]) -> ComponentStatus:
    """Worst status wins; UNKNOWN components do not affect the result."""
    statuses = {c.status for c in components.values()}
    if ComponentStatus.UNHEALTHY in statuses:
        return ComponentStatus.UNHEALTHY
    if ComponentStatus.DEGRADED in statuses:
        return ComponentStatus.DEGRADED
    return ComponentStatus.HEALTHY


def build_system_health(components: dict[str, ComponentHealth]) -> SystemHealth:
    return SystemHealth(
        status=aggregate_status(components),
        timestamp=datetime.now(UTC).isoformat(),
        components=components,
    )
