"""Telemetry package for observability.

This package contains:
- Structured logging configuration and request context binding
- Prometheus counters for cache, fallback and routing behaviour
"""

from __future__ import annotations

from framesense.telemetry.logging import (
    bind_request_context,
    clear_context,
    configure_logging,
    new_request_id,
)
from framesense.telemetry.metrics import RoutingMetrics

__all__ = [
    "RoutingMetrics",
    "bind_request_context",
    "clear_context",
    "configure_logging",
    "new_request_id",
]
