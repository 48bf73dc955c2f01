"""Tests for the observability helpers.

Covers Prometheus routing metrics, structured log context binding, payload
redaction and component health aggregation.
"""

from __future__ import annotations

import asyncio

import pytest
import structlog

from framesense.health import ComponentHealth, ComponentStatus, aggregate_status, probe
from framesense.telemetry.logging import (
    bind_request_context,
    clear_context,
    new_request_id,
    redact_binary,
)
from framesense.telemetry.metrics import RoutingMetrics


class TestRoutingMetrics:
    """RoutingMetrics snapshot and exposition."""

    def test_cache_counters(self):
        """Test that hit rate is computed over every lookup source."""
        metrics = RoutingMetrics()
        metrics.record_cache_lookup("fast")
        metrics.record_cache_lookup("durable")
        metrics.record_cache_lookup("miss")
        metrics.record_cache_lookup("error")

        cache = metrics.snapshot()["cache"]

        assert cache["total_requests"] == 4
        assert cache["fast_hits"] == 1
        assert cache["durable_hits"] == 1
        assert cache["hit_rate"] == 0.5

    def test_cost_savings_by_service(self):
        """Test that savings are totalled per service type."""
        metrics = RoutingMetrics()
        metrics.record_cost_saved("OPENAI_RESPONSES", 0.03)
        metrics.record_cost_saved("OPENAI_RESPONSES", 0.03)
        metrics.record_cost_saved("OCR_RESULTS", 0.001)
        metrics.record_cost_saved("OCR_RESULTS", 0.0)

        savings = metrics.snapshot()["cost_savings"]

        assert savings["total"] == pytest.approx(0.061)
        assert savings["by_service"]["OPENAI_RESPONSES"] == pytest.approx(0.06)

    def test_fallback_success_rate(self):
        """Test that every fallback outcome counts as an invocation."""
        metrics = RoutingMetrics()
        metrics.record_fallback("success", "google-vision-text")
        metrics.record_fallback("degraded", "error-with-suggestion")

        fallback = metrics.snapshot()["fallback"]

        assert fallback == {
            "invocations": 2,
            "successes": 1,
            "degraded": 1,
            "success_rate": 0.5,
        }

    def test_empty_snapshot(self):
        """Test that a fresh registry reports zeros, not errors."""
        snapshot = RoutingMetrics().snapshot()

        assert snapshot["cache"]["hit_rate"] == 0.0
        assert snapshot["fallback"]["success_rate"] == 0.0
        assert dict(snapshot["routes"]) == {}

    def test_instances_do_not_share_registries(self):
        """Test that two instances can coexist without duplicate timeseries."""
        first = RoutingMetrics()
        second = RoutingMetrics()
        first.record_route("success", 0.01)

        assert dict(first.snapshot()["routes"]) == {"success": 1}
        assert dict(second.snapshot()["routes"]) == {}

    def test_render_exposition_format(self):
        """Test that render() produces Prometheus text output."""
        metrics = RoutingMetrics()
        metrics.record_dispatch("enhanced-ocr", ok=True)

        content = metrics.render().decode()

        assert "framesense_dispatch_total" in content
        assert 'service="enhanced-ocr"' in content
        assert "framesense_route_duration_seconds" in content


class TestLoggingContext:
    """Request context binding."""

    def test_request_id_format(self):
        """Test that request ids are prefixed and unique."""
        first, second = new_request_id(), new_request_id()

        assert first.startswith("req_")
        assert len(first) == 20
        assert first != second

    def test_bind_and_clear(self):
        """Test that bound ids appear in the structlog context and are cleared."""
        clear_context()
        bind_request_context("req_abc", 42)

        assert structlog.contextvars.get_contextvars() == {
            "request_id": "req_abc",
            "user_id": "42",
        }

        clear_context()
        assert structlog.contextvars.get_contextvars() == {}

    def test_image_bytes_are_redacted(self):
        """Test that raw image payloads never reach the renderer."""
        event = redact_binary(None, "info", {"event": "x", "image": b"\x89PNG....", "size": 9})

        assert event == {"event": "x", "image": "<8 bytes>", "size": 9}


class TestHealth:
    """probe() and status aggregation."""

    @pytest.mark.asyncio
    async def test_probe_healthy(self):
        async def ok() -> bool:
            return True

        health = await probe(ok, timeout=1.0)

        assert health.status is ComponentStatus.HEALTHY
        assert health.latency_ms is not None

    @pytest.mark.asyncio
    async def test_probe_timeout(self):
        async def slow() -> bool:
            await asyncio.sleep(1.0)
            return True

        health = await probe(slow, timeout=0.01, failure_status=ComponentStatus.UNHEALTHY)

        assert health.status is ComponentStatus.UNHEALTHY
        assert health.error == "health probe timeout"

    @pytest.mark.asyncio
    async def test_probe_exception(self):
        async def broken() -> bool:
            raise ConnectionError("refused")

        health = await probe(broken, timeout=1.0)

        assert health.status is ComponentStatus.DEGRADED
        assert health.error == "refused"

    def test_worst_status_wins(self):
        components = {
            "a": ComponentHealth(status=ComponentStatus.HEALTHY),
            "b": ComponentHealth(status=ComponentStatus.UNKNOWN),
            "c": ComponentHealth(status=ComponentStatus.DEGRADED),
        }

        assert aggregate_status(components) is ComponentStatus.DEGRADED
        assert aggregate_status({"a": components["a"], "b": components["b"]}) is ComponentStatus.HEALTHY
