"""
Shared test fixtures for pytest.

Provides common fakes and test data for all test modules:
- settings: Test configuration (in-memory fast tier, no durable DB, no backoff sleeps)
- settings_factory: Settings with per-test overrides
- fast_tier, durable_store: In-memory cache tiers with outage switches
- metrics: Per-test Prometheus registry
- cache_store: TieredCacheStore over the in-memory tiers
- make_image: Factory for small PNG images with predictable perceptual hashes
- make_service: Factory for scripted AnalysisService fakes
- usage: InMemoryUsageTracker
"""

from __future__ import annotations

import asyncio
import io
from typing import Any

import pytest
from PIL import Image

from framesense.cache.backend import InMemoryFastTier
from framesense.cache.durable import InMemoryDurableStore
from framesense.cache.manager import TieredCacheStore
from framesense.config import Environment, Settings, get_settings
from framesense.services.base import AnalysisParams
from framesense.services.usage import InMemoryUsageTracker
from framesense.telemetry.metrics import RoutingMetrics
from framesense.types import Tier


# ------------------------------------------------------------------ #
# Session-scoped: clear settings cache between test sessions
# ------------------------------------------------------------------ #

@pytest.fixture(autouse=True, scope="session")
def _clear_settings_cache():
    """Clear the lru_cache on get_settings so test overrides take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ------------------------------------------------------------------ #
# Configuration
# ------------------------------------------------------------------ #

def _make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "environment": Environment.TEST,
        "redis_url": "",
        "database_url": "sqlite+aiosqlite:///:memory:",
        "durable_tier_enabled": False,
        "fallback_backoff_scale": 0.0,
        "request_timeout_seconds": 5.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return _make_settings()


@pytest.fixture
def settings_factory():
    """Return a factory building test Settings with overrides applied."""
    return _make_settings


# ------------------------------------------------------------------ #
# Cache tiers
# ------------------------------------------------------------------ #

@pytest.fixture
def fast_tier() -> InMemoryFastTier:
    return InMemoryFastTier()


@pytest.fixture
def durable_store() -> InMemoryDurableStore:
    return InMemoryDurableStore()


@pytest.fixture
def metrics() -> RoutingMetrics:
    return RoutingMetrics()


@pytest.fixture
def cache_store(fast_tier, durable_store, settings, metrics) -> TieredCacheStore:
    return TieredCacheStore(fast_tier, durable_store, settings=settings, metrics=metrics)


# ------------------------------------------------------------------ #
# Images
# ------------------------------------------------------------------ #

def _gradient(size: int, direction: str) -> list[int]:
    pixels = []
    for y in range(size):
        for x in range(size):
            match direction:
                case "ltr":
                    value = x * 255 // (size - 1)
                case "rtl":
                    value = 255 - x * 255 // (size - 1)
                case _:
                    raise ValueError(direction)
            pixels.append(value)
    return pixels


@pytest.fixture
def make_image():
    """Return a factory producing PNG bytes.

    direction: "ltr" / "rtl" gradients hash to opposite dHashes.
    speck: invert a 2x2 corner block; the bytes change, the hash barely does.
    Arbitrary non-image bytes hash to their content digest instead.
    """

    def _make(direction: str = "ltr", *, size: int = 64, speck: bool = False) -> bytes:
        img = Image.new("L", (size, size))
        img.putdata(_gradient(size, direction))
        if speck:
            for x in range(2):
                for y in range(2):
                    img.putpixel((x, y), 255 - img.getpixel((x, y)))
        buf = io.BytesIO()
        img.save(buf, format="PNG")
        return buf.getvalue()

    return _make


# ------------------------------------------------------------------ #
# Upstream services
# ------------------------------------------------------------------ #

class FakeService:
    """AnalysisService double that replays a script of results and errors.

    Each call consumes the next script item; the last item repeats. An
    exception item is raised, anything else is returned.
    """

    def __init__(
        self,
        service_id: str,
        script: list[Any] | None = None,
        *,
        capabilities: frozenset[str] = frozenset(),
        cost: float = 0.0,
        healthy: bool = True,
        delay: float = 0.0,
    ) -> None:
        self.service_id = service_id
        self._script = list(script or [{"service": service_id, "text": "ok"}])
        self._capabilities = capabilities
        self._cost = cost
        self.healthy = healthy
        self.delay = delay
        self.calls: list[tuple[str, bytes, AnalysisParams, Tier]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def analyze(
        self,
        question_type: str,
        image: bytes,
        params: AnalysisParams,
        user_tier: Tier,
    ) -> dict[str, Any]:
        self.calls.append((question_type, image, params, user_tier))
        if self.delay:
            await asyncio.sleep(self.delay)
        index = min(len(self.calls), len(self._script)) - 1
        item = self._script[index]
        if isinstance(item, BaseException):
            raise item
        return item

    def capabilities(self) -> frozenset[str]:
        return self._capabilities

    def cost(self) -> float:
        return self._cost

    async def health(self) -> bool:
        return self.healthy


@pytest.fixture
def make_service():
    return FakeService


@pytest.fixture
def usage() -> InMemoryUsageTracker:
    return InMemoryUsageTracker()
