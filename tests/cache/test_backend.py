"""Tests for the fast cache tiers.

Covers:
- InMemoryFastTier: get/set/TTL/expire/pattern/outage switch
- RedisFastTier: delegation to a mocked redis client and error mapping
- get_fast_tier factory: selects backend from settings
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from framesense.cache.backend import InMemoryFastTier, RedisFastTier, get_fast_tier
from framesense.errors import CacheUnavailable


# ---------------------------------------------------------------------------
# InMemoryFastTier
# ---------------------------------------------------------------------------


class TestInMemoryFastTier:
    """Unit tests for InMemoryFastTier."""

    @pytest.fixture
    def tier(self) -> InMemoryFastTier:
        return InMemoryFastTier()

    @pytest.mark.asyncio
    async def test_set_and_get(self, tier) -> None:
        await tier.set("k", {"foo": "bar"}, ttl=60)
        assert await tier.get("k") == {"foo": "bar"}

    @pytest.mark.asyncio
    async def test_expired_entry_not_returned(self, tier) -> None:
        await tier.set("stale", "old", ttl=0)

        assert await tier.get("stale") is None
        assert "stale" not in tier._store

    @pytest.mark.asyncio
    async def test_expire_resets_ttl(self, tier) -> None:
        await tier.set("k", 1, ttl=60)

        assert await tier.expire("k", 0) is True
        assert await tier.exists("k") is False
        assert await tier.expire("missing", 10) is False

    @pytest.mark.asyncio
    async def test_keys_and_delete_pattern(self, tier) -> None:
        await tier.set("gv:web:a", 1, ttl=60)
        await tier.set("gv:web:b", 2, ttl=60)
        await tier.set("ocr:c:en", 3, ttl=60)

        assert sorted(await tier.keys("gv:web:*")) == ["gv:web:a", "gv:web:b"]
        assert len(await tier.keys("*", limit=1)) == 1
        assert await tier.delete_pattern("gv:*") == 2
        assert await tier.keys("*") == ["ocr:c:en"]

    @pytest.mark.asyncio
    async def test_outage_switch(self, tier) -> None:
        tier.available = False

        with pytest.raises(CacheUnavailable):
            await tier.get("k")
        assert await tier.ping() is False

    @pytest.mark.asyncio
    async def test_info_hit_rate(self, tier) -> None:
        await tier.set("k", 1, ttl=60)
        await tier.get("k")
        await tier.get("missing")

        info = await tier.info()
        assert info["backend"] == "memory"
        assert info["hit_rate"] == 0.5


# ---------------------------------------------------------------------------
# RedisFastTier
# ---------------------------------------------------------------------------


class TestRedisFastTier:
    """RedisFastTier with the client replaced by a mock."""

    @pytest.fixture
    def client(self) -> MagicMock:
        client = MagicMock()
        client.get = AsyncMock(return_value=None)
        client.setex = AsyncMock()
        client.delete = AsyncMock(return_value=1)
        client.ping = AsyncMock(return_value=True)
        client.aclose = AsyncMock()
        return client

    @pytest.fixture
    def tier(self, client) -> RedisFastTier:
        tier = RedisFastTier("redis://localhost:6379/0")
        tier._client = client
        return tier

    @pytest.mark.asyncio
    async def test_get_decodes_json(self, tier, client) -> None:
        client.get.return_value = json.dumps({"text": "hi"})

        assert await tier.get("k") == {"text": "hi"}
        client.get.assert_awaited_once_with("k")

    @pytest.mark.asyncio
    async def test_set_uses_setex_with_minimum_ttl(self, tier, client) -> None:
        await tier.set("k", {"a": 1}, ttl=0)

        client.setex.assert_awaited_once_with("k", 1, json.dumps({"a": 1}))

    @pytest.mark.asyncio
    async def test_redis_error_becomes_cache_unavailable(self, tier, client) -> None:
        client.get.side_effect = RedisConnectionError("refused")

        with pytest.raises(CacheUnavailable):
            await tier.get("k")

    @pytest.mark.asyncio
    async def test_delete_pattern_scans(self, tier, client) -> None:
        async def scan_iter(match: str, count: int):
            for key in ("gv:web:a", "gv:web:b"):
                yield key

        client.scan_iter = scan_iter

        assert await tier.delete_pattern("gv:web:*") == 2
        assert client.delete.await_count == 2

    @pytest.mark.asyncio
    async def test_ping_failure_is_false(self, tier, client) -> None:
        client.ping.side_effect = RedisConnectionError("down")

        assert await tier.ping() is False

    @pytest.mark.asyncio
    async def test_close_releases_client(self, tier, client) -> None:
        await tier.close()

        client.aclose.assert_awaited_once()
        assert tier._client is None


class TestGetFastTier:
    """get_fast_tier() factory selection."""

    def test_empty_url_selects_memory(self, settings) -> None:
        assert isinstance(get_fast_tier(settings), InMemoryFastTier)

    def test_url_selects_redis(self, settings_factory) -> None:
        tier = get_fast_tier(settings_factory(redis_url="redis://cache:6379/1"))
        assert isinstance(tier, RedisFastTier)
