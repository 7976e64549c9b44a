"""Tests for caching utilities."""

from typing import Any
from unittest.mock import AsyncMock

import pytest

from app.core.cache import TTLCache, cache_delete, cache_get_json, cache_set_json


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestTTLCache:
    """Test the in-process TTL cache."""

    def test_get_before_expiry(self) -> None:
        """Test a value is returned while it is fresh."""
        clock = FakeClock()
        cache: TTLCache[str, str] = TTLCache(60, clock=clock)
        cache.set("a", "value")

        clock.now += 59
        assert cache.get("a") == "value"

    def test_get_after_expiry_returns_none_and_evicts(self) -> None:
        """Test an expired entry is treated as a miss and dropped."""
        clock = FakeClock()
        cache: TTLCache[str, str] = TTLCache(60, clock=clock)
        cache.set("a", "value")

        clock.now += 60
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_per_entry_ttl_overrides_default(self) -> None:
        clock = FakeClock()
        cache: TTLCache[str, int] = TTLCache(60, clock=clock)
        cache.set("short", 1, ttl=5)
        cache.set("long", 2)

        clock.now += 10
        assert "short" not in cache
        assert cache.get("long") == 2

    def test_delete_and_clear(self) -> None:
        cache: TTLCache[str, int] = TTLCache(60)
        cache.set("a", 1)
        cache.set("b", 2)

        cache.delete("a")
        cache.delete("missing")
        assert cache.get("a") is None

        cache.clear()
        assert len(cache) == 0

    def test_purge_expired(self) -> None:
        clock = FakeClock()
        cache: TTLCache[str, int] = TTLCache(60, clock=clock)
        cache.set("a", 1, ttl=1)
        cache.set("b", 2, ttl=100)

        clock.now += 2
        assert cache.purge_expired() == 1
        assert len(cache) == 1

    def test_max_entries_evicts_soonest_expiring(self) -> None:
        """Test a full cache evicts the entry closest to expiry."""
        clock = FakeClock()
        cache: TTLCache[str, int] = TTLCache(60, clock=clock, max_entries=2)
        cache.set("soon", 1, ttl=10)
        cache.set("later", 2, ttl=50)
        cache.set("new", 3)

        assert cache.get("soon") is None
        assert cache.get("later") == 2
        assert cache.get("new") == 3


class TestRedisJsonCache:
    """Test Redis-backed JSON helpers."""

    @pytest.mark.asyncio
    async def test_set_and_get(self, test_redis: Any) -> None:
        value = {"plan_id": "pro", "remaining_quota": 10}

        assert await cache_set_json(test_redis, "quota:1", value, ttl=60) is True
        assert await cache_get_json(test_redis, "quota:1") == value
        assert 0 < await test_redis.ttl("quota:1") <= 60

    @pytest.mark.asyncio
    async def test_get_missing_key(self, test_redis: Any) -> None:
        assert await cache_get_json(test_redis, "quota:missing") is None

    @pytest.mark.asyncio
    async def test_delete(self, test_redis: Any) -> None:
        await cache_set_json(test_redis, "quota:1", {"a": 1})

        assert await cache_delete(test_redis, "quota:1") is True
        assert await cache_get_json(test_redis, "quota:1") is None

    @pytest.mark.asyncio
    async def test_redis_errors_are_misses(self) -> None:
        """Test Redis failures degrade to cache misses instead of raising."""
        broken = AsyncMock()
        broken.get = AsyncMock(side_effect=ConnectionError("Redis down"))
        broken.setex = AsyncMock(side_effect=ConnectionError("Redis down"))

        assert await cache_get_json(broken, "quota:1") is None
        assert await cache_set_json(broken, "quota:1", {"a": 1}) is False
