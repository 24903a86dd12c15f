"""Tests for the Bounded TTL Cache and cache key derivation."""

from __future__ import annotations

import asyncio

import pytest

from genai_gateway.core.config import Settings
from genai_gateway.gateway.cache import (
    CacheRegistry,
    TTLCache,
    generate_hash,
    make_cache_key,
    text_cache_key,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ==========================================================================
# Test: TTLCache
# ==========================================================================


class TestTTLCache:
    def test_get_missing_key(self):
        cache = TTLCache(max_size=3, ttl=60)
        assert cache.get("nope") is None
        stats = cache.get_stats()
        assert stats["misses"] == 1
        assert stats["total_requests"] == 1

    def test_set_and_get(self):
        cache = TTLCache(max_size=3, ttl=60)
        cache.set("a", 1)
        assert cache.get("a") == 1
        assert cache.has("a") is True
        assert len(cache) == 1

    def test_lru_eviction_scenario(self):
        clock = FakeClock()
        cache = TTLCache(max_size=3, ttl=60, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3)

        assert cache.get("a") == 1  # "a" becomes most recently used
        cache.set("d", 4)  # evicts "b"

        assert cache.get("b") is None
        assert cache.get("a") == 1
        assert cache.get("c") == 3
        assert cache.get("d") == 4
        assert cache.get_stats()["evictions"] == 1
        assert cache.get_stats()["current_size"] == 3

    def test_expired_entry_is_a_miss(self):
        clock = FakeClock()
        cache = TTLCache(max_size=3, ttl=10, clock=clock)
        cache.set("a", 1)

        clock.advance(10)
        assert cache.get("a") == 1  # expiry is strictly after expires_at

        clock.advance(0.001)
        assert cache.get("a") is None
        stats = cache.get_stats()
        assert stats["expirations"] == 1
        assert stats["current_size"] == 0

    def test_has_does_not_touch_recency(self):
        cache = TTLCache(max_size=2, ttl=60)
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.has("a")
        cache.set("c", 3)  # "a" is still LRU
        assert not cache.has("a")
        assert cache.has("b")

    def test_has_drops_expired_entry(self):
        clock = FakeClock()
        cache = TTLCache(max_size=2, ttl=5, clock=clock)
        cache.set("a", 1)
        clock.advance(6)
        assert cache.has("a") is False
        assert len(cache) == 0

    def test_overwrite_does_not_evict(self):
        cache = TTLCache(max_size=2, ttl=60)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 10)

        assert cache.get("a") == 10
        assert cache.get("b") == 2
        stats = cache.get_stats()
        assert stats["overwrites"] == 1
        assert stats["evictions"] == 0

    def test_overwrite_refreshes_ttl(self):
        clock = FakeClock()
        cache = TTLCache(max_size=2, ttl=10, clock=clock)
        cache.set("a", 1)
        clock.advance(8)
        cache.set("a", 2)
        clock.advance(8)
        assert cache.get("a") == 2

    def test_delete(self):
        cache = TTLCache(max_size=2, ttl=60)
        cache.set("a", 1)
        assert cache.delete("a") is True
        assert cache.delete("a") is False
        assert cache.get("a") is None

    def test_clear_keeps_stats(self):
        cache = TTLCache(max_size=2, ttl=60)
        cache.set("a", 1)
        cache.get("a")
        cache.clear()
        stats = cache.get_stats()
        assert stats["current_size"] == 0
        assert stats["hits"] == 1
        assert stats["evictions"] == 0

    def test_hit_rate_rounding(self):
        cache = TTLCache(max_size=3, ttl=60)
        cache.set("a", 1)
        cache.get("a")
        cache.get("b")
        cache.get("c")
        # 1 hit out of 3 requests
        assert cache.get_stats()["hit_rate"] == 33.33

    def test_hit_rate_without_requests(self):
        assert TTLCache(max_size=1, ttl=1).get_stats()["hit_rate"] == 0.0

    def test_reset_stats(self):
        cache = TTLCache(max_size=3, ttl=60)
        cache.set("a", 1)
        cache.get("a")
        cache.reset_stats()
        stats = cache.get_stats()
        assert stats["total_requests"] == 0
        assert stats["hits"] == 0
        assert stats["current_size"] == 1

    def test_cleanup_expired(self):
        clock = FakeClock()
        cache = TTLCache(max_size=10, ttl=10, clock=clock)
        cache.set("old1", 1)
        cache.set("old2", 2)
        clock.advance(5)
        cache.set("fresh", 3)
        clock.advance(6)

        assert cache.cleanup_expired() == 2
        assert cache.has("fresh")
        assert cache.get_stats()["expirations"] == 2

    def test_invalid_max_size(self):
        with pytest.raises(ValueError):
            TTLCache(max_size=0, ttl=60)

    @pytest.mark.asyncio
    async def test_background_sweep_removes_expired(self):
        clock = FakeClock()
        cache = TTLCache(max_size=10, ttl=1, cleanup_interval=0.01, clock=clock)
        cache.set("a", 1)
        clock.advance(2)

        cache.start()
        assert cache.is_running
        for _ in range(50):
            await asyncio.sleep(0.01)
            if len(cache) == 0:
                break
        await cache.stop()

        assert len(cache) == 0
        assert not cache.is_running

    @pytest.mark.asyncio
    async def test_start_is_idempotent_and_stop_without_start(self):
        cache = TTLCache(max_size=1, ttl=1, cleanup_interval=10)
        await cache.stop()
        cache.start()
        task = cache._sweep_task
        cache.start()
        assert cache._sweep_task is task
        await cache.stop()


# ==========================================================================
# Test: Key derivation
# ==========================================================================


class TestCacheKeys:
    def test_hash_is_stable_for_reordered_mappings(self):
        assert generate_hash({"a": 1, "b": {"x": 1, "y": 2}}) == generate_hash({"b": {"y": 2, "x": 1}, "a": 1})

    def test_hash_differs_for_different_data(self):
        assert generate_hash({"a": 1}) != generate_hash({"a": 2})

    def test_hash_of_str_and_bytes_match(self):
        assert generate_hash("hello") == generate_hash(b"hello")
        assert len(generate_hash("hello")) == 64

    def test_text_key_ignores_option_order(self):
        key1 = text_cache_key("Hello", {"temperature": 0.5, "model": "gemini-2.0-flash"})
        key2 = text_cache_key("Hello", {"model": "gemini-2.0-flash", "temperature": 0.5})
        assert key1 == key2
        assert key1.startswith("text:")

    def test_text_key_depends_on_prompt(self):
        assert text_cache_key("Hello") != text_cache_key("Hello!")

    def test_make_cache_key(self):
        assert make_cache_key("embed", ["a", "b"]).startswith("embed:")
        assert make_cache_key("embed", ["a", "b"]) == make_cache_key("embed", ["a", "b"], {})

    def test_byte_payloads_hashed_by_content(self):
        key1 = make_cache_key("blob", {"data": b"\x89PNG..."}, {"prompt": "describe"})
        key2 = make_cache_key("blob", {"data": b"\x89PNG..."}, {"prompt": "describe"})
        key3 = make_cache_key("blob", {"data": b"\x89PNG!!!"}, {"prompt": "describe"})
        assert key1 == key2
        assert key1 != key3

    def test_token_key_depends_on_model(self):
        key1 = make_cache_key("tokens", "Hello", {"model": "gemini-2.0-flash"})
        key2 = make_cache_key("tokens", "Hello", {"model": "gemini-1.5-pro"})
        assert key1 != key2
        assert key1.startswith("tokens:")


# ==========================================================================
# Test: CacheRegistry
# ==========================================================================


class TestCacheRegistry:
    def test_defaults_from_settings(self):
        registry = CacheRegistry.from_settings(Settings(_env_file=None))
        assert registry.text.max_size == 1000
        assert registry.text.ttl == 3600
        assert registry.tokens.max_size == 2000
        assert registry.tokens.ttl == 24 * 3600

    def test_get_all_stats_and_clear_all(self):
        registry = CacheRegistry.from_settings(Settings(_env_file=None))
        registry.text.set("k", "v")
        registry.tokens.set("k", 3)

        stats = registry.get_all_stats()
        assert set(stats) == {"text", "tokens"}
        assert stats["text"]["current_size"] == 1
        assert stats["tokens"]["current_size"] == 1

        registry.clear_all()
        assert all(s["current_size"] == 0 for s in registry.get_all_stats().values())

    @pytest.mark.asyncio
    async def test_start_and_stop_all(self):
        registry = CacheRegistry.from_settings(Settings(_env_file=None))
        registry.start_all()
        assert registry.text.is_running and registry.tokens.is_running
        await registry.stop_all()
        assert not registry.text.is_running
        assert not registry.tokens.is_running
