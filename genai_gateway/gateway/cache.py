"""Bounded TTL cache with LRU eviction.

Entries expire ``ttl`` seconds after they were written. An expired entry is
never returned: it is dropped lazily on access and eagerly by a periodic
sweep task. At capacity the least-recently-used entry is evicted to make
room for a new key.

Cache keys for generation results are content hashes, see ``make_cache_key``
and ``text_cache_key``.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

V = TypeVar("V")


@dataclass
class CacheEntry(Generic[V]):
    value: V
    created_at: float
    expires_at: float


@dataclass
class CacheStats:
    total_requests: int = 0
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    overwrites: int = 0


class TTLCache(Generic[V]):
    """In-memory key/value cache bounded by size and entry age.

    ``clock`` returns seconds; it defaults to ``time.monotonic`` and is
    injectable for tests.
    """

    def __init__(
        self,
        max_size: int = 1000,
        ttl: float = 3600.0,
        cleanup_interval: float = 60.0,
        name: str = "cache",
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.name = name
        self.max_size = max_size
        self.ttl = ttl
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry[V]] = OrderedDict()
        self._stats = CacheStats()
        self._sweep_task: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._entries)

    def _is_expired(self, entry: CacheEntry[V]) -> bool:
        return self._clock() > entry.expires_at

    def get(self, key: str) -> V | None:
        """Return the cached value, or None on a miss (absent or expired)."""
        self._stats.total_requests += 1

        entry = self._entries.get(key)
        if entry is None:
            self._stats.misses += 1
            return None

        if self._is_expired(entry):
            del self._entries[key]
            self._stats.expirations += 1
            self._stats.misses += 1
            return None

        self._entries.move_to_end(key)
        self._stats.hits += 1
        return entry.value

    def set(self, key: str, value: V) -> None:
        now = self._clock()

        if key in self._entries:
            del self._entries[key]
            self._stats.overwrites += 1
        elif len(self._entries) >= self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            self._stats.evictions += 1
            logger.debug("Cache %s evicted %s", self.name, evicted)

        self._entries[key] = CacheEntry(value=value, created_at=now, expires_at=now + self.ttl)

    def has(self, key: str) -> bool:
        """Whether a live entry exists. Does not change recency."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        if self._is_expired(entry):
            del self._entries[key]
            self._stats.expirations += 1
            return False
        return True

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()
        logger.info("Cache %s cleared", self.name)

    def cleanup_expired(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        expired = [key for key, entry in self._entries.items() if self._is_expired(entry)]
        for key in expired:
            del self._entries[key]
        self._stats.expirations += len(expired)
        if expired:
            logger.debug("Cache %s swept %d expired entries", self.name, len(expired))
        return len(expired)

    def get_stats(self) -> dict[str, Any]:
        total = self._stats.total_requests
        hit_rate = round(self._stats.hits / total * 10000) / 100 if total else 0.0
        return {
            "total_requests": total,
            "hits": self._stats.hits,
            "misses": self._stats.misses,
            "hit_rate": hit_rate,
            "current_size": len(self._entries),
            "max_size": self.max_size,
            "evictions": self._stats.evictions,
            "expirations": self._stats.expirations,
            "overwrites": self._stats.overwrites,
        }

    def reset_stats(self) -> None:
        self._stats = CacheStats()

    # --- Background sweep ---

    @property
    def is_running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self.is_running:
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name=f"cache-sweep-{self.name}")
        logger.info("Cache %s sweep started (every %.0fs)", self.name, self.cleanup_interval)

    async def stop(self) -> None:
        if self._sweep_task is None:
            return
        task, self._sweep_task = self._sweep_task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Cache %s sweep stopped", self.name)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                self.cleanup_expired()
            except Exception:
                logger.exception("Cache %s sweep failed", self.name)


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------


def _canonical(data: Any) -> Any:
    """Make nested data JSON-serializable with a stable layout."""
    if isinstance(data, dict):
        return {str(k): _canonical(v) for k, v in data.items()}
    if isinstance(data, (list, tuple)):
        return [_canonical(v) for v in data]
    if isinstance(data, (bytes, bytearray, memoryview)):
        return generate_hash(bytes(data))
    return data


def generate_hash(data: Any) -> str:
    """SHA-256 hex digest of a string, bytes or JSON-compatible structure.

    Mappings are hashed with sorted keys, so ``{"a": 1, "b": 2}`` and
    ``{"b": 2, "a": 1}`` produce the same digest.
    """
    if isinstance(data, str):
        raw = data.encode("utf-8")
    elif isinstance(data, (bytes, bytearray, memoryview)):
        raw = bytes(data)
    else:
        raw = json.dumps(_canonical(data), sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def make_cache_key(kind: str, payload: Any, options: dict[str, Any] | None = None) -> str:
    return f"{kind}:{generate_hash({'payload': payload, 'options': options or {}})}"


def text_cache_key(prompt: str, options: dict[str, Any] | None = None) -> str:
    return f"text:{generate_hash({'prompt': prompt, 'options': options or {}})}"


# ---------------------------------------------------------------------------
# Preconfigured caches
# ---------------------------------------------------------------------------


class CacheRegistry:
    """Per-call-kind caches: generated text and token counts."""

    def __init__(self, text: TTLCache, tokens: TTLCache):
        self.text = text
        self.tokens = tokens

    @classmethod
    def from_settings(cls, settings) -> CacheRegistry:
        return cls(
            text=TTLCache(
                max_size=settings.text_cache_max_size,
                ttl=settings.text_cache_ttl,
                cleanup_interval=settings.text_cache_cleanup_interval,
                name="text",
            ),
            tokens=TTLCache(
                max_size=settings.token_cache_max_size,
                ttl=settings.token_cache_ttl,
                cleanup_interval=settings.token_cache_cleanup_interval,
                name="tokens",
            ),
        )

    def _all(self) -> dict[str, TTLCache]:
        return {"text": self.text, "tokens": self.tokens}

    def get_all_stats(self) -> dict[str, dict[str, Any]]:
        return {name: cache.get_stats() for name, cache in self._all().items()}

    def clear_all(self) -> None:
        for cache in self._all().values():
            cache.clear()

    def start_all(self) -> None:
        for cache in self._all().values():
            cache.start()

    async def stop_all(self) -> None:
        for cache in self._all().values():
            await cache.stop()
