"""Caching utilities.

``TTLCache`` is an in-process, time-keyed map with expiry checked on read.
It takes an injectable clock so tests can move time. The Redis helpers cache
small JSON documents (quota snapshots) shared between workers.
"""

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

K = TypeVar("K")
V = TypeVar("V")

Clock = Callable[[], float]


@dataclass
class _Entry(Generic[V]):
    value: V
    expires_at: float


class TTLCache(Generic[K, V]):
    """Time-keyed cache with explicit expiry checks and disposal."""

    def __init__(self, default_ttl: float, *, clock: Clock = time.monotonic, max_entries: int = 1024) -> None:
        self.default_ttl = default_ttl
        self._clock = clock
        self._max_entries = max_entries
        self._entries: dict[K, _Entry[V]] = {}

    def get(self, key: K) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            logger.debug("Cache entry expired: %s", key)
            return None
        return entry.value

    def set(self, key: K, value: V, ttl: float | None = None) -> None:
        if len(self._entries) >= self._max_entries and key not in self._entries:
            self.purge_expired()
            if len(self._entries) >= self._max_entries:
                # Evict the entry closest to expiry
                oldest = min(self._entries, key=lambda k: self._entries[k].expires_at)
                del self._entries[oldest]
        self._entries[key] = _Entry(value, self._clock() + (self.default_ttl if ttl is None else ttl))

    def delete(self, key: K) -> None:
        self._entries.pop(key, None)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]


async def cache_get_json(redis: Redis, key: str) -> Any | None:
    """Get a JSON value, treating cache failures as misses."""
    try:
        value = await redis.get(key)
    except Exception:
        logger.exception("Error getting from cache key '%s'", key)
        return None

    if value is None:
        logger.debug("Cache miss: %s", key)
        return None

    logger.debug("Cache hit: %s", key)
    return json.loads(value)


async def cache_set_json(redis: Redis, key: str, value: Any, ttl: int = 300) -> bool:
    """Set a JSON value with TTL; returns False when Redis is unavailable."""
    try:
        await redis.setex(key, ttl, json.dumps(value, default=str))
    except Exception:
        logger.exception("Error setting cache key '%s'", key)
        return False

    logger.debug("Cache set: %s (TTL: %ss)", key, ttl)
    return True


async def cache_delete(redis: Redis, *keys: str) -> bool:
    try:
        if keys:
            await redis.delete(*keys)
    except Exception:
        logger.exception("Error deleting cache keys %s", keys)
        return False

    logger.debug("Cache deleted: %s", keys)
    return True
