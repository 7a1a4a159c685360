"""Bounded LRU cache with per-entry TTL."""

import threading
import time
from collections import OrderedDict, defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, Hashable, Optional, TypeVar

from loguru import logger

from .error_handling import InvariantViolation


K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass
class _Entry(Generic[V]):
    value: V
    stored_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.stored_at > self.ttl


class BoundedCache(Generic[K, V]):
    """
    Fixed-capacity cache with lazy TTL expiry and strict LRU eviction.

    Reads of resident entries are cheap; every mutation (insert, evict,
    expire) happens under one lock so the capacity bound always holds.
    """

    def __init__(self,
                 max_size: int = 100,
                 ttl_seconds: float = 300,
                 name: str = "cache",
                 clock: Callable[[], float] = time.monotonic,
                 strict: bool = False):
        """
        Initialize cache.

        Args:
            max_size: Maximum resident entries
            ttl_seconds: Default time to live per entry
            name: Label used in logs and stats
            clock: Monotonic time source, injectable for tests
            strict: Raise on invariant violations instead of self-healing
        """
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self.name = name
        self.strict = strict
        self._clock = clock
        self._entries: "OrderedDict[K, _Entry[V]]" = OrderedDict()
        self._lock = threading.Lock()
        self._stats = defaultdict(int)

    def get(self, key: K) -> Optional[V]:
        """Return the cached value and mark it most recently used."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats['misses'] += 1
                return None

            if entry.expired(self._clock()):
                del self._entries[key]
                self._stats['expirations'] += 1
                self._stats['misses'] += 1
                return None

            self._entries.move_to_end(key)
            self._stats['hits'] += 1
            return entry.value

    def set(self, key: K, value: V, ttl: Optional[float] = None) -> None:
        """Insert or replace a value, evicting the least recently used entry at capacity."""
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            elif len(self._entries) >= self.max_size:
                oldest, _ = self._entries.popitem(last=False)
                self._stats['evictions'] += 1
                logger.debug(f"{self.name}: evicted {oldest!r}")

            self._entries[key] = _Entry(
                value=value,
                stored_at=self._clock(),
                ttl=self.ttl_seconds if ttl is None else ttl,
            )
            self._check_capacity()

    def delete(self, key: K) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def __contains__(self, key: K) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not entry.expired(self._clock())

    def size(self) -> int:
        """Number of resident entries, expired or not."""
        return len(self._entries)

    def __len__(self) -> int:
        return self.size()

    def clear(self) -> None:
        """Clear all cache entries."""
        with self._lock:
            self._entries.clear()
        logger.debug(f"{self.name}: cleared")

    def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        with self._lock:
            now = self._clock()
            stale = [k for k, e in self._entries.items() if e.expired(now)]
            for key in stale:
                del self._entries[key]
            self._stats['expirations'] += len(stale)
            return len(stale)

    async def get_or_compute(self, key: K, factory: Callable[[], Awaitable[V]]) -> V:
        """Return the cached value, computing and caching it on a miss."""
        value = self.get(key)
        if value is not None:
            return value
        value = await factory()
        self.set(key, value)
        return value

    def stats(self) -> Dict[str, Any]:
        hits = self._stats['hits']
        lookups = hits + self._stats['misses']
        return {
            'name': self.name,
            'size': len(self._entries),
            'max_size': self.max_size,
            'hits': hits,
            'misses': self._stats['misses'],
            'evictions': self._stats['evictions'],
            'expirations': self._stats['expirations'],
            'hit_rate': hits / lookups if lookups else 0.0,
        }

    def _check_capacity(self) -> None:
        # Caller holds the lock
        overflow = len(self._entries) - self.max_size
        if overflow <= 0:
            return
        message = f"{self.name}: {len(self._entries)} entries exceed capacity {self.max_size}"
        if self.strict:
            raise InvariantViolation(message)
        logger.warning(f"{message}, evicting {overflow}")
        for _ in range(overflow):
            self._entries.popitem(last=False)
            self._stats['evictions'] += 1
