"""
Node cache infrastructure.

LRU cache for content-addressed blobs. Entries are immutable (an identifier
always names the same bytes) so there is no expiry or invalidation: only
size-bounded eviction.

Usage
─────

    from hamtmap.cache import LRUCache

    cache = LRUCache(max_size=1000)
    cache.set(cid, data)
    data = cache.get(cid)
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

K = TypeVar("K")
V = TypeVar("V")


# ════════════════════════════════════════════════════════════════════════════
# CACHE ENTRY
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class CacheEntry(Generic[V]):
    """A cache entry with metadata."""
    value: V
    created_at: float = field(default_factory=time.monotonic)
    accessed_at: float = field(default_factory=time.monotonic)
    access_count: int = 0
    size_bytes: int = 0

    def touch(self) -> None:
        """Update access time and count."""
        self.accessed_at = time.monotonic()
        self.access_count += 1


# ════════════════════════════════════════════════════════════════════════════
# CACHE METRICS
# ════════════════════════════════════════════════════════════════════════════


class CacheMetrics:
    """Cache performance metrics with thread-safe counters."""

    def __init__(
        self,
        hits: int = 0,
        misses: int = 0,
        evictions: int = 0,
        sets: int = 0,
        current_size: int = 0,
        current_bytes: int = 0,
        max_size: int = 0,
    ):
        self._lock = threading.Lock()
        self.hits = hits
        self.misses = misses
        self.evictions = evictions
        self.sets = sets
        self.current_size = current_size
        self.current_bytes = current_bytes
        self.max_size = max_size

    @property
    def total_requests(self) -> int:
        with self._lock:
            return self.hits + self.misses

    @property
    def hit_ratio(self) -> float:
        """Cache hit ratio (0.0 - 1.0)."""
        with self._lock:
            total = self.hits + self.misses
            if total == 0:
                return 0.0
            return self.hits / total

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            total = self.hits + self.misses
            return {
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
                "sets": self.sets,
                "current_size": self.current_size,
                "current_bytes": self.current_bytes,
                "max_size": self.max_size,
                "hit_ratio": round(self.hits / total if total > 0 else 0.0, 4),
                "total_requests": total,
            }


# ════════════════════════════════════════════════════════════════════════════
# LRU CACHE
# ════════════════════════════════════════════════════════════════════════════


class LRUCache(Generic[K, V]):
    """
    Least Recently Used cache with O(1) operations.

    Uses OrderedDict for LRU tracking and is thread-safe. Optionally bounded
    by total payload bytes as well as entry count; ``sizeof`` measures a value
    (``len`` by default).
    """

    def __init__(
        self,
        max_size: int = 1000,
        max_bytes: Optional[int] = None,
        sizeof: Callable[[V], int] = len,  # type: ignore[assignment]
        on_evict: Optional[Callable[[K, V], None]] = None,
    ):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self._max_size = max_size
        self._max_bytes = max_bytes
        self._sizeof = sizeof
        self._cache: "OrderedDict[K, CacheEntry[V]]" = OrderedDict()
        self._bytes = 0
        self._lock = threading.RLock()
        self._metrics = CacheMetrics(max_size=max_size)
        self._on_evict = on_evict

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        """Get value, moving it to the most recently used end."""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._metrics.misses += 1
                return default
            entry.touch()
            self._cache.move_to_end(key)
            self._metrics.hits += 1
            return entry.value

    def set(self, key: K, value: V) -> None:
        """Set value, evicting LRU entries if necessary."""
        size = self._sizeof(value)
        with self._lock:
            if key in self._cache:
                old = self._cache[key]
                self._bytes += size - old.size_bytes
                old.value = value
                old.size_bytes = size
                old.touch()
                self._cache.move_to_end(key)
                self._metrics.sets += 1
            else:
                while len(self._cache) >= self._max_size:
                    self._evict_one()
                self._cache[key] = CacheEntry(value=value, size_bytes=size)
                self._bytes += size
                self._metrics.sets += 1

            if self._max_bytes is not None:
                # Never evict the entry just written.
                while self._bytes > self._max_bytes and len(self._cache) > 1:
                    self._evict_one()

    def delete(self, key: K) -> bool:
        with self._lock:
            entry = self._cache.pop(key, None)
            if entry is None:
                return False
            self._bytes -= entry.size_bytes
            return True

    def contains(self, key: K) -> bool:
        """Check membership without updating LRU order."""
        with self._lock:
            return key in self._cache

    def __contains__(self, key: object) -> bool:
        return self.contains(key)  # type: ignore[arg-type]

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._bytes = 0

    def size(self) -> int:
        with self._lock:
            return len(self._cache)

    def __len__(self) -> int:
        return self.size()

    @property
    def metrics(self) -> CacheMetrics:
        """Snapshot of cache metrics."""
        with self._lock:
            return CacheMetrics(
                hits=self._metrics.hits,
                misses=self._metrics.misses,
                evictions=self._metrics.evictions,
                sets=self._metrics.sets,
                current_size=len(self._cache),
                current_bytes=self._bytes,
                max_size=self._max_size,
            )

    def _evict_one(self) -> None:
        """Evict least recently used entry."""
        if not self._cache:
            return

        key, entry = self._cache.popitem(last=False)
        self._bytes -= entry.size_bytes
        self._metrics.evictions += 1

        if self._on_evict:
            self._on_evict(key, entry.value)

    def keys(self) -> List[K]:
        """All keys, most recently used last."""
        with self._lock:
            return list(self._cache.keys())
