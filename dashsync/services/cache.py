"""
CacheStore - key to entry store with freshness metadata.

Features:
- Synchronous, non-blocking reads (stale-while-revalidate friendly)
- Atomic whole-entry replacement, never partial mutation
- fetched_at is monotonically non-decreasing per key
- LRU eviction above a size limit
- JSON-able dump/load for durable snapshots
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from loguru import logger
from pydantic import BaseModel, ConfigDict

from dashsync.utils import utcnow


class CacheEntry(BaseModel):
    """A single cached dataset. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    key: str
    payload: Any
    fetched_at: datetime
    source: str
    stale_at: datetime

    @classmethod
    def create(
        cls,
        key: str,
        payload: Any,
        source: str,
        ttl_seconds: float,
        fetched_at: datetime | None = None,
    ) -> "CacheEntry":
        fetched_at = fetched_at or utcnow()
        return cls(
            key=key,
            payload=payload,
            fetched_at=fetched_at,
            source=source,
            stale_at=fetched_at + timedelta(seconds=ttl_seconds),
        )

    def is_fresh(self, now: datetime) -> bool:
        """Fresh iff now < stale_at."""
        return now < self.stale_at


class CacheStore:
    """
    Process-local cache of the latest payload per dataset key.

    Usage:
        store = CacheStore()
        store.put(CacheEntry.create("gaza-casualties", data, "goodshepherd", 3600))

        entry = store.get("gaza-casualties")
        if entry and store.is_fresh("gaza-casualties"):
            ...
    """

    def __init__(
        self,
        max_size: int | None = 512,
        clock: Callable[[], datetime] = utcnow,
        debug: bool = False,
    ):
        self._entries: dict[str, CacheEntry] = {}
        # Access order for LRU; the dict keeps insertion order.
        self._access: dict[str, None] = {}
        self._max_size = max_size
        self._clock = clock
        self._debug = debug
        self._lock = threading.Lock()
        self._stats = CacheStats()

    def get(self, key: str) -> CacheEntry | None:
        """Return the entry for ``key`` (fresh or stale) or None."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats.misses += 1
                self._log(f"MISS: {key}")
                return None

            self._access.pop(key, None)
            self._access[key] = None

            if entry.is_fresh(self._clock()):
                self._stats.hits += 1
                self._log(f"HIT: {key}")
            else:
                self._stats.stale_hits += 1
                self._log(f"STALE HIT: {key}")
            return entry

    def put(self, entry: CacheEntry) -> bool:
        """
        Atomically replace the entry for ``entry.key``.

        Returns False (and keeps the current entry) when ``entry`` is older
        than the one already stored.
        """
        with self._lock:
            current = self._entries.get(entry.key)
            if current is not None and entry.fetched_at < current.fetched_at:
                logger.warning(
                    f"Discarding out-of-order write for {entry.key}: "
                    f"{entry.fetched_at.isoformat()} < {current.fetched_at.isoformat()}"
                )
                return False

            if (
                self._max_size is not None
                and current is None
                and len(self._entries) >= self._max_size
            ):
                self._evict_oldest()

            self._entries[entry.key] = entry
            self._access.pop(entry.key, None)
            self._access[entry.key] = None
            self._log(f"PUT: {entry.key} (stale at {entry.stale_at.isoformat()})")
            return True

    def is_fresh(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.is_fresh(self._clock())

    def clear(self, key: str | None = None) -> int:
        """Drop one key, or everything when ``key`` is None. Returns count removed."""
        with self._lock:
            if key is None:
                count = len(self._entries)
                self._entries.clear()
                self._access.clear()
                self._log(f"CLEAR: {count} entries removed")
                return count

            self._access.pop(key, None)
            if self._entries.pop(key, None) is None:
                return 0
            self._log(f"DELETE: {key}")
            return 1

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def dump(self) -> list[dict[str, Any]]:
        """Serialize every entry to JSON-compatible dicts."""
        with self._lock:
            return [entry.model_dump(mode="json") for entry in self._entries.values()]

    def load(self, raw_entries: list[dict[str, Any]]) -> int:
        """Restore entries produced by ``dump``; newer in-memory entries win."""
        loaded = 0
        for raw in raw_entries:
            try:
                entry = CacheEntry.model_validate(raw)
            except ValueError as e:
                logger.warning(f"Skipping unreadable cache entry: {e}")
                continue
            if self.put(entry):
                loaded += 1
        return loaded

    def _evict_oldest(self) -> None:
        """Evict the least recently used entry. Caller holds the lock."""
        if not self._access:
            return
        oldest_key = next(iter(self._access))
        del self._access[oldest_key]
        self._entries.pop(oldest_key, None)
        self._stats.evictions += 1
        self._log(f"EVICT: {oldest_key}")

    def set_max_size(self, max_size: int | None) -> None:
        with self._lock:
            self._max_size = max_size
            while max_size is not None and len(self._entries) > max_size:
                self._evict_oldest()

    def get_stats(self) -> "CacheStats":
        """Get cache statistics."""
        self._stats.size = len(self._entries)
        self._stats.max_size = self._max_size
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[CacheStore] {message}")


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    stale_hits: int = 0
    evictions: int = 0
    size: int = 0
    max_size: int | None = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.stale_hits + self.misses
        if total == 0:
            return 0.0
        return (self.hits + self.stale_hits) / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "stale_hits": self.stale_hits,
            "evictions": self.evictions,
            "size": self.size,
            "max_size": self.max_size,
            "hit_rate": f"{self.hit_rate:.2%}",
        }
