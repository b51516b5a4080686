"""Query result caching with caller-chosen TTLs."""

import hashlib
import json
import threading
import time
from typing import Any, Callable, Dict

from pydantic import BaseModel

from util.logging import logger as structured_logger
from .errors import InvalidArgument
from .schema import CacheEntry

_MISS = object()


def make_cache_key(prefix: str, options: Any = None, **kwargs: Any) -> str:
    """Stable key from the full option set, pagination included."""
    if isinstance(options, BaseModel):
        options = options.model_dump(by_alias=True)
    cache_data = {"prefix": prefix, "options": options, **kwargs}
    cache_str = json.dumps(cache_data, sort_keys=True, default=_stable_default)
    return f"{prefix}:{hashlib.sha256(cache_str.encode()).hexdigest()}"


def _stable_default(value: Any) -> Any:
    # sets have no defined order, so serialize them sorted
    if isinstance(value, (set, frozenset)):
        return sorted(str(v) for v in value)
    return str(value)


class _Shard:
    __slots__ = ("lock", "entries", "hits", "misses")

    def __init__(self):
        self.lock = threading.Lock()
        self.entries: Dict[str, CacheEntry] = {}
        self.hits = 0
        self.misses = 0


class QueryCache:
    """Thread-safe TTL cache.

    Keys are spread over independently locked shards so that readers and
    writers of distinct keys do not contend on one lock. Expiry is checked at
    read time; there is no background sweep.
    """

    def __init__(self, shards: int = 16, max_size: int = 1000, clock: Callable[[], float] = None):
        """Initialize cache.

        Args:
            shards: Number of independently locked partitions
            max_size: Maximum number of cached entries per shard
            clock: Monotonic time source in seconds, injectable for tests
        """
        if shards < 1:
            raise InvalidArgument("shards must be >= 1")
        self.max_size = max_size
        self._clock = clock or time.monotonic
        self._shards = [_Shard() for _ in range(shards)]

    def _shard(self, key: str) -> _Shard:
        return self._shards[hash(key) % len(self._shards)]

    def _lookup(self, key: str) -> Any:
        shard = self._shard(key)
        now = self._clock()
        with shard.lock:
            entry = shard.entries.get(key)
            expired = entry is not None and entry.is_expired(now)
            if expired:
                del shard.entries[key]
            if entry is None or expired:
                shard.misses += 1
            else:
                shard.hits += 1

        if entry is None or expired:
            structured_logger.log_cache_event("expired" if expired else "miss", key)
            return _MISS

        structured_logger.log_cache_event("hit", key)
        return entry.value

    def get(self, key: str, default: Any = None) -> Any:
        """Cached value, or ``default`` when absent or expired."""
        value = self._lookup(key)
        return default if value is _MISS else value

    def contains(self, key: str) -> bool:
        return self._lookup(key) is not _MISS

    def put(self, key: str, value: Any, ttl_sec: float) -> None:
        """Store a value for ``ttl_sec`` seconds. Last write wins."""
        if ttl_sec is None or ttl_sec < 0:
            raise InvalidArgument("ttl must be a non-negative number of seconds", {"ttl": ttl_sec})

        shard = self._shard(key)
        entry = CacheEntry(key=key, value=value, stored_at=self._clock(), ttl=float(ttl_sec))
        with shard.lock:
            # Evict oldest entry if the shard is full
            if key not in shard.entries and len(shard.entries) >= self.max_size:
                oldest_key = min(shard.entries, key=lambda k: shard.entries[k].stored_at)
                del shard.entries[oldest_key]
            shard.entries[key] = entry

        structured_logger.log_cache_event("store", key, {"ttl": ttl_sec})

    def get_or_compute(self, key: str, compute: Callable[[], Any], ttl_sec: float) -> Any:
        """Return the cached value or compute, store and return it.

        ``compute`` runs without any cache lock held; concurrent misses on the
        same key may both compute, and the last one stored wins.
        """
        value = self._lookup(key)
        if value is not _MISS:
            return value
        value = compute()
        self.put(key, value, ttl_sec)
        return value

    def invalidate(self, key: str) -> bool:
        shard = self._shard(key)
        with shard.lock:
            return shard.entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with ``prefix``."""
        removed = 0
        for shard in self._shards:
            with shard.lock:
                for key in [k for k in shard.entries if k.startswith(prefix)]:
                    del shard.entries[key]
                    removed += 1
        return removed

    def clear(self) -> None:
        """Clear all cache entries."""
        for shard in self._shards:
            with shard.lock:
                shard.entries.clear()
        structured_logger.log_cache_event("clear", "*")

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        size = hits = misses = 0
        for shard in self._shards:
            with shard.lock:
                size += len(shard.entries)
                hits += shard.hits
                misses += shard.misses
        return {
            "size": size,
            "shards": len(self._shards),
            "max_size": self.max_size,
            "hits": hits,
            "misses": misses,
        }
