import asyncio
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_SIZE = 1000
DEFAULT_TTL_SECONDS = 30 * 60
DEFAULT_CLEANUP_INTERVAL_SECONDS = 5 * 60

# Cache keys
STRAVA_ACTIVITIES_KEY = "strava_activities:{subject}"
FILTERED_ACTIVITIES_KEY = "filtered_hiking_activities:{subject}"
ACTIVITY_DETAILS_KEY = "strava_activity:{activity_id}"

def estimate_size(value: Any) -> int:
    """Approximate footprint of a value: length of its JSON encoding in bytes."""
    try:
        return len(json.dumps(value, default=str).encode("utf-8"))
    except (TypeError, ValueError):
        # Circular structures and the like
        return len(repr(value).encode("utf-8"))

@dataclass
class CacheEntry(Generic[T]):
    key: str
    value: T
    created_at: float
    ttl: float
    size: int = 0

    def age(self, now: float) -> float:
        return now - self.created_at

    def is_expired(self, now: float) -> bool:
        return self.age(now) > self.ttl

@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    evictions: int = 0
    size: int = 0
    memory: int = 0

    @property
    def requests(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        if not self.requests:
            return 0
        return round(self.hits / self.requests * 100, 2)

    @property
    def miss_rate(self) -> float:
        if not self.requests:
            return 0
        return round(self.misses / self.requests * 100, 2)

class ResponseCache:
    """
    TTL cache with FIFO eviction (oldest inserted, not least recently used),
    hit/miss accounting and a background sweep. Concurrent misses for the same
    key may both fetch and both set; the last writer wins.
    """

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_SIZE,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        size_estimator: Callable[[Any], int] = estimate_size,
        clock: Callable[[], float] = time.time,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._estimate_size = size_estimator
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry[Any]]" = OrderedDict()
        self._stats = CacheStats()
        self._lock = threading.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None

    # --- core operations ---

    def set(self, key: str, value: T, ttl: Optional[float] = None) -> None:
        """Insert or replace ``key``. TTL is in seconds."""
        if ttl is None:
            ttl = self.default_ttl
        size = self._estimate_size(value)

        with self._lock:
            now = self._clock()
            previous = self._entries.get(key)
            if previous is not None:
                # Same-slot update: retire the old size, keep the insertion position
                self._stats.memory -= previous.size
            else:
                while len(self._entries) >= self.max_size:
                    self._evict_oldest()

            self._entries[key] = CacheEntry(key=key, value=value, created_at=now, ttl=ttl, size=size)
            self._stats.memory += size
            self._stats.sets += 1
            self._stats.size = len(self._entries)

    def get(self, key: str) -> Optional[T]:
        """Return the cached value, or None when absent or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats.misses += 1
                return None

            if entry.is_expired(self._clock()):
                self._remove(key)
                self._stats.misses += 1
                return None

            self._stats.hits += 1
            return entry.value

    def has(self, key: str) -> bool:
        """Like ``get`` but without touching hit/miss counters."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired(self._clock()):
                self._remove(key)
                return False
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            if key not in self._entries:
                return False
            self._remove(key)
            return True

    def clear(self) -> None:
        """Drop every entry. Lifetime counters are kept."""
        with self._lock:
            self._entries.clear()
            self._stats.size = 0
            self._stats.memory = 0

    def cleanup(self) -> int:
        """Remove all expired entries and return how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                self._remove(key)

        if expired:
            logger.debug(f"Cache sweep removed {len(expired)} expired entries")
        return len(expired)

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    # --- introspection ---

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats = self._stats
            return {
                "hits": stats.hits,
                "misses": stats.misses,
                "sets": stats.sets,
                "deletes": stats.deletes,
                "evictions": stats.evictions,
                "size": stats.size,
                "max_size": self.max_size,
                "total_memory_usage": stats.memory,
                "hit_rate": stats.hit_rate,
                "miss_rate": stats.miss_rate,
            }

    def get_info(self, key: str) -> Dict[str, Any]:
        """Age/TTL/size of a single entry, in seconds and bytes."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return {"exists": False}
            return {
                "exists": True,
                "age": round(entry.age(self._clock())),
                "ttl": round(entry.ttl),
                "size": entry.size,
            }

    # --- background sweep ---

    def start_cleanup(self, interval: float = DEFAULT_CLEANUP_INTERVAL_SECONDS) -> asyncio.Task:
        """Schedule ``cleanup`` every ``interval`` seconds on the running loop."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return self._cleanup_task
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(interval))
        logger.info(f"Cache sweep scheduled every {interval}s")
        return self._cleanup_task

    async def stop_cleanup(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _cleanup_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                removed = self.cleanup()
                if removed:
                    logger.info(f"Cache sweep: removed {removed} expired entries, {self.size()} remaining")
            except Exception as e:
                # Keep the sweep alive; the next tick retries
                logger.error(f"Cache sweep failed: {e}", exc_info=True)

    # --- internals (caller holds the lock) ---

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key)
        self._stats.memory -= entry.size
        self._stats.deletes += 1
        self._stats.size = len(self._entries)

    def _evict_oldest(self) -> None:
        key, entry = self._entries.popitem(last=False)
        self._stats.memory -= entry.size
        self._stats.evictions += 1
        self._stats.size = len(self._entries)
        logger.debug(f"Cache full ({self.max_size}), evicted oldest key {key}")
