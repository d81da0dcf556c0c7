import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..models.schemas import ContentKey, KeyType

logger = logging.getLogger(__name__)


class LRUCache:
    """Thread-safe LRU cache with a per-entry time to live"""

    def __init__(
        self,
        max_size: int = 1000,
        ttl: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            max_size: Maximum number of items in cache (0 disables storing)
            ttl: Time to live in seconds, refreshed on every hit
            clock: Time source, replaceable in tests
        """
        self.max_size = max_size
        self.ttl = ttl
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[Any, float]]" = OrderedDict()
        self.lock = threading.RLock()
        self.hits = 0
        self.misses = 0
        self._ops_since_cleanup = 0

    def _expired(self, stamp: float, now: float) -> bool:
        return now - stamp > self.ttl

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None when absent or expired"""
        with self.lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None

            value, stamp = entry
            now = self._clock()
            if self._expired(stamp, now):
                del self._entries[key]
                self.misses += 1
                return None

            self._entries[key] = (value, now)
            self._entries.move_to_end(key)
            self.hits += 1
            return value

    def set(self, key: str, value: Any):
        """Store a value, evicting the least recently used entries when full"""
        if self.max_size <= 0:
            return

        with self.lock:
            self._ops_since_cleanup += 1
            if self._ops_since_cleanup >= 100:
                self._purge_expired()
                self._ops_since_cleanup = 0

            if key in self._entries:
                self._entries.move_to_end(key)
            self._entries[key] = (value, self._clock())

            while len(self._entries) > self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Evicted cache entry {evicted}")

    def delete(self, key: str) -> bool:
        with self.lock:
            return self._entries.pop(key, None) is not None

    def _purge_expired(self) -> int:
        now = self._clock()
        stale = [k for k, (_, stamp) in self._entries.items() if self._expired(stamp, now)]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear(self):
        with self.lock:
            self._entries.clear()

    def size(self) -> int:
        with self.lock:
            return len(self._entries)

    def cleanup_expired(self) -> int:
        """Drop expired entries now and return how many were removed"""
        with self.lock:
            return self._purge_expired()

    def stats(self) -> Dict[str, Any]:
        with self.lock:
            total = self.hits + self.misses
            return {
                "size": len(self._entries),
                "max_size": self.max_size,
                "ttl": self.ttl,
                "hits": self.hits,
                "misses": self.misses,
                "hit_ratio": self.hits / max(total, 1),
            }

    def __contains__(self, key: str) -> bool:
        with self.lock:
            entry = self._entries.get(key)
            return entry is not None and not self._expired(entry[1], self._clock())

    def __len__(self) -> int:
        return self.size()


class KeyStore:
    """KID -> content key store shared across CDM calls"""

    PREFIX = "key:"

    def __init__(self, cache: LRUCache):
        self.cache = cache

    @classmethod
    def _cache_key(cls, kid: str) -> str:
        return cls.PREFIX + kid.replace("-", "").lower()

    def add(self, keys: Iterable[ContentKey]) -> int:
        """Remember content keys by KID; non-content keys are ignored"""
        added = 0
        for key in keys:
            if key.type != KeyType.CONTENT:
                continue
            self.cache.set(self._cache_key(key.kid), key)
            added += 1
        return added

    def get(self, kid: str) -> Optional[ContentKey]:
        return self.cache.get(self._cache_key(kid))

    def get_many(self, kids: Iterable[str]) -> List[ContentKey]:
        found = []
        for kid in kids:
            key = self.get(kid)
            if key is not None:
                found.append(key)
        return found
