"""
Scoped In-Memory TTL Cache
Injected into the components that need it (oracle price, tier catalogue);
there are no module-level instances.
"""

import time
import logging
import threading
from typing import Any, Optional, Dict, Callable

logger = logging.getLogger(__name__)


class SimpleCache:
    """Thread-safe in-memory cache with TTL support and explicit invalidation"""

    def __init__(self, default_ttl: int = 300, name: str = "cache", clock: Callable[[], float] = time.monotonic):
        self._cache: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self.name = name
        self.default_ttl = default_ttl
        self.stats = {"hits": 0, "misses": 0, "sets": 0, "invalidations": 0, "evictions": 0}

    def get(self, key: str, default: Any = None) -> Any:
        """Get value from cache"""
        with self._lock:
            entry = self._cache.get(key)
            if entry is not None:
                if entry["expires_at"] > self._clock():
                    self.stats["hits"] += 1
                    return entry["value"]
                del self._cache[key]
                self.stats["evictions"] += 1

            self.stats["misses"] += 1
            return default

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Set value in cache with TTL"""
        if ttl is None:
            ttl = self.default_ttl

        with self._lock:
            now = self._clock()
            self._cache[key] = {"value": value, "created_at": now, "expires_at": now + ttl}
            self.stats["sets"] += 1

    def get_or_load(self, key: str, loader: Callable[[], Any], ttl: Optional[int] = None) -> Any:
        """Return the cached value or call loader and cache what it returns"""
        sentinel = object()
        value = self.get(key, sentinel)
        if value is not sentinel:
            return value
        value = loader()
        self.set(key, value, ttl)
        return value

    def invalidate(self, key: str) -> bool:
        """Drop one key; returns True if it was present"""
        with self._lock:
            if key in self._cache:
                del self._cache[key]
                self.stats["invalidations"] += 1
                logger.debug(f"🔄 CACHE[{self.name}]: invalidated {key}")
                return True
            return False

    def invalidate_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [key for key in self._cache if key.startswith(prefix)]
            for key in keys:
                del self._cache[key]
            self.stats["invalidations"] += len(keys)
        if keys:
            logger.debug(f"🔄 CACHE[{self.name}]: invalidated {len(keys)} keys under {prefix}")
        return len(keys)

    def clear(self) -> None:
        """Clear all cache entries"""
        with self._lock:
            self.stats["invalidations"] += len(self._cache)
            self._cache.clear()

    def exists(self, key: str) -> bool:
        sentinel = object()
        return self.get(key, sentinel) is not sentinel

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""
        with self._lock:
            total_requests = self.stats["hits"] + self.stats["misses"]
            hit_rate = (self.stats["hits"] / total_requests * 100) if total_requests > 0 else 0
            return {
                **self.stats,
                "total_requests": total_requests,
                "hit_rate_percent": round(hit_rate, 2),
                "cache_size": len(self._cache),
            }
