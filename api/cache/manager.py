"""In-memory TTL cache for discovery results and remote listings."""
from __future__ import annotations

import copy
import fnmatch
import threading
import time
from typing import Any, Dict, List, Optional


# Default TTLs in seconds per key domain (the text before the first ":").
DEFAULT_TTLS: Dict[str, int] = {
    "artifacts": 300,
    "remote": 300,
    "resources": 5,
}


class CacheManager:
    """Thread-safe dict cache with per-key TTL and bounded size.

    Discovery scans run in worker threads, so mutations take a lock.
    Values are deep-copied on the way out.
    """

    def __init__(self, max_size: int = 100) -> None:
        self._store: Dict[str, tuple] = {}  # key -> (value, expires_at)
        self._lock = threading.Lock()
        self._max_size = max_size
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self.misses += 1
                return None
            value, expires_at = entry
            if time.monotonic() > expires_at:
                del self._store[key]
                self.misses += 1
                return None
            self.hits += 1
            return copy.deepcopy(value)

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Store *value* under *key*; ``ttl`` defaults from the key domain (60 s)."""
        if ttl is None:
            ttl = DEFAULT_TTLS.get(key.split(":", 1)[0], 60)
        with self._lock:
            self._store[key] = (value, time.monotonic() + ttl)
            while len(self._store) > self._max_size:
                oldest = min(self._store, key=lambda k: self._store[k][1])
                del self._store[oldest]

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def invalidate_pattern(self, pattern: str) -> int:
        """Remove all keys matching a glob *pattern*. Returns count removed."""
        with self._lock:
            doomed = [k for k in self._store if fnmatch.fnmatch(k, pattern)]
            for k in doomed:
                del self._store[k]
            return len(doomed)

    def invalidate_all(self) -> None:
        with self._lock:
            self._store.clear()

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._store)
