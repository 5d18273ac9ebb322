"""
Process-scoped caches.

Caches are plain objects injected into the workers that use them, never
module globals. Entries are rebuilt lazily after ``invalidate()``. With more
than one process each process holds its own copy, so invalidation is per
instance and only eventually consistent across a deployment.
"""

import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple


class ProcessCache:
    """Thread-safe key/value cache with optional expiry.

    Used for the repository map, file contents, reference documents and the
    set of PR revisions already reviewed in this process.
    """

    def __init__(
        self,
        name: str,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _expires_at(self, ttl: Optional[float]) -> Optional[float]:
        ttl = self.ttl_seconds if ttl is None else ttl
        return None if ttl is None else self._clock() + ttl

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None if missing or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._entries[key] = (value, self._expires_at(ttl))

    def get_or_load(self, key: str, loader: Callable[[], Any], ttl: Optional[float] = None) -> Any:
        """Return the cached value, calling ``loader`` on a miss.

        The loader runs outside the lock; two threads missing at once may
        both load, and the last write wins.
        """
        value = self.get(key)
        if value is not None:
            return value
        value = loader()
        self.set(key, value, ttl)
        return value

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def add(self, key: str) -> None:
        """Set-style membership marker."""
        self.set(key, True)

    def invalidate(self, key: Optional[str] = None) -> int:
        """Drop one key, or everything when ``key`` is None. Returns entries removed."""
        with self._lock:
            if key is None:
                removed = len(self._entries)
                self._entries.clear()
                return removed
            return 1 if self._entries.pop(key, None) is not None else 0

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every key starting with ``prefix``."""
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
