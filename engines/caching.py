"""Short-lived cache for aggregate responses, cleared after corrections."""

import time
from threading import Lock
from typing import Any, Callable, Dict, Optional, Tuple


class ResponseCache:
    """Thread-safe TTL cache keyed by request signature."""

    def __init__(self, ttl_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = Lock()
        self.invalidations = 0

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value for ``key`` unless it has expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self._clock() - stored_at >= self._ttl:
                self._entries.pop(key, None)
                return None
            return value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._entries[key] = (self._clock(), value)

    def invalidate(self) -> None:
        """Drop every cached response."""
        with self._lock:
            self._entries.clear()
            self.invalidations += 1

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
