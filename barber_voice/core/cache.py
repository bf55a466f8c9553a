"""
TTL-based caching for backend reads during one conversation.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional, Tuple


class TTLCache:
    """
    Small TTL cache keyed by string.

    Used for appointment reads only; entries are invalidated explicitly
    after any write that touches the same barber/date.
    """

    def __init__(self, ttl_seconds: float = 15.0, clock: Callable[[], float] = time.monotonic):
        self._cache: Dict[str, Tuple[float, Any]] = {}
        self._ttl = ttl_seconds
        self._clock = clock

    @property
    def ttl(self) -> float:
        return self._ttl

    def get(self, key: str) -> Optional[Any]:
        """Get cached value if not expired."""
        if key not in self._cache:
            return None
        stored_at, value = self._cache[key]
        if self._clock() - stored_at > self._ttl:
            del self._cache[key]
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        self._cache[key] = (self._clock(), value)

    def invalidate(self, key: Optional[str] = None) -> None:
        """Invalidate specific key or entire cache."""
        if key:
            self._cache.pop(key, None)
        else:
            self._cache.clear()

    def size(self) -> int:
        return len(self._cache)
