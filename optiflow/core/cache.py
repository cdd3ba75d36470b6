"""
In-process result cache with per-entry expiry.
"""

import logging
import threading
import time
from typing import Any, Callable

from optiflow.core.constants import DEFAULT_CACHE_TTL_SEC, OPTIMIZATION_CACHE_PREFIX

logger = logging.getLogger(__name__)


def optimization_cache_key(subject_id: int) -> str:
    return f"{OPTIMIZATION_CACHE_PREFIX}{subject_id}"


class ResultCache:

    def __init__(self, default_ttl: int = DEFAULT_CACHE_TTL_SEC,
                 clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self.clock = clock
        self._entries: dict[str, tuple[Any, float | None]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str, default=None):
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return default
            value, expires_at = entry
            if expires_at is not None and expires_at <= self.clock():
                del self._entries[key]
                self.misses += 1
                return default
            self.hits += 1
            return value

    def set(self, key: str, value, ttl: int | None = None):
        """Store ``value``. ``ttl`` of 0 means never expire."""
        ttl = self.default_ttl if ttl is None else ttl
        expires_at = self.clock() + ttl if ttl > 0 else None
        with self._lock:
            self._entries[key] = (value, expires_at)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self):
        with self._lock:
            self._entries.clear()

    def purge_expired(self) -> int:
        now = self.clock()
        with self._lock:
            expired = [k for k, (_, exp) in self._entries.items() if exp is not None and exp <= now]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Purged %d expired cache entries", len(expired))
        return len(expired)

    def stats(self) -> dict:
        with self._lock:
            return {'entries': len(self._entries), 'hits': self.hits, 'misses': self.misses}
