from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple


class LocalTTLCache:
    """Bounded in-process key/value store with per-entry expiry.

    Used as the degraded tier when Redis is unreachable. Entries are not
    shared across processes. Thread-safe.
    """

    def __init__(
        self,
        *,
        max_entries: int = 10000,
        default_ttl_seconds: int = 600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_entries = max_entries
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                self._entries.pop(key, None)
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            self.delete(key)
            return
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._evict_locked()
            self._entries[key] = (value, self._clock() + ttl)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def pop(self, key: str) -> Optional[Any]:
        """Atomically read and remove a live entry."""
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                return None
            return value

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
            for key in stale:
                self._entries.pop(key, None)
            return len(stale)

    def _evict_locked(self) -> None:
        # Drop expired entries first, then ~10% of the soonest-expiring
        now = self._clock()
        stale = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
        for key in stale:
            self._entries.pop(key, None)
        if len(self._entries) < self.max_entries:
            return
        ordered = sorted(self._entries.items(), key=lambda item: item[1][1])
        evict_count = max(1, self.max_entries // 10)
        for key, _ in ordered[:evict_count]:
            self._entries.pop(key, None)
