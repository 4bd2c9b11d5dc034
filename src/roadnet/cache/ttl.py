"""Bounded in-process TTL cache (L1) shared across requests.

``get`` distinguishes "not cached" from a cached ``None`` by returning the
``MISS`` sentinel, so "no road nearby" answers are cached like any other.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

log = logging.getLogger(__name__)

MISS = object()


class TTLCache:
    def __init__(
        self,
        ttl_s: float,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_s = float(ttl_s)
        self.max_entries = int(max_entries)
        self._clock = clock
        self._lock = threading.Lock()
        # key -> (expires_at, value); dict order is insertion order
        self._data: Dict[Hashable, Tuple[float, Any]] = {}

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: Hashable) -> Any:
        now = self._clock()
        with self._lock:
            hit = self._data.get(key)
            if hit is None:
                return MISS
            expires_at, value = hit
            if expires_at <= now:
                del self._data[key]
                return MISS
            return value

    def put(self, key: Hashable, value: Any, ttl_s: Optional[float] = None) -> None:
        now = self._clock()
        with self._lock:
            self._data.pop(key, None)
            self._data[key] = (now + (self.ttl_s if ttl_s is None else ttl_s), value)
            if len(self._data) > self.max_entries:
                self._sweep_locked(now)
                while len(self._data) > self.max_entries:
                    # Oldest insertion goes first
                    self._data.pop(next(iter(self._data)))

    def invalidate(self, key: Optional[Hashable] = None) -> None:
        """Drop one key, or everything when ``key`` is None."""
        with self._lock:
            if key is None:
                self._data.clear()
            else:
                self._data.pop(key, None)

    def sweep(self) -> int:
        with self._lock:
            return self._sweep_locked(self._clock())

    def _sweep_locked(self, now: float) -> int:
        expired = [k for k, (exp, _v) in self._data.items() if exp <= now]
        for k in expired:
            del self._data[k]
        if expired:
            log.debug("Swept %d expired cache entries", len(expired))
        return len(expired)
