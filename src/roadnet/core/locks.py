"""Per-key mutual exclusion for rating writers inside one process."""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterable, Iterator, List


class KeyedLock:
    """
    One lock per key, created on demand and dropped when nobody holds or waits.

    ``hold`` takes several keys at once in sorted order, so two writers that
    share keys can never deadlock; writers on disjoint keys run concurrently.
    Keys must be mutually orderable.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    def _checkout(self, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            self._users[key] = self._users.get(key, 0) + 1
            return lock

    def _checkin(self, key: Hashable) -> None:
        with self._guard:
            n = self._users[key] - 1
            if n:
                self._users[key] = n
            else:
                del self._users[key]
                del self._locks[key]

    @contextmanager
    def hold(self, keys: Iterable[Hashable]) -> Iterator[List[Hashable]]:
        ordered = sorted(set(keys))
        acquired: List[Hashable] = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                try:
                    lock.acquire()
                except BaseException:
                    self._checkin(key)
                    raise
                acquired.append(key)
            yield ordered
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
                self._checkin(key)

    def __len__(self) -> int:
        return len(self._locks)
