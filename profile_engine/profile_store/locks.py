"""In-process mutual exclusion keyed by profile name."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class KeyedLock:
    """
    A family of locks, one per key, created on demand.

    Two holders of the same key never overlap; different keys never block each
    other. Entries are dropped once no thread holds or waits for them, so the
    table does not grow with every name ever seen.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._waiters: dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Hold the lock for `key` for the duration of the context."""
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._waiters[key] = self._waiters.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                remaining = self._waiters[key] - 1
                if remaining:
                    self._waiters[key] = remaining
                else:
                    del self._waiters[key]
                    del self._locks[key]

    @contextmanager
    def hold_many(self, *keys: str) -> Iterator[None]:
        """Hold several keys at once, acquired in sorted order to avoid deadlock."""
        ordered = sorted(set(keys))
        with _nested(self, ordered):
            yield


@contextmanager
def _nested(locks: KeyedLock, keys: list[str]) -> Iterator[None]:
    if not keys:
        yield
        return
    with locks.hold(keys[0]):
        with _nested(locks, keys[1:]):
            yield
