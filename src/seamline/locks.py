"""Per-key lock registry for serializing writers on one resource."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class KeyedLocks:
    """Hand out one re-entrant lock per key.

    Holders of different keys never block each other; holders of the same
    key are serialized.

    Example:
        >>> locks = KeyedLocks()
        >>> with locks.hold("task-7"):
        ...     locks.lock_for("task-7") is locks.lock_for("task-7")
        True
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self.lock_for(key)
        with lock:
            yield
