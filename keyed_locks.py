# keyed_locks.py
"""Per-key mutexes: one lock per attempt id / proctoring key, never a global one."""
import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator, List


class KeyedLocks:
    """
    Hands out a lock per key and drops it when the last holder releases it,
    so the table does not grow with every attempt ever touched.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            self._users[key] = self._users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                left = self._users[key] - 1
                if left:
                    self._users[key] = left
                else:
                    del self._users[key]
                    del self._locks[key]

    def keys(self) -> List[Hashable]:
        with self._guard:
            return list(self._locks)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
