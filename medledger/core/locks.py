from __future__ import annotations

import contextlib
import threading
from typing import Dict, Iterator


class KeyedLocks:
    """
    One lock per identifier, created on demand and dropped when no holder or waiter remains.
    Different identifiers never block each other.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._refs: Dict[str, int] = {}

    @contextlib.contextmanager
    def hold(self, key: str) -> Iterator[None]:
        k = str(key)
        with self._guard:
            lock = self._locks.setdefault(k, threading.Lock())
            self._refs[k] = self._refs.get(k, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._refs[k] -= 1
                if self._refs[k] == 0:
                    del self._refs[k]
                    del self._locks[k]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
