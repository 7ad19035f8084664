from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator


class KeyedLock:
    """One lock per key, created lazily. Locks live as long as the registry."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}

    def _lock_for(self, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        lock = self._lock_for(key)
        with lock:
            yield

    def try_acquire(self, key: Hashable) -> bool:
        return self._lock_for(key).acquire(blocking=False)

    def release(self, key: Hashable) -> None:
        self._lock_for(key).release()

    def locked(self, key: Hashable) -> bool:
        return self._lock_for(key).locked()
