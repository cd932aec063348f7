"""Per-key mutual exclusion.

One ``threading.Lock`` per resource key (normally a resolved target path),
handed out under a short-lived master lock. Unrelated keys never contend.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Union

Key = Union[str, Path]


class KeyedLockMap:
    """Lazily created lock per key."""

    def __init__(self):
        self._master = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    @staticmethod
    def _normalize(key: Key) -> str:
        if isinstance(key, Path):
            return str(key.resolve())
        return key

    def lock_for(self, key: Key) -> threading.Lock:
        name = self._normalize(key)
        with self._master:
            lock = self._locks.get(name)
            if lock is None:
                lock = self._locks[name] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, key: Key) -> Iterator[None]:
        """Context manager holding the lock for ``key``."""
        lock = self.lock_for(key)
        with lock:
            yield

    def __len__(self) -> int:
        with self._master:
            return len(self._locks)


# Shared by every fetcher in the process
_download_locks = KeyedLockMap()


def get_download_locks() -> KeyedLockMap:
    return _download_locks
