# app/x402/locks.py
"""
Per-key serialization for balance mutations.

Spends against one session or one credit account run one at a time inside
this process. The conditional UPDATE in the store is the guard across
processes; this lock keeps same-process callers from racing each other.
"""
import threading
from dataclasses import dataclass, field
from typing import Dict, Hashable


@dataclass
class _KeyLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class KeyedLock:
    """A lock per key, created on demand and dropped when nobody holds it."""

    def __init__(self):
        self._locks: Dict[Hashable, _KeyLock] = {}
        self._registry_lock = threading.Lock()

    def acquire(self, key: Hashable) -> None:
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _KeyLock()
            entry.holders += 1
        entry.lock.acquire()

    def release(self, key: Hashable) -> None:
        with self._registry_lock:
            entry = self._locks[key]
            entry.lock.release()
            entry.holders -= 1
            if entry.holders == 0:
                del self._locks[key]

    def hold(self, key: Hashable) -> "_Held":
        """Context manager holding the lock for ``key``."""
        return _Held(self, key)

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)


class _Held:
    def __init__(self, owner: KeyedLock, key: Hashable):
        self._owner = owner
        self._key = key

    def __enter__(self):
        self._owner.acquire(self._key)
        return self

    def __exit__(self, exc_type, exc, tb):
        self._owner.release(self._key)
        return False
