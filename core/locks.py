"""Per-owner mutual exclusion for ledger and trial mutations."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class OwnerLockRegistry:
    """Hands out one re-entrant lock per owner id.

    Re-entrancy lets the trial engine hold an owner's lock while calling into
    the stake ledger, which takes the same lock for direct callers.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def _lock_for(self, owner_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(owner_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[owner_id] = lock
            return lock

    @contextmanager
    def hold(self, owner_id: str) -> Iterator[None]:
        """Block until the owner's lock is acquired; release on exit."""
        lock = self._lock_for(owner_id)
        with lock:
            yield
