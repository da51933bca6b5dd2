"""Per-id locks so that operations on one local disk run one at a time."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class GlobalLocks:
    """A set of named, non-blocking locks."""

    def __init__(self) -> None:
        self._locks: set[str] = set()
        self._mutex = threading.Lock()

    def try_acquire(self, lock_id: str) -> bool:
        """Take the lock for ``lock_id``; return False if it is already held."""
        with self._mutex:
            if lock_id in self._locks:
                return False
            self._locks.add(lock_id)
            return True

    def release(self, lock_id: str) -> None:
        """Drop the lock for ``lock_id``."""
        with self._mutex:
            self._locks.discard(lock_id)

    @contextmanager
    def hold(self, lock_id: str) -> Iterator[str]:
        """Hold the lock for ``lock_id`` for the duration of a ``with`` block.

        Raises RuntimeError if another operation already holds it.
        """
        if not self.try_acquire(lock_id):
            raise RuntimeError(f"an operation with the given id {lock_id} already exists")
        try:
            yield lock_id
        finally:
            self.release(lock_id)