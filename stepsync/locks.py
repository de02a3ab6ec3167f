from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class SyncInProgress(RuntimeError):
    pass


class SyncLockRegistry:
    """Non-blocking per-key sync flags. A busy key is refused, never queued."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._held: set[str] = set()

    def try_acquire(self, key: str) -> bool:
        with self._guard:
            if key in self._held:
                return False
            self._held.add(key)
            return True

    def release(self, key: str) -> None:
        with self._guard:
            self._held.discard(key)

    def is_locked(self, key: str) -> bool:
        with self._guard:
            return key in self._held

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        if not self.try_acquire(key):
            raise SyncInProgress(f"Sync already in progress for {key}")
        try:
            yield
        finally:
            self.release(key)
