"""In-process guard allowing one run per key at a time.

Single-instance only: the guard lives in process memory, so several worker
processes each get their own. A busy key is reported back to the caller to
skip, never queued.
"""
import logging
from contextlib import contextmanager
from threading import Lock
from typing import Hashable, Iterator, Set

logger = logging.getLogger(__name__)


class InFlightGuard:
    def __init__(self):
        self._active: Set[Hashable] = set()
        self._lock = Lock()

    def try_acquire(self, key: Hashable) -> bool:
        with self._lock:
            if key in self._active:
                logger.info("[inflight] key=%s busy; skipping", key)
                return False
            self._active.add(key)
            return True

    def release(self, key: Hashable) -> None:
        with self._lock:
            self._active.discard(key)

    def is_busy(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._active

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[bool]:
        """Yield True when the key was acquired; release it on exit."""
        acquired = self.try_acquire(key)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(key)


# Shared by the job entry points and the router
sync_guard = InFlightGuard()
