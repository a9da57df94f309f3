"""
Per-key serialization and bounded optimistic retry for store writers.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Optional, TypeVar

from .config import get_cas_max_retries, get_lock_timeout
from .errors import RetryableConflictError
from .records import RevisionConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class KeyedLocks:
    """Mutual exclusion per key; reads never take these locks.

    A key's lock only exists while some thread holds or waits for it, so the
    table stays as small as the number of in-flight writes.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._timeout = timeout if timeout is not None else get_lock_timeout()
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._users: Dict[str, int] = {}

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
                self._users[key] = 0
            self._users[key] += 1
            return lock

    def _checkin(self, key: str):
        with self._guard:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str):
        """Hold the lock for key, giving up after the configured timeout."""
        lock = self._checkout(key)
        try:
            if not lock.acquire(timeout=self._timeout):
                raise RetryableConflictError(f"Timed out waiting for writer lock on '{key}'")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)


def retry_on_conflict(operation: Callable[[], T], attempts: Optional[int] = None,
                      label: str = "write") -> T:
    """Run operation, re-running it when a compare-and-set loses a race."""
    max_attempts = attempts if attempts is not None else get_cas_max_retries()

    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except RevisionConflictError as e:
            logger.debug(f"Revision conflict on {label} (attempt {attempt}/{max_attempts}): {e}")

    raise RetryableConflictError(f"Gave up on {label} after {max_attempts} conflicting attempts")
