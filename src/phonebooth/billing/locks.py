"""
Per-key mutual exclusion.

One lock per call ("call:<id>") and per user ("user:<id>"). Acquisition is
always bounded; callers that cannot wait pass timeout=0.

These locks only order threads of one process. Writers in other processes
are caught by the conditional call save (see CallRepository.save).
"""

from contextlib import contextmanager
from threading import Lock, RLock
from typing import Dict, Generator, Optional
import structlog

from ..core.errors import CallBusy

logger = structlog.get_logger()


class LockUnavailable(CallBusy):
    def __init__(self, key: str, timeout: float):
        self.key = key
        self.timeout = timeout
        super().__init__(f"Lock '{key}' not acquired within {timeout}s")


class LockRegistry:
    """
    Hands out one lock per key while anyone holds or waits on it.

    Locks are re-entrant so a holder of a user lock may call into the
    Ledger, which takes the same lock again. A key is forgotten once its
    last holder or waiter leaves, so finished calls leave nothing behind.
    """

    def __init__(self, default_timeout: float = 2.0):
        self.default_timeout = default_timeout
        self._locks: Dict[str, RLock] = {}
        self._refs: Dict[str, int] = {}
        self._guard = Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: str) -> RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = RLock()
            self._refs[key] = self._refs.get(key, 0) + 1
            return lock

    def _checkin(self, key: str) -> None:
        with self._guard:
            remaining = self._refs[key] - 1
            if remaining:
                self._refs[key] = remaining
            else:
                del self._refs[key]
                del self._locks[key]

    @contextmanager
    def hold(self, key: str, timeout: Optional[float] = None) -> Generator[None, None, None]:
        wait = self.default_timeout if timeout is None else timeout
        lock = self._checkout(key)
        try:
            acquired = lock.acquire(blocking=False) if wait <= 0 else lock.acquire(timeout=wait)
            if not acquired:
                logger.debug("lock_unavailable", key=key, timeout=wait)
                raise LockUnavailable(key, wait)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)
