"""Per-show exclusive locks serializing inventory transactions inside one process."""

from contextlib import contextmanager
import logging
import threading

from exceptions import Internal

logger = logging.getLogger(__name__)


class ShowLockRegistry:
    """Hands out one lock per show id so unrelated shows never contend.

    Row locks (SELECT ... FOR UPDATE) give the same guarantee across
    processes on PostgreSQL; this registry covers SQLite, which ignores them,
    and keeps same-show threads from queueing inside the database.
    """

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout
        self._locks = {}
        self._registry_lock = threading.Lock()

    def lock_for(self, show_id) -> threading.Lock:
        key = str(show_id)
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, show_id):
        lock = self.lock_for(show_id)
        if not lock.acquire(timeout=self.timeout):
            logger.warning(f"Timed out waiting for inventory lock of show {show_id}")
            raise Internal(f"timed out waiting for inventory lock of show {show_id}")
        try:
            yield
        finally:
            lock.release()

    def discard(self, show_id):
        """Forget the lock of a deleted show."""
        with self._registry_lock:
            self._locks.pop(str(show_id), None)
