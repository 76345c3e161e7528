"""Per-unit mutual exclusion for in-process payment application.

Row locks (SELECT ... FOR UPDATE) and the Due version counter protect writes
across processes. This registry additionally serializes same-unit work inside
one process, which also covers SQLite where FOR UPDATE is not rendered.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Generator, Iterable, Optional

logger = logging.getLogger(__name__)


class UnitLockRegistry:
    """Hands out one re-entrant lock per unit id."""

    def __init__(self, timeout: float = 30.0):
        """
        Initialize the registry.

        Args:
            timeout: Seconds to wait for a unit lock before giving up
        """
        self._timeout = timeout
        self._locks: Dict[int, threading.RLock] = {}
        self._guard = threading.Lock()

    def lock_for(self, unit_id: int) -> threading.RLock:
        """Get (creating if needed) the lock of a unit."""
        with self._guard:
            lock = self._locks.get(unit_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[unit_id] = lock
            return lock

    @contextmanager
    def hold(self, unit_id: int) -> Generator[None, None, None]:
        """
        Hold a unit lock for the duration of the block.

        Raises:
            TimeoutError: If the lock cannot be acquired within the timeout
        """
        with self.hold_many([unit_id]):
            yield

    @contextmanager
    def hold_many(self, unit_ids: Iterable[int]) -> Generator[None, None, None]:
        """
        Hold several unit locks, acquired in ascending id order.

        A fixed acquisition order keeps two bulk operations from deadlocking.

        Raises:
            TimeoutError: If any lock cannot be acquired within the timeout
        """
        acquired: list[threading.RLock] = []
        try:
            for unit_id in sorted(set(unit_ids)):
                lock = self.lock_for(unit_id)
                if not lock.acquire(timeout=self._timeout):
                    raise TimeoutError(
                        f"Could not lock unit {unit_id} within {self._timeout}s"
                    )
                acquired.append(lock)
            logger.debug("Holding %d unit lock(s)", len(acquired))
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


# Global registry instance (singleton pattern)
_registry: Optional[UnitLockRegistry] = None
_registry_lock = threading.Lock()


def get_unit_locks() -> UnitLockRegistry:
    """Get the process-wide unit lock registry."""
    global _registry
    with _registry_lock:
        if _registry is None:
            _registry = UnitLockRegistry()
        return _registry


__all__ = ["UnitLockRegistry", "get_unit_locks"]
