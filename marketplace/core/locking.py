"""
Per-entity mutual exclusion.

Mutating operations serialize on a lock key such as ``booking:42`` or
``rsvp:event:7``. With distributed locks enabled the key is a Redis
``SET NX EX`` lock shared by every replica; otherwise a keyed asyncio lock
serializes callers inside this process.
"""

import asyncio
import logging
from typing import Dict, Any

from marketplace.core.exceptions import LockAcquisitionError
from marketplace.db.redis_client import get_distributed_lock

logger = logging.getLogger(__name__)

_local_locks: Dict[str, asyncio.Lock] = {}
_local_refs: Dict[str, int] = {}


class LocalLock:
    """Keyed in-process lock; entries are dropped once nobody holds or waits."""

    def __init__(self, lock_key: str, blocking_timeout: int = 10):
        self.lock_key = lock_key
        self.blocking_timeout = blocking_timeout
        self._lock = None

    def _release_ref(self):
        remaining = _local_refs.get(self.lock_key, 1) - 1
        if remaining <= 0:
            _local_refs.pop(self.lock_key, None)
            _local_locks.pop(self.lock_key, None)
        else:
            _local_refs[self.lock_key] = remaining

    async def __aenter__(self):
        self._lock = _local_locks.setdefault(self.lock_key, asyncio.Lock())
        _local_refs[self.lock_key] = _local_refs.get(self.lock_key, 0) + 1
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self.blocking_timeout)
        except asyncio.TimeoutError:
            self._release_ref()
            logger.warning(f"Failed to acquire local lock {self.lock_key} within {self.blocking_timeout}s")
            raise LockAcquisitionError(f"Resource is busy, try again: {self.lock_key}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self._lock.release()
        self._release_ref()


def get_entity_lock(lock_key: str, consistency_config: Dict[str, Any]):
    """
    Get the lock context manager for an entity key.

    Args:
        lock_key: Entity lock key
        consistency_config: Result of ``config.get_consistency_config()``

    Returns:
        An async context manager that raises LockAcquisitionError on timeout
    """
    timeout = consistency_config.get("lock_timeout_seconds", 30)
    blocking_timeout = consistency_config.get("lock_blocking_timeout_seconds", 10)
    if consistency_config.get("enable_distributed_locks"):
        return get_distributed_lock(lock_key, timeout=timeout, blocking_timeout=blocking_timeout)
    return LocalLock(lock_key, blocking_timeout=blocking_timeout)
