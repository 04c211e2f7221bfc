from __future__ import annotations

import logging
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Dict, Iterator, Optional, Tuple

import redis
from redis.exceptions import LockError

from filevault.core.exceptions import TransientIOError
from filevault.core.redis_client import get_redis_client

logger = logging.getLogger("filevault.locks")


class MemoryLockManager:
    """Lease locks for a single process. Expired leases are taken over silently."""

    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._leases: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def acquire(self, key: str, ttl_seconds: int) -> Optional[str]:
        token = uuid.uuid4().hex
        with self._lock:
            lease = self._leases.get(key)
            if lease is not None and lease[1] > self._clock():
                return None
            self._leases[key] = (token, self._clock() + ttl_seconds)
        return token

    def release(self, key: str, token: str) -> None:
        with self._lock:
            lease = self._leases.get(key)
            if lease is not None and lease[0] == token:
                del self._leases[key]

    def is_held(self, key: str) -> bool:
        with self._lock:
            lease = self._leases.get(key)
            return lease is not None and lease[1] > self._clock()

    @contextmanager
    def hold(self, key: str, ttl_seconds: int) -> Iterator[bool]:
        token = self.acquire(key, ttl_seconds)
        try:
            yield token is not None
        finally:
            if token is not None:
                self.release(key, token)


class RedisLockManager:
    """Lease locks shared by every worker, built on redis-py's ``Lock``."""

    def __init__(self, client) -> None:
        self._client = client

    def is_held(self, key: str) -> bool:
        try:
            return bool(self._client.exists(key))
        except redis.RedisError as exc:
            raise TransientIOError(f"Lock store unavailable: {exc}") from exc

    @contextmanager
    def hold(self, key: str, ttl_seconds: int) -> Iterator[bool]:
        lock = self._client.lock(key, timeout=ttl_seconds, blocking=False)
        try:
            acquired = lock.acquire(blocking=False)
        except redis.RedisError as exc:
            raise TransientIOError(f"Lock store unavailable: {exc}") from exc
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    lock.release()
                except LockError:
                    # Lease ran out while we worked; somebody else may own it now.
                    logger.warning("event=lock_lease_expired key=%s", key)


_memory_locks: Optional[MemoryLockManager] = None


def get_lock_manager():
    global _memory_locks
    client = get_redis_client()
    if client is not None:
        return RedisLockManager(client)
    if _memory_locks is None:
        _memory_locks = MemoryLockManager()
    return _memory_locks


def archive_lock_key(job_id: str) -> str:
    return f"archive-job:{job_id}"
