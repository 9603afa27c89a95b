"""
Lock manager — advisory, non-blocking TTL lease around one batch activation.

An activation that cannot take the lease skips its turn instead of waiting;
the next scheduled activation will try again. A lease left behind by a killed
process expires on its own after its TTL.

Usage:
    lock = LockManager(state_store, "interaction_trim_lock", ttl_seconds=165)
    with lock.hold() as acquired:
        if acquired:
            ...
"""

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime

from loguru import logger

from src.trim.interfaces import LeaseStore


class LockManager:
    """Named TTL lease guarding batch execution."""

    def __init__(self, leases: LeaseStore, key: str, ttl_seconds: int) -> None:
        self._leases = leases
        self._key = key
        self._ttl_seconds = ttl_seconds

    @property
    def key(self) -> str:
        return self._key

    def acquire(self) -> bool:
        acquired = self._leases.try_acquire(self._key, self._ttl_seconds)
        if not acquired:
            logger.debug("Lock {}: held elsewhere, skipping", self._key)
        return acquired

    def release(self) -> None:
        self._leases.release(self._key)

    def expires_at(self) -> datetime | None:
        """When the current holder's lease lapses, or None if the lock is free."""
        return self._leases.lease_expires_at(self._key)

    @contextmanager
    def hold(self) -> Iterator[bool]:
        """Try the lease once; release on every exit path if it was taken."""
        acquired = self.acquire()
        try:
            yield acquired
        finally:
            if acquired:
                self.release()
