"""
Per-payment mutual exclusion for the refund check-then-write.

LocalPaymentLocks serializes threads of one process; RedisPaymentLocks serializes every
API/worker process sharing the Redis instance.
"""
import logging
import threading
from contextlib import contextmanager
from typing import ContextManager, Iterator, Protocol

import redis

from billing.core.config import settings

logger = logging.getLogger(__name__)


class LockTimeout(Exception):
    """Another refund for the same payment held the lock for too long."""


class PaymentLocks(Protocol):
    def hold(self, payment_id: str) -> ContextManager[None]: ...


class LocalPaymentLocks:
    """In-process lock per payment id. Entries are dropped once no thread holds or waits on them."""

    def __init__(self, timeout_seconds: float | None = None) -> None:
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.refund_lock_timeout_seconds
        self._registry_lock = threading.Lock()
        self._locks: dict[str, tuple[threading.Lock, int]] = {}

    def _checkout(self, payment_id: str) -> threading.Lock:
        with self._registry_lock:
            lock, users = self._locks.get(payment_id, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[payment_id] = (lock, users + 1)
            return lock

    def _checkin(self, payment_id: str) -> None:
        with self._registry_lock:
            lock, users = self._locks[payment_id]
            if users <= 1:
                del self._locks[payment_id]
            else:
                self._locks[payment_id] = (lock, users - 1)

    @contextmanager
    def hold(self, payment_id: str) -> Iterator[None]:
        lock = self._checkout(payment_id)
        try:
            if not lock.acquire(timeout=self.timeout_seconds):
                raise LockTimeout(f"Timed out waiting for refund lock on payment {payment_id}")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(payment_id)

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)


class RedisPaymentLocks:
    """Distributed lock per payment id backed by redis-py's Lock."""

    KEY_PREFIX = "refund_lock:"

    def __init__(self, client: redis.Redis | None = None, timeout_seconds: float | None = None) -> None:
        self.client = client or redis.Redis.from_url(settings.redis_url)
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.refund_lock_timeout_seconds

    @contextmanager
    def hold(self, payment_id: str) -> Iterator[None]:
        lock = self.client.lock(
            f"{self.KEY_PREFIX}{payment_id}",
            timeout=self.timeout_seconds,
            blocking_timeout=self.timeout_seconds,
        )
        if not lock.acquire():
            raise LockTimeout(f"Timed out waiting for refund lock on payment {payment_id}")
        try:
            yield
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError:
                # lock expired while held; the DB row lock still covered the write
                logger.warning("refund_lock_expired", extra={"payment_id": payment_id})


def build_payment_locks() -> PaymentLocks:
    if settings.refund_lock_backend == "redis":
        return RedisPaymentLocks()
    return LocalPaymentLocks()
