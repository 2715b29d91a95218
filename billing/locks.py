from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Final

import redis
from redis.exceptions import LockError, RedisError

from observability import get_logger, log_event

from .errors import SubscriptionLockTimeoutError

SUBSCRIPTION_LOCK_KEY_PREFIX: Final[str] = "billing:subscription-lock:"

_LOGGER = get_logger("sharebox.billing.locks")


class _LocalKeyedLocks:
    """Reference-counted ``threading.Lock`` per key; entries vanish when unused."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, tuple[threading.Lock, int]] = {}

    def _acquire_entry(self, key: str) -> threading.Lock:
        with self._guard:
            lock, users = self._locks.get(key, (threading.Lock(), 0))
            self._locks[key] = (lock, users + 1)
            return lock

    def _release_entry(self, key: str) -> None:
        with self._guard:
            lock, users = self._locks[key]
            if users <= 1:
                self._locks.pop(key, None)
            else:
                self._locks[key] = (lock, users - 1)

    @contextmanager
    def hold(self, key: str, *, wait_seconds: float) -> Iterator[None]:
        lock = self._acquire_entry(key)
        try:
            if not lock.acquire(timeout=max(0.0, float(wait_seconds))):
                raise SubscriptionLockTimeoutError(
                    f"timed out waiting for subscription lock: {key}", subscription_id=key
                )
            try:
                yield
            finally:
                lock.release()
        finally:
            self._release_entry(key)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class SubscriptionLockManager:
    """
    Serializes webhook processing per provider subscription id.

    With redis configured the lock spans every worker process; without it
    (tests, single-process dev) an in-process keyed lock is used.
    """

    def __init__(
        self,
        *,
        redis_url: str = "",
        redis_disabled: bool = True,
        lock_timeout_seconds: float = 30.0,
        wait_seconds: float = 10.0,
    ) -> None:
        self.lock_timeout_seconds = float(lock_timeout_seconds)
        self.wait_seconds = float(wait_seconds)
        self._local = _LocalKeyedLocks()
        self._client: redis.Redis | None = None
        if not redis_disabled and redis_url:
            self._client = self._build_client(redis_url)

    @staticmethod
    def _build_client(redis_url: str) -> redis.Redis | None:
        try:
            client = redis.Redis.from_url(redis_url, decode_responses=True)
            client.ping()
            return client
        except RedisError as exc:
            log_event(_LOGGER, logging.WARNING, "billing.lock.redis_unavailable", error=str(exc))
            return None

    @property
    def distributed(self) -> bool:
        return self._client is not None

    @contextmanager
    def hold(self, provider_subscription_id: str) -> Iterator[None]:
        key = str(provider_subscription_id or "").strip()
        if self._client is None:
            with self._local.hold(key, wait_seconds=self.wait_seconds):
                yield
            return

        lock = self._client.lock(
            f"{SUBSCRIPTION_LOCK_KEY_PREFIX}{key}",
            timeout=self.lock_timeout_seconds,
            blocking_timeout=self.wait_seconds,
        )
        try:
            acquired = lock.acquire()
        except RedisError as exc:
            raise SubscriptionLockTimeoutError(
                f"subscription lock unavailable: {exc}", subscription_id=key
            ) from exc
        if not acquired:
            raise SubscriptionLockTimeoutError(f"timed out waiting for subscription lock: {key}", subscription_id=key)
        try:
            yield
        finally:
            try:
                lock.release()
            except LockError as exc:
                # Lock expired mid-flight; the conditional write already protected the row.
                log_event(_LOGGER, logging.WARNING, "billing.lock.release_failed", subscription_id=key, error=str(exc))
