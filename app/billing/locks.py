"""
Per-subscription serialization.

Two lifecycle passes for the same subscription must never interleave
their provider calls, and a webhook for a subscription must not be
applied while a pass for it is running. Two mechanisms cover this:

1. DistributedLock / subscription_lock
   Redis lock held around a whole pass or webhook handler, across
   processes and servers. The TTL frees locks held by crashed workers.

2. check_version
   Optimistic check on Subscription.version, for callers that loaded a
   subscription earlier (e.g. rendered a form) and must not overwrite a
   newer row.

Usage:
    with subscription_lock(subscription.pk):
        subscription = check_version(Subscription, subscription.pk, expected_version=4)
        subscription.plan = new_plan
        subscription.save()
"""

from __future__ import annotations

import time
import uuid as uuid_module
from typing import TYPE_CHECKING, TypeVar

from django.conf import settings
from django.db import models, transaction

from django_redis import get_redis_connection

from core.exceptions import NotFoundError
from billing.exceptions import LockAcquisitionError, StaleRecordError

if TYPE_CHECKING:
    from typing import Any

    from redis import Redis

T = TypeVar("T", bound=models.Model)


# =============================================================================
# Distributed Locks
# =============================================================================


class DistributedLock:
    """
    Redis lock with TTL and token ownership.

    Only the holder's token can release or extend the lock, so a worker
    whose lock expired cannot free a lock someone else now holds.

    Example:
        with DistributedLock("billing:subscription:123", ttl=60):
            run_pass()

        lock = DistributedLock("billing:subscription:123", blocking=False)
        try:
            lock.acquire()
        except LockAcquisitionError:
            defer()

    Args:
        key: Lock identifier (prefixed with "lock:")
        ttl: Seconds before the lock expires on its own
        blocking: Wait for the lock instead of failing at once
        timeout: Maximum wait in seconds when blocking
    """

    # Delete only if the stored token is ours
    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    # Reset the TTL only if the stored token is ours
    EXTEND_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("expire", KEYS[1], ARGV[2])
    else
        return 0
    end
    """

    POLL_INTERVAL_SECONDS = 0.05

    def __init__(
        self,
        key: str,
        ttl: int = 30,
        blocking: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.key = f"lock:{key}"
        self.ttl = ttl
        self.blocking = blocking
        self.timeout = timeout
        self._token: str | None = None
        self._redis: Redis | None = None

    def _get_redis(self) -> Redis:
        if self._redis is None:
            self._redis = get_redis_connection("default")
        return self._redis

    def acquire(self) -> bool:
        """
        Acquire the lock.

        Returns:
            True once the lock is held

        Raises:
            LockAcquisitionError: The lock is held elsewhere (non-blocking)
                or was not freed within timeout (blocking)
        """
        self._token = str(uuid_module.uuid4())
        redis = self._get_redis()

        if self.blocking:
            deadline = time.monotonic() + self.timeout
            while time.monotonic() < deadline:
                if self._try_acquire(redis):
                    return True
                time.sleep(self.POLL_INTERVAL_SECONDS)

            self._token = None
            raise LockAcquisitionError(
                f"Failed to acquire lock '{self.key}' within {self.timeout}s",
                details={"key": self.key, "timeout": self.timeout},
            )

        if not self._try_acquire(redis):
            self._token = None
            raise LockAcquisitionError(
                f"Lock '{self.key}' is already held",
                details={"key": self.key},
            )
        return True

    def _try_acquire(self, redis: Redis) -> bool:
        return bool(redis.set(self.key, self._token, nx=True, ex=self.ttl))

    def release(self) -> bool:
        """
        Release the lock if this instance holds it.

        Returns:
            True if the lock was deleted, False if it was not ours (or
            had already expired)
        """
        if self._token is None:
            return False

        result = self._get_redis().eval(self.RELEASE_SCRIPT, 1, self.key, self._token)
        self._token = None
        return bool(result)

    def extend(self, ttl: int | None = None) -> bool:
        """Reset the remaining TTL to ttl (default: the original TTL)."""
        if self._token is None:
            return False

        result = self._get_redis().eval(
            self.EXTEND_SCRIPT, 1, self.key, self._token, ttl or self.ttl
        )
        return bool(result)

    @property
    def is_held(self) -> bool:
        return self._token is not None

    def __enter__(self) -> DistributedLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> bool:
        self.release()
        return False


def subscription_lock(subscription_id: Any, blocking: bool = True) -> DistributedLock:
    """
    Lock serializing passes and webhooks for one subscription.

    TTL and wait time come from BILLING_LOCK_TTL_SECONDS and
    BILLING_LOCK_TIMEOUT_SECONDS.
    """
    return DistributedLock(
        f"billing:subscription:{subscription_id}",
        ttl=getattr(settings, "BILLING_LOCK_TTL_SECONDS", 60),
        blocking=blocking,
        timeout=getattr(settings, "BILLING_LOCK_TIMEOUT_SECONDS", 10.0),
    )


# =============================================================================
# Optimistic Locking
# =============================================================================


def check_version(
    model_class: type[T],
    pk: Any,
    expected_version: int,
) -> T:
    """
    Load a row for update, failing if its version moved on.

    Args:
        model_class: Model with a version field incremented on every save
        pk: Primary key of the row
        expected_version: Version the caller last saw

    Returns:
        The instance, locked with SELECT ... FOR UPDATE until the
        surrounding transaction ends

    Raises:
        NotFoundError: No such row
        StaleRecordError: The row was saved since expected_version
    """
    model_name = model_class.__name__

    with transaction.atomic():
        instance = (
            model_class.objects.select_for_update()
            .filter(pk=pk, version=expected_version)
            .first()
        )
        if instance is not None:
            return instance

        current = model_class.objects.filter(pk=pk).values_list("version", flat=True).first()
        if current is None:
            raise NotFoundError(
                f"{model_name} {pk} not found",
                error_code=f"{model_name.upper()}_NOT_FOUND",
                details={"pk": str(pk)},
            )

        raise StaleRecordError(
            f"{model_name} {pk} has been modified "
            f"(expected version {expected_version}, current {current})",
            details={
                "pk": str(pk),
                "expected_version": expected_version,
                "current_version": current,
            },
        )


__all__ = [
    "DistributedLock",
    "check_version",
    "subscription_lock",
]
