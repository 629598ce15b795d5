"""
Per-resource mutual exclusion on PostgreSQL advisory locks.

Two mechanisms, both keyed by a stable string turned into a signed 64-bit
advisory lock id:

1. **Session locks** (AdvisoryLock / with_lock)
   - Serialize one reconciliation unit of work per resource key
   - Acquired by polling pg_try_advisory_lock until the timeout
   - Released with pg_advisory_unlock on every exit path
   - Use for: order / payment / refund units of work

2. **Transaction locks** (advisory_xact_lock)
   - Held until the surrounding transaction commits or rolls back
   - Use for: per-user balance writes in the credit ledger

Resource keys:
    order:{order_id}      Payment tied to an order
    payment:{payment_id}  Payment without an order
    refund:{refund_id}    Refund processing
    credits:{user_id}     Credit balance writes

Usage:
    from reconciliation.locks import AdvisoryLock, advisory_xact_lock, with_lock

    outcome = with_lock(payment.lock_key, orchestrator.apply_event, payment, event)

    with AdvisoryLock(f"refund:{refund.id}"):
        process(refund)

    with transaction.atomic():
        advisory_xact_lock(f"credits:{user_id}")
        write_balance_row(...)

Note:
    Failure to acquire raises LockAcquisitionError, which means "try again
    later". Never fall back to running the work unlocked.
"""

from __future__ import annotations

import hashlib
import logging
import time
from typing import TYPE_CHECKING, TypeVar

from django.conf import settings
from django.db import DEFAULT_DB_ALIAS, connections
from django.db.transaction import TransactionManagementError

from reconciliation.exceptions import LockAcquisitionError

if TYPE_CHECKING:
    from collections.abc import Callable
    from typing import Any


logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_LOCK_TIMEOUT_SECONDS = 10.0
POLL_INTERVAL_SECONDS = 0.05


def lock_id_for(key: str) -> int:
    """Stable signed 64-bit advisory lock id for a resource key."""
    digest = hashlib.sha256(key.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], byteorder="big", signed=True)


def _default_timeout() -> float:
    return float(getattr(settings, "PAYMENT_LOCK_TIMEOUT_SECONDS", DEFAULT_LOCK_TIMEOUT_SECONDS))


# =============================================================================
# Session Locks
# =============================================================================


class AdvisoryLock:
    """
    Session-scoped PostgreSQL advisory lock.

    Example:
        lock = AdvisoryLock("order:123", timeout=5.0)
        try:
            with lock:
                reconcile()
        except LockAcquisitionError:
            # Another worker holds the order; redeliver later
            raise

    Args:
        key: Resource key (see module docstring)
        timeout: Max seconds to wait (default: PAYMENT_LOCK_TIMEOUT_SECONDS)
        using: Database alias

    Note:
        Advisory locks are re-entrant per session, so a unit of work may
        take the same key again; each acquire needs its own release.
    """

    def __init__(
        self,
        key: str,
        timeout: float | None = None,
        using: str = DEFAULT_DB_ALIAS,
    ) -> None:
        self.key = key
        self.lock_id = lock_id_for(key)
        self.timeout = _default_timeout() if timeout is None else timeout
        self.using = using
        self._held = False

    def _try_acquire(self) -> bool:
        with connections[self.using].cursor() as cursor:
            cursor.execute("SELECT pg_try_advisory_lock(%s)", [self.lock_id])
            row = cursor.fetchone()
        return bool(row and row[0])

    def acquire(self) -> bool:
        """
        Acquire the lock, polling until the timeout.

        Returns:
            True once the lock is held

        Raises:
            LockAcquisitionError: If the lock is still held elsewhere at timeout
        """
        deadline = time.monotonic() + self.timeout
        while True:
            if self._try_acquire():
                self._held = True
                return True
            if time.monotonic() >= deadline:
                break
            time.sleep(POLL_INTERVAL_SECONDS)

        logger.warning(
            "Advisory lock not acquired",
            extra={"lock_key": self.key, "timeout": self.timeout},
        )
        raise LockAcquisitionError(
            f"Failed to acquire lock '{self.key}' within {self.timeout}s",
            details={"key": self.key, "timeout": self.timeout},
        )

    def release(self) -> bool:
        """
        Release the lock if we hold it.

        Returns:
            True if PostgreSQL reported the lock released
        """
        if not self._held:
            return False

        self._held = False
        with connections[self.using].cursor() as cursor:
            cursor.execute("SELECT pg_advisory_unlock(%s)", [self.lock_id])
            row = cursor.fetchone()
        released = bool(row and row[0])
        if not released:
            logger.error("Advisory lock was not held at release", extra={"lock_key": self.key})
        return released

    @property
    def is_held(self) -> bool:
        return self._held

    def __enter__(self) -> AdvisoryLock:
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.release()
        return False


def with_lock(resource_key: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """
    Run fn while holding the session lock for resource_key.

    The lock is released however fn exits (return, raise, early exit).

    Raises:
        LockAcquisitionError: If the lock is not acquired in time
    """
    with AdvisoryLock(resource_key):
        return fn(*args, **kwargs)


# =============================================================================
# Transaction Locks
# =============================================================================


def advisory_xact_lock(key: str, using: str = DEFAULT_DB_ALIAS) -> None:
    """
    Take a transaction-scoped advisory lock (blocks until granted).

    Raises:
        TransactionManagementError: If called outside transaction.atomic()
    """
    connection = connections[using]
    if not connection.in_atomic_block:
        raise TransactionManagementError(
            f"advisory_xact_lock('{key}') requires an atomic block"
        )
    with connection.cursor() as cursor:
        cursor.execute("SELECT pg_advisory_xact_lock(%s)", [lock_id_for(key)])


__all__ = [
    "AdvisoryLock",
    "advisory_xact_lock",
    "lock_id_for",
    "with_lock",
]
