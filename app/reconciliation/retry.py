"""
Retry helpers shared by provider adapters, the failure subsystem and tasks.

Two schedules:
    backoff_delay(attempt)   Seconds, exponential with jitter, for in-process
                             retries of a single provider call
    retry_delay_ms(attempts) Milliseconds, exponential without jitter, for
                             scheduled payment retries (persisted attempts)

Usage:
    from reconciliation.retry import retry_call

    raw_status, payload = retry_call(
        adapter.get_status,
        payment.provider_payment_id,
        attempts=3,
    )
"""

from __future__ import annotations

import logging
import random
import time
from typing import TYPE_CHECKING, TypeVar

from django.conf import settings

if TYPE_CHECKING:
    from collections.abc import Callable
    from typing import Any


logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BASE_DELAY_MS = 5000
DEFAULT_MAX_DELAY_MS = 300000
DEFAULT_MAX_RETRY_ATTEMPTS = 3
DEFAULT_PROVIDER_CALL_ATTEMPTS = 3


def backoff_delay(attempt: int, base: float = 1.0, max_delay: float = 60.0) -> float:
    """
    Exponential backoff delay with jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        base: Base delay in seconds
        max_delay: Maximum delay in seconds

    Returns:
        Delay in seconds plus 0-25% jitter

    Example:
        # Attempt 0: 1.0 - 1.25 seconds
        # Attempt 2: 4.0 - 5.0 seconds
        delay = backoff_delay(attempt=2)
    """
    delay = min(base * (2**attempt), max_delay)
    jitter = delay * random.uniform(0, 0.25)
    return delay + jitter


def retry_delay_ms(attempts: int) -> int:
    """
    Delay before the next scheduled payment retry.

    min(BASE x 2^(attempts-1), MAX). attempts is 1 for the first retry.
    """
    base = int(getattr(settings, "PAYMENT_RETRY_BASE_DELAY_MS", DEFAULT_BASE_DELAY_MS))
    ceiling = int(getattr(settings, "PAYMENT_RETRY_MAX_DELAY_MS", DEFAULT_MAX_DELAY_MS))
    exponent = max(attempts, 1) - 1
    return min(base * (2**exponent), ceiling)


def max_retry_attempts() -> int:
    return int(getattr(settings, "PAYMENT_MAX_RETRY_ATTEMPTS", DEFAULT_MAX_RETRY_ATTEMPTS))


def _default_is_retryable(error: BaseException) -> bool:
    return bool(getattr(error, "is_retryable", False))


def retry_call(
    fn: Callable[..., T],
    *args: Any,
    attempts: int | None = None,
    is_retryable: Callable[[BaseException], bool] = _default_is_retryable,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> T:
    """
    Call fn, retrying transient failures with bounded backoff.

    Args:
        fn: Callable to run
        attempts: Total tries (default: PROVIDER_CALL_MAX_ATTEMPTS)
        is_retryable: Decides whether an exception is worth another try
            (default: the exception's is_retryable attribute)
        base_delay / max_delay: Backoff bounds in seconds
        sleep: Injected for tests

    Raises:
        The last exception once attempts are exhausted, or the first
        non-retryable one immediately
    """
    if attempts is None:
        attempts = int(getattr(settings, "PROVIDER_CALL_MAX_ATTEMPTS", DEFAULT_PROVIDER_CALL_ATTEMPTS))
    attempts = max(attempts, 1)

    for attempt in range(attempts):
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            if not is_retryable(e) or attempt == attempts - 1:
                raise
            delay = backoff_delay(attempt, base=base_delay, max_delay=max_delay)
            logger.warning(
                "Retrying after transient error",
                extra={
                    "operation": getattr(fn, "__name__", repr(fn)),
                    "attempt": attempt + 1,
                    "max_attempts": attempts,
                    "delay_seconds": round(delay, 3),
                    "error": str(e),
                },
            )
            sleep(delay)

    raise AssertionError("unreachable")


__all__ = [
    "backoff_delay",
    "max_retry_attempts",
    "retry_call",
    "retry_delay_ms",
]
