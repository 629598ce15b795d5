"""
Reconciliation-specific exceptions.

Expected outcomes (duplicate event, status regression, amount mismatch)
are NOT exceptions: they are ReconciliationOutcome variants or failed
ServiceResults. The classes below are reserved for conditions a caller
cannot treat as a normal result.

Exception Hierarchy:
    PaymentError (base for the payment domain)
    ├── PaymentNotFoundError - UnifiedPayment lookup failures
    ├── PaymentValidationError - Bad amount / currency / input at initiation
    ├── ReconciliationRetryError - Task-level redelivery of a retryable outcome
    └── ProviderError - Base for provider adapter failures
        ├── ProviderTransientError - Network, rate limit, 5xx (retry)
        ├── ProviderPermanentError - Rejected request (do not retry)
        ├── ProviderNotConfiguredError - Missing API key / secret
        └── WebhookVerificationError - Signature or payload rejected

    LockAcquisitionError - Advisory lock not acquired in time (inherits ConflictError)
    InvalidStateTransitionError - FSM transition not allowed (inherits ConflictError)

Usage:
    from reconciliation.exceptions import LockAcquisitionError, ProviderError

    try:
        raw_status, payload = adapter.get_status(provider_payment_id)
    except ProviderError as e:
        if e.is_retryable:
            raise  # Celery autoretry picks it up
        return ServiceResult.from_exception(e)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import BaseApplicationError, ConflictError

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Payment Domain Exceptions
# =============================================================================


class PaymentError(BaseApplicationError):
    """Base exception for all payment reconciliation operations."""

    default_error_code: str = "PAYMENT_ERROR"


class PaymentNotFoundError(PaymentError):
    """
    Raised when a UnifiedPayment cannot be found.

    Example:
        payment = UnifiedPayment.objects.filter(id=payment_id).first()
        if not payment:
            raise PaymentNotFoundError(
                f"Payment {payment_id} not found",
                details={"payment_id": str(payment_id)},
            )
    """

    default_error_code: str = "PAYMENT_NOT_FOUND"


class PaymentValidationError(PaymentError):
    default_error_code: str = "PAYMENT_VALIDATION_ERROR"


# =============================================================================
# Provider Exceptions
# =============================================================================


class ProviderError(PaymentError):
    """
    Base exception for provider adapter failures.

    Attributes:
        provider: Provider kind ("card" or "crypto")
        provider_code: Provider's own error code, when it sent one
        decline_code: Card decline code, when applicable
        is_retryable: Whether the same call may succeed later

    Example:
        except ProviderError as e:
            if e.is_retryable:
                schedule_retry(e)
            else:
                mark_failed(e)
    """

    default_error_code: str = "PROVIDER_ERROR"
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        provider: str | None = None,
        provider_code: str | None = None,
        decline_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if provider:
            details["provider"] = provider
        if provider_code:
            details["provider_code"] = provider_code
        if decline_code:
            details["decline_code"] = decline_code
        super().__init__(message, error_code=error_code, details=details)
        self.provider = provider
        self.provider_code = provider_code
        self.decline_code = decline_code


class ProviderTransientError(ProviderError):
    """
    Network failure, timeout, rate limit or provider 5xx.

    IMPORTANT: the operation may have succeeded on the provider's side.
    Retries must reuse the same idempotency key.
    """

    default_error_code: str = "PROVIDER_UNAVAILABLE"
    is_retryable: bool = True


class ProviderPermanentError(ProviderError):
    """The provider rejected the request; retrying cannot help."""

    default_error_code: str = "PROVIDER_REJECTED"
    is_retryable: bool = False


class ProviderNotConfiguredError(ProviderError):
    default_error_code: str = "PROVIDER_NOT_CONFIGURED"
    is_retryable: bool = False


class WebhookVerificationError(ProviderError):
    """
    Raised when an inbound webhook fails signature verification or
    cannot be parsed. The delivery must be rejected without side effects.
    """

    default_error_code: str = "WEBHOOK_VERIFICATION_FAILED"
    is_retryable: bool = False


# =============================================================================
# Concurrency Control Exceptions
# =============================================================================


class LockAcquisitionError(ConflictError):
    """
    Raised when an advisory lock cannot be acquired within the timeout.

    Means "try again later". Work must never proceed unlocked.

    Example:
        with AdvisoryLock("order:123", timeout=10.0):
            ...
        # raises LockAcquisitionError(details={"key": "order:123", "timeout": 10.0})
    """

    default_error_code: str = "LOCK_ACQUISITION_FAILED"


class InvalidStateTransitionError(ConflictError):
    """
    Raised when a refund FSM transition is not allowed.

    Wraps django-fsm's TransitionNotAllowed with our error format.
    """

    default_error_code: str = "INVALID_STATE_TRANSITION"


class ReconciliationRetryError(PaymentError):
    """
    Raised by Celery tasks when a unit of work ended with a retryable
    Failed outcome, so autoretry redelivers the event.
    """

    default_error_code: str = "RECONCILIATION_RETRY"


__all__ = [
    "ReconciliationRetryError",
    "InvalidStateTransitionError",
    "LockAcquisitionError",
    "PaymentError",
    "PaymentNotFoundError",
    "PaymentValidationError",
    "ProviderError",
    "ProviderNotConfiguredError",
    "ProviderPermanentError",
    "ProviderTransientError",
    "WebhookVerificationError",
]
