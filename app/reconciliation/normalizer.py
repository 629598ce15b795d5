"""
Status normalization and regression guarding.

Maps each provider's native status vocabulary to the canonical
PaymentStatus and an ordinal priority. The priority is what makes
out-of-order delivery safe: an event is only applied when its priority is
at least the stored one.

Priorities:
    pending                  0
    requires_payment_method  1
    requires_action          2
    processing               3
    failed/canceled/expired  4
    succeeded                5

Usage:
    from reconciliation.normalizer import normalize, should_apply

    status, priority = normalize(PaymentProvider.CRYPTO, "confirming")
    if should_apply(payment.status, status):
        payment.status = status

Note:
    Every function here is pure and total. Unknown raw statuses degrade to
    a conservative default (card: pending, crypto: processing) instead of
    raising, because providers add statuses over time.
"""

from __future__ import annotations

from reconciliation.state_machines import (
    FAILURE_PAYMENT_STATUSES,
    PaymentProvider,
    PaymentStatus,
)

STATUS_PRIORITY: dict[str, int] = {
    PaymentStatus.PENDING: 0,
    PaymentStatus.REQUIRES_PAYMENT_METHOD: 1,
    PaymentStatus.REQUIRES_ACTION: 2,
    PaymentStatus.PROCESSING: 3,
    PaymentStatus.FAILED: 4,
    PaymentStatus.CANCELED: 4,
    PaymentStatus.EXPIRED: 4,
    PaymentStatus.SUCCEEDED: 5,
}

# Stripe PaymentIntent statuses plus the payment_failed event suffix.
CARD_STATUS_MAP: dict[str, str] = {
    "succeeded": PaymentStatus.SUCCEEDED,
    "processing": PaymentStatus.PROCESSING,
    "requires_payment_method": PaymentStatus.REQUIRES_PAYMENT_METHOD,
    "requires_action": PaymentStatus.REQUIRES_ACTION,
    "requires_confirmation": PaymentStatus.REQUIRES_ACTION,
    "requires_capture": PaymentStatus.REQUIRES_ACTION,
    "canceled": PaymentStatus.CANCELED,
    "payment_failed": PaymentStatus.FAILED,
}

# NOWPayments invoice statuses.
CRYPTO_STATUS_MAP: dict[str, str] = {
    "finished": PaymentStatus.SUCCEEDED,
    "failed": PaymentStatus.FAILED,
    "refunded": PaymentStatus.FAILED,
    "expired": PaymentStatus.EXPIRED,
    "waiting": PaymentStatus.PROCESSING,
    "confirming": PaymentStatus.PROCESSING,
    "confirmed": PaymentStatus.PROCESSING,
    "sending": PaymentStatus.PROCESSING,
    "partially_paid": PaymentStatus.PROCESSING,
    "pending": PaymentStatus.PROCESSING,
}

DEFAULT_STATUS: dict[str, str] = {
    PaymentProvider.CARD: PaymentStatus.PENDING,
    PaymentProvider.CRYPTO: PaymentStatus.PROCESSING,
}


def priority_of(status: str) -> int:
    """Priority of a canonical status; unknown values rank lowest."""
    return STATUS_PRIORITY.get(status, 0)


def canonical_status(provider: str, raw_status: str | None) -> str:
    key = (raw_status or "").strip().lower()
    if provider == PaymentProvider.CRYPTO:
        return CRYPTO_STATUS_MAP.get(key, DEFAULT_STATUS[PaymentProvider.CRYPTO])
    return CARD_STATUS_MAP.get(key, DEFAULT_STATUS[PaymentProvider.CARD])


def normalize(provider: str, raw_status: str | None) -> tuple[str, int]:
    """
    Map a provider's raw status to (canonical status, priority).

    Args:
        provider: PaymentProvider value
        raw_status: Status string exactly as the provider sent it

    Returns:
        Tuple of canonical PaymentStatus value and its priority
    """
    status = canonical_status(provider, raw_status)
    return status, priority_of(status)


def should_apply(current: str | None, incoming: str) -> bool:
    """
    Whether an incoming canonical status may overwrite the stored one.

    Rules:
        - Nothing stored yet: always apply
        - SUCCEEDED is absorbing: nothing replaces it
        - A failure-tier status is only replaced by itself or SUCCEEDED
          (late settlement of an expired crypto invoice still counts)
        - Otherwise apply when incoming priority >= current priority
    """
    if not current:
        return True
    if current == PaymentStatus.SUCCEEDED:
        return incoming == PaymentStatus.SUCCEEDED
    if current in FAILURE_PAYMENT_STATUSES:
        return incoming == current or incoming == PaymentStatus.SUCCEEDED
    return priority_of(incoming) >= priority_of(current)


def is_regression(current: str | None, incoming: str) -> bool:
    return not should_apply(current, incoming)


__all__ = [
    "CARD_STATUS_MAP",
    "CRYPTO_STATUS_MAP",
    "STATUS_PRIORITY",
    "canonical_status",
    "is_regression",
    "normalize",
    "priority_of",
    "should_apply",
]
