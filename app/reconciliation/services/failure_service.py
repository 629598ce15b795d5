"""
Payment failure classification, retry scheduling and escalation.

Every non-settling outcome of a payment lands here. The service buckets
the failure, persists the attempt counter in PaymentFailureRecord and
picks exactly one action:

    cleanup        Terminal status (failed/canceled/expired): resolve the
                   record, release the coupon reservation, tell the user
    user_notified  Non-retryable failure (e.g. insufficient payment)
    admin_alerted  Retries exhausted: AdminTask + notifications
    retried        Schedule retry_failed_payment with exponential backoff

Card declines on renewals use a separate hard/soft classification
(classify_decline), consumed by the renewal service.

Usage:
    from reconciliation.services import PaymentFailureService

    failures = PaymentFailureService(collaborators)
    action = failures.handle_failure(payment, PaymentStatus.PROCESSING, "network timeout")
    # FailureAction.RETRIED
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from django.db import transaction
from django.utils import timezone

from core.services import BaseService, ServiceResult

from reconciliation.models import AdminTask, PaymentFailureRecord, UnifiedPayment
from reconciliation.retry import max_retry_attempts, retry_delay_ms
from reconciliation.state_machines import (
    FAILURE_PAYMENT_STATUSES,
    RETRYABLE_FAILURE_TYPES,
    AdminTaskPriority,
    AdminTaskStatus,
    AdminTaskType,
    DeclineKind,
    FailureAction,
    FailureType,
    PaymentStatus,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from reconciliation.collaborators import Collaborators


logger = logging.getLogger(__name__)


# =============================================================================
# Card Decline Classification
# =============================================================================

# Declines that will not succeed on retry. Auto-renew is disabled at once.
HARD_DECLINE_CODES = frozenset(
    [
        "card_not_supported",
        "currency_not_supported",
        "do_not_honor",
        "do_not_try_again",
        "expired_card",
        "fraudulent",
        "incorrect_number",
        "invalid_account",
        "invalid_number",
        "lost_card",
        "merchant_blacklist",
        "new_account_information_available",
        "pickup_card",
        "restricted_card",
        "revocation_of_all_authorizations",
        "revocation_of_authorization",
        "security_violation",
        "stolen_card",
        "stop_payment_order",
        "transaction_not_allowed",
    ]
)


def classify_decline(decline_code: str | None) -> str:
    """Hard for codes in HARD_DECLINE_CODES, soft for everything else (including none)."""
    if decline_code and decline_code.strip().lower() in HARD_DECLINE_CODES:
        return DeclineKind.HARD
    return DeclineKind.SOFT


# =============================================================================
# User-facing messages
# =============================================================================

FAILURE_MESSAGES = {
    FailureType.EXPIRED: "Your payment has expired. Please create a new payment to continue.",
    FailureType.FAILED: "Your payment has failed. Please try again with a different payment method.",
    FailureType.INSUFFICIENT_PAYMENT: (
        "Insufficient payment received. Please send the full amount to complete the transaction."
    ),
    FailureType.NETWORK_ERROR: (
        "We are experiencing technical difficulties. We will continue monitoring your payment."
    ),
    FailureType.MONITORING_ERROR: (
        "We are having trouble checking your payment status. Please contact support if this persists."
    ),
    FailureType.SYSTEM_ERROR: (
        "We encountered an issue with your payment. Our team has been notified and will assist you shortly."
    ),
}


def _schedule_retry_task(payment_id: str, countdown_seconds: float) -> None:
    from reconciliation.tasks import retry_failed_payment

    retry_failed_payment.apply_async(args=[payment_id], countdown=countdown_seconds)


class PaymentFailureService(BaseService):
    """
    Failure handling for payments that did not settle.

    Args:
        collaborators: Coupon gateway and notifier are used
        schedule_retry: Callable(payment_id, countdown_seconds); defaults to
            queueing retry_failed_payment after commit
    """

    def __init__(
        self,
        collaborators: Collaborators,
        schedule_retry: Callable[[str, float], None] | None = None,
    ) -> None:
        self.collaborators = collaborators
        self.schedule_retry = schedule_retry or _schedule_retry_task

    # =========================================================================
    # Classification
    # =========================================================================

    @staticmethod
    def classify(status: str, reason: str | None = None) -> str:
        """
        Bucket a failure.

        Status wins over reason: expired -> EXPIRED, failed/canceled -> FAILED.
        Otherwise the reason text decides, defaulting to SYSTEM_ERROR.
        """
        if status == PaymentStatus.EXPIRED:
            return FailureType.EXPIRED
        if status in (PaymentStatus.FAILED, PaymentStatus.CANCELED):
            return FailureType.FAILED

        text = (reason or "").lower()
        if "network" in text or "timeout" in text:
            return FailureType.NETWORK_ERROR
        if "insufficient" in text or "underpaid" in text:
            return FailureType.INSUFFICIENT_PAYMENT
        if "monitoring" in text:
            return FailureType.MONITORING_ERROR
        return FailureType.SYSTEM_ERROR

    @staticmethod
    def is_retryable(failure_type: str) -> bool:
        return failure_type in RETRYABLE_FAILURE_TYPES

    @staticmethod
    def retry_delay_ms(attempts: int) -> int:
        return retry_delay_ms(attempts)

    # =========================================================================
    # Failure Handling
    # =========================================================================

    def handle_failure(
        self,
        payment: UnifiedPayment,
        status: str,
        reason: str | None = None,
    ) -> str:
        """
        Classify a failure, persist retry state and act on it.

        Args:
            payment: The failing payment
            status: Canonical status at the time of failure
            reason: Free-text reason (provider message, exception text)

        Returns:
            The FailureAction taken
        """
        failure_type = self.classify(status, reason)

        with transaction.atomic():
            record, _ = PaymentFailureRecord.objects.select_for_update().get_or_create(
                payment=payment,
                defaults={"failure_type": failure_type},
            )
            record.failure_type = failure_type
            record.last_reason = (reason or "")[:1000]

            if status in FAILURE_PAYMENT_STATUSES:
                action = FailureAction.CLEANUP
            elif not self.is_retryable(failure_type):
                action = FailureAction.USER_NOTIFIED
            elif record.attempts >= max_retry_attempts():
                action = FailureAction.ADMIN_ALERTED
            else:
                action = FailureAction.RETRIED

            if action == FailureAction.CLEANUP:
                self._cleanup(payment, record)
            elif action == FailureAction.USER_NOTIFIED:
                self._notify_user(payment, failure_type)
            elif action == FailureAction.ADMIN_ALERTED:
                self._alert_admins(payment, record)
            else:
                self._schedule(payment, record)

            record.save()

        logger.info(
            "Payment failure handled",
            extra={
                "payment_id": str(payment.id),
                "provider": payment.provider,
                "status": status,
                "failure_type": failure_type,
                "action": action,
                "attempts": record.attempts,
            },
        )
        return action

    def mark_resolved(self, payment: UnifiedPayment) -> bool:
        """Close an open failure record once the payment settles."""
        updated = PaymentFailureRecord.objects.filter(payment=payment, resolved=False).update(
            resolved=True,
            next_retry_at=None,
            updated_at=timezone.now(),
        )
        return bool(updated)

    def manual_retry(self, payment_id: str, admin_id: str) -> ServiceResult[str]:
        """
        Admin action: reset the attempt counter and re-sync now.

        Returns:
            ServiceResult with FailureAction.RETRIED, or failure with
            FAILURE_RECORD_NOT_FOUND
        """
        logger.info(
            "Manual payment retry initiated",
            extra={"payment_id": str(payment_id), "admin_id": admin_id},
        )

        with transaction.atomic():
            record = (
                PaymentFailureRecord.objects.select_for_update()
                .select_related("payment")
                .filter(payment_id=payment_id)
                .first()
            )
            if record is None:
                return ServiceResult.failure(
                    "Failure record not found",
                    error_code="FAILURE_RECORD_NOT_FOUND",
                )

            record.attempts = 0
            record.resolved = False
            record.escalated = False
            record.next_retry_at = timezone.now()
            record.save()

            record.payment.merge_metadata(
                {
                    "manualRetry": True,
                    "manualRetryBy": admin_id,
                    "manualRetryAt": timezone.now().isoformat(),
                }
            )
            record.payment.save(update_fields=["metadata", "updated_at"])

            transaction.on_commit(lambda: self.schedule_retry(str(payment_id), 0))

        return ServiceResult.success(FailureAction.RETRIED)

    def due_retries(self, limit: int = 100, grace_seconds: int = 300) -> list[str]:
        """
        Payment ids whose scheduled retry is overdue by more than
        grace_seconds, i.e. whose retry task was lost.
        """
        cutoff = timezone.now() - timedelta(seconds=grace_seconds)
        return [
            str(payment_id)
            for payment_id in PaymentFailureRecord.objects.filter(
                resolved=False,
                next_retry_at__lte=cutoff,
            )
            .order_by("next_retry_at")
            .values_list("payment_id", flat=True)[:limit]
        ]

    # =========================================================================
    # Actions
    # =========================================================================

    def _cleanup(self, payment: UnifiedPayment, record: PaymentFailureRecord) -> None:
        record.resolved = True
        record.next_retry_at = None

        if payment.order_id:
            self.collaborators.coupons.void_redemption_for_order(
                str(payment.order_id),
                f"payment_{payment.status}",
            )
        self._notify_user(payment, record.failure_type)

    def _notify_user(self, payment: UnifiedPayment, failure_type: str) -> None:
        self.collaborators.notifier.notify_user(
            payment.user_id,
            "payment_failed",
            "Payment issue",
            FAILURE_MESSAGES.get(failure_type, FAILURE_MESSAGES[FailureType.SYSTEM_ERROR]),
            {
                "payment_id": str(payment.id),
                "status": payment.status,
                "failure_type": failure_type,
            },
        )

    def _alert_admins(self, payment: UnifiedPayment, record: PaymentFailureRecord) -> None:
        record.next_retry_at = None
        if not record.escalated:
            AdminTask.objects.create(
                task_type=AdminTaskType.PAYMENT_FAILURE_ESCALATION,
                status=AdminTaskStatus.PENDING,
                priority=AdminTaskPriority.HIGH,
                title=f"Payment {payment.provider_payment_id} failed after {record.attempts} retries",
                user_id=payment.user_id,
                payment=payment,
                details={
                    "failure_type": record.failure_type,
                    "attempts": record.attempts,
                    "last_reason": record.last_reason,
                    "provider": payment.provider,
                },
            )
            record.escalated = True
            self.collaborators.notifier.notify_admins(
                "payment_failure_escalation",
                "Payment failure needs attention",
                f"Payment {payment.id} exhausted automatic retries.",
                {"payment_id": str(payment.id), "failure_type": record.failure_type},
            )
        self._notify_user(payment, record.failure_type)

    def _schedule(self, payment: UnifiedPayment, record: PaymentFailureRecord) -> None:
        record.attempts += 1
        delay_ms = self.retry_delay_ms(record.attempts)
        record.next_retry_at = timezone.now() + timedelta(milliseconds=delay_ms)

        payment_id = str(payment.id)
        transaction.on_commit(lambda: self.schedule_retry(payment_id, delay_ms / 1000))


__all__ = [
    "FAILURE_MESSAGES",
    "HARD_DECLINE_CODES",
    "PaymentFailureService",
    "classify_decline",
]
