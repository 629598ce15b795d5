"""
Celery tasks for payment reconciliation.

This module provides async tasks for:
- Reconciling queued provider events (webhooks, IPNs)
- Scheduled retries of failed payments
- Re-queueing retries whose task was lost (celery-beat)
- Periodic crypto payment monitoring (celery-beat)
- User / admin notification delivery

Usage:
    from reconciliation.tasks import process_provider_event

    process_provider_event.delay(event.to_dict())

    from reconciliation.tasks import retry_failed_payment
    retry_failed_payment.apply_async(args=[str(payment.id)], countdown=5)
"""

from __future__ import annotations

import logging

from celery import shared_task
from django.conf import settings
from django.core.mail import send_mail

from reconciliation.exceptions import LockAcquisitionError, ProviderError, ReconciliationRetryError
from reconciliation.outcomes import Failed, describe

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

MAX_EVENT_RETRIES = 5
MAX_NOTIFICATION_RETRIES = 3

AUDIENCE_USER = "user"
AUDIENCE_ADMINS = "admins"


# =============================================================================
# Event Processing
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(ReconciliationRetryError, LockAcquisitionError),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": MAX_EVENT_RETRIES},
    acks_late=True,
)
def process_provider_event(self, event_data: dict) -> dict:
    """
    Reconcile one verified provider event.

    A retryable Failed outcome (lock contention, system error) is raised
    as ReconciliationRetryError so Celery redelivers the event; the unit
    of work rolled back, so the redelivery starts clean.

    Args:
        event_data: ProviderEvent.to_dict()

    Returns:
        Dict describing the outcome
    """
    from reconciliation.adapters.base import ProviderEvent
    from reconciliation.webhooks.handlers import dispatch

    event = ProviderEvent.from_dict(event_data)
    logger.info(
        "Processing provider event",
        extra={
            "provider": event.provider,
            "event_id": event.event_id,
            "event_type": event.event_type,
            "retry_count": self.request.retries,
        },
    )

    outcome = dispatch(event)
    if outcome is None:
        return {"outcome": "Unhandled", "event_id": event.event_id, "event_type": event.event_type}

    if isinstance(outcome, Failed) and outcome.retryable:
        raise ReconciliationRetryError(
            f"Reconciliation of {event.event_id} failed: {outcome.reason}",
            details=describe(outcome),
        )
    return describe(outcome)


# =============================================================================
# Failure Retries
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(LockAcquisitionError,),
    retry_backoff=True,
    retry_kwargs={"max_retries": MAX_EVENT_RETRIES},
    acks_late=True,
)
def retry_failed_payment(self, payment_id: str) -> dict:
    """
    Re-sync a failed payment with its provider.

    If the payment is still open afterwards, the failure subsystem is
    consulted again: it schedules the next attempt or escalates once the
    attempts are used up.
    """
    from reconciliation.models import UnifiedPayment
    from reconciliation.services import ReconciliationOrchestrator

    payment = UnifiedPayment.objects.filter(id=payment_id).first()
    if payment is None:
        logger.error("Payment for retry not found", extra={"payment_id": payment_id})
        return {"status": "not_found", "payment_id": payment_id}

    orchestrator = ReconciliationOrchestrator()
    if payment.is_terminal:
        orchestrator.failures.mark_resolved(payment)
        return {"status": "skipped", "payment_id": payment_id, "payment_status": payment.status}

    try:
        outcome = orchestrator.sync_payment(payment)
    except ProviderError as e:
        action = orchestrator.failures.handle_failure(payment, payment.status, f"network error: {e}")
        return {"status": "provider_error", "payment_id": payment_id, "action": action}

    if isinstance(outcome, Failed) and outcome.retryable:
        raise ReconciliationRetryError(
            f"Retry of payment {payment_id} failed: {outcome.reason}",
            details=describe(outcome),
        )

    payment.refresh_from_db()
    if not payment.is_terminal:
        action = orchestrator.failures.handle_failure(
            payment,
            payment.status,
            "monitoring: payment still open after retry",
        )
        return {"status": "still_open", "payment_id": payment_id, "action": action}

    return {"status": "synced", "payment_id": payment_id, **describe(outcome)}


@shared_task
def retry_due_payment_failures() -> dict:
    """
    Periodic task re-queueing retries whose scheduled task never ran.

    This task should be scheduled via celery-beat, e.g., every minute.
    """
    from reconciliation.collaborators import Collaborators
    from reconciliation.services import PaymentFailureService

    payment_ids = PaymentFailureService(Collaborators.default()).due_retries()
    for payment_id in payment_ids:
        retry_failed_payment.delay(payment_id)

    if payment_ids:
        logger.info("Re-queued overdue payment retries", extra={"count": len(payment_ids)})
    return {"queued": len(payment_ids)}


# =============================================================================
# Monitoring
# =============================================================================


@shared_task(acks_late=True)
def monitor_crypto_payments() -> dict:
    """
    Periodic task polling open crypto payments.

    Scheduled via celery-beat (CRYPTO_MONITOR_INTERVAL_SECONDS, default 5 min).
    """
    from reconciliation.services import PaymentMonitoringService, ReconciliationOrchestrator

    summary = PaymentMonitoringService(ReconciliationOrchestrator()).run()
    return summary.to_dict()


# =============================================================================
# Notifications
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_kwargs={"max_retries": MAX_NOTIFICATION_RETRIES},
)
def deliver_notification(
    self,
    audience: str,
    kind: str,
    title: str,
    message: str,
    user_id: str | None = None,
    data: dict | None = None,
) -> dict:
    """
    Deliver a user or admin notification by email.

    Users without an email address are skipped, as are admin
    notifications when PAYMENT_ADMIN_EMAILS is empty.
    """
    from reconciliation.notifications import DjangoUserDirectory

    if audience == AUDIENCE_ADMINS:
        recipients = list(getattr(settings, "PAYMENT_ADMIN_EMAILS", []))
    else:
        contact = DjangoUserDirectory().get_contact(user_id) if user_id else None
        recipients = [contact.email] if contact and contact.email else []

    if not recipients:
        logger.info(
            "Notification skipped, no recipient",
            extra={"audience": audience, "kind": kind, "user_id": user_id},
        )
        return {"delivered": False, "kind": kind, "reason": "no_recipient"}

    send_mail(
        subject=title,
        message=message,
        from_email=None,
        recipient_list=recipients,
    )
    logger.info(
        "Notification delivered",
        extra={"audience": audience, "kind": kind, "user_id": user_id, "recipients": len(recipients)},
    )
    return {"delivered": True, "kind": kind, "recipients": len(recipients)}
