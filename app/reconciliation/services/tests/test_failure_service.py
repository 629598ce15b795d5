"""
Tests for PaymentFailureService.

Tests cover:
- Failure classification and card decline classification
- Each action: cleanup, user_notified, retried, admin_alerted
- Retry scheduling after commit with exponential backoff
- Manual retry and overdue retry discovery
"""

from datetime import timedelta

import pytest
from django.utils import timezone
from freezegun import freeze_time

from commerce.models import CouponRedemption, RedemptionStatus
from commerce.tests.factories import CouponRedemptionFactory, OrderFactory
from reconciliation.models import AdminTask, PaymentFailureRecord
from reconciliation.services.failure_service import FAILURE_MESSAGES, classify_decline
from reconciliation.state_machines import (
    AdminTaskType,
    DeclineKind,
    FailureAction,
    FailureType,
    PaymentStatus,
)
from reconciliation.tests.factories import PaymentFailureRecordFactory, UnifiedPaymentFactory


# =============================================================================
# Classification
# =============================================================================


class TestClassify:
    @pytest.mark.parametrize(
        "status,reason,expected",
        [
            (PaymentStatus.EXPIRED, "network down", FailureType.EXPIRED),
            (PaymentStatus.FAILED, "timeout", FailureType.FAILED),
            (PaymentStatus.CANCELED, None, FailureType.FAILED),
            (PaymentStatus.PROCESSING, "Network unreachable", FailureType.NETWORK_ERROR),
            (PaymentStatus.PROCESSING, "read TIMEOUT", FailureType.NETWORK_ERROR),
            (PaymentStatus.SUCCEEDED, "insufficient payment received", FailureType.INSUFFICIENT_PAYMENT),
            (PaymentStatus.PROCESSING, "invoice underpaid", FailureType.INSUFFICIENT_PAYMENT),
            (PaymentStatus.PROCESSING, "monitoring job crashed", FailureType.MONITORING_ERROR),
            (PaymentStatus.PROCESSING, "something odd", FailureType.SYSTEM_ERROR),
            (PaymentStatus.PROCESSING, None, FailureType.SYSTEM_ERROR),
        ],
    )
    def test_classify(self, failures, status, reason, expected):
        assert failures.classify(status, reason) == expected

    @pytest.mark.parametrize(
        "failure_type,retryable",
        [
            (FailureType.NETWORK_ERROR, True),
            (FailureType.MONITORING_ERROR, True),
            (FailureType.SYSTEM_ERROR, True),
            (FailureType.EXPIRED, False),
            (FailureType.FAILED, False),
            (FailureType.INSUFFICIENT_PAYMENT, False),
        ],
    )
    def test_is_retryable(self, failures, failure_type, retryable):
        assert failures.is_retryable(failure_type) is retryable

    def test_every_failure_type_has_a_message(self):
        assert set(FAILURE_MESSAGES) == set(FailureType.values)


class TestClassifyDecline:
    @pytest.mark.parametrize("code", ["stolen_card", "lost_card", "expired_card", " Fraudulent "])
    def test_hard(self, code):
        assert classify_decline(code) == DeclineKind.HARD

    @pytest.mark.parametrize("code", ["insufficient_funds", "card_velocity_exceeded", "", None])
    def test_soft(self, code):
        assert classify_decline(code) == DeclineKind.SOFT


# =============================================================================
# Actions
# =============================================================================


@pytest.mark.django_db
class TestHandleFailure:
    def test_terminal_status_cleans_up(self, failures, notifier):
        order = OrderFactory()
        CouponRedemptionFactory(order=order)
        payment = UnifiedPaymentFactory(order_id=order.id, status=PaymentStatus.EXPIRED)

        action = failures.handle_failure(payment, PaymentStatus.EXPIRED, "invoice expired")

        assert action == FailureAction.CLEANUP
        record = PaymentFailureRecord.objects.get(payment=payment)
        assert record.failure_type == FailureType.EXPIRED
        assert record.resolved is True
        assert record.attempts == 0

        redemption = CouponRedemption.objects.get(order=order)
        assert redemption.status == RedemptionStatus.VOIDED
        assert redemption.void_reason == "payment_expired"

        notifier.notify_user.assert_called_once()
        args = notifier.notify_user.call_args.args
        assert args[0] == payment.user_id
        assert args[1] == "payment_failed"
        assert args[3] == FAILURE_MESSAGES[FailureType.EXPIRED]

    def test_non_retryable_notifies_user(self, failures, notifier, schedule_retry):
        payment = UnifiedPaymentFactory(status=PaymentStatus.SUCCEEDED)

        action = failures.handle_failure(payment, PaymentStatus.SUCCEEDED, "insufficient payment received")

        assert action == FailureAction.USER_NOTIFIED
        record = PaymentFailureRecord.objects.get(payment=payment)
        assert record.failure_type == FailureType.INSUFFICIENT_PAYMENT
        assert record.resolved is False
        notifier.notify_user.assert_called_once()
        schedule_retry.assert_not_called()

    def test_retryable_schedules_after_commit(
        self, failures, schedule_retry, notifier, django_capture_on_commit_callbacks
    ):
        payment = UnifiedPaymentFactory(status=PaymentStatus.PROCESSING)

        with freeze_time("2026-03-01 12:00:00"):
            with django_capture_on_commit_callbacks(execute=True):
                action = failures.handle_failure(payment, PaymentStatus.PROCESSING, "network timeout")

        assert action == FailureAction.RETRIED
        record = PaymentFailureRecord.objects.get(payment=payment)
        assert record.failure_type == FailureType.NETWORK_ERROR
        assert record.attempts == 1
        assert record.last_reason == "network timeout"
        assert record.next_retry_at.isoformat() == "2026-03-01T12:00:05+00:00"
        schedule_retry.assert_called_once_with(str(payment.id), 5.0)
        notifier.notify_user.assert_not_called()

    def test_backoff_doubles(self, failures, schedule_retry, django_capture_on_commit_callbacks):
        payment = UnifiedPaymentFactory(status=PaymentStatus.PROCESSING)
        PaymentFailureRecordFactory(payment=payment, attempts=2)

        with django_capture_on_commit_callbacks(execute=True):
            failures.handle_failure(payment, PaymentStatus.PROCESSING, "network timeout")

        assert PaymentFailureRecord.objects.get(payment=payment).attempts == 3
        schedule_retry.assert_called_once_with(str(payment.id), 20.0)

    def test_retry_not_scheduled_before_commit(self, failures, schedule_retry, django_capture_on_commit_callbacks):
        payment = UnifiedPaymentFactory(status=PaymentStatus.PROCESSING)

        with django_capture_on_commit_callbacks() as callbacks:
            failures.handle_failure(payment, PaymentStatus.PROCESSING, "network timeout")

        assert len(callbacks) == 1
        schedule_retry.assert_not_called()

    def test_exhausted_retries_alert_admins(self, failures, notifier, schedule_retry, settings):
        settings.PAYMENT_MAX_RETRY_ATTEMPTS = 3
        payment = UnifiedPaymentFactory(status=PaymentStatus.PROCESSING)
        PaymentFailureRecordFactory(payment=payment, attempts=3)

        action = failures.handle_failure(payment, PaymentStatus.PROCESSING, "network timeout")

        assert action == FailureAction.ADMIN_ALERTED
        record = PaymentFailureRecord.objects.get(payment=payment)
        assert record.escalated is True
        assert record.next_retry_at is None

        task = AdminTask.objects.get(payment=payment)
        assert task.task_type == AdminTaskType.PAYMENT_FAILURE_ESCALATION
        assert task.details["attempts"] == 3

        notifier.notify_admins.assert_called_once()
        assert notifier.notify_admins.call_args.args[0] == "payment_failure_escalation"
        notifier.notify_user.assert_called_once()
        schedule_retry.assert_not_called()

    def test_escalates_once(self, failures, notifier, settings):
        settings.PAYMENT_MAX_RETRY_ATTEMPTS = 1
        payment = UnifiedPaymentFactory(status=PaymentStatus.PROCESSING)
        PaymentFailureRecordFactory(payment=payment, attempts=1)

        failures.handle_failure(payment, PaymentStatus.PROCESSING, "network timeout")
        failures.handle_failure(payment, PaymentStatus.PROCESSING, "network timeout")

        assert AdminTask.objects.filter(payment=payment).count() == 1
        assert notifier.notify_admins.call_count == 1
        assert notifier.notify_user.call_count == 2

    def test_mark_resolved(self, failures):
        record = PaymentFailureRecordFactory(attempts=2, next_retry_at=timezone.now())

        assert failures.mark_resolved(record.payment) is True
        assert failures.mark_resolved(record.payment) is False

        record.refresh_from_db()
        assert record.resolved is True
        assert record.next_retry_at is None


# =============================================================================
# Manual Retry & Overdue Retries
# =============================================================================


@pytest.mark.django_db
class TestManualRetry:
    def test_resets_and_schedules(self, failures, schedule_retry, django_capture_on_commit_callbacks):
        record = PaymentFailureRecordFactory(attempts=5, escalated=True, resolved=True)

        with django_capture_on_commit_callbacks(execute=True):
            result = failures.manual_retry(str(record.payment_id), "admin-7")

        assert result.success
        assert result.data == FailureAction.RETRIED

        record.refresh_from_db()
        assert record.attempts == 0
        assert record.escalated is False
        assert record.resolved is False
        assert record.next_retry_at is not None

        record.payment.refresh_from_db()
        assert record.payment.metadata["manualRetry"] is True
        assert record.payment.metadata["manualRetryBy"] == "admin-7"
        schedule_retry.assert_called_once_with(str(record.payment_id), 0)

    def test_missing_record(self, failures, schedule_retry):
        payment = UnifiedPaymentFactory()

        result = failures.manual_retry(str(payment.id), "admin-7")

        assert not result.success
        assert result.error_code == "FAILURE_RECORD_NOT_FOUND"
        schedule_retry.assert_not_called()


@pytest.mark.django_db
class TestDueRetries:
    def test_returns_overdue_only(self, failures):
        now = timezone.now()
        overdue = PaymentFailureRecordFactory(next_retry_at=now - timedelta(minutes=10))
        older = PaymentFailureRecordFactory(next_retry_at=now - timedelta(hours=1))
        PaymentFailureRecordFactory(next_retry_at=now - timedelta(minutes=1))
        PaymentFailureRecordFactory(next_retry_at=now + timedelta(minutes=10))
        PaymentFailureRecordFactory(next_retry_at=now - timedelta(hours=2), resolved=True)
        PaymentFailureRecordFactory(next_retry_at=None)

        assert failures.due_retries() == [str(older.payment_id), str(overdue.payment_id)]

    def test_limit(self, failures):
        past = timezone.now() - timedelta(hours=1)
        for _ in range(3):
            PaymentFailureRecordFactory(next_retry_at=past)

        assert len(failures.due_retries(limit=2)) == 2
