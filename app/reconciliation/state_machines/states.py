"""
State enums for reconciliation models.

These are Django TextChoices for database storage and admin integration.
Only RefundState drives a django-fsm field; the payment lifecycle is
governed by the priority rules in reconciliation.normalizer instead of
explicit transitions, because provider events arrive out of order.

State Machines Overview:

UnifiedPayment statuses (by priority):
    pending(0) < requires_payment_method(1) < requires_action(2)
    < processing(3) < failed | canceled | expired(4) < succeeded(5)

RefundRequest states:
    pending → approved → processing → completed
    pending → approved → processing → failed
    pending → rejected

SubscriptionRenewal states:
    pending → processing → succeeded | failed | canceled
"""

from django.db import models


class PaymentProvider(models.TextChoices):
    """Provider kinds. CARD is backed by Stripe, CRYPTO by NOWPayments."""

    CARD = "card", "Card (Stripe)"
    CRYPTO = "crypto", "Crypto (NOWPayments)"


class PaymentStatus(models.TextChoices):
    """
    Canonical, provider-agnostic payment status.

    Terminal states: SUCCEEDED, FAILED, CANCELED, EXPIRED
    """

    PENDING = "pending", "Pending"
    REQUIRES_PAYMENT_METHOD = "requires_payment_method", "Requires Payment Method"
    REQUIRES_ACTION = "requires_action", "Requires Action"
    PROCESSING = "processing", "Processing"
    SUCCEEDED = "succeeded", "Succeeded"
    FAILED = "failed", "Failed"
    CANCELED = "canceled", "Canceled"
    EXPIRED = "expired", "Expired"


TERMINAL_PAYMENT_STATUSES = frozenset(
    [
        PaymentStatus.SUCCEEDED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELED,
        PaymentStatus.EXPIRED,
    ]
)

FAILURE_PAYMENT_STATUSES = frozenset(
    [
        PaymentStatus.FAILED,
        PaymentStatus.CANCELED,
        PaymentStatus.EXPIRED,
    ]
)


class PaymentPurpose(models.TextChoices):
    """What the money is for. Renewals are flagged in metadata, not here."""

    CHECKOUT = "checkout", "Checkout"
    CREDITS = "credits", "Credit Top-up"


class RefundState(models.TextChoices):
    """
    States for the RefundRequest lifecycle.

    Terminal states: COMPLETED, FAILED, REJECTED
    """

    PENDING = "pending", "Pending Review"
    APPROVED = "approved", "Approved"
    PROCESSING = "processing", "Processing"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    REJECTED = "rejected", "Rejected"


class RefundReason(models.TextChoices):
    USER_REQUEST = "user_request", "User Request"
    PAYMENT_ERROR = "payment_error", "Payment Error"
    SERVICE_ISSUE = "service_issue", "Service Issue"
    OVERPAYMENT = "overpayment", "Overpayment"
    ADMIN_DECISION = "admin_decision", "Admin Decision"
    DISPUTE = "dispute", "Dispute"


class AdminTaskType(models.TextChoices):
    MANUAL_FULFILLMENT = "manual_fulfillment", "Manual Fulfillment"
    PAYMENT_FAILURE_ESCALATION = "payment_failure_escalation", "Payment Failure Escalation"
    PAYMENT_REFUND = "payment_refund", "Payment Refund"
    MANUAL_CREDIT_REVIEW = "manual_credit_review", "Manual Credit Review"


class AdminTaskStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    MANUAL_REQUIRED = "manual_required", "Manual Action Required"
    IN_PROGRESS = "in_progress", "In Progress"
    COMPLETED = "completed", "Completed"


class AdminTaskPriority(models.TextChoices):
    LOW = "low", "Low"
    MEDIUM = "medium", "Medium"
    HIGH = "high", "High"
    URGENT = "urgent", "Urgent"


class FailureType(models.TextChoices):
    """
    Failure buckets used by the retry subsystem.

    Retryable: NETWORK_ERROR, MONITORING_ERROR, SYSTEM_ERROR
    Terminal: EXPIRED, FAILED, INSUFFICIENT_PAYMENT
    """

    EXPIRED = "expired", "Expired"
    FAILED = "failed", "Failed"
    NETWORK_ERROR = "network_error", "Network Error"
    INSUFFICIENT_PAYMENT = "insufficient_payment", "Insufficient Payment"
    MONITORING_ERROR = "monitoring_error", "Monitoring Error"
    SYSTEM_ERROR = "system_error", "System Error"


RETRYABLE_FAILURE_TYPES = frozenset(
    [
        FailureType.NETWORK_ERROR,
        FailureType.MONITORING_ERROR,
        FailureType.SYSTEM_ERROR,
    ]
)


class RenewalStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    SUCCEEDED = "succeeded", "Succeeded"
    FAILED = "failed", "Failed"
    CANCELED = "canceled", "Canceled"


class CreditTransactionType(models.TextChoices):
    PURCHASE = "purchase", "Purchase"
    REFUND_REVERSAL = "refund_reversal", "Refund Reversal"
    REFUND_ROLLBACK = "refund_rollback", "Refund Rollback"
    ADMIN_ADJUSTMENT = "admin_adjustment", "Admin Adjustment"


class CreditTransactionStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    COMPLETED = "completed", "Completed"


class FailureAction(models.TextChoices):
    """What the failure subsystem did with a failed payment."""

    CLEANUP = "cleanup", "Cleanup"
    USER_NOTIFIED = "user_notified", "User Notified"
    RETRIED = "retried", "Retry Scheduled"
    ADMIN_ALERTED = "admin_alerted", "Admin Alerted"


class DeclineKind(models.TextChoices):
    HARD = "hard", "Hard Decline"
    SOFT = "soft", "Soft Decline"
