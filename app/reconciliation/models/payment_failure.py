"""
PaymentFailureRecord model - persisted retry state per payment.

The attempt counter must survive worker restarts, so it lives in the
database rather than in task arguments.
"""

from __future__ import annotations

from django.db import models

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from reconciliation.state_machines import RETRYABLE_FAILURE_TYPES, FailureType


class PaymentFailureRecord(UUIDPrimaryKeyMixin, BaseModel):
    """
    Fields:
        payment: The failing UnifiedPayment (one record per payment)
        failure_type: Last classified failure bucket
        attempts: Retry attempts scheduled so far
        last_reason: Free-text reason of the last failure
        next_retry_at: When the scheduled retry is due
        resolved: Set once the payment reached a final state
        escalated: Set once an admin task was raised
    """

    payment = models.OneToOneField(
        "reconciliation.UnifiedPayment",
        on_delete=models.CASCADE,
        related_name="failure_record",
    )

    failure_type = models.CharField(
        max_length=30,
        choices=FailureType.choices,
    )

    attempts = models.PositiveSmallIntegerField(default=0)

    last_reason = models.TextField(blank=True, default="")

    next_retry_at = models.DateTimeField(null=True, blank=True, db_index=True)

    resolved = models.BooleanField(default=False, db_index=True)

    escalated = models.BooleanField(default=False)

    class Meta:
        ordering = ["-updated_at"]

    def __str__(self) -> str:
        return f"PaymentFailureRecord({self.payment_id}, {self.failure_type}, attempts={self.attempts})"

    @property
    def is_retryable(self) -> bool:
        return self.failure_type in RETRYABLE_FAILURE_TYPES
