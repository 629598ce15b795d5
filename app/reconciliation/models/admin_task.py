"""
AdminTask model - durable queue of work that needs a human.

Created for manual fulfillment after settlement, exhausted payment
retries, provider-side refunds and disputed credit allocations.

Usage:
    AdminTask.objects.create(
        task_type=AdminTaskType.MANUAL_FULFILLMENT,
        title="Provision renewal",
        user_id=payment.user_id,
        payment=payment,
        details={"subscription_id": "..."},
    )
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from reconciliation.state_machines import (
    AdminTaskPriority,
    AdminTaskStatus,
    AdminTaskType,
)


class AdminTask(UUIDPrimaryKeyMixin, BaseModel):
    # ==========================================================================
    # Classification
    # ==========================================================================

    task_type = models.CharField(
        max_length=40,
        choices=AdminTaskType.choices,
        db_index=True,
    )

    status = models.CharField(
        max_length=20,
        choices=AdminTaskStatus.choices,
        default=AdminTaskStatus.PENDING,
        db_index=True,
    )

    priority = models.CharField(
        max_length=10,
        choices=AdminTaskPriority.choices,
        default=AdminTaskPriority.MEDIUM,
    )

    # ==========================================================================
    # Subject
    # ==========================================================================

    title = models.CharField(max_length=200)

    user_id = models.CharField(max_length=64, blank=True, default="", db_index=True)

    payment = models.ForeignKey(
        "reconciliation.UnifiedPayment",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="admin_tasks",
    )

    details = models.JSONField(
        default=dict,
        blank=True,
        help_text="Context an operator needs to act (ids, amounts, reasons)",
    )

    # ==========================================================================
    # Resolution
    # ==========================================================================

    assigned_to = models.CharField(max_length=64, blank=True, default="")
    completed_at = models.DateTimeField(null=True, blank=True)
    notes = models.TextField(blank=True, default="")

    class Meta:
        db_table = "admin_tasks"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["task_type", "status"]),
        ]

    def __str__(self) -> str:
        return f"AdminTask({self.task_type}, {self.status}, {self.title})"

    def mark_completed(self, admin_id: str, notes: str = "") -> None:
        """
        Close the task.

        Note: Does not save - caller must save after calling.
        """
        self.status = AdminTaskStatus.COMPLETED
        self.assigned_to = admin_id
        self.completed_at = timezone.now()
        if notes:
            self.notes = notes
