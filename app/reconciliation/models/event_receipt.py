"""
PaymentEventReceipt model - the ingestion gate's dedupe record.

A receipt row means "this provider event was fully processed". It is
inserted inside the same transaction as the event's side effects, so a
rolled-back unit of work leaves no receipt and the redelivered event is
processed again.

Usage:
    from reconciliation.events import record_event

    if not record_event("card", "evt_123", "payment_intent.succeeded"):
        return DuplicateIgnored(...)
"""

from __future__ import annotations

from django.db import models

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from reconciliation.state_machines import PaymentProvider


class PaymentEventReceipt(UUIDPrimaryKeyMixin, BaseModel):
    """
    Tracks provider events that have been processed.

    Fields:
        provider: Provider kind the event came from
        event_id: Provider event id, or a sha256 of the raw payload
        event_type: Provider event type (audit)
        order_id: Order the event touched, if any
        payment_id: UnifiedPayment the event touched, if any

    Note:
        Idempotency is enforced by the (provider, event_id) unique
        constraint. No status column: existence is the only state.
    """

    provider = models.CharField(
        max_length=20,
        choices=PaymentProvider.choices,
    )

    event_id = models.CharField(
        max_length=255,
        help_text="Provider event id or derived payload hash",
    )

    event_type = models.CharField(
        max_length=100,
        blank=True,
        default="",
        db_index=True,
    )

    order_id = models.UUIDField(null=True, blank=True)
    payment_id = models.UUIDField(null=True, blank=True, db_index=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Payment Event Receipt"
        verbose_name_plural = "Payment Event Receipts"
        constraints = [
            models.UniqueConstraint(
                fields=["provider", "event_id"],
                name="unique_provider_event_id",
            ),
        ]

    def __str__(self) -> str:
        return f"PaymentEventReceipt({self.provider}:{self.event_id}, {self.event_type})"
