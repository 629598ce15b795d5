"""
SubscriptionRenewal model - the renewal-cycle lock.

One row per (subscription, cycle end date). The unique constraint is what
stops the same billing cycle from being renewed twice, no matter how many
payments or events reference it.
"""

from __future__ import annotations

from django.db import models

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from reconciliation.state_machines import RenewalStatus


class SubscriptionRenewal(UUIDPrimaryKeyMixin, BaseModel):
    subscription_id = models.UUIDField(db_index=True)

    cycle_end_date = models.DateField(
        help_text="End date of the billing cycle this renewal pays for",
    )

    status = models.CharField(
        max_length=20,
        choices=RenewalStatus.choices,
        default=RenewalStatus.PENDING,
        db_index=True,
    )

    payment_id = models.UUIDField(null=True, blank=True)

    next_cycle_end_date = models.DateField(null=True, blank=True)

    failure_reason = models.CharField(max_length=100, blank=True, default="")

    class Meta:
        ordering = ["-cycle_end_date"]
        constraints = [
            models.UniqueConstraint(
                fields=["subscription_id", "cycle_end_date"],
                name="unique_renewal_per_cycle",
            ),
        ]

    def __str__(self) -> str:
        return f"SubscriptionRenewal({self.subscription_id}, {self.cycle_end_date}, {self.status})"
