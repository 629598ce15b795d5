"""
Model mixins providing reusable functionality for Django models.

Available Mixins:
    UUIDPrimaryKeyMixin: Use UUID as primary key
    MetadataMixin: JSON metadata bag with merge-only updates

Usage:
    from core.models import BaseModel
    from core.model_mixins import MetadataMixin, UUIDPrimaryKeyMixin

    class UnifiedPayment(UUIDPrimaryKeyMixin, MetadataMixin, BaseModel):
        provider = models.CharField(max_length=20)

Note:
    Always list mixins before BaseModel in inheritance.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from django.db import models

if TYPE_CHECKING:
    from collections.abc import Mapping
    from typing import Any


class UUIDPrimaryKeyMixin(models.Model):
    """
    Use UUID as primary key instead of auto-increment integer.

    Payment and refund ids travel through provider metadata and admin
    tasks, so they must be non-guessable and safe to mint before insert.
    """

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for this record",
    )

    class Meta:
        abstract = True


class MetadataMixin(models.Model):
    """
    JSON metadata storage that is merged, never wholesale replaced.

    Fields:
        metadata: JSONField for arbitrary key-value data

    Usage:
        payment.merge_metadata({"pay_address": "bc1q..."})
        payment.save(update_fields=["metadata", "updated_at"])

        payment.get_meta("pay_address")
    """

    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Key-value metadata; updates are merged into existing keys",
    )

    class Meta:
        abstract = True

    def get_meta(self, key: str, default: Any = None) -> Any:
        """Get metadata value by key."""
        return (self.metadata or {}).get(key, default)

    def has_meta(self, key: str) -> bool:
        return key in (self.metadata or {})

    def merge_metadata(self, updates: Mapping[str, Any] | None) -> dict[str, Any]:
        """
        Merge updates into metadata without dropping existing keys.

        Keys whose new value is None are ignored so that a sparse update
        never erases a previously recorded value. Does not save.

        Returns:
            The merged metadata dict
        """
        merged = dict(self.metadata or {})
        for key, value in (updates or {}).items():
            if value is not None:
                merged[key] = value
        self.metadata = merged
        return merged
