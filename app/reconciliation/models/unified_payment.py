"""
UnifiedPayment model - the canonical payment record.

One row per provider payment attempt, whichever provider ran it. All
business logic reads the canonical `status`; the raw `provider_status`
is kept for audit only.

Usage:
    from reconciliation.models import UnifiedPayment
    from reconciliation.state_machines import PaymentProvider, PaymentStatus

    payment = UnifiedPayment.objects.create(
        provider=PaymentProvider.CARD,
        provider_payment_id="pi_123",
        user_id="42",
        amount=Decimal("49.99"),
        currency="usd",
        order_id=order.id,
    )

    # Linkage fields are write-once
    payment.link(subscription_id=subscription_id)
    payment.save(update_fields=["subscription_id", "updated_at"])
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from django.db import models

from core.models import BaseModel
from core.model_mixins import MetadataMixin, UUIDPrimaryKeyMixin

from reconciliation.exceptions import PaymentValidationError
from reconciliation.metadata import PaymentMetadata
from reconciliation.state_machines import (
    FAILURE_PAYMENT_STATUSES,
    TERMINAL_PAYMENT_STATUSES,
    PaymentProvider,
    PaymentPurpose,
    PaymentStatus,
)

LINK_FIELDS = ("order_id", "subscription_id", "order_item_id", "credit_transaction_id")


class UnifiedPaymentQuerySet(models.QuerySet):
    def for_provider_id(self, provider: str, provider_payment_id: str):
        return self.filter(provider=provider, provider_payment_id=provider_payment_id)

    def non_terminal(self):
        return self.exclude(status__in=TERMINAL_PAYMENT_STATUSES)

    def settled(self):
        return self.filter(status=PaymentStatus.SUCCEEDED)


class UnifiedPayment(UUIDPrimaryKeyMixin, MetadataMixin, BaseModel):
    """
    Provider-agnostic payment record.

    Invariants:
        - (provider, provider_payment_id) is unique
        - once status is SUCCEEDED it is never downgraded
        - linkage fields are set at most once and never overwritten
        - at most one credit allocation and one subscription per payment

    Fields:
        provider: Which provider ran the attempt
        provider_payment_id: Provider's id (pi_xxx, NOWPayments payment id)
        status: Canonical status (see reconciliation.normalizer)
        provider_status: Raw provider status, audit only
        purpose: Checkout or credit top-up
        order_id / subscription_id / order_item_id / credit_transaction_id: Linkage
        amount / currency: Amount in major units as charged
        amount_usd: USD value used for credit allocation
        price_cents / base_price_cents / discount_percent / term_months: Commercial snapshot
        auto_renew / next_billing_at: Renewal billing snapshot
        status_reason: Short machine-readable reason for the last status change
        expires_at: Crypto invoice expiry
        metadata: Merged provider correlation fields (see PaymentMetadata)
    """

    # ==========================================================================
    # Identity
    # ==========================================================================

    provider = models.CharField(
        max_length=20,
        choices=PaymentProvider.choices,
        help_text="Provider that ran this payment attempt",
    )

    provider_payment_id = models.CharField(
        max_length=255,
        help_text="Provider's payment identifier (unique per provider)",
    )

    user_id = models.CharField(
        max_length=64,
        db_index=True,
        help_text="Paying user",
    )

    # ==========================================================================
    # Status
    # ==========================================================================

    status = models.CharField(
        max_length=30,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING,
        db_index=True,
        help_text="Canonical status; only advanced by reconciliation",
    )

    provider_status = models.CharField(
        max_length=50,
        blank=True,
        default="",
        help_text="Raw provider status (audit only, never branched on)",
    )

    status_reason = models.CharField(
        max_length=100,
        blank=True,
        default="",
    )

    purpose = models.CharField(
        max_length=20,
        choices=PaymentPurpose.choices,
        default=PaymentPurpose.CHECKOUT,
        db_index=True,
    )

    # ==========================================================================
    # Linkage (write-once)
    # ==========================================================================

    order_id = models.UUIDField(null=True, blank=True, db_index=True)
    subscription_id = models.UUIDField(null=True, blank=True, db_index=True)
    order_item_id = models.UUIDField(null=True, blank=True)
    credit_transaction_id = models.UUIDField(null=True, blank=True, unique=True)

    # ==========================================================================
    # Commercial Snapshot
    # ==========================================================================

    amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        help_text="Amount charged, in major currency units",
    )

    currency = models.CharField(
        max_length=10,
        default="usd",
        help_text="Currency code (lowercase)",
    )

    amount_usd = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="USD value expected for credit allocation",
    )

    price_cents = models.PositiveBigIntegerField(null=True, blank=True)
    base_price_cents = models.PositiveBigIntegerField(null=True, blank=True)
    discount_percent = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        null=True,
        blank=True,
    )
    term_months = models.PositiveSmallIntegerField(null=True, blank=True)
    auto_renew = models.BooleanField(default=False)
    next_billing_at = models.DateTimeField(null=True, blank=True)

    expires_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When an unpaid crypto invoice expires",
    )

    objects = UnifiedPaymentQuerySet.as_manager()

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Unified Payment"
        verbose_name_plural = "Unified Payments"
        indexes = [
            models.Index(fields=["provider", "status", "created_at"]),
            models.Index(fields=["user_id", "status"]),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["provider", "provider_payment_id"],
                name="unique_provider_payment_id",
            ),
            models.CheckConstraint(
                condition=models.Q(amount__gte=0),
                name="unified_payment_amount_non_negative",
            ),
        ]

    def __str__(self) -> str:
        return (
            f"UnifiedPayment({self.provider}:{self.provider_payment_id}, "
            f"{self.status}, {self.amount} {self.currency.upper()})"
        )

    # ==========================================================================
    # Linkage
    # ==========================================================================

    def link(self, **links) -> list[str]:
        """
        Set linkage fields that are still empty.

        A value equal to the stored one is a no-op; a different value for
        an already-linked field raises, since relinking would corrupt the
        exactly-once guarantees that hang off these fields.

        Returns:
            Names of the fields that changed (for save(update_fields=...))

        Raises:
            PaymentValidationError: Unknown field or conflicting relink
        """
        changed = []
        for name, value in links.items():
            if name not in LINK_FIELDS:
                raise PaymentValidationError(
                    f"{name} is not a linkage field",
                    details={"field": name},
                )
            if value is None:
                continue
            current = getattr(self, name)
            if current is None:
                setattr(self, name, value)
                changed.append(name)
            elif str(current) != str(value):
                raise PaymentValidationError(
                    f"Payment {self.id} is already linked via {name}",
                    details={
                        "field": name,
                        "current": str(current),
                        "attempted": str(value),
                    },
                )
        return changed

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def typed_metadata(self) -> PaymentMetadata:
        return PaymentMetadata.from_dict(self.metadata)

    @property
    def is_renewal(self) -> bool:
        return self.typed_metadata.is_renewal

    @property
    def is_settled(self) -> bool:
        return self.status == PaymentStatus.SUCCEEDED

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PAYMENT_STATUSES

    @property
    def is_failed(self) -> bool:
        return self.status in FAILURE_PAYMENT_STATUSES

    @property
    def amount_cents(self) -> int:
        """Charged amount in smallest currency unit."""
        cents = (Decimal(self.amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return int(cents)

    @property
    def lock_key(self) -> str:
        """Resource key serializing reconciliation of this payment."""
        if self.order_id:
            return f"order:{self.order_id}"
        return f"payment:{self.id}"
