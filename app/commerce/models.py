"""
Commerce models: orders, subscriptions, coupon redemptions, payment splits.

These are the records reconciliation fulfills as side effects. Catalog,
pricing and coupon eligibility live upstream; the rows here carry the
already-computed commercial snapshot.

Models:
    Order: A checkout awaiting or past payment
    OrderItem: One purchasable line (one subscription per line)
    Subscription: A provisioned term with renewal billing fields
    PaymentItem: Per-line cost split recorded once per payment
    CouponRedemption: Coupon reserved at checkout, finalized or voided later
"""

from __future__ import annotations

from django.db import models

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin


class OrderStatus(models.TextChoices):
    PENDING_PAYMENT = "pending_payment", "Pending Payment"
    IN_PROCESS = "in_process", "In Process"
    COMPLETED = "completed", "Completed"
    CANCELED = "canceled", "Canceled"


class SubscriptionStatus(models.TextChoices):
    PENDING = "pending", "Pending Fulfillment"
    ACTIVE = "active", "Active"
    CANCELED = "canceled", "Canceled"
    EXPIRED = "expired", "Expired"


class RedemptionStatus(models.TextChoices):
    RESERVED = "reserved", "Reserved"
    REDEEMED = "redeemed", "Redeemed"
    VOIDED = "voided", "Voided"


class Order(UUIDPrimaryKeyMixin, BaseModel):
    """
    A checkout. Starts in PENDING_PAYMENT; reconciliation moves it to
    IN_PROCESS on settlement or CANCELED on an amount/currency mismatch.
    """

    user_id = models.CharField(max_length=64, db_index=True)

    status = models.CharField(
        max_length=20,
        choices=OrderStatus.choices,
        default=OrderStatus.PENDING_PAYMENT,
        db_index=True,
    )

    status_reason = models.CharField(max_length=100, blank=True, default="")

    total_cents = models.PositiveBigIntegerField(
        help_text="Order total in smallest currency unit",
    )

    currency = models.CharField(max_length=3, default="usd")

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"Order({self.id}, {self.status}, {self.total_cents} {self.currency})"


class OrderItem(UUIDPrimaryKeyMixin, BaseModel):
    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name="items",
    )

    product_variant_id = models.CharField(max_length=64, blank=True, default="")

    term_months = models.PositiveSmallIntegerField(default=1)

    price_cents = models.PositiveBigIntegerField(
        help_text="Price charged for this line after discount",
    )

    base_price_cents = models.PositiveBigIntegerField(
        help_text="List price before discount",
    )

    discount_percent = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        default=0,
    )

    auto_renew = models.BooleanField(default=False)

    class Meta:
        ordering = ["created_at"]


class Subscription(UUIDPrimaryKeyMixin, BaseModel):
    """
    A provisioned subscription term.

    order_item is unique so a replayed settlement can never create a
    second subscription for the same line.
    """

    user_id = models.CharField(max_length=64, db_index=True)

    order_item = models.OneToOneField(
        OrderItem,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="subscription",
    )

    status = models.CharField(
        max_length=20,
        choices=SubscriptionStatus.choices,
        default=SubscriptionStatus.PENDING,
        db_index=True,
    )

    status_reason = models.CharField(max_length=100, blank=True, default="")

    term_months = models.PositiveSmallIntegerField(default=1)

    start_date = models.DateField(null=True, blank=True)
    end_date = models.DateField(null=True, blank=True)
    term_start_date = models.DateField(null=True, blank=True)
    renewal_date = models.DateField(null=True, blank=True)
    next_billing_at = models.DateTimeField(null=True, blank=True)

    auto_renew = models.BooleanField(default=False)
    auto_renew_disabled_at = models.DateTimeField(null=True, blank=True)

    price_cents = models.PositiveBigIntegerField(default=0)
    currency = models.CharField(max_length=3, default="usd")

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["auto_renew", "next_billing_at"]),
        ]


class PaymentItem(UUIDPrimaryKeyMixin, BaseModel):
    """Cost split of one payment across one order line."""

    payment_id = models.UUIDField(db_index=True)

    order_item = models.ForeignKey(
        OrderItem,
        on_delete=models.PROTECT,
        related_name="payment_items",
    )

    subtotal_cents = models.PositiveBigIntegerField()
    discount_cents = models.PositiveBigIntegerField(default=0)
    total_cents = models.PositiveBigIntegerField()

    class Meta:
        ordering = ["created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["payment_id", "order_item"],
                name="unique_payment_item_per_line",
            ),
        ]


class CouponRedemption(UUIDPrimaryKeyMixin, BaseModel):
    order = models.OneToOneField(
        Order,
        on_delete=models.CASCADE,
        related_name="coupon_redemption",
    )

    coupon_code = models.CharField(max_length=64)

    status = models.CharField(
        max_length=20,
        choices=RedemptionStatus.choices,
        default=RedemptionStatus.RESERVED,
        db_index=True,
    )

    void_reason = models.CharField(max_length=100, blank=True, default="")
    redeemed_at = models.DateTimeField(null=True, blank=True)
    voided_at = models.DateTimeField(null=True, blank=True)
