"""
Gateway services over the commerce models.

Each service implements one collaborator protocol from
reconciliation.protocols and returns frozen snapshots rather than model
instances, so the reconciliation core never mutates commerce rows directly.

Services:
    OrderService: OrderGateway implementation
    SubscriptionService: SubscriptionGateway implementation
    CouponService: CouponGateway implementation

Usage:
    from commerce.services import OrderService

    orders = OrderService()
    snapshot = orders.get_order_with_items(order_id)
    if snapshot and snapshot.status == OrderStatus.PENDING_PAYMENT:
        orders.update_order_status(order_id, OrderStatus.IN_PROCESS, "payment_succeeded")
"""

from __future__ import annotations

import logging
from datetime import datetime, time
from typing import TYPE_CHECKING

from dateutil.relativedelta import relativedelta
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError, transaction
from django.utils import timezone

from commerce.models import (
    CouponRedemption,
    Order,
    PaymentItem,
    RedemptionStatus,
    Subscription,
    SubscriptionStatus,
)
from core.services import BaseService
from reconciliation.protocols import OrderLine, OrderSnapshot, SubscriptionSnapshot

if TYPE_CHECKING:
    from datetime import date


logger = logging.getLogger(__name__)


def add_months(start: date, months: int) -> date:
    """Calendar-month addition, clamped to the last day of short months."""
    return start + relativedelta(months=months)


def _order_lookup(order_id: str):
    try:
        return Order.objects.filter(id=order_id)
    except (DjangoValidationError, ValueError):
        return Order.objects.none()


# =============================================================================
# Orders
# =============================================================================


class OrderService(BaseService):
    """Order lookup, status updates and per-line payment splits."""

    def get_order_with_items(self, order_id: str) -> OrderSnapshot | None:
        order = _order_lookup(order_id).prefetch_related("items").first()
        if order is None:
            return None

        lines = tuple(
            OrderLine(
                id=str(item.id),
                term_months=item.term_months,
                price_cents=item.price_cents,
                base_price_cents=item.base_price_cents,
                discount_percent=item.discount_percent,
                product_variant_id=item.product_variant_id or None,
                auto_renew=item.auto_renew,
            )
            for item in order.items.all()
        )
        return OrderSnapshot(
            id=str(order.id),
            user_id=order.user_id,
            status=order.status,
            total_cents=order.total_cents,
            currency=order.currency,
            items=lines,
        )

    def update_order_status(
        self,
        order_id: str,
        status: str,
        status_reason: str | None = None,
    ) -> None:
        updated = _order_lookup(order_id).update(
            status=status,
            status_reason=status_reason or "",
            updated_at=timezone.now(),
        )
        self.get_logger().info(
            "Order status updated",
            extra={
                "order_id": str(order_id),
                "status": status,
                "status_reason": status_reason,
                "rows": updated,
            },
        )

    def has_payment_items(self, payment_id: str) -> bool:
        return PaymentItem.objects.filter(payment_id=payment_id).exists()

    def create_payment_items(self, payment_id: str, order: OrderSnapshot) -> int:
        """
        Split a payment across the order lines.

        Discount per line is base price minus charged price. Lines that
        already have a split for this payment are skipped.
        """
        existing = {
            str(order_item_id)
            for order_item_id in PaymentItem.objects.filter(
                payment_id=payment_id
            ).values_list("order_item_id", flat=True)
        }

        rows = []
        for line in order.items:
            if line.id in existing:
                continue
            discount = max(line.base_price_cents - line.price_cents, 0)
            rows.append(
                PaymentItem(
                    payment_id=payment_id,
                    order_item_id=line.id,
                    subtotal_cents=line.base_price_cents,
                    discount_cents=discount,
                    total_cents=line.price_cents,
                )
            )

        PaymentItem.objects.bulk_create(rows, ignore_conflicts=True)
        return len(rows)


# =============================================================================
# Subscriptions
# =============================================================================


class SubscriptionService(BaseService):
    """
    Subscription creation and billing-date maintenance.

    Subscriptions are created PENDING: provisioning the underlying service
    is a manual step done by an operator after payment settles.
    """

    def exists_for_order_item(self, order_item_id: str) -> bool:
        return Subscription.objects.filter(order_item_id=order_item_id).exists()

    def create_subscription(
        self,
        user_id: str,
        order_id: str,
        item: OrderLine,
        payment_id: str,
    ) -> str:
        today = timezone.localdate()
        end_date = add_months(today, item.term_months)
        next_billing_at = None
        if item.auto_renew:
            next_billing_at = timezone.make_aware(datetime.combine(end_date, time.min))

        try:
            with transaction.atomic():
                subscription = Subscription.objects.create(
                    user_id=user_id,
                    order_item_id=item.id,
                    status=SubscriptionStatus.PENDING,
                    term_months=item.term_months,
                    start_date=today,
                    end_date=end_date,
                    term_start_date=today,
                    renewal_date=end_date,
                    next_billing_at=next_billing_at,
                    auto_renew=item.auto_renew,
                    price_cents=item.price_cents,
                )
        except IntegrityError:
            # Another unit of work created it first.
            existing = Subscription.objects.get(order_item_id=item.id)
            return str(existing.id)

        self.get_logger().info(
            "Subscription created",
            extra={
                "subscription_id": str(subscription.id),
                "order_id": str(order_id),
                "order_item_id": item.id,
                "payment_id": str(payment_id),
                "user_id": user_id,
            },
        )
        return str(subscription.id)

    def get_subscription(self, subscription_id: str) -> SubscriptionSnapshot | None:
        try:
            subscription = Subscription.objects.filter(id=subscription_id).first()
        except (DjangoValidationError, ValueError):
            return None
        if subscription is None:
            return None

        return SubscriptionSnapshot(
            id=str(subscription.id),
            user_id=subscription.user_id,
            status=subscription.status,
            term_months=subscription.term_months,
            auto_renew=subscription.auto_renew,
            start_date=subscription.start_date,
            end_date=subscription.end_date,
            term_start_date=subscription.term_start_date,
            renewal_date=subscription.renewal_date,
            next_billing_at=subscription.next_billing_at,
        )

    def update_subscription_dates(
        self,
        subscription_id: str,
        start_date: date,
        end_date: date,
        next_billing_at: datetime | None,
        status_reason: str | None = None,
    ) -> None:
        fields = {
            "term_start_date": start_date,
            "end_date": end_date,
            "renewal_date": end_date,
            "next_billing_at": next_billing_at,
            "updated_at": timezone.now(),
        }
        if status_reason:
            fields["status_reason"] = status_reason
        Subscription.objects.filter(id=subscription_id).update(**fields)

    def set_auto_renew(
        self,
        subscription_id: str,
        enabled: bool,
        next_billing_at: datetime | None = None,
        status_reason: str | None = None,
    ) -> None:
        now = timezone.now()
        fields = {
            "auto_renew": enabled,
            "next_billing_at": next_billing_at if enabled else None,
            "auto_renew_disabled_at": None if enabled else now,
            "updated_at": now,
        }
        if status_reason:
            fields["status_reason"] = status_reason
        Subscription.objects.filter(id=subscription_id).update(**fields)

        self.get_logger().info(
            "Subscription auto-renew updated",
            extra={
                "subscription_id": str(subscription_id),
                "auto_renew": enabled,
                "next_billing_at": next_billing_at.isoformat() if next_billing_at else None,
                "status_reason": status_reason,
            },
        )


# =============================================================================
# Coupons
# =============================================================================


class CouponService(BaseService):
    """Finalizes or releases the coupon reserved for an order at checkout."""

    def void_redemption_for_order(self, order_id: str, reason: str) -> bool:
        updated = CouponRedemption.objects.filter(
            order_id=order_id,
            status=RedemptionStatus.RESERVED,
        ).update(
            status=RedemptionStatus.VOIDED,
            void_reason=reason,
            voided_at=timezone.now(),
            updated_at=timezone.now(),
        )
        if updated:
            self.get_logger().info(
                "Coupon redemption voided",
                extra={"order_id": str(order_id), "reason": reason},
            )
        return bool(updated)

    def finalize_redemption_for_order(self, order_id: str) -> bool:
        updated = CouponRedemption.objects.filter(
            order_id=order_id,
            status=RedemptionStatus.RESERVED,
        ).update(
            status=RedemptionStatus.REDEEMED,
            redeemed_at=timezone.now(),
            updated_at=timezone.now(),
        )
        return bool(updated)


__all__ = [
    "CouponService",
    "OrderService",
    "SubscriptionService",
    "add_months",
]
