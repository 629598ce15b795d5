"""
Protocol definitions for the collaborators reconciliation drives.

The reconciliation core never owns orders, subscriptions, coupons, users
or notification delivery. It calls them as side effects through the
interfaces below and never reads canonical payment state from them.

Available Protocols:
    OrderGateway: Order lookup, status updates and payment item splits
    SubscriptionGateway: Subscription creation and renewal date updates
    CouponGateway: Coupon reservation finalization / voiding
    UserDirectory: User existence and contact lookup
    Notifier: Fire-and-forget user and admin notifications

Data Contracts:
    OrderLine, OrderSnapshot, SubscriptionSnapshot, UserContact

Usage:
    from reconciliation.protocols import OrderGateway

    def cancel_for_mismatch(orders: OrderGateway, order_id: str) -> None:
        orders.update_order_status(order_id, "canceled", "payment_amount_mismatch")

Note:
    - Default implementations live in commerce.services and
      reconciliation.notifications
    - @runtime_checkable allows isinstance() checks in tests
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from datetime import date, datetime
    from decimal import Decimal
    from typing import Any


# =============================================================================
# Data Contracts
# =============================================================================


@dataclass(frozen=True)
class OrderLine:
    """One purchasable line of an order (one subscription per line)."""

    id: str
    term_months: int
    price_cents: int
    base_price_cents: int
    discount_percent: Decimal | int = 0
    product_variant_id: str | None = None
    auto_renew: bool = False


@dataclass(frozen=True)
class OrderSnapshot:
    """Read-only view of an order and its lines."""

    id: str
    user_id: str
    status: str
    total_cents: int
    currency: str
    items: tuple[OrderLine, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Read-only view of the billing fields of a subscription."""

    id: str
    user_id: str
    status: str
    term_months: int
    auto_renew: bool
    start_date: date | None = None
    end_date: date | None = None
    term_start_date: date | None = None
    renewal_date: date | None = None
    next_billing_at: datetime | None = None


@dataclass(frozen=True)
class UserContact:
    user_id: str
    email: str
    name: str = ""


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class OrderGateway(Protocol):
    """Order service operations used during checkout fulfillment."""

    def get_order_with_items(self, order_id: str) -> OrderSnapshot | None:
        """Return the order with its lines, or None if it does not exist."""
        ...

    def update_order_status(
        self,
        order_id: str,
        status: str,
        status_reason: str | None = None,
    ) -> None:
        ...

    def has_payment_items(self, payment_id: str) -> bool:
        """Whether cost splits were already recorded for this payment."""
        ...

    def create_payment_items(self, payment_id: str, order: OrderSnapshot) -> int:
        """
        Record per-line subtotal/discount/total splits for a payment.

        Returns:
            Number of split rows written
        """
        ...


@runtime_checkable
class SubscriptionGateway(Protocol):
    """Subscription service operations used by fulfillment and renewals."""

    def exists_for_order_item(self, order_item_id: str) -> bool:
        ...

    def create_subscription(
        self,
        user_id: str,
        order_id: str,
        item: OrderLine,
        payment_id: str,
    ) -> str:
        """
        Create the subscription for one order line.

        Returns:
            The new subscription id
        """
        ...

    def get_subscription(self, subscription_id: str) -> SubscriptionSnapshot | None:
        ...

    def update_subscription_dates(
        self,
        subscription_id: str,
        start_date: date,
        end_date: date,
        next_billing_at: datetime | None,
        status_reason: str | None = None,
    ) -> None:
        ...

    def set_auto_renew(
        self,
        subscription_id: str,
        enabled: bool,
        next_billing_at: datetime | None = None,
        status_reason: str | None = None,
    ) -> None:
        ...


@runtime_checkable
class CouponGateway(Protocol):
    """Coupon reservation lifecycle; eligibility is computed elsewhere."""

    def void_redemption_for_order(self, order_id: str, reason: str) -> bool:
        """Release a reserved redemption. Returns True if one was voided."""
        ...

    def finalize_redemption_for_order(self, order_id: str) -> bool:
        """Mark a reserved redemption as used. Returns True if one was finalized."""
        ...


@runtime_checkable
class UserDirectory(Protocol):
    def exists(self, user_id: str) -> bool:
        ...

    def get_contact(self, user_id: str) -> UserContact | None:
        ...


@runtime_checkable
class Notifier(Protocol):
    """
    Fire-and-forget notification delivery.

    Implementations must never raise into the caller: delivery failures
    are logged and dropped.
    """

    def notify_user(
        self,
        user_id: str,
        kind: str,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        ...

    def notify_admins(
        self,
        kind: str,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        ...
