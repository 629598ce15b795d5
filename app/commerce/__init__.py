"""
Commerce app: orders, subscriptions and coupon redemptions.

This app owns the commercial records that payment reconciliation fulfills.
It exposes them to the reconciliation core only through the gateway
services in commerce.services, which implement the collaborator protocols
in reconciliation.protocols.

Related apps:
    - reconciliation: Drives order fulfillment and renewal date updates

Usage:
    from commerce.services import OrderService

    order = OrderService().get_order_with_items(order_id)
"""
