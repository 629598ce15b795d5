"""
Collaborator bundle injected into reconciliation services.

Services never reach for module-level singletons: they receive their
collaborators through the constructor. Collaborators.default() wires the
production implementations; tests pass mocks.

Usage:
    from unittest.mock import Mock
    from reconciliation.collaborators import Collaborators

    collaborators = Collaborators.default()

    test_collaborators = Collaborators(
        orders=Mock(), subscriptions=Mock(), coupons=Mock(),
        users=Mock(), notifier=Mock(),
    )
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from reconciliation.protocols import (
        CouponGateway,
        Notifier,
        OrderGateway,
        SubscriptionGateway,
        UserDirectory,
    )


@dataclass
class Collaborators:
    orders: OrderGateway
    subscriptions: SubscriptionGateway
    coupons: CouponGateway
    users: UserDirectory
    notifier: Notifier

    @classmethod
    def default(cls) -> Collaborators:
        from commerce.services import CouponService, OrderService, SubscriptionService
        from reconciliation.notifications import DjangoUserDirectory, TaskNotifier

        return cls(
            orders=OrderService(),
            subscriptions=SubscriptionService(),
            coupons=CouponService(),
            users=DjangoUserDirectory(),
            notifier=TaskNotifier(),
        )


__all__ = ["Collaborators"]
