"""
Default user directory and notifier implementations.

Notifications are fire-and-forget: TaskNotifier queues the
deliver_notification Celery task once the surrounding transaction
commits, so a rolled-back unit of work never notifies anyone, and a
delivery problem never fails the unit of work.

Usage:
    from reconciliation.notifications import DjangoUserDirectory, TaskNotifier

    notifier = TaskNotifier()
    notifier.notify_user(
        "42",
        "payment_succeeded",
        "Payment received",
        "Your payment was received.",
        {"payment_id": str(payment.id)},
    )
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction

from reconciliation.protocols import UserContact

if TYPE_CHECKING:
    from typing import Any


logger = logging.getLogger(__name__)


class DjangoUserDirectory:
    """UserDirectory backed by the configured auth user model."""

    def _lookup(self, user_id: str):
        User = get_user_model()
        try:
            return User.objects.filter(pk=user_id)
        except (ValueError, TypeError, DjangoValidationError):
            return User.objects.none()

    def exists(self, user_id: str) -> bool:
        if not user_id:
            return False
        return self._lookup(user_id).exists()

    def get_contact(self, user_id: str) -> UserContact | None:
        user = self._lookup(user_id).first() if user_id else None
        if user is None:
            return None
        name = user.get_full_name() if hasattr(user, "get_full_name") else ""
        return UserContact(user_id=str(user.pk), email=user.email or "", name=name or "")


class TaskNotifier:
    """
    Notifier that hands delivery to Celery after commit.

    Outside a transaction, on_commit runs the callback immediately.
    """

    def _enqueue(self, audience: str, kind: str, title: str, message: str, data, user_id=None) -> None:
        from reconciliation.tasks import deliver_notification

        def send() -> None:
            try:
                deliver_notification.delay(
                    audience=audience,
                    user_id=user_id,
                    kind=kind,
                    title=title,
                    message=message,
                    data=data or {},
                )
            except Exception:
                logger.exception(
                    "Failed to queue notification",
                    extra={"audience": audience, "user_id": user_id, "kind": kind},
                )

        transaction.on_commit(send)

    def notify_user(
        self,
        user_id: str,
        kind: str,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        self._enqueue("user", kind, title, message, data, user_id=user_id)

    def notify_admins(
        self,
        kind: str,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        self._enqueue("admins", kind, title, message, data)


__all__ = ["DjangoUserDirectory", "TaskNotifier"]
