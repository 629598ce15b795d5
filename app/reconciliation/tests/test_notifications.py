"""
Tests for the default user directory and notifier.
"""

from unittest.mock import patch

import pytest

from reconciliation.notifications import DjangoUserDirectory, TaskNotifier
from reconciliation.tasks import deliver_notification
from reconciliation.tests.factories import UserFactory


@pytest.mark.django_db
class TestDjangoUserDirectory:
    def test_exists(self):
        user = UserFactory()
        directory = DjangoUserDirectory()

        assert directory.exists(str(user.pk))
        assert not directory.exists("999999")
        assert not directory.exists("abc")
        assert not directory.exists("")

    def test_get_contact(self):
        user = UserFactory(email="payer@example.com", first_name="Ada", last_name="Lovelace")

        contact = DjangoUserDirectory().get_contact(str(user.pk))

        assert contact.user_id == str(user.pk)
        assert contact.email == "payer@example.com"
        assert contact.name == "Ada Lovelace"

    def test_unknown_contact(self):
        assert DjangoUserDirectory().get_contact("999999") is None


@pytest.mark.django_db
class TestTaskNotifier:
    def test_user_notification_queued_on_commit(self, django_capture_on_commit_callbacks):
        with patch.object(deliver_notification, "delay") as mock_delay:
            with django_capture_on_commit_callbacks(execute=True):
                TaskNotifier().notify_user("42", "payment_succeeded", "Paid", "Thanks", {"payment_id": "p1"})

        mock_delay.assert_called_once_with(
            audience="user",
            user_id="42",
            kind="payment_succeeded",
            title="Paid",
            message="Thanks",
            data={"payment_id": "p1"},
        )

    def test_nothing_queued_before_commit(self, django_capture_on_commit_callbacks):
        with patch.object(deliver_notification, "delay") as mock_delay:
            with django_capture_on_commit_callbacks() as callbacks:
                TaskNotifier().notify_admins("refund_requested", "Refund", "Review it")

        assert len(callbacks) == 1
        mock_delay.assert_not_called()

    def test_broker_error_does_not_propagate(self, django_capture_on_commit_callbacks):
        with patch.object(deliver_notification, "delay", side_effect=ConnectionError("broker down")):
            with django_capture_on_commit_callbacks(execute=True):
                TaskNotifier().notify_admins("refund_requested", "Refund", "Review it")
