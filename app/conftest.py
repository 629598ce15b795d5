"""
Root pytest configuration for the payment reconciliation service.

Boots Django, swaps slow or external backends for in-process ones and
auto-marks tests by filename. Package fixtures (collaborator fakes,
event builders, provider mocks) live in reconciliation/conftest.py and
the tests/conftest.py of each sub-package.
"""

import os

import django
import pytest

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")


def pytest_configure():
    django.setup()

    from django.conf import settings

    # PBKDF2 at production iterations dominates UserFactory time
    settings.PASSWORD_HASHERS = [
        "django.contrib.auth.hashers.MD5PasswordHasher",
    ]
    settings.EMAIL_BACKEND = "django.core.mail.backends.locmem.EmailBackend"
    settings.CELERY_TASK_ALWAYS_EAGER = False


# Filename → marker. Explicit markers on a test win; anything unlisted is
# integration, since most tests here touch the database.
E2E_FILES = {"test_integration.py"}

INTEGRATION_FILES = {
    "test_services.py",
    "test_tasks.py",
    "test_handlers.py",
    "test_intake.py",
    "test_notifications.py",
    "test_events.py",
    "test_orchestrator.py",
    "test_failure_service.py",
    "test_renewal_service.py",
    "test_refund_service.py",
    "test_payment_service.py",
    "test_monitoring_service.py",
    "test_ledger.py",
    "test_allocation.py",
    "test_concurrency.py",
}

UNIT_FILES = {
    "test_models.py",
    "test_normalizer.py",
    "test_metadata.py",
    "test_retry.py",
    "test_outcomes.py",
    "test_stripe_adapter.py",
    "test_nowpayments_adapter.py",
    "test_locks.py",
}


def pytest_collection_modifyitems(items):
    for item in items:
        if {m.name for m in item.iter_markers()} & {"unit", "integration", "e2e"}:
            continue

        filename = os.path.basename(str(item.fspath))
        if filename in E2E_FILES:
            item.add_marker(pytest.mark.e2e)
        elif filename in UNIT_FILES:
            item.add_marker(pytest.mark.unit)
        else:
            item.add_marker(pytest.mark.integration)


def _flush_with_cascade():
    """
    Make PostgreSQL flushes use TRUNCATE ... CASCADE.

    transactional_db tests (advisory lock contention across connections)
    flush between tests, and the ledger and payment tables reference
    each other.
    """
    from django.db.backends.postgresql import operations

    original_sql_flush = operations.DatabaseOperations.sql_flush

    def sql_flush(self, style, tables, *, reset_sequences=False, allow_cascade=False):
        return original_sql_flush(
            self, style, tables, reset_sequences=reset_sequences, allow_cascade=True
        )

    operations.DatabaseOperations.sql_flush = sql_flush


_flush_with_cascade()


# =============================================================================
# Project-wide Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def locmem_cache(settings):
    """Process-local cache so balance and allocation markers never leak between tests."""
    from django.core.cache import cache

    settings.CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
            "LOCATION": "reconciliation-tests",
        }
    }
    cache.clear()
    yield
    cache.clear()
