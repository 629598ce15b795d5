# =============================================================================
# Payment Reconciliation Service Configuration
# =============================================================================
# Settings, URLs, the WSGI application and the Celery app.
#
# The Celery app is imported here so reconciliation.tasks is registered
# whenever Django starts, both in web processes and in workers.
# =============================================================================

from config.celery import app as celery_app

__all__ = ("celery_app",)
