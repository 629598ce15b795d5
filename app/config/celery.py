"""
Celery configuration for the payment reconciliation service.

Celery runs everything that must not happen inline with a provider callback:
- Reconciling queued provider events (webhooks and polled status syncs)
- Scheduled failure retries with exponential backoff
- Periodic crypto payment monitoring (via django-celery-beat)
- Fire-and-forget user/admin notification delivery

Redis is both the message broker and result backend. Tasks are
auto-discovered from all installed Django apps.

For more information, see:
https://docs.celeryq.dev/en/stable/django/first-steps-with-django.html
"""

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# All Celery settings are prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

app.autodiscover_tasks()
