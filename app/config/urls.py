"""
URL configuration for the payment reconciliation service.

The service has no public HTTP API of its own: provider callbacks are
handed to reconciliation.webhooks.receive_webhook by the edge service.
Only the Django admin is mounted, for working the admin task queue
and inspecting payments, refunds and credit transactions.

URL Structure:
    /admin/                        - Django admin interface
"""

from django.contrib import admin
from django.urls import path

urlpatterns = [
    path("admin/", admin.site.urls),
]

admin.site.site_header = "Payment Reconciliation Admin"
admin.site.site_title = "Payments Admin"
admin.site.index_title = "Payments, refunds and admin tasks"
