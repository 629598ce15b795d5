"""
Reconciliation admin configuration.

Registers the canonical payment store, the credit ledger, refund requests
and the admin task queue with the Django admin. Payment state is only
ever advanced by reconciliation, so status and linkage fields are
read-only here.
"""

from django.contrib import admin, messages

from reconciliation.collaborators import Collaborators
from reconciliation.models import (
    AdminTask,
    CreditTransaction,
    PaymentEventReceipt,
    PaymentFailureRecord,
    RefundRequest,
    SubscriptionRenewal,
    UnifiedPayment,
)
from reconciliation.state_machines import AdminTaskStatus, RefundState

__all__ = [
    "AdminTaskAdmin",
    "CreditTransactionAdmin",
    "PaymentEventReceiptAdmin",
    "PaymentFailureRecordAdmin",
    "RefundRequestAdmin",
    "SubscriptionRenewalAdmin",
    "UnifiedPaymentAdmin",
]


@admin.register(UnifiedPayment)
class UnifiedPaymentAdmin(admin.ModelAdmin):
    """
    Admin configuration for UnifiedPayment.

    Read-only view of the canonical payment store.
    """

    list_display = [
        "id",
        "provider",
        "provider_payment_id",
        "user_id",
        "status",
        "purpose",
        "amount",
        "currency",
        "created_at",
    ]
    list_filter = ["provider", "status", "purpose"]
    search_fields = ["id", "provider_payment_id", "user_id", "order_id"]
    readonly_fields = [
        "id",
        "status",
        "provider_status",
        "status_reason",
        "order_id",
        "subscription_id",
        "order_item_id",
        "credit_transaction_id",
        "created_at",
        "updated_at",
    ]
    ordering = ["-created_at"]

    fieldsets = (
        (
            None,
            {
                "fields": ("id", "provider", "provider_payment_id", "user_id", "purpose"),
            },
        ),
        (
            "Status",
            {
                "fields": ("status", "provider_status", "status_reason", "expires_at"),
            },
        ),
        (
            "Amounts",
            {
                "fields": (
                    "amount",
                    "currency",
                    "amount_usd",
                    "price_cents",
                    "base_price_cents",
                    "discount_percent",
                    "term_months",
                    "auto_renew",
                    "next_billing_at",
                ),
            },
        ),
        (
            "Linkage",
            {
                "fields": ("order_id", "subscription_id", "order_item_id", "credit_transaction_id"),
            },
        ),
        (
            "Metadata",
            {
                "fields": ("metadata", "created_at", "updated_at"),
                "classes": ("collapse",),
            },
        ),
    )


@admin.register(PaymentEventReceipt)
class PaymentEventReceiptAdmin(admin.ModelAdmin):
    list_display = ["event_id", "provider", "event_type", "payment_id", "created_at"]
    list_filter = ["provider", "event_type"]
    search_fields = ["event_id", "payment_id", "order_id"]
    readonly_fields = ["id", "provider", "event_id", "event_type", "order_id", "payment_id", "created_at"]
    ordering = ["-created_at"]


@admin.register(PaymentFailureRecord)
class PaymentFailureRecordAdmin(admin.ModelAdmin):
    """
    Admin configuration for PaymentFailureRecord.

    The retry action resets the attempt counter and re-syncs the payment.
    """

    list_display = [
        "payment",
        "failure_type",
        "attempts",
        "next_retry_at",
        "resolved",
        "escalated",
        "updated_at",
    ]
    list_filter = ["failure_type", "resolved", "escalated"]
    search_fields = ["payment__id", "payment__provider_payment_id"]
    readonly_fields = ["id", "payment", "created_at", "updated_at"]
    actions = ["retry_now"]

    @admin.action(description="Retry selected payments now")
    def retry_now(self, request, queryset):
        from reconciliation.services import PaymentFailureService

        service = PaymentFailureService(Collaborators.default())
        retried = 0
        for record in queryset:
            result = service.manual_retry(str(record.payment_id), str(request.user.pk))
            if result.success:
                retried += 1
        self.message_user(request, f"Queued {retried} payment retries.", messages.SUCCESS)


@admin.register(SubscriptionRenewal)
class SubscriptionRenewalAdmin(admin.ModelAdmin):
    list_display = [
        "subscription_id",
        "cycle_end_date",
        "status",
        "next_cycle_end_date",
        "failure_reason",
        "updated_at",
    ]
    list_filter = ["status"]
    search_fields = ["subscription_id", "payment_id"]
    readonly_fields = ["id", "created_at", "updated_at"]
    ordering = ["-cycle_end_date"]


@admin.register(RefundRequest)
class RefundRequestAdmin(admin.ModelAdmin):
    """
    Admin configuration for RefundRequest.

    Approve/reject go through RefundService so the credit reversal and
    notifications happen exactly as they do for API-driven decisions.
    """

    list_display = [
        "id",
        "user_id",
        "payment",
        "amount",
        "reason",
        "state",
        "reviewed_by",
        "created_at",
    ]
    list_filter = ["state", "reason"]
    search_fields = ["id", "user_id", "payment__provider_payment_id"]
    readonly_fields = [
        "id",
        "state",
        "reviewed_by",
        "reviewed_at",
        "reversal_transaction_id",
        "rollback_transaction_id",
        "processed_at",
        "failure_reason",
        "created_at",
        "updated_at",
    ]
    ordering = ["-created_at"]
    actions = ["approve_refunds"]

    @admin.action(description="Approve and process selected refunds")
    def approve_refunds(self, request, queryset):
        from reconciliation.services import RefundService

        service = RefundService(Collaborators.default())
        for refund in queryset.filter(state=RefundState.PENDING):
            result = service.approve(str(refund.id), str(request.user.pk))
            if not result.success:
                self.message_user(
                    request,
                    f"Refund {refund.id}: {result.error}",
                    messages.ERROR,
                )


@admin.register(AdminTask)
class AdminTaskAdmin(admin.ModelAdmin):
    list_display = [
        "title",
        "task_type",
        "status",
        "priority",
        "user_id",
        "assigned_to",
        "created_at",
    ]
    list_filter = ["task_type", "status", "priority"]
    search_fields = ["title", "user_id", "payment__provider_payment_id"]
    readonly_fields = ["id", "payment", "details", "completed_at", "created_at", "updated_at"]
    ordering = ["-created_at"]
    actions = ["mark_completed"]

    @admin.action(description="Mark selected tasks completed")
    def mark_completed(self, request, queryset):
        for task in queryset.exclude(status=AdminTaskStatus.COMPLETED):
            task.mark_completed(str(request.user.pk))
            task.save()


@admin.register(CreditTransaction)
class CreditTransactionAdmin(admin.ModelAdmin):
    """
    Admin configuration for CreditTransaction.

    Ledger rows are immutable, all fields are read-only.
    """

    list_display = [
        "id",
        "user_id",
        "transaction_type",
        "amount",
        "balance_after",
        "status",
        "payment_id",
        "created_at",
    ]
    list_filter = ["transaction_type", "status"]
    search_fields = ["id", "user_id", "payment_id", "refund_id"]
    ordering = ["-created_at"]

    def get_readonly_fields(self, request, obj=None):
        return [field.name for field in self.model._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
