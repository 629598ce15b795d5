"""
Commerce admin configuration.
"""

from django.contrib import admin

from commerce.models import CouponRedemption, Order, OrderItem, PaymentItem, Subscription


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    fields = ["product_variant_id", "term_months", "price_cents", "base_price_cents", "discount_percent", "auto_renew"]


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ["id", "user_id", "status", "total_cents", "currency", "created_at"]
    list_filter = ["status", "currency"]
    search_fields = ["id", "user_id"]
    readonly_fields = ["id", "created_at", "updated_at"]
    ordering = ["-created_at"]
    inlines = [OrderItemInline]


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    list_display = [
        "id",
        "user_id",
        "status",
        "term_months",
        "end_date",
        "auto_renew",
        "next_billing_at",
    ]
    list_filter = ["status", "auto_renew"]
    search_fields = ["id", "user_id"]
    readonly_fields = ["id", "order_item", "created_at", "updated_at"]


@admin.register(PaymentItem)
class PaymentItemAdmin(admin.ModelAdmin):
    list_display = ["payment_id", "order_item", "subtotal_cents", "discount_cents", "total_cents"]
    search_fields = ["payment_id"]


@admin.register(CouponRedemption)
class CouponRedemptionAdmin(admin.ModelAdmin):
    list_display = ["order", "coupon_code", "status", "redeemed_at", "voided_at"]
    list_filter = ["status"]
    search_fields = ["coupon_code", "order__id"]
