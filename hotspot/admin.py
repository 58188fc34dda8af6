"""
Django admin configuration for hotspot vouchers and routers (Jazzmin)
Voucher lifecycle fields are read-only here; use the API actions to change them.
"""

from django.contrib import admin
from django.utils.html import format_html

from .models import (
    Customer,
    RouterDevice,
    Payment,
    Voucher,
    ProvisioningAttempt,
    VoucherTransition,
    NotificationRecord,
    VoucherTransfer,
)

STATUS_COLORS = {
    "online": "green",
    "offline": "red",
    "error": "red",
    "pending": "orange",
    "active": "green",
    "completed": "green",
    "used": "gray",
    "expired": "gray",
    "disabled": "red",
    "failed": "red",
    "refund_pending": "orange",
    "refunded": "purple",
    "transferred": "blue",
}


def _badge(value):
    color = STATUS_COLORS.get(value, "gray")
    return format_html(
        '<span style="background: {}; color: white; padding: 2px 8px; border-radius: 4px;">{}</span>',
        color,
        value.upper(),
    )


@admin.register(Customer)
class CustomerAdmin(admin.ModelAdmin):
    list_display = ["name", "phone_number", "email", "created_at"]
    search_fields = ["name", "phone_number", "email"]


@admin.register(RouterDevice)
class RouterDeviceAdmin(admin.ModelAdmin):
    """Manage MikroTik routers"""

    list_display = ["name", "ip_address", "api_port", "status_badge", "router_version", "last_seen"]
    list_filter = ["status"]
    search_fields = ["name", "ip_address", "router_identity"]
    exclude = ["password_encrypted"]
    readonly_fields = [
        "status",
        "last_seen",
        "uptime_seconds",
        "last_error",
        "router_identity",
        "router_version",
        "created_at",
        "updated_at",
    ]

    def status_badge(self, obj):
        return _badge(obj.status)

    status_badge.short_description = "Status"


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ["transaction_id", "customer", "amount_formatted", "status_badge", "package", "created_at"]
    list_filter = ["status", "gateway", "created_at"]
    search_fields = ["transaction_id", "reference", "customer__phone_number"]
    readonly_fields = ["created_at", "completed_at"]

    def amount_formatted(self, obj):
        return f"{obj.currency} {obj.amount:,}"

    amount_formatted.short_description = "Amount"

    def status_badge(self, obj):
        return _badge(obj.status)

    status_badge.short_description = "Status"

    def get_queryset(self, request):
        return super().get_queryset(request).select_related("customer")


class ProvisioningAttemptInline(admin.TabularInline):
    model = ProvisioningAttempt
    extra = 0
    can_delete = False
    readonly_fields = ["device", "action", "outcome", "error_kind", "error_detail", "retry_count", "attempted_at"]
    fields = readonly_fields


class VoucherTransitionInline(admin.TabularInline):
    model = VoucherTransition
    extra = 0
    can_delete = False
    readonly_fields = ["event", "from_status", "to_status", "detail", "created_at"]
    fields = readonly_fields


@admin.register(Voucher)
class VoucherAdmin(admin.ModelAdmin):
    list_display = [
        "code",
        "customer",
        "profile",
        "status_badge",
        "device",
        "expires_at",
        "provision_attempts",
        "needs_attention",
    ]
    list_filter = ["status", "needs_attention", "deprovision_pending", "profile", "device"]
    search_fields = ["code", "customer__phone_number", "customer__name"]
    exclude = ["password"]
    readonly_fields = [
        "code",
        "status",
        "version",
        "price",
        "currency",
        "activated_at",
        "expires_at",
        "used_at",
        "sms_sent_at",
        "provision_attempts",
        "last_error",
        "next_retry_at",
        "provision_lease_until",
        "created_at",
        "updated_at",
    ]
    inlines = [VoucherTransitionInline, ProvisioningAttemptInline]

    def status_badge(self, obj):
        return _badge(obj.status)

    status_badge.short_description = "Status"

    def get_queryset(self, request):
        return super().get_queryset(request).select_related("customer", "device")


@admin.register(NotificationRecord)
class NotificationRecordAdmin(admin.ModelAdmin):
    list_display = ["voucher", "transition", "recipient", "status", "attempts", "sent_at"]
    list_filter = ["status", "transition"]
    search_fields = ["voucher__code", "recipient"]
    readonly_fields = ["created_at", "updated_at", "sent_at"]


@admin.register(VoucherTransfer)
class VoucherTransferAdmin(admin.ModelAdmin):
    list_display = ["from_voucher", "to_voucher", "from_customer", "to_customer", "created_at"]
    search_fields = ["from_voucher__code", "to_voucher__code"]
    readonly_fields = ["from_voucher", "to_voucher", "from_customer", "to_customer", "reason", "created_at"]
