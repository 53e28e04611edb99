"""
Admin configuration for billing app.

Subscriptions and invoices are read-mostly: state changes go through the
services so the payment invariants hold. The ledger is fully read-only.
"""

from django.contrib import admin

from apps.billing.models import Invoice, InvoiceSequence, PaymentTransaction, Subscription


class InvoiceInline(admin.TabularInline):
    model = Invoice
    extra = 0
    can_delete = False
    fields = [
        "invoice_number",
        "payment_status",
        "total_amount",
        "billing_period_start",
        "billing_period_end",
        "gateway_payment_id",
        "paid_at",
    ]
    readonly_fields = fields
    show_change_link = True


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    """Admin for Pro subscriptions."""

    list_display = [
        "id",
        "subscriber",
        "kind",
        "status",
        "current_period_end",
        "mandate_status",
        "auto_charge_failures",
        "created_at",
    ]
    list_filter = ["status", "kind", "mandate_status", "auto_renew"]
    search_fields = ["subscriber__email", "gateway_subscription_id", "gateway_customer_id"]
    raw_id_fields = ["subscriber"]
    readonly_fields = [
        "gateway_customer_id",
        "gateway_subscription_id",
        "auto_charge_failures",
        "last_auto_charge_attempt",
        "pause_count",
        "total_paused_days",
        "created_at",
        "updated_at",
    ]
    inlines = [InvoiceInline]


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    """Admin for invoices."""

    list_display = [
        "id",
        "invoice_number",
        "subscriber",
        "payment_status",
        "total_amount",
        "currency",
        "source",
        "paid_at",
    ]
    list_filter = ["payment_status", "source", "currency"]
    search_fields = [
        "invoice_number",
        "gateway_order_id",
        "gateway_payment_id",
        "subscriber__email",
    ]
    raw_id_fields = ["subscription", "subscriber"]
    readonly_fields = [
        "invoice_number",
        "gateway_order_id",
        "gateway_payment_id",
        "paid_at",
        "source",
        "created_at",
        "updated_at",
    ]
    date_hierarchy = "created_at"


@admin.register(PaymentTransaction)
class PaymentTransactionAdmin(admin.ModelAdmin):
    """Admin for the payment ledger."""

    list_display = [
        "id",
        "event_type",
        "source",
        "status",
        "amount",
        "gateway_payment_id",
        "invoice",
        "created_at",
    ]
    list_filter = ["event_type", "source", "status"]
    search_fields = [
        "gateway_payment_id",
        "gateway_order_id",
        "gateway_subscription_id",
        "gateway_event_id",
    ]
    ordering = ["-created_at"]
    date_hierarchy = "created_at"

    def has_add_permission(self, request):
        """Ledger rows are written by the payment paths, not admin."""
        return False

    def has_change_permission(self, request, obj=None):
        """Ledger rows are append-only."""
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(InvoiceSequence)
class InvoiceSequenceAdmin(admin.ModelAdmin):
    list_display = ["prefix", "last_value"]
    readonly_fields = ["prefix", "last_value"]
