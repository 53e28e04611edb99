"""Billing app configuration."""

from django.apps import AppConfig


class BillingConfig(AppConfig):
    """Pro subscriptions, invoices and the payment ledger."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.billing"
    verbose_name = "Billing"
