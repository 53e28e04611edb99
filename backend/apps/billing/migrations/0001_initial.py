import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models

SUBSCRIPTION_STATUS_CHOICES = [
    ("payment_pending", "Payment Pending"),
    ("active", "Active"),
    ("paused", "Paused"),
    ("cancelled", "Cancelled"),
    ("expired", "Expired"),
    ("payment_failed", "Payment Failed"),
    ("inactive", "Inactive"),
]

MANDATE_STATUS_CHOICES = [
    ("created", "Created"),
    ("authenticated", "Authenticated"),
    ("active", "Active"),
    ("paused", "Paused"),
    ("halted", "Halted"),
    ("cancelled", "Cancelled"),
]

INVOICE_STATUS_CHOICES = [
    ("pending", "Pending"),
    ("paid", "Paid"),
    ("failed", "Failed"),
    ("cancelled", "Cancelled"),
]


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="InvoiceSequence",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("prefix", models.CharField(max_length=20, unique=True)),
                ("last_value", models.PositiveIntegerField(default=0)),
            ],
        ),
        migrations.CreateModel(
            name="Subscription",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "kind",
                    models.CharField(
                        choices=[("recurring", "Recurring (mandate)"), ("one_time", "One-time order")],
                        default="one_time",
                        max_length=20,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=SUBSCRIPTION_STATUS_CHOICES,
                        db_index=True,
                        default="payment_pending",
                        max_length=30,
                    ),
                ),
                ("start_date", models.DateTimeField()),
                ("current_period_start", models.DateTimeField()),
                ("current_period_end", models.DateTimeField(db_index=True)),
                ("next_billing_date", models.DateTimeField(blank=True, null=True)),
                ("amount", models.PositiveIntegerField(help_text="Amount per period in minor units (paise)")),
                ("currency", models.CharField(default="inr", max_length=3)),
                ("auto_renew", models.BooleanField(default=True)),
                ("gateway_customer_id", models.CharField(blank=True, default="", max_length=255)),
                (
                    "gateway_subscription_id",
                    models.CharField(
                        blank=True,
                        help_text="Gateway mandate/subscription ID, only for recurring billing",
                        max_length=255,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "mandate_status",
                    models.CharField(blank=True, choices=MANDATE_STATUS_CHOICES, max_length=20, null=True),
                ),
                ("is_paused", models.BooleanField(default=False)),
                ("paused_at", models.DateTimeField(blank=True, null=True)),
                ("pause_start_date", models.DateTimeField(blank=True, null=True)),
                ("resume_date", models.DateTimeField(blank=True, db_index=True, null=True)),
                ("pause_duration_days", models.PositiveIntegerField(blank=True, null=True)),
                ("pause_reason", models.TextField(blank=True, default="")),
                ("pause_count", models.PositiveIntegerField(default=0)),
                ("total_paused_days", models.PositiveIntegerField(default=0)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("cancel_reason", models.TextField(blank=True, default="")),
                ("inactive_reason", models.CharField(blank=True, default="", max_length=100)),
                ("auto_charge_failures", models.PositiveIntegerField(default=0)),
                ("last_auto_charge_attempt", models.DateTimeField(blank=True, null=True)),
                (
                    "subscriber",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="billing_subscriptions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["subscriber", "status"], name="billing_sub_subscriber_status"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status__in", ["active", "payment_pending", "paused"])),
                        fields=("subscriber",),
                        name="billing_one_inflight_subscription_per_subscriber",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Invoice",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("invoice_number", models.CharField(blank=True, max_length=50, null=True, unique=True)),
                ("amount", models.PositiveIntegerField()),
                ("tax_amount", models.PositiveIntegerField(default=0)),
                ("total_amount", models.PositiveIntegerField()),
                ("currency", models.CharField(default="inr", max_length=3)),
                ("billing_period_start", models.DateTimeField()),
                ("billing_period_end", models.DateTimeField()),
                (
                    "payment_status",
                    models.CharField(
                        choices=INVOICE_STATUS_CHOICES,
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("gateway_order_id", models.CharField(blank=True, db_index=True, max_length=255, null=True)),
                ("gateway_payment_id", models.CharField(blank=True, db_index=True, max_length=255, null=True)),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("document_url", models.URLField(blank=True, default="", max_length=500)),
                (
                    "source",
                    models.CharField(
                        choices=[
                            ("issued", "Issued at checkout"),
                            ("webhook", "Created from webhook"),
                            ("reconciliation", "Created by reconciliation"),
                        ],
                        default="issued",
                        max_length=20,
                    ),
                ),
                (
                    "subscriber",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="billing_invoices",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="invoices",
                        to="billing.subscription",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("payment_status", "paid")),
                        fields=("gateway_payment_id",),
                        name="billing_paid_invoice_per_gateway_payment",
                    ),
                    models.UniqueConstraint(
                        fields=("subscription", "billing_period_start"),
                        name="billing_invoice_per_subscription_period",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentTransaction",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("event_type", models.CharField(db_index=True, max_length=50)),
                (
                    "source",
                    models.CharField(
                        choices=[
                            ("webhook", "Webhook"),
                            ("verification", "Client verification"),
                            ("reconciliation", "Reconciliation"),
                        ],
                        max_length=20,
                    ),
                ),
                ("status", models.CharField(blank=True, default="", max_length=30)),
                ("amount", models.PositiveIntegerField(default=0)),
                ("currency", models.CharField(blank=True, default="", max_length=3)),
                ("gateway_payment_id", models.CharField(blank=True, db_index=True, max_length=255, null=True)),
                ("gateway_order_id", models.CharField(blank=True, db_index=True, max_length=255, null=True)),
                (
                    "gateway_subscription_id",
                    models.CharField(blank=True, db_index=True, max_length=255, null=True),
                ),
                (
                    "gateway_event_id",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        help_text="Vendor event id, used to spot redelivered events",
                        max_length=255,
                        null=True,
                    ),
                ),
                ("failure_reason", models.TextField(blank=True, default="")),
                ("payload", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True)),
                (
                    "invoice",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="transactions",
                        to="billing.invoice",
                    ),
                ),
                (
                    "subscriber",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="billing_transactions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "subscription",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="transactions",
                        to="billing.subscription",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
    ]
