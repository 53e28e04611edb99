"""
Billing models - subscriptions, invoices and the payment ledger.

The database is the only coordination point between the verification
callback, the webhook processor and the scheduled jobs. The constraints
declared here are what keep them from stepping on each other.
"""

from datetime import datetime

from django.conf import settings
from django.db import models
from django.db.models import Q

from apps.core.models import TimestampedModel


class SubscriptionStatus(models.TextChoices):
    PAYMENT_PENDING = "payment_pending", "Payment Pending"
    ACTIVE = "active", "Active"
    PAUSED = "paused", "Paused"
    CANCELLED = "cancelled", "Cancelled"
    EXPIRED = "expired", "Expired"
    PAYMENT_FAILED = "payment_failed", "Payment Failed"
    INACTIVE = "inactive", "Inactive"


class SubscriptionKind(models.TextChoices):
    RECURRING = "recurring", "Recurring (mandate)"
    ONE_TIME = "one_time", "One-time order"


class MandateStatus(models.TextChoices):
    CREATED = "created", "Created"
    AUTHENTICATED = "authenticated", "Authenticated"
    ACTIVE = "active", "Active"
    PAUSED = "paused", "Paused"
    HALTED = "halted", "Halted"
    CANCELLED = "cancelled", "Cancelled"


class InvoiceStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    PAID = "paid", "Paid"
    FAILED = "failed", "Failed"
    CANCELLED = "cancelled", "Cancelled"


# At most one of these per subscriber at any time.
ACTIVE_LIKE_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAYMENT_PENDING,
    SubscriptionStatus.PAUSED,
)

# A captured payment moves these to ACTIVE. Money received outranks an
# abandoned attempt or a lapsed period, so INACTIVE and EXPIRED are included.
ACTIVATABLE_STATUSES = (
    SubscriptionStatus.PAYMENT_PENDING,
    SubscriptionStatus.PAYMENT_FAILED,
    SubscriptionStatus.PAUSED,
    SubscriptionStatus.EXPIRED,
    SubscriptionStatus.INACTIVE,
)

UNPAID_INVOICE_STATUSES = (
    InvoiceStatus.PENDING,
    InvoiceStatus.FAILED,
    InvoiceStatus.CANCELLED,
)


class Subscription(TimestampedModel):
    """
    One billing relationship for a subscriber.

    Created in PAYMENT_PENDING by the issuer and only ever moved forward by
    the verifier, the webhook processor, reconciliation or the lifecycle jobs.
    """

    Status = SubscriptionStatus
    Kind = SubscriptionKind
    MandateStatus = MandateStatus

    subscriber = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="billing_subscriptions",
    )
    kind = models.CharField(
        max_length=20,
        choices=SubscriptionKind.choices,
        default=SubscriptionKind.ONE_TIME,
    )
    status = models.CharField(
        max_length=30,
        choices=SubscriptionStatus.choices,
        default=SubscriptionStatus.PAYMENT_PENDING,
        db_index=True,
    )
    start_date = models.DateTimeField()
    current_period_start = models.DateTimeField()
    current_period_end = models.DateTimeField(db_index=True)
    next_billing_date = models.DateTimeField(null=True, blank=True)
    amount = models.PositiveIntegerField(help_text="Amount per period in minor units (paise)")
    currency = models.CharField(max_length=3, default="inr")
    auto_renew = models.BooleanField(default=True)

    # Gateway references
    gateway_customer_id = models.CharField(max_length=255, blank=True, default="")
    gateway_subscription_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Gateway mandate/subscription ID, only for recurring billing",
    )
    mandate_status = models.CharField(
        max_length=20,
        choices=MandateStatus.choices,
        null=True,
        blank=True,
    )

    # Pause/resume
    is_paused = models.BooleanField(default=False)
    paused_at = models.DateTimeField(null=True, blank=True)
    pause_start_date = models.DateTimeField(null=True, blank=True)
    resume_date = models.DateTimeField(null=True, blank=True, db_index=True)
    pause_duration_days = models.PositiveIntegerField(null=True, blank=True)
    pause_reason = models.TextField(blank=True, default="")
    pause_count = models.PositiveIntegerField(default=0)
    total_paused_days = models.PositiveIntegerField(default=0)

    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancel_reason = models.TextField(blank=True, default="")
    inactive_reason = models.CharField(max_length=100, blank=True, default="")

    auto_charge_failures = models.PositiveIntegerField(default=0)
    last_auto_charge_attempt = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["subscriber"],
                condition=Q(status__in=list(ACTIVE_LIKE_STATUSES)),
                name="billing_one_inflight_subscription_per_subscriber",
            ),
        ]
        indexes = [
            models.Index(fields=["subscriber", "status"], name="billing_sub_subscriber_status"),
        ]

    def __str__(self) -> str:
        return f"Subscription {self.pk} ({self.subscriber_id}) - {self.status}"

    @property
    def is_recurring(self) -> bool:
        return self.kind == SubscriptionKind.RECURRING and bool(self.gateway_subscription_id)

    def grants_access(self, at: datetime) -> bool:
        """
        Whether this subscription gives paid access at the given instant.

        Derived from status and period bounds on every call; never stored.
        """
        if self.status in (
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.CANCELLED,
            SubscriptionStatus.PAYMENT_FAILED,
        ):
            return at < self.current_period_end
        if self.status == SubscriptionStatus.PAUSED:
            if at < self.current_period_end:
                return True
            return self.resume_date is not None and at >= self.resume_date
        return False


class Invoice(TimestampedModel):
    """
    One billing document per payment attempt.

    The invoice number is assigned only once the payment succeeds.
    """

    Status = InvoiceStatus

    class Source(models.TextChoices):
        ISSUED = "issued", "Issued at checkout"
        WEBHOOK = "webhook", "Created from webhook"
        RECONCILIATION = "reconciliation", "Created by reconciliation"

    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.CASCADE,
        related_name="invoices",
    )
    subscriber = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="billing_invoices",
    )
    invoice_number = models.CharField(max_length=50, null=True, blank=True, unique=True)
    amount = models.PositiveIntegerField()
    tax_amount = models.PositiveIntegerField(default=0)
    total_amount = models.PositiveIntegerField()
    currency = models.CharField(max_length=3, default="inr")
    billing_period_start = models.DateTimeField()
    billing_period_end = models.DateTimeField()
    payment_status = models.CharField(
        max_length=20,
        choices=InvoiceStatus.choices,
        default=InvoiceStatus.PENDING,
        db_index=True,
    )
    gateway_order_id = models.CharField(max_length=255, null=True, blank=True, db_index=True)
    gateway_payment_id = models.CharField(max_length=255, null=True, blank=True, db_index=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    document_url = models.URLField(max_length=500, blank=True, default="")
    source = models.CharField(max_length=20, choices=Source.choices, default=Source.ISSUED)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["gateway_payment_id"],
                condition=Q(payment_status=InvoiceStatus.PAID),
                name="billing_paid_invoice_per_gateway_payment",
            ),
            models.UniqueConstraint(
                fields=["subscription", "billing_period_start"],
                name="billing_invoice_per_subscription_period",
            ),
        ]

    def __str__(self) -> str:
        return f"Invoice {self.invoice_number or self.pk} - {self.payment_status}"

    @property
    def is_paid(self) -> bool:
        return self.payment_status == InvoiceStatus.PAID


class PaymentTransaction(models.Model):
    """
    Append-only ledger row for every inbound gateway event.

    Written whether or not the event changed any state. Reconciliation
    reads it back when the link to an invoice was lost.
    """

    class Source(models.TextChoices):
        WEBHOOK = "webhook", "Webhook"
        VERIFICATION = "verification", "Client verification"
        RECONCILIATION = "reconciliation", "Reconciliation"

    invoice = models.ForeignKey(
        Invoice,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="transactions",
    )
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="transactions",
    )
    subscriber = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="billing_transactions",
    )
    event_type = models.CharField(max_length=50, db_index=True)
    source = models.CharField(max_length=20, choices=Source.choices)
    status = models.CharField(max_length=30, blank=True, default="")
    amount = models.PositiveIntegerField(default=0)
    currency = models.CharField(max_length=3, blank=True, default="")
    gateway_payment_id = models.CharField(max_length=255, null=True, blank=True, db_index=True)
    gateway_order_id = models.CharField(max_length=255, null=True, blank=True, db_index=True)
    gateway_subscription_id = models.CharField(
        max_length=255, null=True, blank=True, db_index=True
    )
    gateway_event_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        db_index=True,
        help_text="Vendor event id, used to spot redelivered events",
    )
    failure_reason = models.TextField(blank=True, default="")
    payload = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"{self.event_type} {self.gateway_payment_id or '-'} ({self.source})"

    def save(self, *args, **kwargs) -> None:
        if not self._state.adding:
            raise ValueError("Payment transactions are append-only")
        super().save(*args, **kwargs)


class InvoiceSequence(models.Model):
    """Per-month invoice number counter, incremented in place."""

    prefix = models.CharField(max_length=20, unique=True)
    last_value = models.PositiveIntegerField(default=0)

    def __str__(self) -> str:
        return f"{self.prefix}{self.last_value:05d}"
