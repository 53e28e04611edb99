"""
Constants for billing app.

Gateway-neutral event taxonomy. Vendor payloads are translated into these
names in apps.billing.gateway before they reach the processor.
"""

from enum import StrEnum


class GatewayEventType(StrEnum):
    """Abstract gateway events understood by the webhook processor."""

    SUBSCRIPTION_AUTHENTICATED = "subscription.authenticated"
    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    SUBSCRIPTION_CHARGED = "subscription.charged"
    SUBSCRIPTION_PAUSED = "subscription.paused"
    SUBSCRIPTION_RESUMED = "subscription.resumed"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_HALTED = "subscription.halted"

    PAYMENT_CAPTURED = "payment.captured"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_AUTHORIZED = "payment.authorized"


class LedgerEventType(StrEnum):
    """Ledger event types written by paths other than the webhook."""

    PAYMENT_VERIFIED = "payment.verified"
    PAYMENT_RECONCILED = "payment.reconciled"


class ReconciliationStrategy(StrEnum):
    """How a missed payment was found. Logged for webhook reliability postmortems."""

    INVOICE_PAYMENT_ID = "invoice_payment_id"
    MANDATE_PAYMENTS = "mandate_payments"
    LEDGER = "ledger"
    ORDER_PAYMENTS = "order_payments"


class PaymentState(StrEnum):
    """Normalized gateway payment states."""

    CREATED = "created"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"


class LifecyclePhase(StrEnum):
    """Daily lifecycle phases, in the order they run."""

    EXPIRE = "expire"
    RECONCILE = "reconcile"
    RESUME = "resume"


SUBSCRIPTION_EVENTS = frozenset(
    {
        GatewayEventType.SUBSCRIPTION_AUTHENTICATED,
        GatewayEventType.SUBSCRIPTION_ACTIVATED,
        GatewayEventType.SUBSCRIPTION_CHARGED,
        GatewayEventType.SUBSCRIPTION_PAUSED,
        GatewayEventType.SUBSCRIPTION_RESUMED,
        GatewayEventType.SUBSCRIPTION_CANCELLED,
        GatewayEventType.SUBSCRIPTION_HALTED,
    }
)

PAYMENT_EVENTS = frozenset(
    {
        GatewayEventType.PAYMENT_CAPTURED,
        GatewayEventType.PAYMENT_FAILED,
        GatewayEventType.PAYMENT_AUTHORIZED,
    }
)

# Ledger rows with these event types carry a captured payment.
CAPTURE_LEDGER_EVENTS = (
    GatewayEventType.PAYMENT_CAPTURED,
    GatewayEventType.SUBSCRIPTION_CHARGED,
    GatewayEventType.SUBSCRIPTION_ACTIVATED,
    LedgerEventType.PAYMENT_VERIFIED,
)


class LedgerFailureStatus(StrEnum):
    """Ledger status of a gateway event that was received but not applied."""

    REJECTED = "rejected"
    PROCESSING_FAILED = "processing_failed"
