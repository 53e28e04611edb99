"""
Exceptions for billing app.

Raised by the services and mapped to HTTP status codes at the API layer.
"""


class BillingError(Exception):
    """Base exception for billing errors."""

    pass


class SubscriptionNotFoundError(BillingError):
    """Subscription does not exist or does not belong to the subscriber."""

    pass


class InvoiceNotFoundError(BillingError):
    """No invoice matches the payment being confirmed."""

    pass


class SubscriptionConflictError(BillingError):
    """Subscriber already has a subscription in flight, or the requested transition is not allowed."""

    pass


class InvalidSignatureError(BillingError):
    """Payment signature did not match the expected HMAC."""

    pass


class GatewayUnavailableError(BillingError):
    """Payment gateway call failed. Safe to retry; local state is untouched."""

    def __init__(self, message: str, operation: str = ""):
        super().__init__(message)
        self.operation = operation


class UnreconcilableError(BillingError):
    """Reconciliation found a divergence it cannot repair automatically."""

    def __init__(self, message: str, invoice_id: int | None = None, subscription_id: int | None = None):
        super().__init__(message)
        self.invoice_id = invoice_id
        self.subscription_id = subscription_id


class InvalidBillingRequestError(BillingError):
    """Request is well-formed but outside what billing allows (e.g. pause too long)."""

    pass
