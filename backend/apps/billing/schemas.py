"""
Billing schemas.

Gateway event payloads are validated with plain pydantic models before the
processor touches the database. API request/response types use ninja Schema.
"""

from datetime import UTC, datetime

from ninja import Schema
from pydantic import BaseModel, Field

from apps.billing.models import SubscriptionKind

# --- Gateway event payloads ---


class PaymentEntity(BaseModel):
    """Payment part of a translated gateway event."""

    id: str
    status: str = ""
    amount: int = 0
    currency: str = ""
    order_id: str | None = None
    subscription_id: str | None = None
    created_at: int | None = None
    method: str = ""
    error_description: str = ""

    model_config = {"extra": "ignore"}

    @property
    def paid_at(self) -> datetime | None:
        if self.created_at is None:
            return None
        return datetime.fromtimestamp(self.created_at, tz=UTC)


class SubscriptionEntity(BaseModel):
    """Mandate part of a translated gateway event."""

    id: str
    status: str = ""

    model_config = {"extra": "ignore"}


class GatewayEventPayload(BaseModel):
    event_id: str | None = None
    payment: PaymentEntity | None = None
    subscription: SubscriptionEntity | None = None

    model_config = {"extra": "ignore"}

    @property
    def gateway_subscription_id(self) -> str | None:
        if self.subscription is not None:
            return self.subscription.id
        if self.payment is not None:
            return self.payment.subscription_id
        return None


# --- API ---


class CreateOrderRequest(Schema):
    """Start a Pro purchase."""

    kind: SubscriptionKind = SubscriptionKind.ONE_TIME


class CreateOrderResponse(Schema):
    subscription_id: int
    invoice_id: int
    kind: str
    amount: int
    currency: str
    gateway_order_id: str | None = None
    gateway_subscription_id: str | None = None
    client_secret: str = ""
    period_start: datetime
    period_end: datetime


class VerifyPaymentRequest(Schema):
    """Client-side confirmation after the gateway checkout completes."""

    subscription_id: int
    payment_id: str
    order_id: str
    signature: str  # the client_secret issued with the order


class VerifyPaymentResponse(Schema):
    success: bool
    applied: bool
    invoice_id: int
    invoice_number: str | None


class SubscriptionResponse(Schema):
    id: int
    kind: str
    status: str
    current_period_start: datetime
    current_period_end: datetime
    next_billing_date: datetime | None
    auto_renew: bool
    is_paused: bool
    pause_start_date: datetime | None
    resume_date: datetime | None
    cancelled_at: datetime | None


class EntitlementResponse(Schema):
    """Whether the caller currently has paid access."""

    has_access: bool
    access_ends_at: datetime | None
    subscription: SubscriptionResponse | None = None


class PauseRequest(Schema):
    days: int = Field(..., ge=1)
    reason: str = ""


class CancelRequest(Schema):
    reason: str = ""
    at_cycle_end: bool = True


class InvoiceResponse(Schema):
    id: int
    invoice_number: str | None
    amount: int
    tax_amount: int
    total_amount: int
    currency: str
    payment_status: str
    billing_period_start: datetime
    billing_period_end: datetime
    paid_at: datetime | None
    document_url: str


class InvoiceListResponse(Schema):
    invoices: list[InvoiceResponse]
