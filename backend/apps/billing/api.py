"""
Billing API endpoints.

Thin layer over apps.billing.services and apps.billing.lifecycle: Pro
checkout, client-side payment verification, entitlement, pause/resume/cancel
and invoice history. All endpoints act on the authenticated user.
"""

from django.http import HttpRequest
from ninja import Router
from ninja.errors import HttpError
from ninja.security import django_auth

from apps.billing.exceptions import (
    BillingError,
    GatewayUnavailableError,
    InvalidBillingRequestError,
    InvalidSignatureError,
    InvoiceNotFoundError,
    SubscriptionConflictError,
    SubscriptionNotFoundError,
)
from apps.billing.lifecycle import cancel_subscription, pause_subscription, resume_subscription
from apps.billing.models import Invoice, Subscription
from apps.billing.schemas import (
    CancelRequest,
    CreateOrderRequest,
    CreateOrderResponse,
    EntitlementResponse,
    InvoiceListResponse,
    InvoiceResponse,
    PauseRequest,
    SubscriptionResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)
from apps.billing.services import (
    create_subscription_order,
    get_current_subscription,
    get_entitlement,
    list_invoices,
    verify_payment,
)
from apps.core.logging import get_logger
from apps.core.schemas import ErrorResponse

logger = get_logger(__name__)

router = Router(tags=["billing"], auth=django_auth)

ERROR_STATUS = {
    SubscriptionNotFoundError: 404,
    InvoiceNotFoundError: 404,
    SubscriptionConflictError: 409,
    InvalidSignatureError: 400,
    InvalidBillingRequestError: 400,
    GatewayUnavailableError: 503,
}


def _http_error(error: BillingError) -> HttpError:
    status = ERROR_STATUS.get(type(error), 500)
    if status == 503:
        return HttpError(503, "Payment gateway unavailable, please retry")
    return HttpError(status, str(error))


def _subscription_response(subscription: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=subscription.pk,
        kind=subscription.kind,
        status=subscription.status,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        next_billing_date=subscription.next_billing_date,
        auto_renew=subscription.auto_renew,
        is_paused=subscription.is_paused,
        pause_start_date=subscription.pause_start_date,
        resume_date=subscription.resume_date,
        cancelled_at=subscription.cancelled_at,
    )


def _invoice_response(invoice: Invoice) -> InvoiceResponse:
    return InvoiceResponse(
        id=invoice.pk,
        invoice_number=invoice.invoice_number,
        amount=invoice.amount,
        tax_amount=invoice.tax_amount,
        total_amount=invoice.total_amount,
        currency=invoice.currency,
        payment_status=invoice.payment_status,
        billing_period_start=invoice.billing_period_start,
        billing_period_end=invoice.billing_period_end,
        paid_at=invoice.paid_at,
        document_url=invoice.document_url,
    )


@router.post(
    "/orders",
    response={
        200: CreateOrderResponse,
        401: ErrorResponse,
        409: ErrorResponse,
        503: ErrorResponse,
    },
    operation_id="createProOrder",
    summary="Start a Pro purchase",
)
def create_order(request: HttpRequest, payload: CreateOrderRequest) -> CreateOrderResponse:
    """
    Create a pending Pro subscription and its gateway order or mandate.

    The client completes payment with client_secret, then calls /verify.
    """
    try:
        result = create_subscription_order(request.user, payload.kind)
    except BillingError as e:
        raise _http_error(e) from e

    return CreateOrderResponse(
        subscription_id=result.subscription.pk,
        invoice_id=result.invoice.pk,
        kind=result.subscription.kind,
        amount=result.invoice.total_amount,
        currency=result.invoice.currency,
        gateway_order_id=result.gateway_order_id,
        gateway_subscription_id=result.gateway_subscription_id,
        client_secret=result.client_secret,
        period_start=result.invoice.billing_period_start,
        period_end=result.invoice.billing_period_end,
    )


@router.post(
    "/verify",
    response={
        200: VerifyPaymentResponse,
        400: ErrorResponse,
        401: ErrorResponse,
        404: ErrorResponse,
        503: ErrorResponse,
    },
    operation_id="verifyProPayment",
    summary="Confirm a completed payment",
)
def verify(request: HttpRequest, payload: VerifyPaymentRequest) -> VerifyPaymentResponse:
    try:
        result = verify_payment(
            subscription_id=payload.subscription_id,
            payment_id=payload.payment_id,
            order_id=payload.order_id,
            signature=payload.signature,
            subscriber=request.user,
        )
    except BillingError as e:
        raise _http_error(e) from e

    return VerifyPaymentResponse(
        success=result.invoice.is_paid,
        applied=result.applied,
        invoice_id=result.invoice.pk,
        invoice_number=result.invoice.invoice_number,
    )


@router.get(
    "/subscription",
    response={200: SubscriptionResponse, 401: ErrorResponse, 404: ErrorResponse},
    operation_id="getProSubscription",
    summary="Get current subscription",
)
def get_subscription(request: HttpRequest) -> SubscriptionResponse:
    subscription = get_current_subscription(request.user)
    if subscription is None:
        raise HttpError(404, "No subscription")
    return _subscription_response(subscription)


@router.get(
    "/entitlement",
    response={200: EntitlementResponse, 401: ErrorResponse},
    operation_id="getProEntitlement",
    summary="Check Pro access",
)
def get_entitlement_endpoint(request: HttpRequest) -> EntitlementResponse:
    entitlement = get_entitlement(request.user)
    return EntitlementResponse(
        has_access=entitlement.has_access,
        access_ends_at=entitlement.access_ends_at,
        subscription=(
            _subscription_response(entitlement.subscription)
            if entitlement.subscription
            else None
        ),
    )


@router.post(
    "/subscription/pause",
    response={
        200: SubscriptionResponse,
        400: ErrorResponse,
        401: ErrorResponse,
        404: ErrorResponse,
        409: ErrorResponse,
        503: ErrorResponse,
    },
    operation_id="pauseProSubscription",
    summary="Pause subscription",
)
def pause(request: HttpRequest, payload: PauseRequest) -> SubscriptionResponse:
    try:
        subscription = pause_subscription(request.user, payload.days, payload.reason)
    except BillingError as e:
        raise _http_error(e) from e
    return _subscription_response(subscription)


@router.post(
    "/subscription/resume",
    response={
        200: SubscriptionResponse,
        401: ErrorResponse,
        404: ErrorResponse,
        409: ErrorResponse,
        503: ErrorResponse,
    },
    operation_id="resumeProSubscription",
    summary="Resume subscription",
)
def resume(request: HttpRequest) -> SubscriptionResponse:
    try:
        subscription = resume_subscription(request.user)
    except BillingError as e:
        raise _http_error(e) from e
    return _subscription_response(subscription)


@router.post(
    "/subscription/cancel",
    response={
        200: SubscriptionResponse,
        401: ErrorResponse,
        404: ErrorResponse,
        409: ErrorResponse,
        503: ErrorResponse,
    },
    operation_id="cancelProSubscription",
    summary="Cancel subscription",
)
def cancel(request: HttpRequest, payload: CancelRequest) -> SubscriptionResponse:
    try:
        subscription = cancel_subscription(
            request.user, reason=payload.reason, at_cycle_end=payload.at_cycle_end
        )
    except BillingError as e:
        raise _http_error(e) from e
    return _subscription_response(subscription)


@router.get(
    "/invoices",
    response={200: InvoiceListResponse, 401: ErrorResponse},
    operation_id="listProInvoices",
    summary="List invoices",
)
def get_invoices(request: HttpRequest) -> InvoiceListResponse:
    return InvoiceListResponse(
        invoices=[_invoice_response(invoice) for invoice in list_invoices(request.user)]
    )
