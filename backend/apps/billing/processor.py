"""
Gateway event processor.

Applies translated gateway events (see apps.billing.constants.GatewayEventType)
to local state. Delivery is at-least-once and unordered, and may race the
client verification for the same payment, so every handler is written as a
conditional update that is a no-op the second time round.

Every event is written to the ledger, in the same transaction as its state
changes, or as a failure row when it could not be applied.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from django.db import transaction
from django.db.models import F, Q
from django.utils import timezone
from pydantic import ValidationError

from apps.billing.constants import (
    PAYMENT_EVENTS,
    GatewayEventType,
    LedgerFailureStatus,
    PaymentState,
)
from apps.billing.models import (
    Invoice,
    InvoiceStatus,
    MandateStatus,
    PaymentTransaction,
    Subscription,
    SubscriptionStatus,
)
from apps.billing.schemas import GatewayEventPayload, PaymentEntity
from apps.billing.services import apply_captured_payment, period_length, record_transaction
from apps.core.logging import get_logger
from config.settings.base import settings

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProcessingResult:
    event_type: str
    handled: bool
    applied: bool = False
    subscription_id: int | None = None
    invoice_id: int | None = None
    detail: str = ""


def process_gateway_event(event_type: str, payload: dict[str, Any]) -> ProcessingResult:
    """
    Apply one gateway event.

    Unknown event types are acknowledged without touching anything so new
    vendor events never cause retries.

    State changes and the ledger row commit together. When validation or
    processing fails, a failure row is still written so the event is not
    lost, and the error propagates.

    Raises:
        pydantic.ValidationError: Payload does not match the event schema.
    """
    try:
        event = GatewayEventType(event_type)
    except ValueError:
        logger.info("gateway_event_ignored", event_type=event_type)
        return ProcessingResult(event_type=event_type, handled=False, detail="unknown_event_type")

    try:
        data = GatewayEventPayload.model_validate(payload)
    except ValidationError as e:
        _record_failure(event, payload, LedgerFailureStatus.REJECTED, str(e))
        logger.warning("gateway_event_rejected", event_type=event_type, errors=e.error_count())
        raise

    redelivered = bool(
        data.event_id
        and PaymentTransaction.objects.filter(gateway_event_id=data.event_id)
        .exclude(status__in=list(LedgerFailureStatus))
        .exists()
    )

    try:
        with transaction.atomic():
            if event in PAYMENT_EVENTS:
                result = _process_payment_event(event, data, payload, redelivered)
            else:
                result = _process_subscription_event(event, data, payload, redelivered)
    except Exception as e:
        _record_failure(event, payload, LedgerFailureStatus.PROCESSING_FAILED, repr(e))
        raise

    logger.info(
        "gateway_event_processed",
        event_type=event_type,
        applied=result.applied,
        subscription_id=result.subscription_id,
        invoice_id=result.invoice_id,
        detail=result.detail,
        redelivered=redelivered,
    )
    return result


def _record_failure(
    event: GatewayEventType, raw: dict[str, Any], status: LedgerFailureStatus, reason: str
) -> None:
    event_id = raw.get("event_id") if isinstance(raw, dict) else None
    record_transaction(
        event_type=event,
        source=PaymentTransaction.Source.WEBHOOK,
        status=status,
        failure_reason=reason,
        payload=raw if isinstance(raw, dict) else {"raw": repr(raw)},
        gateway_event_id=event_id if isinstance(event_id, str) else None,
    )


def _record(
    event: GatewayEventType,
    data: GatewayEventPayload,
    raw: dict[str, Any],
    *,
    subscription: Subscription | None = None,
    invoice: Invoice | None = None,
) -> None:
    payment = data.payment
    record_transaction(
        event_type=event,
        source=PaymentTransaction.Source.WEBHOOK,
        invoice=invoice,
        subscription=subscription,
        status=payment.status if payment else (data.subscription.status if data.subscription else ""),
        amount=payment.amount if payment else 0,
        currency=payment.currency if payment else "",
        gateway_payment_id=payment.id if payment else None,
        gateway_order_id=payment.order_id if payment else None,
        gateway_subscription_id=data.gateway_subscription_id,
        failure_reason=payment.error_description if payment else "",
        payload=raw,
        gateway_event_id=data.event_id,
    )


def _find_subscription(gateway_subscription_id: str | None) -> Subscription | None:
    if not gateway_subscription_id:
        return None
    return Subscription.objects.filter(gateway_subscription_id=gateway_subscription_id).first()


def _paid_at(payment: PaymentEntity) -> datetime:
    return payment.paid_at or timezone.now()


def invoice_for_charge(
    subscription: Subscription, payment: PaymentEntity, source: str
) -> tuple[Invoice, tuple[datetime, datetime] | None]:
    """
    Find or create the invoice a captured charge pays for.

    The first payment pays the subscription's first period. Later payments
    pay the period following the current one. Both are keyed on
    (subscription, billing_period_start) so concurrent deliveries converge
    on one row.

    Returns the invoice and the explicit period to apply, if any.
    """
    has_paid = subscription.invoices.filter(payment_status=InvoiceStatus.PAID).exists()
    if has_paid:
        start = subscription.current_period_end
        period: tuple[datetime, datetime] | None = (start, start + period_length())
    else:
        start = subscription.start_date
        period = None

    invoice, created = Invoice.objects.get_or_create(
        subscription=subscription,
        billing_period_start=start,
        defaults={
            "subscriber_id": subscription.subscriber_id,
            "amount": payment.amount or subscription.amount,
            "tax_amount": 0,
            "total_amount": payment.amount or subscription.amount,
            "currency": payment.currency or subscription.currency,
            "billing_period_end": start + period_length(),
            "gateway_order_id": payment.order_id,
            "source": source,
        },
    )
    if created:
        logger.info(
            "invoice_synthesized",
            invoice_id=invoice.pk,
            subscription_id=subscription.pk,
            gateway_payment_id=payment.id,
            source=source,
        )
    return invoice, period


# --- Mandate/subscription events ---


def _mirror_mandate(subscription: Subscription, mandate_status: str, only_from: Q | None = None) -> None:
    # A cancelled mandate never comes back; late events must not revive it.
    condition = only_from if only_from is not None else ~Q(mandate_status=MandateStatus.CANCELLED)
    Subscription.objects.filter(condition, pk=subscription.pk).update(
        mandate_status=mandate_status, updated_at=timezone.now()
    )


def _apply_mandate_charge(
    subscription: Subscription, payment: PaymentEntity
) -> tuple[bool, Invoice | None]:
    if payment.status and payment.status != PaymentState.CAPTURED:
        return False, None

    invoice = Invoice.objects.filter(gateway_payment_id=payment.id).first()
    if invoice is not None and invoice.is_paid:
        return False, invoice

    period = None
    if invoice is None:
        invoice, period = invoice_for_charge(subscription, payment, Invoice.Source.WEBHOOK)
    if invoice.is_paid:
        # The period this charge would pay for is already covered.
        return False, invoice

    applied = apply_captured_payment(
        invoice,
        payment_id=payment.id,
        paid_at=_paid_at(payment),
        source=PaymentTransaction.Source.WEBHOOK,
        period=period,
    )
    if applied:
        Subscription.objects.filter(pk=subscription.pk).update(
            last_auto_charge_attempt=timezone.now()
        )
    return applied, invoice


def _handle_halted(subscription: Subscription, redelivered: bool) -> None:
    now = timezone.now()
    with transaction.atomic():
        if not redelivered:
            Subscription.objects.filter(pk=subscription.pk).update(
                auto_charge_failures=F("auto_charge_failures") + 1,
                last_auto_charge_attempt=now,
            )
        Subscription.objects.filter(pk=subscription.pk).exclude(
            mandate_status=MandateStatus.CANCELLED
        ).update(mandate_status=MandateStatus.HALTED, updated_at=now)
        Subscription.objects.filter(pk=subscription.pk, status=SubscriptionStatus.ACTIVE).update(
            status=SubscriptionStatus.PAYMENT_FAILED, next_billing_date=None
        )

    subscription.refresh_from_db()
    if subscription.auto_charge_failures >= settings.BILLING_AUTO_CHARGE_FAILURE_ALERT_THRESHOLD:
        logger.warning(
            "auto_charge_failure_threshold_reached",
            subscription_id=subscription.pk,
            subscriber_id=subscription.subscriber_id,
            failures=subscription.auto_charge_failures,
            threshold=settings.BILLING_AUTO_CHARGE_FAILURE_ALERT_THRESHOLD,
        )


def _handle_mandate_cancelled(subscription: Subscription) -> None:
    now = timezone.now()
    with transaction.atomic():
        Subscription.objects.filter(pk=subscription.pk).update(
            mandate_status=MandateStatus.CANCELLED,
            auto_renew=False,
            next_billing_date=None,
            updated_at=now,
        )
        Subscription.objects.filter(
            pk=subscription.pk,
            status__in=(SubscriptionStatus.ACTIVE, SubscriptionStatus.PAUSED),
        ).update(status=SubscriptionStatus.CANCELLED, cancelled_at=now)
        Subscription.objects.filter(
            pk=subscription.pk, status=SubscriptionStatus.PAYMENT_PENDING
        ).exclude(invoices__payment_status=InvoiceStatus.PAID).update(
            status=SubscriptionStatus.INACTIVE, inactive_reason="mandate_cancelled"
        )


def _process_subscription_event(
    event: GatewayEventType,
    data: GatewayEventPayload,
    raw: dict[str, Any],
    redelivered: bool,
) -> ProcessingResult:
    subscription = _find_subscription(data.gateway_subscription_id)
    _record(event, data, raw, subscription=subscription)

    if subscription is None:
        logger.warning(
            "gateway_event_subscription_not_found",
            event_type=event,
            gateway_subscription_id=data.gateway_subscription_id,
        )
        return ProcessingResult(event_type=event, handled=True, detail="subscription_not_found")

    applied = False
    invoice = None
    match event:
        case GatewayEventType.SUBSCRIPTION_AUTHENTICATED:
            _mirror_mandate(
                subscription,
                MandateStatus.AUTHENTICATED,
                only_from=Q(mandate_status__isnull=True) | Q(mandate_status=MandateStatus.CREATED),
            )
        case GatewayEventType.SUBSCRIPTION_ACTIVATED | GatewayEventType.SUBSCRIPTION_CHARGED:
            _mirror_mandate(subscription, MandateStatus.ACTIVE)
            if data.payment is not None:
                applied, invoice = _apply_mandate_charge(subscription, data.payment)
        case GatewayEventType.SUBSCRIPTION_PAUSED:
            _mirror_mandate(subscription, MandateStatus.PAUSED)
        case GatewayEventType.SUBSCRIPTION_RESUMED:
            _mirror_mandate(subscription, MandateStatus.ACTIVE)
        case GatewayEventType.SUBSCRIPTION_CANCELLED:
            _handle_mandate_cancelled(subscription)
        case GatewayEventType.SUBSCRIPTION_HALTED:
            _handle_halted(subscription, redelivered)

    return ProcessingResult(
        event_type=event,
        handled=True,
        applied=applied,
        subscription_id=subscription.pk,
        invoice_id=invoice.pk if invoice else None,
    )


# --- Payment events ---


def resolve_invoice(payment: PaymentEntity, gateway_subscription_id: str | None) -> Invoice | None:
    """Locate the invoice a payment belongs to: payment id, then order id, then latest open one."""
    # A paid invoice wins over one that only recorded an authorization.
    invoice = (
        Invoice.objects.filter(gateway_payment_id=payment.id)
        .order_by(F("paid_at").desc(nulls_last=True))
        .first()
    )
    if invoice is None and payment.order_id:
        invoice = Invoice.objects.filter(gateway_order_id=payment.order_id).first()
    if invoice is None and gateway_subscription_id:
        invoice = (
            Invoice.objects.filter(
                subscription__gateway_subscription_id=gateway_subscription_id,
                payment_status__in=(InvoiceStatus.PENDING, InvoiceStatus.FAILED),
            )
            .order_by("-created_at")
            .first()
        )
    return invoice


def _handle_captured(
    invoice: Invoice | None, subscription: Subscription | None, payment: PaymentEntity
) -> tuple[bool, Invoice | None, str]:
    period = None
    if invoice is None:
        if subscription is None:
            return False, None, "unresolved"
        invoice, period = invoice_for_charge(subscription, payment, Invoice.Source.WEBHOOK)

    if invoice.is_paid:
        return False, invoice, "already_paid"

    applied = apply_captured_payment(
        invoice,
        payment_id=payment.id,
        paid_at=_paid_at(payment),
        source=PaymentTransaction.Source.WEBHOOK,
        period=period,
    )
    return applied, invoice, ""


def _handle_failed(
    invoice: Invoice | None, subscription: Subscription | None, redelivered: bool
) -> str:
    if invoice is not None:
        if invoice.is_paid:
            logger.info(
                "payment_failure_ignored_for_paid_invoice",
                invoice_id=invoice.pk,
            )
            return "already_paid"
        Invoice.objects.filter(pk=invoice.pk).exclude(payment_status=InvoiceStatus.PAID).update(
            payment_status=InvoiceStatus.FAILED, updated_at=timezone.now()
        )

    if subscription is None:
        return "unresolved" if invoice is None else ""

    now = timezone.now()
    with transaction.atomic():
        if not redelivered:
            Subscription.objects.filter(pk=subscription.pk).exclude(
                status=SubscriptionStatus.ACTIVE
            ).update(
                auto_charge_failures=F("auto_charge_failures") + 1,
                last_auto_charge_attempt=now,
            )
        Subscription.objects.filter(
            pk=subscription.pk, status=SubscriptionStatus.PAYMENT_PENDING
        ).update(status=SubscriptionStatus.PAYMENT_FAILED, updated_at=now)
    return ""


def _process_payment_event(
    event: GatewayEventType,
    data: GatewayEventPayload,
    raw: dict[str, Any],
    redelivered: bool,
) -> ProcessingResult:
    payment = data.payment
    if payment is None:
        _record(event, data, raw)
        logger.warning("gateway_event_missing_payment", event_type=event)
        return ProcessingResult(event_type=event, handled=True, detail="missing_payment")

    gateway_subscription_id = data.gateway_subscription_id
    invoice = resolve_invoice(payment, gateway_subscription_id)
    subscription = invoice.subscription if invoice else _find_subscription(gateway_subscription_id)
    _record(event, data, raw, subscription=subscription, invoice=invoice)

    applied = False
    detail = ""
    match event:
        case GatewayEventType.PAYMENT_CAPTURED:
            applied, invoice, detail = _handle_captured(invoice, subscription, payment)
        case GatewayEventType.PAYMENT_FAILED:
            detail = _handle_failed(invoice, subscription, redelivered)
        case GatewayEventType.PAYMENT_AUTHORIZED:
            if invoice is not None:
                Invoice.objects.filter(pk=invoice.pk, gateway_payment_id__isnull=True).update(
                    gateway_payment_id=payment.id, updated_at=timezone.now()
                )

    if detail == "unresolved":
        logger.warning(
            "gateway_payment_unresolved",
            event_type=event,
            gateway_payment_id=payment.id,
            gateway_order_id=payment.order_id,
        )

    return ProcessingResult(
        event_type=event,
        handled=True,
        applied=applied,
        subscription_id=subscription.pk if subscription else None,
        invoice_id=invoice.pk if invoice else None,
        detail=detail,
    )
