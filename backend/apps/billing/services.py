"""
Billing services - issuing orders, confirming payments, entitlement.

Gateway calls go through apps.billing.gateway.get_gateway() for testability.
External calls must NOT be inside database transactions.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import partial
from typing import Any

from django.db import IntegrityError, transaction
from django.db.models import F, Max
from django.utils import timezone

from apps.billing.constants import LedgerEventType, PaymentState
from apps.billing.exceptions import (
    GatewayUnavailableError,
    InvalidSignatureError,
    InvoiceNotFoundError,
    SubscriptionConflictError,
    SubscriptionNotFoundError,
)
from apps.billing.gateway import PaymentGateway, get_gateway
from apps.billing.models import (
    ACTIVATABLE_STATUSES,
    ACTIVE_LIKE_STATUSES,
    Invoice,
    InvoiceSequence,
    InvoiceStatus,
    MandateStatus,
    PaymentTransaction,
    Subscription,
    SubscriptionKind,
    SubscriptionStatus,
)
from apps.billing.side_effects import dispatch_payment_side_effects
from apps.core.logging import get_logger
from config.settings.base import settings

logger = get_logger(__name__)

# Statuses whose subscription may still grant access until period end.
ACCESS_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAUSED,
    SubscriptionStatus.CANCELLED,
    SubscriptionStatus.PAYMENT_FAILED,
)


def period_length() -> timedelta:
    return timedelta(days=settings.BILLING_PERIOD_DAYS)


# --- Entitlement ---


@dataclass(frozen=True)
class Entitlement:
    has_access: bool
    access_ends_at: datetime | None
    subscription: Subscription | None


def get_entitlement(subscriber: Any, at: datetime | None = None) -> Entitlement:
    """
    Derive whether the subscriber has paid access at the given instant.

    Computed from status and period bounds on every call.
    """
    at = at or timezone.now()
    granting = [
        subscription
        for subscription in Subscription.objects.filter(
            subscriber=subscriber, status__in=ACCESS_STATUSES
        )
        if subscription.grants_access(at)
    ]
    if not granting:
        return Entitlement(has_access=False, access_ends_at=None, subscription=None)

    best = max(granting, key=lambda subscription: subscription.current_period_end)
    return Entitlement(has_access=True, access_ends_at=best.current_period_end, subscription=best)


def get_current_subscription(subscriber: Any) -> Subscription | None:
    """The in-flight subscription, or the most recent one when none is in flight."""
    subscriptions = Subscription.objects.filter(subscriber=subscriber)
    return (
        subscriptions.filter(status__in=ACTIVE_LIKE_STATUSES).first() or subscriptions.first()
    )


def list_invoices(subscriber: Any) -> list[Invoice]:
    return list(Invoice.objects.filter(subscriber=subscriber).order_by("-billing_period_start"))


# --- Ledger ---


def record_transaction(
    *,
    event_type: str,
    source: str,
    invoice: Invoice | None = None,
    subscription: Subscription | None = None,
    status: str = "",
    amount: int = 0,
    currency: str = "",
    gateway_payment_id: str | None = None,
    gateway_order_id: str | None = None,
    gateway_subscription_id: str | None = None,
    failure_reason: str = "",
    payload: dict | None = None,
    gateway_event_id: str | None = None,
) -> PaymentTransaction:
    """Append one row to the payment ledger."""
    if subscription is None and invoice is not None:
        subscription = invoice.subscription
    return PaymentTransaction.objects.create(
        invoice=invoice,
        subscription=subscription,
        subscriber_id=subscription.subscriber_id if subscription else None,
        event_type=event_type,
        source=source,
        status=status,
        amount=amount,
        currency=currency,
        gateway_payment_id=gateway_payment_id,
        gateway_order_id=gateway_order_id,
        gateway_subscription_id=gateway_subscription_id
        or (subscription.gateway_subscription_id if subscription else None),
        failure_reason=failure_reason,
        payload=payload or {},
        gateway_event_id=gateway_event_id,
    )


# --- Captured payment transition ---


def next_invoice_number(at: datetime) -> str:
    """
    Allocate the next INV-YYYYMM-NNNNN number.

    Must run inside the transaction that marks the invoice paid. Gaps are
    possible when that transaction rolls back; duplicates are not.
    """
    prefix = f"INV-{at:%Y%m}-"
    sequence, _ = InvoiceSequence.objects.get_or_create(prefix=prefix)
    InvoiceSequence.objects.filter(pk=sequence.pk).update(last_value=F("last_value") + 1)
    sequence.refresh_from_db(fields=["last_value"])
    return f"{prefix}{sequence.last_value:05d}"


def is_payment_consumed(payment_id: str, exclude_invoice_id: int | None = None) -> bool:
    """True when a paid invoice already carries this gateway payment id."""
    paid = Invoice.objects.filter(gateway_payment_id=payment_id, payment_status=InvoiceStatus.PAID)
    if exclude_invoice_id is not None:
        paid = paid.exclude(pk=exclude_invoice_id)
    return paid.exists()


def _activate_subscription(
    subscription: Subscription, period_start: datetime, period_end: datetime, now: datetime
) -> None:
    next_billing = period_end if subscription.is_recurring and subscription.auto_renew else None

    try:
        with transaction.atomic():
            moved = Subscription.objects.filter(
                pk=subscription.pk, status__in=ACTIVATABLE_STATUSES
            ).update(
                status=SubscriptionStatus.ACTIVE,
                current_period_start=period_start,
                current_period_end=period_end,
                next_billing_date=next_billing,
                auto_charge_failures=0,
                is_paused=False,
                paused_at=None,
                pause_start_date=None,
                resume_date=None,
                pause_duration_days=None,
                inactive_reason="",
                updated_at=now,
            )
    except IntegrityError:
        # Another subscription of the same subscriber is already in flight. The
        # invoice stays paid; reconciliation reactivates this one or reports it.
        logger.error(
            "subscription_activation_conflict",
            subscription_id=subscription.pk,
            subscriber_id=subscription.subscriber_id,
        )
        return

    if moved:
        logger.info(
            "subscription_activated",
            subscription_id=subscription.pk,
            previous_status=subscription.status,
            period_end=period_end.isoformat(),
        )
        return

    rolled = Subscription.objects.filter(
        pk=subscription.pk,
        status=SubscriptionStatus.ACTIVE,
        current_period_end__lt=period_end,
    ).update(
        current_period_start=period_start,
        current_period_end=period_end,
        next_billing_date=next_billing,
        auto_charge_failures=0,
        updated_at=now,
    )
    if rolled:
        logger.info(
            "subscription_period_extended",
            subscription_id=subscription.pk,
            period_end=period_end.isoformat(),
        )
    elif subscription.status == SubscriptionStatus.CANCELLED:
        logger.warning(
            "payment_for_closed_subscription",
            subscription_id=subscription.pk,
            status=subscription.status,
        )


def apply_captured_payment(
    invoice: Invoice,
    *,
    payment_id: str,
    paid_at: datetime,
    source: str,
    period: tuple[datetime, datetime] | None = None,
) -> bool:
    """
    Mark an invoice paid and activate its subscription.

    Shared by verification, the webhook processor and reconciliation. Safe to
    call any number of times and concurrently: only the caller whose
    conditional update flips the invoice to PAID performs the transition.

    Args:
        invoice: Invoice the payment belongs to.
        payment_id: Gateway payment id.
        paid_at: When the gateway captured the payment.
        source: Which path applied it (for logs).
        period: Explicit entitlement period, used for renewals. Defaults to
            one period from max(paid_at, invoice.billing_period_start) so
            remaining paid time carries over.

    Returns:
        True if this call applied the payment, False if it was already applied.
    """
    now = timezone.now()
    if period is None:
        period_start = max(paid_at, invoice.billing_period_start)
        period = (period_start, period_start + period_length())
    period_start, period_end = period

    with transaction.atomic():
        if is_payment_consumed(payment_id, exclude_invoice_id=invoice.pk):
            logger.info(
                "payment_already_consumed",
                invoice_id=invoice.pk,
                gateway_payment_id=payment_id,
                source=source,
            )
            return False

        try:
            with transaction.atomic():
                updated = (
                    Invoice.objects.filter(pk=invoice.pk)
                    .exclude(payment_status=InvoiceStatus.PAID)
                    .update(
                        payment_status=InvoiceStatus.PAID,
                        gateway_payment_id=payment_id,
                        paid_at=paid_at,
                        billing_period_start=period_start,
                        billing_period_end=period_end,
                        updated_at=now,
                    )
                )
        except IntegrityError:
            logger.error(
                "payment_apply_conflict",
                invoice_id=invoice.pk,
                gateway_payment_id=payment_id,
                source=source,
            )
            return False

        if not updated:
            return False

        Invoice.objects.filter(pk=invoice.pk).update(invoice_number=next_invoice_number(paid_at))
        subscription = Subscription.objects.get(pk=invoice.subscription_id)
        _activate_subscription(subscription, period_start, period_end, now)
        transaction.on_commit(partial(dispatch_payment_side_effects, invoice.pk))

    invoice.refresh_from_db()
    logger.info(
        "invoice_paid",
        invoice_id=invoice.pk,
        invoice_number=invoice.invoice_number,
        subscription_id=invoice.subscription_id,
        gateway_payment_id=payment_id,
        source=source,
    )
    return True


# --- Issuer ---


@dataclass(frozen=True)
class OrderResult:
    subscription: Subscription
    invoice: Invoice
    gateway_order_id: str | None = None
    gateway_subscription_id: str | None = None
    client_secret: str = ""


def _supersede_failed_attempts(subscriber: Any, now: datetime) -> int:
    """
    Close earlier unpaid attempts so a new one can be issued.

    A PAYMENT_FAILED subscription that once paid still grants access until its
    period ends and is left alone.
    """
    attempts = (
        Subscription.objects.filter(subscriber=subscriber, status=SubscriptionStatus.PAYMENT_FAILED)
        .exclude(invoices__payment_status=InvoiceStatus.PAID)
        .values_list("pk", flat=True)
    )
    attempt_ids = list(attempts)
    if not attempt_ids:
        return 0

    superseded = Subscription.objects.filter(
        pk__in=attempt_ids, status=SubscriptionStatus.PAYMENT_FAILED
    ).update(status=SubscriptionStatus.INACTIVE, inactive_reason="superseded", updated_at=now)
    Invoice.objects.filter(
        subscription_id__in=attempt_ids,
        payment_status__in=(InvoiceStatus.PENDING, InvoiceStatus.FAILED),
    ).update(payment_status=InvoiceStatus.CANCELLED, updated_at=now)
    logger.info("subscription_attempts_superseded", count=superseded, subscription_ids=attempt_ids)
    return superseded


def close_pending_attempt(subscription: Subscription, reason: str, now: datetime) -> bool:
    """Move a PAYMENT_PENDING attempt to INACTIVE and cancel its pending invoices."""
    with transaction.atomic():
        moved = Subscription.objects.filter(
            pk=subscription.pk, status=SubscriptionStatus.PAYMENT_PENDING
        ).update(status=SubscriptionStatus.INACTIVE, inactive_reason=reason, updated_at=now)
        if moved:
            Invoice.objects.filter(
                subscription_id=subscription.pk, payment_status=InvoiceStatus.PENDING
            ).update(payment_status=InvoiceStatus.CANCELLED, updated_at=now)
    return bool(moved)


def release_checkout(gateway: PaymentGateway, subscription: Subscription) -> bool:
    """
    Cancel the gateway side of an unpaid attempt so it can be closed.

    Returns False when the gateway reports the order paid or the mandate
    authenticated; the attempt must then stay in flight.
    """
    if subscription.gateway_subscription_id:
        return gateway.cancel_incomplete_mandate(subscription.gateway_subscription_id)
    order_ids = (
        subscription.invoices.filter(payment_status=InvoiceStatus.PENDING)
        .exclude(gateway_order_id__isnull=True)
        .exclude(gateway_order_id="")
        .values_list("gateway_order_id", flat=True)
    )
    return all([gateway.cancel_order(order_id) for order_id in order_ids])


def _supersede_pending_attempts(gateway: PaymentGateway, subscriber: Any, now: datetime) -> int:
    """
    Close checkouts the subscriber walked away from before starting a new one.

    Attempts with a paid invoice or a charging mandate are kept, as are
    attempts the gateway refuses to release.
    """
    attempts = (
        Subscription.objects.filter(subscriber=subscriber, status=SubscriptionStatus.PAYMENT_PENDING)
        .exclude(invoices__payment_status=InvoiceStatus.PAID)
        .exclude(mandate_status=MandateStatus.ACTIVE)
    )
    superseded = 0
    for attempt in attempts:
        if not release_checkout(gateway, attempt):
            logger.info("pending_attempt_not_released", subscription_id=attempt.pk)
            continue
        if close_pending_attempt(attempt, "superseded", now):
            superseded += 1
            logger.info("pending_attempt_superseded", subscription_id=attempt.pk)
    return superseded


def _existing_customer_id(subscriber: Any) -> str:
    return (
        Subscription.objects.filter(subscriber=subscriber)
        .exclude(gateway_customer_id="")
        .values_list("gateway_customer_id", flat=True)
        .first()
        or ""
    )


def create_subscription_order(subscriber: Any, kind: str = SubscriptionKind.ONE_TIME) -> OrderResult:
    """
    Start a Pro purchase: a PAYMENT_PENDING subscription, its first invoice
    and the matching gateway order or mandate.

    An earlier checkout that was never paid is superseded: its gateway order
    or mandate is cancelled and the attempt closed.

    Raises:
        SubscriptionConflictError: Subscriber already has one in flight.
        GatewayUnavailableError: Gateway call failed; the attempt is closed.
    """
    kind = SubscriptionKind(kind)
    now = timezone.now()
    amount = settings.BILLING_PRO_AMOUNT
    currency = settings.BILLING_CURRENCY
    gateway = get_gateway()

    _supersede_pending_attempts(gateway, subscriber, now)

    with transaction.atomic():
        _supersede_failed_attempts(subscriber, now)

        if Subscription.objects.filter(
            subscriber=subscriber, status__in=ACTIVE_LIKE_STATUSES
        ).exists():
            raise SubscriptionConflictError("Subscriber already has a subscription in progress")

        # Never shrink paid time still left on a cancelled or failed subscription.
        access_end = Subscription.objects.filter(
            subscriber=subscriber,
            status__in=ACCESS_STATUSES,
            current_period_end__gt=now,
        ).aggregate(latest=Max("current_period_end"))["latest"]
        start = max(now, access_end) if access_end else now
        end = start + period_length()

        try:
            with transaction.atomic():
                subscription = Subscription.objects.create(
                    subscriber=subscriber,
                    kind=kind,
                    status=SubscriptionStatus.PAYMENT_PENDING,
                    start_date=start,
                    current_period_start=start,
                    current_period_end=end,
                    amount=amount,
                    currency=currency,
                    auto_renew=kind == SubscriptionKind.RECURRING,
                )
        except IntegrityError as e:
            raise SubscriptionConflictError(
                "Subscriber already has a subscription in progress"
            ) from e

        invoice = Invoice.objects.create(
            subscription=subscription,
            subscriber=subscriber,
            amount=amount,
            tax_amount=0,
            total_amount=amount,
            currency=currency,
            billing_period_start=start,
            billing_period_end=end,
            source=Invoice.Source.ISSUED,
        )

    metadata = {"subscription_id": str(subscription.pk), "invoice_id": str(invoice.pk)}
    try:
        if kind == SubscriptionKind.ONE_TIME:
            order = gateway.create_order(
                amount=amount,
                currency=currency,
                reference=f"PRO_SUB_{subscription.pk}_INV_{invoice.pk}",
                metadata=metadata,
            )
            Invoice.objects.filter(pk=invoice.pk).update(gateway_order_id=order.id)
            result_ids = {"gateway_order_id": order.id}
            client_secret = order.client_secret
        else:
            customer_id = _existing_customer_id(subscriber) or gateway.create_customer(
                email=subscriber.email,
                name=subscriber.get_full_name(),
                subscriber_id=subscriber.pk,
            )
            mandate = gateway.create_mandate_subscription(
                customer_id=customer_id,
                start_at=start if start > now else None,
                metadata=metadata,
            )
            Subscription.objects.filter(pk=subscription.pk).update(
                gateway_customer_id=customer_id,
                gateway_subscription_id=mandate.id,
                mandate_status=MandateStatus.CREATED,
            )
            # The client confirms recurring payments against the mandate id.
            Invoice.objects.filter(pk=invoice.pk).update(gateway_order_id=mandate.id)
            result_ids = {"gateway_order_id": mandate.id, "gateway_subscription_id": mandate.id}
            client_secret = mandate.client_secret
    except GatewayUnavailableError:
        close_pending_attempt(subscription, "gateway_unavailable", timezone.now())
        logger.warning(
            "subscription_order_gateway_unavailable",
            subscription_id=subscription.pk,
            kind=kind,
        )
        raise

    subscription.refresh_from_db()
    invoice.refresh_from_db()
    logger.info(
        "subscription_order_created",
        subscription_id=subscription.pk,
        invoice_id=invoice.pk,
        kind=kind,
        period_start=start.isoformat(),
        **result_ids,
    )
    return OrderResult(
        subscription=subscription,
        invoice=invoice,
        client_secret=client_secret,
        **result_ids,
    )


# --- Verifier ---


@dataclass(frozen=True)
class VerificationResult:
    invoice: Invoice
    applied: bool


def verify_payment(
    *,
    subscription_id: int,
    payment_id: str,
    order_id: str,
    signature: str,
    subscriber: Any | None = None,
) -> VerificationResult:
    """
    Confirm a payment reported by the client after checkout.

    The signature is the client secret the gateway issued for this order,
    compared in constant time against the gateway's own copy. The payment is
    read back from the gateway too, so the invoice records the same payment
    id webhooks carry and the client-reported id is kept only in the ledger.

    Races with the webhook for the same payment; whichever lands first applies
    it and the other becomes a no-op.

    Raises:
        SubscriptionNotFoundError: Unknown subscription (or not the caller's).
        InvoiceNotFoundError: No invoice for this subscription and order.
        InvalidSignatureError: Signature is not a secret issued for this order.
        GatewayUnavailableError: The order could not be looked up.
    """
    subscriptions = Subscription.objects.all()
    if subscriber is not None:
        subscriptions = subscriptions.filter(subscriber=subscriber)
    try:
        subscription = subscriptions.get(pk=subscription_id)
    except Subscription.DoesNotExist as e:
        raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found") from e

    invoice = subscription.invoices.filter(gateway_order_id=order_id).first()
    if invoice is None:
        raise InvoiceNotFoundError(f"No invoice for order {order_id}")

    checkout = get_gateway().get_checkout(order_id)
    if not checkout.issued(signature):
        logger.warning(
            "payment_signature_invalid",
            subscription_id=subscription_id,
            gateway_order_id=order_id,
            gateway_payment_id=payment_id,
        )
        raise InvalidSignatureError("Payment signature verification failed")

    payment = checkout.payment
    record_transaction(
        event_type=LedgerEventType.PAYMENT_VERIFIED,
        source=PaymentTransaction.Source.VERIFICATION,
        invoice=invoice,
        subscription=subscription,
        status=payment.status if payment else PaymentState.CREATED,
        amount=payment.amount if payment else 0,
        currency=payment.currency if payment else invoice.currency,
        gateway_payment_id=payment.id if payment else None,
        gateway_order_id=order_id,
        payload={"reported_payment_id": payment_id},
    )

    if invoice.is_paid:
        logger.info(
            "payment_already_verified",
            invoice_id=invoice.pk,
            gateway_payment_id=invoice.gateway_payment_id,
        )
        return VerificationResult(invoice=invoice, applied=False)

    if payment is None or not payment.is_captured:
        logger.info(
            "payment_not_yet_captured",
            invoice_id=invoice.pk,
            gateway_order_id=order_id,
            payment_status=payment.status if payment else None,
        )
        return VerificationResult(invoice=invoice, applied=False)

    if payment.amount != invoice.total_amount:
        logger.error(
            "verified_payment_amount_mismatch",
            invoice_id=invoice.pk,
            gateway_payment_id=payment.id,
            expected=invoice.total_amount,
            received=payment.amount,
        )
        return VerificationResult(invoice=invoice, applied=False)

    applied = apply_captured_payment(
        invoice,
        payment_id=payment.id,
        paid_at=timezone.now(),
        source=PaymentTransaction.Source.VERIFICATION,
    )
    invoice.refresh_from_db()
    return VerificationResult(invoice=invoice, applied=applied)
