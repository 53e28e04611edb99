"""
Payment reconciliation.

Finds payments the gateway captured but local state never recorded (lost
or failed webhooks, a client that closed the tab before verification) and
repairs them through the same transition the webhook uses.

Three sweeps, in order:
    1. unpaid invoices with a captured payment at the gateway
    2. payment_failed/expired/inactive subscriptions that hold a paid, unexpired invoice
    3. payment_pending subscriptions with no paid invoice at all

Each recovery is logged with the strategy that found it. Safe to re-run:
a second run over the same state changes nothing.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from django.db import IntegrityError, transaction
from django.utils import timezone

from apps.billing.constants import (
    CAPTURE_LEDGER_EVENTS,
    LedgerEventType,
    PaymentState,
    ReconciliationStrategy,
)
from apps.billing.exceptions import GatewayUnavailableError, UnreconcilableError
from apps.billing.gateway import GatewayPayment, PaymentGateway, get_gateway
from apps.billing.models import (
    ACTIVE_LIKE_STATUSES,
    UNPAID_INVOICE_STATUSES,
    Invoice,
    InvoiceStatus,
    PaymentTransaction,
    Subscription,
    SubscriptionStatus,
)
from apps.billing.processor import invoice_for_charge
from apps.billing.schemas import PaymentEntity
from apps.billing.services import (
    apply_captured_payment,
    close_pending_attempt,
    is_payment_consumed,
    record_transaction,
    release_checkout,
)
from apps.core.logging import get_logger
from config.settings.base import settings

logger = get_logger(__name__)


@dataclass(frozen=True)
class RecoveredPayment:
    strategy: ReconciliationStrategy
    payment_id: str
    amount: int
    paid_at: datetime


@dataclass
class ReconciliationReport:
    scanned_invoices: int = 0
    recovered_invoices: int = 0
    reactivated_subscriptions: int = 0
    recovered_subscriptions: int = 0
    abandoned_subscriptions: int = 0
    gateway_errors: int = 0
    strategies: Counter = field(default_factory=Counter)
    unreconcilable: list[UnreconcilableError] = field(default_factory=list)

    def as_log_fields(self) -> dict:
        return {
            "scanned_invoices": self.scanned_invoices,
            "recovered_invoices": self.recovered_invoices,
            "reactivated_subscriptions": self.reactivated_subscriptions,
            "recovered_subscriptions": self.recovered_subscriptions,
            "abandoned_subscriptions": self.abandoned_subscriptions,
            "gateway_errors": self.gateway_errors,
            "unreconcilable": len(self.unreconcilable),
            "strategies": dict(self.strategies),
        }


def reconcile_payments(now: datetime | None = None) -> ReconciliationReport:
    """Run all reconciliation sweeps and return what they did."""
    now = now or timezone.now()
    gateway = get_gateway()
    report = ReconciliationReport()

    _sweep_unpaid_invoices(gateway, now, report)
    _sweep_stuck_subscriptions(now, report)
    _sweep_pending_subscriptions(gateway, now, report)

    logger.info("reconciliation_completed", **report.as_log_fields())
    return report


# --- Matching ---


def _pick_payment(
    payments: list[GatewayPayment], invoice: Invoice, strategy: ReconciliationStrategy
) -> RecoveredPayment | None:
    # Oldest first, so a renewal invoice picks up the earliest unclaimed charge.
    for payment in sorted(payments, key=lambda p: p.created_at.timestamp() if p.created_at else 0):
        if not payment.is_captured or payment.amount != invoice.total_amount:
            continue
        if is_payment_consumed(payment.id, exclude_invoice_id=invoice.pk):
            continue
        return RecoveredPayment(
            strategy=strategy,
            payment_id=payment.id,
            amount=payment.amount,
            paid_at=payment.created_at or timezone.now(),
        )
    return None


def _from_invoice_payment_id(gateway: PaymentGateway, invoice: Invoice) -> RecoveredPayment | None:
    if not invoice.gateway_payment_id:
        return None
    payment = gateway.get_payment(invoice.gateway_payment_id)
    if not payment.is_captured or is_payment_consumed(payment.id, exclude_invoice_id=invoice.pk):
        return None
    return RecoveredPayment(
        strategy=ReconciliationStrategy.INVOICE_PAYMENT_ID,
        payment_id=payment.id,
        amount=payment.amount,
        paid_at=payment.created_at or timezone.now(),
    )


def _from_mandate_payments(gateway: PaymentGateway, invoice: Invoice) -> RecoveredPayment | None:
    mandate_id = invoice.subscription.gateway_subscription_id
    if not mandate_id:
        return None
    payments = gateway.get_subscription_payments(mandate_id)
    return _pick_payment(payments, invoice, ReconciliationStrategy.MANDATE_PAYMENTS)


def _from_ledger(invoice: Invoice) -> RecoveredPayment | None:
    rows = PaymentTransaction.objects.filter(
        event_type__in=CAPTURE_LEDGER_EVENTS,
        status=PaymentState.CAPTURED,
        gateway_payment_id__isnull=False,
    )
    candidates = rows.filter(invoice=invoice)
    if invoice.gateway_order_id:
        candidates = candidates | rows.filter(gateway_order_id=invoice.gateway_order_id)

    for row in candidates.order_by("created_at"):
        if row.amount and row.amount != invoice.total_amount:
            continue
        if is_payment_consumed(row.gateway_payment_id, exclude_invoice_id=invoice.pk):
            continue
        return RecoveredPayment(
            strategy=ReconciliationStrategy.LEDGER,
            payment_id=row.gateway_payment_id,
            amount=row.amount or invoice.total_amount,
            paid_at=row.created_at,
        )
    return None


def _from_order_payments(gateway: PaymentGateway, invoice: Invoice) -> RecoveredPayment | None:
    order_id = invoice.gateway_order_id
    # Recurring invoices carry the mandate id here, which is not an order.
    if not order_id or order_id == invoice.subscription.gateway_subscription_id:
        return None
    payments = gateway.get_order_payments(order_id)
    return _pick_payment(payments, invoice, ReconciliationStrategy.ORDER_PAYMENTS)


def find_captured_payment(gateway: PaymentGateway, invoice: Invoice) -> RecoveredPayment | None:
    """Try each strategy in order and stop at the first captured, unconsumed match."""
    return (
        _from_invoice_payment_id(gateway, invoice)
        or _from_mandate_payments(gateway, invoice)
        or _from_ledger(invoice)
        or _from_order_payments(gateway, invoice)
    )


def _apply_recovered(invoice: Invoice, recovered: RecoveredPayment) -> bool:
    subscription = invoice.subscription
    if subscription.status == SubscriptionStatus.INACTIVE and (
        Subscription.objects.filter(
            subscriber_id=subscription.subscriber_id, status__in=ACTIVE_LIKE_STATUSES
        )
        .exclude(pk=subscription.pk)
        .exists()
    ):
        raise UnreconcilableError(
            "Captured payment on an abandoned attempt while another subscription is in flight",
            invoice_id=invoice.pk,
            subscription_id=subscription.pk,
        )

    record_transaction(
        event_type=LedgerEventType.PAYMENT_RECONCILED,
        source=PaymentTransaction.Source.RECONCILIATION,
        invoice=invoice,
        subscription=subscription,
        status=PaymentState.CAPTURED,
        amount=recovered.amount,
        currency=invoice.currency,
        gateway_payment_id=recovered.payment_id,
        gateway_order_id=invoice.gateway_order_id,
        payload={"strategy": str(recovered.strategy)},
    )
    applied = apply_captured_payment(
        invoice,
        payment_id=recovered.payment_id,
        paid_at=recovered.paid_at,
        source=PaymentTransaction.Source.RECONCILIATION,
    )
    invoice.refresh_from_db()
    if not invoice.is_paid:
        raise UnreconcilableError(
            f"Could not apply payment {recovered.payment_id}",
            invoice_id=invoice.pk,
            subscription_id=subscription.pk,
        )
    if applied:
        logger.info(
            "payment_reconciled",
            strategy=recovered.strategy,
            invoice_id=invoice.pk,
            subscription_id=subscription.pk,
            gateway_payment_id=recovered.payment_id,
        )
    return applied


# --- Sweeps ---


def _sweep_unpaid_invoices(gateway: PaymentGateway, now: datetime, report: ReconciliationReport) -> None:
    """Unpaid invoices older than the grace window and younger than the lookback."""
    newest = now - timedelta(minutes=settings.BILLING_RECONCILIATION_GRACE_MINUTES)
    oldest = now - timedelta(days=settings.BILLING_RECONCILIATION_LOOKBACK_DAYS)
    invoices = (
        Invoice.objects.filter(
            payment_status__in=UNPAID_INVOICE_STATUSES,
            created_at__gte=oldest,
            created_at__lte=newest,
        )
        .select_related("subscription")
        .order_by("created_at")
    )

    for invoice in invoices:
        report.scanned_invoices += 1
        try:
            recovered = find_captured_payment(gateway, invoice)
            if recovered is None:
                continue
            if _apply_recovered(invoice, recovered):
                report.recovered_invoices += 1
                report.strategies[str(recovered.strategy)] += 1
        except GatewayUnavailableError as e:
            report.gateway_errors += 1
            logger.warning(
                "reconciliation_gateway_unavailable",
                invoice_id=invoice.pk,
                operation=e.operation,
            )
        except UnreconcilableError as e:
            report.unreconcilable.append(e)
            logger.error(
                "reconciliation_manual_review_required",
                invoice_id=e.invoice_id,
                subscription_id=e.subscription_id,
                reason=str(e),
            )


def _sweep_stuck_subscriptions(now: datetime, report: ReconciliationReport) -> None:
    """
    payment_failed/expired/inactive subscriptions holding a paid invoice that
    still covers now.

    An inactive one got there when its payment landed while another attempt
    was in flight; it stays reported until that attempt clears.
    """
    stuck_statuses = (
        SubscriptionStatus.PAYMENT_FAILED,
        SubscriptionStatus.EXPIRED,
        SubscriptionStatus.INACTIVE,
    )
    stuck = Subscription.objects.filter(
        status__in=stuck_statuses,
        invoices__payment_status=InvoiceStatus.PAID,
        invoices__billing_period_end__gt=now,
    ).distinct()

    for subscription in stuck:
        invoice = (
            subscription.invoices.filter(
                payment_status=InvoiceStatus.PAID, billing_period_end__gt=now
            )
            .order_by("-billing_period_end")
            .first()
        )
        next_billing = (
            invoice.billing_period_end
            if subscription.is_recurring and subscription.auto_renew
            else None
        )
        try:
            with transaction.atomic():
                moved = Subscription.objects.filter(
                    pk=subscription.pk, status__in=stuck_statuses
                ).update(
                    status=SubscriptionStatus.ACTIVE,
                    current_period_start=invoice.billing_period_start,
                    current_period_end=invoice.billing_period_end,
                    next_billing_date=next_billing,
                    inactive_reason="",
                    updated_at=timezone.now(),
                )
        except IntegrityError:
            error = UnreconcilableError(
                "Paid subscription cannot be reactivated while another is in flight",
                invoice_id=invoice.pk,
                subscription_id=subscription.pk,
            )
            report.unreconcilable.append(error)
            logger.error(
                "reconciliation_manual_review_required",
                invoice_id=invoice.pk,
                subscription_id=subscription.pk,
                reason=str(error),
            )
            continue

        if moved:
            report.reactivated_subscriptions += 1
            logger.info(
                "subscription_reactivated",
                strategy="paid_invoice",
                subscription_id=subscription.pk,
                invoice_id=invoice.pk,
                previous_status=subscription.status,
            )


def _pays_for(payment: GatewayPayment, subscription: Subscription) -> bool:
    return (
        payment.is_captured
        and payment.amount == subscription.amount
        and not is_payment_consumed(payment.id)
    )


def _captured_subscription_payment(
    gateway: PaymentGateway, subscription: Subscription
) -> tuple[ReconciliationStrategy, GatewayPayment] | None:
    if subscription.gateway_subscription_id:
        for payment in gateway.get_subscription_payments(subscription.gateway_subscription_id):
            if _pays_for(payment, subscription):
                return ReconciliationStrategy.MANDATE_PAYMENTS, payment
        return None

    order_ids = (
        subscription.invoices.exclude(gateway_order_id__isnull=True)
        .exclude(gateway_order_id="")
        .values_list("gateway_order_id", flat=True)
    )
    for order_id in order_ids:
        for payment in gateway.get_order_payments(order_id):
            if _pays_for(payment, subscription):
                return ReconciliationStrategy.ORDER_PAYMENTS, payment
    return None


def _abandon(gateway: PaymentGateway, subscription: Subscription, now: datetime) -> bool:
    # The gateway goes first so a late payment cannot land on a closed attempt.
    # It refuses once the payer has paid or saved a payment method on a mandate.
    if not release_checkout(gateway, subscription):
        logger.info("subscription_abandonment_refused", subscription_id=subscription.pk)
        return False
    return close_pending_attempt(subscription, "abandoned", now)


def _sweep_pending_subscriptions(
    gateway: PaymentGateway, now: datetime, report: ReconciliationReport
) -> None:
    """payment_pending subscriptions past the grace window with no paid invoice."""
    grace_cutoff = now - timedelta(minutes=settings.BILLING_RECONCILIATION_GRACE_MINUTES)
    abandon_cutoff = now - timedelta(hours=settings.BILLING_ABANDONMENT_WINDOW_HOURS)
    pending = Subscription.objects.filter(
        status=SubscriptionStatus.PAYMENT_PENDING,
        created_at__lte=grace_cutoff,
    ).exclude(invoices__payment_status=InvoiceStatus.PAID)

    for subscription in pending:
        try:
            found = _captured_subscription_payment(gateway, subscription)
        except GatewayUnavailableError as e:
            report.gateway_errors += 1
            logger.warning(
                "reconciliation_gateway_unavailable",
                subscription_id=subscription.pk,
                operation=e.operation,
            )
            continue

        if found is not None:
            strategy, payment = found
            invoice = (
                subscription.invoices.exclude(payment_status=InvoiceStatus.PAID)
                .order_by("created_at")
                .first()
            )
            if invoice is None:
                entity = PaymentEntity(
                    id=payment.id,
                    status=str(payment.status),
                    amount=payment.amount,
                    currency=payment.currency,
                    order_id=payment.order_id,
                )
                invoice, _ = invoice_for_charge(
                    subscription, entity, Invoice.Source.RECONCILIATION
                )
            recovered = RecoveredPayment(
                strategy=strategy,
                payment_id=payment.id,
                amount=payment.amount,
                paid_at=payment.created_at or now,
            )
            try:
                if _apply_recovered(invoice, recovered):
                    report.recovered_subscriptions += 1
                    report.strategies[str(strategy)] += 1
            except UnreconcilableError as e:
                report.unreconcilable.append(e)
                logger.error(
                    "reconciliation_manual_review_required",
                    invoice_id=e.invoice_id,
                    subscription_id=e.subscription_id,
                    reason=str(e),
                )
            continue

        if subscription.created_at > abandon_cutoff:
            continue
        try:
            abandoned = _abandon(gateway, subscription, now)
        except GatewayUnavailableError as e:
            report.gateway_errors += 1
            logger.warning(
                "reconciliation_gateway_unavailable",
                subscription_id=subscription.pk,
                operation=e.operation,
            )
            continue
        if abandoned:
            report.abandoned_subscriptions += 1
            logger.info(
                "subscription_abandoned",
                subscription_id=subscription.pk,
                gateway_subscription_id=subscription.gateway_subscription_id,
            )
