"""
Subscription lifecycle: scheduled jobs and user-initiated transitions.

The daily run is expire -> reconcile -> resume. Order matters: reconciliation
must see subscriptions that expiry just closed, so a paid-but-expired
subscription is reopened in the same run, and resume runs last so it never
acts on a subscription reconciliation is about to change.
"""

import time
from datetime import datetime, timedelta
from typing import Any

from django.db.models import F
from django.utils import timezone

from apps.billing.constants import LifecyclePhase
from apps.billing.exceptions import (
    InvalidBillingRequestError,
    SubscriptionConflictError,
    SubscriptionNotFoundError,
)
from apps.billing.gateway import get_gateway
from apps.billing.models import Subscription, SubscriptionStatus
from apps.billing.reconciliation import reconcile_payments
from apps.billing.services import period_length
from apps.core.logging import get_logger
from config.settings.base import settings

logger = get_logger(__name__)

PAUSE_CLEARED = {
    "is_paused": False,
    "paused_at": None,
    "pause_start_date": None,
    "resume_date": None,
    "pause_duration_days": None,
}


# --- Scheduled phases ---


def expire_subscriptions(now: datetime | None = None) -> int:
    """Move ACTIVE subscriptions whose period has ended to EXPIRED."""
    now = now or timezone.now()
    due = Subscription.objects.filter(
        status=SubscriptionStatus.ACTIVE, current_period_end__lt=now
    ).values_list("pk", flat=True)

    expired = 0
    for subscription_id in list(due):
        # Re-check the condition per row; a renewal may have landed meanwhile.
        moved = Subscription.objects.filter(
            pk=subscription_id,
            status=SubscriptionStatus.ACTIVE,
            current_period_end__lt=now,
        ).update(status=SubscriptionStatus.EXPIRED, next_billing_date=None, updated_at=now)
        if moved:
            expired += 1
            logger.info("subscription_expired", subscription_id=subscription_id)
    return expired


def _resume(subscription: Subscription, now: datetime) -> bool:
    fields: dict[str, Any] = {"status": SubscriptionStatus.ACTIVE, "updated_at": now, **PAUSE_CLEARED}

    if subscription.pause_start_date and now < subscription.pause_start_date:
        # The pause never took effect; the paid period stands as it was.
        restored_period = True
    else:
        restored_period = False
        end = now + period_length()
        fields.update(
            current_period_start=now,
            current_period_end=end,
            next_billing_date=end if subscription.is_recurring and subscription.auto_renew else None,
        )
        if subscription.pause_start_date:
            paused_days = max((now - subscription.pause_start_date).days, 0)
            fields["total_paused_days"] = F("total_paused_days") + paused_days

    moved = Subscription.objects.filter(
        pk=subscription.pk, status=SubscriptionStatus.PAUSED
    ).update(**fields)
    if moved:
        logger.info(
            "subscription_resumed",
            subscription_id=subscription.pk,
            restored_period=restored_period,
        )
    return bool(moved)


def auto_resume_subscriptions(now: datetime | None = None) -> int:
    """Resume PAUSED subscriptions whose resume date has arrived."""
    now = now or timezone.now()
    due = Subscription.objects.filter(status=SubscriptionStatus.PAUSED, resume_date__lte=now)
    return sum(1 for subscription in due if _resume(subscription, now))


def _run_phase(phase: LifecyclePhase, now: datetime | None) -> Any:
    match phase:
        case LifecyclePhase.EXPIRE:
            return expire_subscriptions(now)
        case LifecyclePhase.RECONCILE:
            return reconcile_payments(now)
        case LifecyclePhase.RESUME:
            return auto_resume_subscriptions(now)


def run_daily_lifecycle(
    now: datetime | None = None, phases: list[LifecyclePhase] | None = None
) -> dict[str, Any]:
    """
    Run the lifecycle phases sequentially, in their fixed order.

    A failing phase is logged and re-raised; later phases do not run
    because they depend on the earlier ones having completed.

    Args:
        now: Reference time, defaults to the current time.
        phases: Subset of phases to run. Always executed in canonical order.

    Returns:
        Result of each phase that ran, keyed by phase name.
    """
    selected = set(phases) if phases else set(LifecyclePhase)
    results: dict[str, Any] = {}

    for phase in LifecyclePhase:
        if phase not in selected:
            continue
        started = time.monotonic()
        try:
            results[phase] = _run_phase(phase, now)
        except Exception:
            logger.exception("billing_lifecycle_phase_failed", phase=phase)
            raise
        logger.info(
            "billing_lifecycle_phase_completed",
            phase=phase,
            duration_ms=(time.monotonic() - started) * 1000,
        )
    return results


# --- User operations ---


def _get_subscription(subscriber: Any, statuses: tuple[str, ...]) -> Subscription:
    subscription = Subscription.objects.filter(subscriber=subscriber, status__in=statuses).first()
    if subscription is None:
        raise SubscriptionNotFoundError("No subscription in a state that allows this action")
    return subscription


def pause_subscription(subscriber: Any, days: int, reason: str = "") -> Subscription:
    """
    Pause an ACTIVE subscription for the given number of days.

    The current paid period is honoured in full; the pause window starts at
    its end and access comes back at resume_date.

    Raises:
        InvalidBillingRequestError: days outside 1..BILLING_MAX_PAUSE_DAYS.
        SubscriptionNotFoundError: No ACTIVE subscription.
        GatewayUnavailableError: Mandate could not be paused; nothing changed.
    """
    if not 1 <= days <= settings.BILLING_MAX_PAUSE_DAYS:
        raise InvalidBillingRequestError(
            f"Pause must be between 1 and {settings.BILLING_MAX_PAUSE_DAYS} days"
        )

    subscription = _get_subscription(subscriber, (SubscriptionStatus.ACTIVE,))
    now = timezone.now()
    pause_start = subscription.current_period_end
    resume_date = pause_start + timedelta(days=days)

    if subscription.is_recurring:
        get_gateway().pause_subscription(subscription.gateway_subscription_id, resume_at=resume_date)

    moved = Subscription.objects.filter(
        pk=subscription.pk, status=SubscriptionStatus.ACTIVE
    ).update(
        status=SubscriptionStatus.PAUSED,
        is_paused=True,
        paused_at=now,
        pause_start_date=pause_start,
        resume_date=resume_date,
        pause_duration_days=days,
        pause_reason=reason,
        pause_count=F("pause_count") + 1,
        next_billing_date=None,
        updated_at=now,
    )
    if not moved:
        raise SubscriptionConflictError("Subscription changed while pausing")

    logger.info(
        "subscription_paused",
        subscription_id=subscription.pk,
        days=days,
        resume_date=resume_date.isoformat(),
    )
    subscription.refresh_from_db()
    return subscription


def resume_subscription(subscriber: Any) -> Subscription:
    """
    Resume a PAUSED subscription now.

    Raises:
        SubscriptionNotFoundError: No PAUSED subscription.
        GatewayUnavailableError: Mandate could not be resumed; nothing changed.
    """
    subscription = _get_subscription(subscriber, (SubscriptionStatus.PAUSED,))

    if subscription.is_recurring:
        get_gateway().resume_subscription(subscription.gateway_subscription_id)

    if not _resume(subscription, timezone.now()):
        raise SubscriptionConflictError("Subscription changed while resuming")
    subscription.refresh_from_db()
    return subscription


def cancel_subscription(subscriber: Any, reason: str = "", at_cycle_end: bool = True) -> Subscription:
    """
    Cancel an ACTIVE or PAUSED subscription.

    With at_cycle_end access lasts until current_period_end; otherwise it
    ends now.

    Raises:
        SubscriptionNotFoundError: Nothing to cancel.
        GatewayUnavailableError: Mandate could not be cancelled; nothing changed.
    """
    cancellable = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAUSED)
    subscription = _get_subscription(subscriber, cancellable)
    now = timezone.now()

    if subscription.is_recurring:
        get_gateway().cancel_subscription(
            subscription.gateway_subscription_id, at_cycle_end=at_cycle_end
        )

    fields: dict[str, Any] = {
        "status": SubscriptionStatus.CANCELLED,
        "cancelled_at": now,
        "cancel_reason": reason,
        "auto_renew": False,
        "next_billing_date": None,
        "updated_at": now,
        **PAUSE_CLEARED,
    }
    if not at_cycle_end:
        fields["current_period_end"] = now

    moved = Subscription.objects.filter(pk=subscription.pk, status__in=cancellable).update(**fields)
    if not moved:
        raise SubscriptionConflictError("Subscription changed while cancelling")

    logger.info(
        "subscription_cancelled",
        subscription_id=subscription.pk,
        at_cycle_end=at_cycle_end,
    )
    subscription.refresh_from_db()
    return subscription
