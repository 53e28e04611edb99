"""
Tests for the subscription lifecycle: scheduled phases and pause/resume/cancel.
"""

from datetime import timedelta
from unittest.mock import MagicMock, call, patch

import pytest
from django.utils import timezone

from apps.billing.constants import LifecyclePhase
from apps.billing.exceptions import (
    GatewayUnavailableError,
    InvalidBillingRequestError,
    SubscriptionNotFoundError,
)
from apps.billing.lifecycle import (
    auto_resume_subscriptions,
    cancel_subscription,
    expire_subscriptions,
    pause_subscription,
    resume_subscription,
    run_daily_lifecycle,
)
from apps.billing.models import Invoice, Subscription
from apps.billing.services import get_entitlement

from .factories import InvoiceFactory, SubscriptionFactory


@pytest.mark.django_db
class TestExpireSubscriptions:
    """Tests for expire_subscriptions."""

    def test_expires_lapsed_active_subscriptions(self) -> None:
        now = timezone.now()
        lapsed = SubscriptionFactory(
            current_period_start=now - timedelta(days=31),
            current_period_end=now - timedelta(days=1),
        )
        current = SubscriptionFactory()

        assert expire_subscriptions(now) == 1

        lapsed.refresh_from_db()
        current.refresh_from_db()
        assert lapsed.status == Subscription.Status.EXPIRED
        assert current.status == Subscription.Status.ACTIVE

    def test_leaves_cancelled_subscriptions(self) -> None:
        now = timezone.now()
        cancelled = SubscriptionFactory(
            status=Subscription.Status.CANCELLED,
            current_period_end=now - timedelta(days=1),
        )

        assert expire_subscriptions(now) == 0
        cancelled.refresh_from_db()
        assert cancelled.status == Subscription.Status.CANCELLED


@pytest.mark.django_db
class TestPauseAndResume:
    """Tests for pause_subscription, resume_subscription and auto-resume."""

    def test_pause_starts_after_paid_period(self, mock_gateway) -> None:
        subscription = SubscriptionFactory()
        period_end = subscription.current_period_end

        paused = pause_subscription(subscription.subscriber, 10, reason="travelling")

        assert paused.status == Subscription.Status.PAUSED
        assert paused.is_paused is True
        assert paused.pause_start_date == period_end
        assert paused.resume_date == period_end + timedelta(days=10)
        assert paused.pause_duration_days == 10
        assert paused.pause_reason == "travelling"
        assert paused.pause_count == 1
        # Paid time before the pause window is still usable.
        assert get_entitlement(subscription.subscriber).has_access is True
        mock_gateway.pause_subscription.assert_not_called()

    @pytest.mark.parametrize("days", [0, 91])
    def test_pause_length_limits(self, mock_gateway, days) -> None:
        subscription = SubscriptionFactory()

        with pytest.raises(InvalidBillingRequestError):
            pause_subscription(subscription.subscriber, days)

        subscription.refresh_from_db()
        assert subscription.status == Subscription.Status.ACTIVE

    def test_pause_requires_active_subscription(self, mock_gateway) -> None:
        subscription = SubscriptionFactory(status=Subscription.Status.CANCELLED)

        with pytest.raises(SubscriptionNotFoundError):
            pause_subscription(subscription.subscriber, 10)

    def test_pause_recurring_pauses_mandate_first(self, mock_gateway) -> None:
        subscription = SubscriptionFactory(recurring=True)

        paused = pause_subscription(subscription.subscriber, 10)

        mock_gateway.pause_subscription.assert_called_once_with(
            subscription.gateway_subscription_id, resume_at=paused.resume_date
        )
        assert paused.next_billing_date is None

    def test_gateway_failure_leaves_subscription_active(self, mock_gateway) -> None:
        subscription = SubscriptionFactory(recurring=True)
        mock_gateway.pause_subscription.side_effect = GatewayUnavailableError(
            "down", operation="pause_subscription"
        )

        with pytest.raises(GatewayUnavailableError):
            pause_subscription(subscription.subscriber, 10)

        subscription.refresh_from_db()
        assert subscription.status == Subscription.Status.ACTIVE
        assert subscription.pause_count == 0

    def test_resume_before_pause_starts_restores_period(self, mock_gateway) -> None:
        subscription = SubscriptionFactory()
        period_start = subscription.current_period_start
        period_end = subscription.current_period_end
        pause_subscription(subscription.subscriber, 10)

        resumed = resume_subscription(subscription.subscriber)

        assert resumed.status == Subscription.Status.ACTIVE
        assert resumed.current_period_start == period_start
        assert resumed.current_period_end == period_end
        assert resumed.is_paused is False
        assert resumed.pause_start_date is None
        assert resumed.resume_date is None
        assert resumed.total_paused_days == 0

    def test_resume_inside_pause_window_opens_new_period(self, mock_gateway) -> None:
        now = timezone.now()
        subscription = SubscriptionFactory(
            status=Subscription.Status.PAUSED,
            current_period_start=now - timedelta(days=34),
            current_period_end=now - timedelta(days=4),
            is_paused=True,
            pause_start_date=now - timedelta(days=4),
            resume_date=now + timedelta(days=6),
            pause_duration_days=10,
        )

        resumed = resume_subscription(subscription.subscriber)

        assert resumed.status == Subscription.Status.ACTIVE
        assert resumed.current_period_start >= now
        assert resumed.current_period_end == resumed.current_period_start + timedelta(days=30)
        assert resumed.total_paused_days == 4

    def test_resume_recurring_resumes_mandate(self, mock_gateway) -> None:
        subscription = SubscriptionFactory(recurring=True)
        pause_subscription(subscription.subscriber, 5)

        resume_subscription(subscription.subscriber)

        mock_gateway.resume_subscription.assert_called_once_with(
            subscription.gateway_subscription_id
        )

    def test_resume_requires_paused_subscription(self, mock_gateway) -> None:
        subscription = SubscriptionFactory()

        with pytest.raises(SubscriptionNotFoundError):
            resume_subscription(subscription.subscriber)

    def test_auto_resume_when_resume_date_arrives(self) -> None:
        now = timezone.now()
        due = SubscriptionFactory(
            status=Subscription.Status.PAUSED,
            current_period_start=now - timedelta(days=40),
            current_period_end=now - timedelta(days=10),
            is_paused=True,
            pause_start_date=now - timedelta(days=10),
            resume_date=now - timedelta(minutes=1),
        )
        not_due = SubscriptionFactory(
            status=Subscription.Status.PAUSED,
            is_paused=True,
            resume_date=now + timedelta(days=3),
        )

        assert auto_resume_subscriptions(now) == 1

        due.refresh_from_db()
        not_due.refresh_from_db()
        assert due.status == Subscription.Status.ACTIVE
        assert due.current_period_start == now
        assert due.current_period_end == now + timedelta(days=30)
        assert due.total_paused_days == 10
        assert not_due.status == Subscription.Status.PAUSED


@pytest.mark.django_db
class TestCancelSubscription:
    """Tests for cancel_subscription."""

    def test_cancel_at_cycle_end_keeps_access(self, mock_gateway) -> None:
        subscription = SubscriptionFactory()
        period_end = subscription.current_period_end

        cancelled = cancel_subscription(subscription.subscriber, reason="too expensive")

        assert cancelled.status == Subscription.Status.CANCELLED
        assert cancelled.cancel_reason == "too expensive"
        assert cancelled.cancelled_at is not None
        assert cancelled.auto_renew is False
        assert cancelled.current_period_end == period_end
        assert get_entitlement(subscription.subscriber).has_access is True

    def test_cancel_immediately_ends_access(self, mock_gateway) -> None:
        subscription = SubscriptionFactory()

        cancel_subscription(subscription.subscriber, at_cycle_end=False)

        assert get_entitlement(subscription.subscriber).has_access is False

    def test_cancel_paused_subscription(self, mock_gateway) -> None:
        subscription = SubscriptionFactory()
        pause_subscription(subscription.subscriber, 10)

        cancelled = cancel_subscription(subscription.subscriber)

        assert cancelled.status == Subscription.Status.CANCELLED
        assert cancelled.is_paused is False
        assert cancelled.resume_date is None

    def test_cancel_recurring_cancels_mandate(self, mock_gateway) -> None:
        subscription = SubscriptionFactory(recurring=True)

        cancel_subscription(subscription.subscriber, at_cycle_end=False)

        mock_gateway.cancel_subscription.assert_called_once_with(
            subscription.gateway_subscription_id, at_cycle_end=False
        )

    def test_nothing_to_cancel(self, mock_gateway) -> None:
        subscription = SubscriptionFactory(status=Subscription.Status.PAYMENT_PENDING)

        with pytest.raises(SubscriptionNotFoundError):
            cancel_subscription(subscription.subscriber)


@pytest.mark.django_db
class TestRunDailyLifecycle:
    """Tests for run_daily_lifecycle."""

    def test_phases_run_in_order(self) -> None:
        now = timezone.now()
        manager = MagicMock()
        with (
            patch("apps.billing.lifecycle.expire_subscriptions", return_value=0) as expire,
            patch("apps.billing.lifecycle.reconcile_payments") as reconcile,
            patch("apps.billing.lifecycle.auto_resume_subscriptions", return_value=0) as resume,
        ):
            manager.attach_mock(expire, "expire")
            manager.attach_mock(reconcile, "reconcile")
            manager.attach_mock(resume, "resume")

            results = run_daily_lifecycle(now)

        assert manager.mock_calls == [call.expire(now), call.reconcile(now), call.resume(now)]
        assert list(results) == ["expire", "reconcile", "resume"]

    def test_selected_phases_keep_canonical_order(self) -> None:
        manager = MagicMock()
        with (
            patch("apps.billing.lifecycle.expire_subscriptions", return_value=0) as expire,
            patch("apps.billing.lifecycle.reconcile_payments") as reconcile,
            patch("apps.billing.lifecycle.auto_resume_subscriptions", return_value=0) as resume,
        ):
            manager.attach_mock(expire, "expire")
            manager.attach_mock(reconcile, "reconcile")
            manager.attach_mock(resume, "resume")

            run_daily_lifecycle(phases=[LifecyclePhase.RESUME, LifecyclePhase.EXPIRE])

        assert [c[0] for c in manager.mock_calls] == ["expire", "resume"]

    def test_failing_phase_stops_the_run(self) -> None:
        with (
            patch("apps.billing.lifecycle.expire_subscriptions", return_value=0),
            patch(
                "apps.billing.lifecycle.reconcile_payments",
                side_effect=RuntimeError("database unavailable"),
            ),
            patch("apps.billing.lifecycle.auto_resume_subscriptions") as resume,
        ):
            with pytest.raises(RuntimeError):
                run_daily_lifecycle()

        resume.assert_not_called()

    def test_expired_subscription_with_paid_renewal_reopened_same_run(
        self, mock_gateway
    ) -> None:
        """Expiry runs first so reconciliation can reopen a paid subscription."""
        now = timezone.now()
        subscription = SubscriptionFactory(
            current_period_start=now - timedelta(days=30),
            current_period_end=now - timedelta(minutes=1),
        )
        InvoiceFactory(
            subscription=subscription,
            payment_status=Invoice.Status.PAID,
            gateway_payment_id="in_renewal",
            billing_period_start=now - timedelta(minutes=1),
            billing_period_end=now + timedelta(days=30),
        )

        results = run_daily_lifecycle(now)

        assert results["expire"] == 1
        assert results["reconcile"].reactivated_subscriptions == 1
        subscription.refresh_from_db()
        assert subscription.status == Subscription.Status.ACTIVE
        assert subscription.current_period_end == now + timedelta(days=30)
