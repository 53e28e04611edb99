"""
Tests for billing services: issuing orders, verifying payments, entitlement.

The gateway is replaced by the mock_gateway fixture; no Stripe calls are made.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest
from django.utils import timezone

from apps.billing.constants import GatewayEventType, LedgerEventType, PaymentState
from apps.billing.exceptions import (
    GatewayUnavailableError,
    InvalidSignatureError,
    InvoiceNotFoundError,
    SubscriptionConflictError,
    SubscriptionNotFoundError,
)
from apps.billing.gateway import GatewayMandate, GatewayOrder
from apps.billing.models import Invoice, PaymentTransaction, Subscription
from apps.billing.processor import process_gateway_event
from apps.billing.services import (
    apply_captured_payment,
    create_subscription_order,
    get_current_subscription,
    get_entitlement,
    list_invoices,
    next_invoice_number,
    verify_payment,
)

from .factories import GatewayCheckoutFactory, InvoiceFactory, SubscriptionFactory, UserFactory


def gateway_order(order_id: str = "pi_new") -> GatewayOrder:
    return GatewayOrder(
        id=order_id,
        amount=19900,
        currency="inr",
        status="requires_payment_method",
        client_secret=f"{order_id}_secret",
    )


def pending_subscription(**kwargs):
    """A PAYMENT_PENDING subscription with its issued invoice."""
    subscription = SubscriptionFactory(status=Subscription.Status.PAYMENT_PENDING, **kwargs)
    invoice = InvoiceFactory(subscription=subscription, gateway_order_id="pi_checkout")
    return subscription, invoice


@pytest.mark.django_db
class TestGetEntitlement:
    """Tests for get_entitlement."""

    def test_active_subscription_grants_access(self) -> None:
        subscription = SubscriptionFactory(status=Subscription.Status.ACTIVE)

        entitlement = get_entitlement(subscription.subscriber)

        assert entitlement.has_access is True
        assert entitlement.access_ends_at == subscription.current_period_end
        assert entitlement.subscription == subscription

    def test_no_subscription(self) -> None:
        entitlement = get_entitlement(UserFactory())

        assert entitlement.has_access is False
        assert entitlement.access_ends_at is None

    def test_pending_subscription_has_no_access(self) -> None:
        subscription, _ = pending_subscription()
        assert get_entitlement(subscription.subscriber).has_access is False

    def test_cancelled_keeps_access_until_period_end(self) -> None:
        subscription = SubscriptionFactory(status=Subscription.Status.CANCELLED)
        user = subscription.subscriber

        assert get_entitlement(user).has_access is True
        assert get_entitlement(user, at=subscription.current_period_end).has_access is False

    def test_picks_latest_ending_subscription(self) -> None:
        user = UserFactory()
        now = timezone.now()
        SubscriptionFactory(
            subscriber=user,
            status=Subscription.Status.CANCELLED,
            current_period_end=now + timedelta(days=3),
        )
        later = SubscriptionFactory(
            subscriber=user,
            status=Subscription.Status.ACTIVE,
            current_period_end=now + timedelta(days=40),
        )

        entitlement = get_entitlement(user, at=now)

        assert entitlement.subscription == later
        assert entitlement.access_ends_at == later.current_period_end

    def test_current_subscription_prefers_in_flight(self) -> None:
        user = UserFactory()
        SubscriptionFactory(subscriber=user, status=Subscription.Status.CANCELLED)
        active = SubscriptionFactory(subscriber=user, status=Subscription.Status.ACTIVE)

        assert get_current_subscription(user) == active

    def test_list_invoices_only_own(self) -> None:
        invoice = InvoiceFactory()
        InvoiceFactory()

        assert list_invoices(invoice.subscriber) == [invoice]


@pytest.mark.django_db
class TestNextInvoiceNumber:
    """Tests for invoice number allocation."""

    def test_numbers_are_sequential_per_month(self) -> None:
        march = datetime(2026, 3, 5, tzinfo=UTC)

        assert next_invoice_number(march) == "INV-202603-00001"
        assert next_invoice_number(march) == "INV-202603-00002"

    def test_new_month_restarts_sequence(self) -> None:
        next_invoice_number(datetime(2026, 3, 31, tzinfo=UTC))

        assert next_invoice_number(datetime(2026, 4, 1, tzinfo=UTC)) == "INV-202604-00001"


@pytest.mark.django_db
class TestCreateSubscriptionOrder:
    """Tests for create_subscription_order."""

    def test_creates_pending_subscription_and_order(self, mock_gateway) -> None:
        user = UserFactory()
        mock_gateway.create_order.return_value = gateway_order("pi_new")

        result = create_subscription_order(user)

        assert result.subscription.status == Subscription.Status.PAYMENT_PENDING
        assert result.subscription.kind == Subscription.Kind.ONE_TIME
        assert result.invoice.gateway_order_id == "pi_new"
        assert result.invoice.payment_status == Invoice.Status.PENDING
        assert result.invoice.invoice_number is None
        assert result.invoice.total_amount == 19900
        assert result.client_secret == "pi_new_secret"
        call_kwargs = mock_gateway.create_order.call_args.kwargs
        assert call_kwargs["reference"] == (
            f"PRO_SUB_{result.subscription.pk}_INV_{result.invoice.pk}"
        )

    def test_rejects_second_in_flight_subscription(self, mock_gateway) -> None:
        subscription = SubscriptionFactory(status=Subscription.Status.ACTIVE)

        with pytest.raises(SubscriptionConflictError):
            create_subscription_order(subscription.subscriber)

        mock_gateway.create_order.assert_not_called()

    def test_supersedes_abandoned_checkout(self, mock_gateway) -> None:
        """A checkout left unpaid does not block a new purchase."""
        stale, stale_invoice = pending_subscription()
        mock_gateway.create_order.return_value = gateway_order()

        result = create_subscription_order(stale.subscriber)

        mock_gateway.cancel_order.assert_called_once_with("pi_checkout")
        stale.refresh_from_db()
        stale_invoice.refresh_from_db()
        assert stale.status == Subscription.Status.INACTIVE
        assert stale.inactive_reason == "superseded"
        assert stale_invoice.payment_status == Invoice.Status.CANCELLED
        assert result.subscription.status == Subscription.Status.PAYMENT_PENDING

    def test_supersedes_abandoned_mandate(self, mock_gateway) -> None:
        stale = SubscriptionFactory(
            status=Subscription.Status.PAYMENT_PENDING,
            recurring=True,
            mandate_status=Subscription.MandateStatus.AUTHENTICATED,
        )
        mock_gateway.create_order.return_value = gateway_order()

        create_subscription_order(stale.subscriber)

        mock_gateway.cancel_incomplete_mandate.assert_called_once_with(
            stale.gateway_subscription_id
        )
        stale.refresh_from_db()
        assert stale.status == Subscription.Status.INACTIVE

    def test_rejects_while_order_is_being_paid(self, mock_gateway) -> None:
        subscription, _ = pending_subscription()
        mock_gateway.cancel_order.return_value = False

        with pytest.raises(SubscriptionConflictError):
            create_subscription_order(subscription.subscriber)

        subscription.refresh_from_db()
        assert subscription.status == Subscription.Status.PAYMENT_PENDING
        mock_gateway.create_order.assert_not_called()

    def test_rejects_while_mandate_is_charging(self, mock_gateway) -> None:
        subscription = SubscriptionFactory(
            status=Subscription.Status.PAYMENT_PENDING, recurring=True
        )

        with pytest.raises(SubscriptionConflictError):
            create_subscription_order(subscription.subscriber)

        mock_gateway.cancel_incomplete_mandate.assert_not_called()

    def test_gateway_down_while_superseding(self, mock_gateway) -> None:
        subscription, _ = pending_subscription()
        mock_gateway.cancel_order.side_effect = GatewayUnavailableError(
            "timeout", operation="cancel_order"
        )

        with pytest.raises(GatewayUnavailableError):
            create_subscription_order(subscription.subscriber)

        subscription.refresh_from_db()
        assert subscription.status == Subscription.Status.PAYMENT_PENDING

    def test_supersedes_failed_attempt(self, mock_gateway) -> None:
        failed = SubscriptionFactory(status=Subscription.Status.PAYMENT_FAILED)
        failed_invoice = InvoiceFactory(subscription=failed, payment_status=Invoice.Status.FAILED)
        mock_gateway.create_order.return_value = gateway_order()

        create_subscription_order(failed.subscriber)

        failed.refresh_from_db()
        failed_invoice.refresh_from_db()
        assert failed.status == Subscription.Status.INACTIVE
        assert failed.inactive_reason == "superseded"
        assert failed_invoice.payment_status == Invoice.Status.CANCELLED

    def test_failed_subscription_that_once_paid_is_kept(self, mock_gateway) -> None:
        failed = SubscriptionFactory(status=Subscription.Status.PAYMENT_FAILED)
        InvoiceFactory(
            subscription=failed, payment_status=Invoice.Status.PAID, gateway_payment_id="ch_old"
        )
        mock_gateway.create_order.return_value = gateway_order()

        result = create_subscription_order(failed.subscriber)

        failed.refresh_from_db()
        assert failed.status == Subscription.Status.PAYMENT_FAILED
        # Remaining paid time carries over into the new period.
        assert result.subscription.start_date == failed.current_period_end

    def test_new_period_starts_after_cancelled_access_ends(self, mock_gateway) -> None:
        cancelled = SubscriptionFactory(
            status=Subscription.Status.CANCELLED,
            current_period_end=timezone.now() + timedelta(days=10),
        )
        mock_gateway.create_order.return_value = gateway_order()

        result = create_subscription_order(cancelled.subscriber)

        assert result.subscription.start_date == cancelled.current_period_end
        assert result.invoice.billing_period_start == cancelled.current_period_end
        assert result.invoice.billing_period_end == cancelled.current_period_end + timedelta(
            days=30
        )

    def test_gateway_failure_closes_attempt(self, mock_gateway) -> None:
        user = UserFactory()
        mock_gateway.create_order.side_effect = GatewayUnavailableError(
            "Gateway down", operation="create_order"
        )

        with pytest.raises(GatewayUnavailableError):
            create_subscription_order(user)

        subscription = Subscription.objects.get(subscriber=user)
        assert subscription.status == Subscription.Status.INACTIVE
        assert subscription.inactive_reason == "gateway_unavailable"
        assert subscription.invoices.get().payment_status == Invoice.Status.CANCELLED

    def test_retry_after_gateway_failure(self, mock_gateway) -> None:
        user = UserFactory()
        mock_gateway.create_order.side_effect = [
            GatewayUnavailableError("Gateway down", operation="create_order"),
            gateway_order("pi_retry"),
        ]

        with pytest.raises(GatewayUnavailableError):
            create_subscription_order(user)
        result = create_subscription_order(user)

        assert result.invoice.gateway_order_id == "pi_retry"
        assert Subscription.objects.filter(subscriber=user).count() == 2

    def test_recurring_creates_customer_and_mandate(self, mock_gateway) -> None:
        user = UserFactory()
        mock_gateway.create_customer.return_value = "cus_new"
        mock_gateway.create_mandate_subscription.return_value = GatewayMandate(
            id="sub_gw_new", customer_id="cus_new", status="incomplete", client_secret="cs_1"
        )

        result = create_subscription_order(user, Subscription.Kind.RECURRING)

        assert result.subscription.kind == Subscription.Kind.RECURRING
        assert result.subscription.gateway_customer_id == "cus_new"
        assert result.subscription.gateway_subscription_id == "sub_gw_new"
        assert result.subscription.mandate_status == Subscription.MandateStatus.CREATED
        assert result.subscription.auto_renew is True
        assert result.invoice.gateway_order_id == "sub_gw_new"
        assert result.gateway_subscription_id == "sub_gw_new"
        assert result.client_secret == "cs_1"
        assert mock_gateway.create_mandate_subscription.call_args.kwargs["start_at"] is None

    def test_recurring_reuses_existing_customer(self, mock_gateway) -> None:
        old = SubscriptionFactory(
            status=Subscription.Status.EXPIRED,
            gateway_customer_id="cus_existing",
            current_period_end=timezone.now() - timedelta(days=1),
        )
        mock_gateway.create_mandate_subscription.return_value = GatewayMandate(
            id="sub_gw_new", customer_id="cus_existing", status="incomplete"
        )

        create_subscription_order(old.subscriber, Subscription.Kind.RECURRING)

        mock_gateway.create_customer.assert_not_called()
        assert (
            mock_gateway.create_mandate_subscription.call_args.kwargs["customer_id"]
            == "cus_existing"
        )

    def test_recurring_mandate_deferred_past_remaining_access(self, mock_gateway) -> None:
        cancelled = SubscriptionFactory(
            status=Subscription.Status.CANCELLED,
            gateway_customer_id="cus_existing",
            current_period_end=timezone.now() + timedelta(days=5),
        )
        mock_gateway.create_mandate_subscription.return_value = GatewayMandate(
            id="sub_gw_new", customer_id="cus_existing", status="trialing"
        )

        create_subscription_order(cancelled.subscriber, Subscription.Kind.RECURRING)

        call_kwargs = mock_gateway.create_mandate_subscription.call_args.kwargs
        assert call_kwargs["start_at"] == cancelled.current_period_end


@pytest.mark.django_db
class TestVerifyPayment:
    """Tests for verify_payment."""

    def _verify(self, subscription, **kwargs):
        params = {
            "subscription_id": subscription.pk,
            "payment_id": "ch_1",
            "order_id": "pi_checkout",
            "signature": "pi_checkout_secret",
        }
        params.update(kwargs)
        return verify_payment(**params)

    def test_invalid_signature_rejected(self, mock_gateway) -> None:
        subscription, invoice = pending_subscription()
        mock_gateway.get_checkout.return_value = GatewayCheckoutFactory(payment__id="ch_1")

        with pytest.raises(InvalidSignatureError):
            self._verify(subscription, signature="not-a-signature")

        invoice.refresh_from_db()
        assert invoice.payment_status == Invoice.Status.PENDING
        assert not PaymentTransaction.objects.exists()

    def test_empty_signature_rejected(self, mock_gateway) -> None:
        subscription, _ = pending_subscription()
        mock_gateway.get_checkout.return_value = GatewayCheckoutFactory(client_secrets=("",))

        with pytest.raises(InvalidSignatureError):
            self._verify(subscription, signature="")

    def test_valid_payment_activates_subscription(self, mock_gateway) -> None:
        subscription, invoice = pending_subscription()
        mock_gateway.get_checkout.return_value = GatewayCheckoutFactory(payment__id="ch_1")

        result = self._verify(subscription)

        mock_gateway.get_checkout.assert_called_once_with("pi_checkout")
        assert result.applied is True
        assert result.invoice.payment_status == Invoice.Status.PAID
        assert result.invoice.gateway_payment_id == "ch_1"
        assert result.invoice.invoice_number.startswith("INV-")
        assert result.invoice.paid_at is not None
        subscription.refresh_from_db()
        assert subscription.status == Subscription.Status.ACTIVE
        assert subscription.current_period_end == result.invoice.billing_period_end
        assert get_entitlement(subscription.subscriber).has_access is True
        row = PaymentTransaction.objects.get()
        assert row.event_type == LedgerEventType.PAYMENT_VERIFIED
        assert row.source == PaymentTransaction.Source.VERIFICATION
        assert row.gateway_payment_id == "ch_1"

    def test_records_gateway_payment_id_not_reported_one(self, mock_gateway) -> None:
        """The invoice carries the id webhooks will use, whatever the client sent."""
        subscription, _ = pending_subscription()
        mock_gateway.get_checkout.return_value = GatewayCheckoutFactory(payment__id="ch_real")

        result = self._verify(subscription, payment_id="pi_checkout")

        assert result.invoice.gateway_payment_id == "ch_real"
        row = PaymentTransaction.objects.get()
        assert row.gateway_payment_id == "ch_real"
        assert row.payload == {"reported_payment_id": "pi_checkout"}

    def test_uncaptured_payment_not_applied(self, mock_gateway) -> None:
        subscription, invoice = pending_subscription()
        mock_gateway.get_checkout.return_value = GatewayCheckoutFactory(
            payment__status=PaymentState.CREATED
        )

        result = self._verify(subscription)

        assert result.applied is False
        invoice.refresh_from_db()
        assert invoice.payment_status == Invoice.Status.PENDING
        subscription.refresh_from_db()
        assert subscription.status == Subscription.Status.PAYMENT_PENDING
        assert PaymentTransaction.objects.get().status == PaymentState.CREATED

    def test_checkout_without_payment_not_applied(self, mock_gateway) -> None:
        subscription, invoice = pending_subscription()
        mock_gateway.get_checkout.return_value = GatewayCheckoutFactory(payment=None)

        result = self._verify(subscription)

        assert result.applied is False
        invoice.refresh_from_db()
        assert invoice.payment_status == Invoice.Status.PENDING

    def test_amount_mismatch_not_applied(self, mock_gateway) -> None:
        subscription, invoice = pending_subscription()
        mock_gateway.get_checkout.return_value = GatewayCheckoutFactory(payment__amount=100)

        result = self._verify(subscription)

        assert result.applied is False
        invoice.refresh_from_db()
        assert invoice.payment_status == Invoice.Status.PENDING

    def test_verification_is_idempotent(self, mock_gateway) -> None:
        subscription, _ = pending_subscription()
        mock_gateway.get_checkout.return_value = GatewayCheckoutFactory(payment__id="ch_1")

        first = self._verify(subscription)
        second = self._verify(subscription)

        assert first.applied is True
        assert second.applied is False
        assert second.invoice.invoice_number == first.invoice.invoice_number
        assert Invoice.objects.filter(payment_status=Invoice.Status.PAID).count() == 1
        assert PaymentTransaction.objects.count() == 2

    def test_gateway_unavailable_propagates(self, mock_gateway) -> None:
        subscription, invoice = pending_subscription()
        mock_gateway.get_checkout.side_effect = GatewayUnavailableError(
            "timeout", operation="get_checkout"
        )

        with pytest.raises(GatewayUnavailableError):
            self._verify(subscription)

        invoice.refresh_from_db()
        assert invoice.payment_status == Invoice.Status.PENDING

    def test_unknown_subscription(self, mock_gateway) -> None:
        with pytest.raises(SubscriptionNotFoundError):
            verify_payment(
                subscription_id=999999,
                payment_id="ch_1",
                order_id="pi_checkout",
                signature="pi_checkout_secret",
            )

        mock_gateway.get_checkout.assert_not_called()

    def test_other_subscribers_subscription_not_found(self, mock_gateway) -> None:
        subscription, _ = pending_subscription()

        with pytest.raises(SubscriptionNotFoundError):
            self._verify(subscription, subscriber=UserFactory())

    def test_unknown_order(self, mock_gateway) -> None:
        subscription, _ = pending_subscription()

        with pytest.raises(InvoiceNotFoundError):
            self._verify(subscription, order_id="pi_other", signature="pi_other_secret")

    def test_recurring_verification_then_first_charge_webhook(self, mock_gateway) -> None:
        """The first mandate charge is applied once, whichever path reports it."""
        subscription = SubscriptionFactory(
            status=Subscription.Status.PAYMENT_PENDING,
            recurring=True,
            mandate_status=Subscription.MandateStatus.CREATED,
        )
        mandate_id = subscription.gateway_subscription_id
        InvoiceFactory(subscription=subscription, gateway_order_id=mandate_id)
        mock_gateway.get_checkout.return_value = GatewayCheckoutFactory(
            order_id=mandate_id,
            payment__id="in_first",
            payment__order_id=None,
            payment__subscription_id=mandate_id,
        )

        verified = self._verify(
            subscription,
            payment_id="pi_from_client",
            order_id=mandate_id,
            signature=f"{mandate_id}_secret",
        )
        subscription.refresh_from_db()
        period_end = subscription.current_period_end
        charged = process_gateway_event(
            GatewayEventType.SUBSCRIPTION_CHARGED,
            {
                "payment": {
                    "id": "in_first",
                    "status": "captured",
                    "amount": 19900,
                    "currency": "inr",
                    "subscription_id": mandate_id,
                },
                "subscription": {"id": mandate_id, "status": ""},
            },
        )

        assert verified.applied is True
        assert verified.invoice.gateway_payment_id == "in_first"
        assert charged.applied is False
        subscription.refresh_from_db()
        assert subscription.current_period_end == period_end
        assert subscription.invoices.count() == 1

    def test_side_effects_run_after_commit(
        self, mock_gateway, django_capture_on_commit_callbacks
    ) -> None:
        subscription, invoice = pending_subscription()
        mock_gateway.get_checkout.return_value = GatewayCheckoutFactory(payment__id="ch_1")

        with (
            patch("apps.billing.side_effects.log_invoice_document") as mock_render,
            patch("apps.billing.side_effects.log_payment_notification") as mock_notify,
        ):
            mock_render.return_value = "https://files.example.com/invoice.pdf"
            with django_capture_on_commit_callbacks(execute=True) as callbacks:
                self._verify(subscription)

        assert len(callbacks) == 1
        mock_render.assert_called_once()
        mock_notify.assert_called_once()
        invoice.refresh_from_db()
        assert invoice.document_url == "https://files.example.com/invoice.pdf"

    def test_side_effect_failure_does_not_undo_payment(
        self, mock_gateway, django_capture_on_commit_callbacks
    ) -> None:
        subscription, invoice = pending_subscription()
        mock_gateway.get_checkout.return_value = GatewayCheckoutFactory(payment__id="ch_1")

        with (
            patch(
                "apps.billing.side_effects.log_invoice_document",
                side_effect=RuntimeError("renderer down"),
            ),
            patch("apps.billing.side_effects.log_payment_notification") as mock_notify,
            django_capture_on_commit_callbacks(execute=True),
        ):
            self._verify(subscription)

        invoice.refresh_from_db()
        assert invoice.payment_status == Invoice.Status.PAID
        mock_notify.assert_called_once()


@pytest.mark.django_db
class TestApplyCapturedPayment:
    """Tests for the shared captured-payment transition."""

    def test_future_period_start_is_kept(self) -> None:
        """Payment made before the carried-over period starts does not shorten it."""
        start = timezone.now() + timedelta(days=5)
        subscription = SubscriptionFactory(
            status=Subscription.Status.PAYMENT_PENDING, start_date=start
        )
        invoice = InvoiceFactory(subscription=subscription)

        applied = apply_captured_payment(
            invoice, payment_id="ch_1", paid_at=timezone.now(), source="verification"
        )

        assert applied is True
        subscription.refresh_from_db()
        assert subscription.current_period_start == start
        assert subscription.current_period_end == start + timedelta(days=30)

    def test_period_starts_at_payment_time(self) -> None:
        subscription = SubscriptionFactory(
            status=Subscription.Status.PAYMENT_PENDING,
            start_date=timezone.now() - timedelta(hours=2),
        )
        invoice = InvoiceFactory(subscription=subscription)
        paid_at = timezone.now() - timedelta(hours=1)

        apply_captured_payment(invoice, payment_id="ch_1", paid_at=paid_at, source="webhook")

        invoice.refresh_from_db()
        assert invoice.billing_period_start == paid_at
        assert invoice.billing_period_end == paid_at + timedelta(days=30)

    def test_payment_already_used_elsewhere(self) -> None:
        InvoiceFactory(payment_status=Invoice.Status.PAID, gateway_payment_id="ch_used")
        subscription, invoice = pending_subscription()

        applied = apply_captured_payment(
            invoice, payment_id="ch_used", paid_at=timezone.now(), source="webhook"
        )

        assert applied is False
        invoice.refresh_from_db()
        subscription.refresh_from_db()
        assert invoice.payment_status == Invoice.Status.PENDING
        assert subscription.status == Subscription.Status.PAYMENT_PENDING

    def test_payment_failed_subscription_reactivated(self) -> None:
        subscription = SubscriptionFactory(
            status=Subscription.Status.PAYMENT_FAILED, auto_charge_failures=2
        )
        invoice = InvoiceFactory(subscription=subscription, payment_status=Invoice.Status.FAILED)

        apply_captured_payment(invoice, payment_id="ch_1", paid_at=timezone.now(), source="webhook")

        subscription.refresh_from_db()
        assert subscription.status == Subscription.Status.ACTIVE
        assert subscription.auto_charge_failures == 0

    def test_renewal_extends_active_subscription(self) -> None:
        subscription = SubscriptionFactory(status=Subscription.Status.ACTIVE, recurring=True)
        start = subscription.current_period_end
        invoice = InvoiceFactory(
            subscription=subscription,
            billing_period_start=start,
            billing_period_end=start + timedelta(days=30),
        )

        apply_captured_payment(
            invoice,
            payment_id="in_renewal",
            paid_at=timezone.now(),
            source="webhook",
            period=(start, start + timedelta(days=30)),
        )

        subscription.refresh_from_db()
        assert subscription.status == Subscription.Status.ACTIVE
        assert subscription.current_period_start == start
        assert subscription.current_period_end == start + timedelta(days=30)
        assert subscription.next_billing_date == start + timedelta(days=30)

    def test_cancelled_subscription_stays_cancelled(self) -> None:
        subscription = SubscriptionFactory(status=Subscription.Status.CANCELLED)
        invoice = InvoiceFactory(subscription=subscription)

        apply_captured_payment(invoice, payment_id="ch_1", paid_at=timezone.now(), source="webhook")

        subscription.refresh_from_db()
        invoice.refresh_from_db()
        assert invoice.payment_status == Invoice.Status.PAID
        assert subscription.status == Subscription.Status.CANCELLED

    def test_activation_conflict_leaves_other_subscription_alone(self) -> None:
        user = UserFactory()
        active = SubscriptionFactory(subscriber=user, status=Subscription.Status.ACTIVE)
        stale = SubscriptionFactory(subscriber=user, status=Subscription.Status.INACTIVE)
        invoice = InvoiceFactory(subscription=stale, payment_status=Invoice.Status.CANCELLED)

        applied = apply_captured_payment(
            invoice, payment_id="ch_late", paid_at=timezone.now(), source="reconciliation"
        )

        assert applied is True
        stale.refresh_from_db()
        active.refresh_from_db()
        assert stale.status == Subscription.Status.INACTIVE
        assert active.status == Subscription.Status.ACTIVE
