"""
Payment gateway client.

The only module that knows Stripe's object shapes. Everything past this
boundary works with the dataclasses below and the event taxonomy in
apps.billing.constants.

Mapping:
    order      -> PaymentIntent (one-time upgrade)
    mandate    -> Subscription (recurring Pro plan)
    payment    -> Charge for orders, paid Invoice for mandates

External calls must NOT be inside database transactions.
"""

import hmac
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import stripe

from apps.billing.constants import GatewayEventType, PaymentState
from apps.billing.exceptions import GatewayUnavailableError
from apps.billing.stripe_client import get_stripe
from apps.core.logging import get_logger
from config.settings.base import settings

logger = get_logger(__name__)


@dataclass(frozen=True)
class GatewayOrder:
    id: str
    amount: int
    currency: str
    status: str
    client_secret: str = ""


@dataclass(frozen=True)
class GatewayMandate:
    id: str
    customer_id: str
    status: str
    start_at: datetime | None = None
    client_secret: str = ""


@dataclass(frozen=True)
class GatewayPayment:
    id: str
    status: PaymentState
    amount: int
    currency: str
    order_id: str | None = None
    subscription_id: str | None = None
    created_at: datetime | None = None
    method: str = ""
    error_description: str = ""

    @property
    def is_captured(self) -> bool:
        return self.status == PaymentState.CAPTURED


@dataclass(frozen=True)
class GatewayEvent:
    """A vendor event translated into the abstract taxonomy."""

    event_type: GatewayEventType
    payload: dict[str, Any] = field(default_factory=dict)


def _timestamp(value: int | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=UTC)


@dataclass(frozen=True)
class GatewayCheckout:
    """
    The gateway's view of one checkout.

    client_secrets are the secrets Stripe issued to the payer for this
    order; payment is the canonical payment it produced, if any.
    """

    order_id: str
    client_secrets: tuple[str, ...] = ()
    payment: GatewayPayment | None = None

    def issued(self, secret: str) -> bool:
        if not secret:
            return False
        return any(
            hmac.compare_digest(candidate, secret) for candidate in self.client_secrets if candidate
        )


@contextmanager
def _gateway_call(operation: str) -> Iterator[None]:
    try:
        yield
    except stripe.StripeError as e:
        logger.warning("gateway_call_failed", operation=operation, error=str(e))
        raise GatewayUnavailableError(str(e), operation=operation) from e


def _charge_state(charge: Any) -> PaymentState:
    if charge.get("refunded"):
        return PaymentState.REFUNDED
    match charge.get("status"):
        case "succeeded":
            return PaymentState.CAPTURED if charge.get("captured", True) else PaymentState.AUTHORIZED
        case "failed":
            return PaymentState.FAILED
        case _:
            return PaymentState.CREATED


def _invoice_state(invoice: Any) -> PaymentState:
    match invoice.get("status"):
        case "paid":
            return PaymentState.CAPTURED
        case "uncollectible" | "void":
            return PaymentState.FAILED
        case _:
            return PaymentState.CREATED


def _invoice_subscription_id(invoice: Any) -> str | None:
    # Older API versions put the subscription at the top level.
    if invoice.get("subscription"):
        return invoice["subscription"]
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return details.get("subscription")


def payment_from_charge(charge: Any) -> GatewayPayment:
    method_details = charge.get("payment_method_details") or {}
    return GatewayPayment(
        id=charge["id"],
        status=_charge_state(charge),
        amount=charge.get("amount", 0),
        currency=charge.get("currency", ""),
        order_id=charge.get("payment_intent"),
        subscription_id=(charge.get("metadata") or {}).get("gateway_subscription_id"),
        created_at=_timestamp(charge.get("created")),
        method=method_details.get("type", ""),
        error_description=charge.get("failure_message") or "",
    )


def payment_from_invoice(invoice: Any) -> GatewayPayment:
    paid_at = (invoice.get("status_transitions") or {}).get("paid_at")
    return GatewayPayment(
        id=invoice["id"],
        status=_invoice_state(invoice),
        amount=invoice.get("amount_paid") or invoice.get("amount_due", 0),
        currency=invoice.get("currency", ""),
        subscription_id=_invoice_subscription_id(invoice),
        created_at=_timestamp(paid_at or invoice.get("created")),
        method="mandate",
    )


class PaymentGateway:
    """Stripe-backed implementation of the gateway operations billing needs."""

    def create_customer(self, *, email: str, name: str, subscriber_id: int) -> str:
        stripe_module = get_stripe()
        with _gateway_call("create_customer"):
            customer = stripe_module.Customer.create(
                email=email,
                name=name or None,
                metadata={"subscriber_id": str(subscriber_id)},
            )
        logger.info("gateway_customer_created", customer_id=customer.id, subscriber_id=subscriber_id)
        return customer.id

    def create_order(
        self, *, amount: int, currency: str, reference: str, metadata: dict[str, str]
    ) -> GatewayOrder:
        """Create a single-payment order for a one-time upgrade."""
        stripe_module = get_stripe()
        with _gateway_call("create_order"):
            intent = stripe_module.PaymentIntent.create(
                amount=amount,
                currency=currency,
                description=reference,
                metadata={"reference": reference, **metadata},
                automatic_payment_methods={"enabled": True},
            )
        return GatewayOrder(
            id=intent.id,
            amount=intent.amount,
            currency=intent.currency,
            status=intent.status,
            client_secret=intent.client_secret or "",
        )

    def create_mandate_subscription(
        self,
        *,
        customer_id: str,
        start_at: datetime | None,
        metadata: dict[str, str],
    ) -> GatewayMandate:
        """
        Create a recurring mandate for the Pro plan.

        A future start_at defers the first charge so remaining paid time
        is not billed twice.
        """
        stripe_module = get_stripe()
        params: dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": settings.STRIPE_PRO_PRICE_ID}],
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "expand": ["latest_invoice.confirmation_secret", "pending_setup_intent"],
            "metadata": metadata,
        }
        if start_at is not None:
            params["trial_end"] = int(start_at.timestamp())
            params["proration_behavior"] = "none"

        with _gateway_call("create_mandate_subscription"):
            subscription = stripe_module.Subscription.create(**params)

        client_secret = ""
        latest_invoice = subscription.get("latest_invoice")
        if latest_invoice and latest_invoice.get("confirmation_secret"):
            client_secret = latest_invoice["confirmation_secret"]["client_secret"]
        elif subscription.get("pending_setup_intent"):
            # A deferred first charge is authorised through a SetupIntent.
            client_secret = subscription["pending_setup_intent"]["client_secret"]

        return GatewayMandate(
            id=subscription.id,
            customer_id=customer_id,
            status=subscription.status,
            start_at=start_at,
            client_secret=client_secret,
        )

    def get_checkout(self, order_id: str) -> GatewayCheckout:
        """
        Look up an order or mandate as the gateway sees it.

        For a mandate the payment is its latest non-zero invoice, so the id
        matches what invoice.paid webhooks carry.
        """
        stripe_module = get_stripe()
        if order_id.startswith("sub_"):
            with _gateway_call("get_checkout"):
                mandate = stripe_module.Subscription.retrieve(
                    order_id,
                    expand=["latest_invoice.confirmation_secret", "pending_setup_intent"],
                )
            secrets = []
            payment = None
            invoice = mandate.get("latest_invoice")
            if invoice:
                secrets.append((invoice.get("confirmation_secret") or {}).get("client_secret"))
                if invoice.get("amount_due", 0) > 0:
                    payment = payment_from_invoice(invoice)
            setup_intent = mandate.get("pending_setup_intent")
            if setup_intent:
                secrets.append(setup_intent.get("client_secret"))
            return GatewayCheckout(
                order_id=order_id,
                client_secrets=tuple(secret for secret in secrets if secret),
                payment=payment,
            )

        with _gateway_call("get_checkout"):
            intent = stripe_module.PaymentIntent.retrieve(order_id, expand=["latest_charge"])
        charge = intent.get("latest_charge")
        return GatewayCheckout(
            order_id=order_id,
            client_secrets=(intent.get("client_secret") or "",),
            payment=payment_from_charge(charge) if charge else None,
        )

    def cancel_order(self, order_id: str) -> bool:
        """
        Cancel an unpaid order so it can no longer be confirmed.

        Returns False when the order already succeeded or is mid-payment.
        """
        stripe_module = get_stripe()
        with _gateway_call("cancel_order"):
            intent = stripe_module.PaymentIntent.retrieve(order_id)
            status = intent.get("status")
            if status == "canceled":
                return True
            if status in ("succeeded", "processing", "requires_capture"):
                return False
            stripe_module.PaymentIntent.cancel(order_id)
        logger.info("gateway_order_cancelled", gateway_order_id=order_id)
        return True

    def cancel_incomplete_mandate(self, subscription_id: str) -> bool:
        """
        Cancel a mandate that never started billing.

        A deferred mandate counts as started once the payer has saved a
        payment method on it. Returns False, leaving the mandate alone, when
        it has started.
        """
        stripe_module = get_stripe()
        with _gateway_call("cancel_incomplete_mandate"):
            mandate = stripe_module.Subscription.retrieve(subscription_id)
            status = mandate.get("status")
            if status in ("canceled", "incomplete_expired"):
                return True
            authenticated = bool(mandate.get("default_payment_method"))
            if status != "incomplete" and not (status == "trialing" and not authenticated):
                return False
            stripe_module.Subscription.cancel(subscription_id)
        logger.info("gateway_mandate_cancelled", gateway_subscription_id=subscription_id)
        return True

    def get_payment(self, payment_id: str) -> GatewayPayment:
        stripe_module = get_stripe()
        with _gateway_call("get_payment"):
            if payment_id.startswith("in_"):
                return payment_from_invoice(stripe_module.Invoice.retrieve(payment_id))
            return payment_from_charge(stripe_module.Charge.retrieve(payment_id))

    def get_order_payments(self, order_id: str) -> list[GatewayPayment]:
        stripe_module = get_stripe()
        with _gateway_call("get_order_payments"):
            charges = stripe_module.Charge.list(payment_intent=order_id, limit=100)
        return [payment_from_charge(charge) for charge in charges.auto_paging_iter()]

    def get_subscription_payments(self, subscription_id: str) -> list[GatewayPayment]:
        stripe_module = get_stripe()
        with _gateway_call("get_subscription_payments"):
            invoices = stripe_module.Invoice.list(subscription=subscription_id, limit=100)
        return [
            payment_from_invoice(invoice)
            for invoice in invoices.auto_paging_iter()
            if invoice.get("amount_due", 0) > 0
        ]

    def get_subscription(self, subscription_id: str) -> dict[str, Any]:
        stripe_module = get_stripe()
        with _gateway_call("get_subscription"):
            subscription = stripe_module.Subscription.retrieve(subscription_id)
        return {
            "id": subscription.id,
            "status": subscription.status,
            "paused": bool(subscription.get("pause_collection")),
            "cancel_at_period_end": subscription.get("cancel_at_period_end", False),
        }

    def pause_subscription(self, subscription_id: str, resume_at: datetime | None = None) -> None:
        stripe_module = get_stripe()
        pause_collection: dict[str, Any] = {"behavior": "void"}
        if resume_at is not None:
            pause_collection["resumes_at"] = int(resume_at.timestamp())
        with _gateway_call("pause_subscription"):
            stripe_module.Subscription.modify(subscription_id, pause_collection=pause_collection)

    def resume_subscription(self, subscription_id: str) -> None:
        stripe_module = get_stripe()
        with _gateway_call("resume_subscription"):
            stripe_module.Subscription.modify(subscription_id, pause_collection="")

    def cancel_subscription(self, subscription_id: str, *, at_cycle_end: bool = True) -> None:
        stripe_module = get_stripe()
        with _gateway_call("cancel_subscription"):
            if at_cycle_end:
                stripe_module.Subscription.modify(subscription_id, cancel_at_period_end=True)
            else:
                stripe_module.Subscription.cancel(subscription_id)


def get_gateway() -> PaymentGateway:
    return PaymentGateway()


# --- Vendor event translation ---


def _payment_payload(payment: GatewayPayment) -> dict[str, Any]:
    return {
        "id": payment.id,
        "status": str(payment.status),
        "amount": payment.amount,
        "currency": payment.currency,
        "order_id": payment.order_id,
        "subscription_id": payment.subscription_id,
        "created_at": int(payment.created_at.timestamp()) if payment.created_at else None,
        "method": payment.method,
        "error_description": payment.error_description,
    }


def _subscription_payload(subscription: Any) -> dict[str, Any]:
    return {"id": subscription["id"], "status": subscription.get("status", "")}


def translate_stripe_event(event: Any) -> GatewayEvent | None:
    """
    Translate a verified Stripe event into the abstract event taxonomy.

    Returns None for event types billing does not act on.
    """
    translated = _translate(event)
    if translated is not None:
        translated.payload["event_id"] = event.get("id")
    return translated


def _translate(event: Any) -> GatewayEvent | None:
    obj = event["data"]["object"]
    previous = event["data"].get("previous_attributes") or {}

    match event["type"]:
        case "charge.succeeded" | "charge.captured":
            payment = payment_from_charge(obj)
            event_type = (
                GatewayEventType.PAYMENT_CAPTURED
                if payment.is_captured
                else GatewayEventType.PAYMENT_AUTHORIZED
            )
            return GatewayEvent(event_type, {"payment": _payment_payload(payment)})

        case "charge.failed":
            payment = payment_from_charge(obj)
            return GatewayEvent(
                GatewayEventType.PAYMENT_FAILED, {"payment": _payment_payload(payment)}
            )

        case "invoice.paid" | "invoice.payment_failed":
            payment = payment_from_invoice(obj)
            if not payment.subscription_id or obj.get("amount_due", 0) == 0:
                return None
            event_type = (
                GatewayEventType.SUBSCRIPTION_CHARGED
                if event["type"] == "invoice.paid"
                else GatewayEventType.SUBSCRIPTION_HALTED
            )
            return GatewayEvent(
                event_type,
                {
                    "payment": _payment_payload(payment),
                    "subscription": {"id": payment.subscription_id, "status": ""},
                },
            )

        case "customer.subscription.created":
            return GatewayEvent(
                GatewayEventType.SUBSCRIPTION_AUTHENTICATED,
                {"subscription": _subscription_payload(obj)},
            )

        case "customer.subscription.updated":
            if "pause_collection" in previous:
                event_type = (
                    GatewayEventType.SUBSCRIPTION_PAUSED
                    if obj.get("pause_collection")
                    else GatewayEventType.SUBSCRIPTION_RESUMED
                )
            elif "status" in previous and obj.get("status") == "active":
                event_type = GatewayEventType.SUBSCRIPTION_ACTIVATED
            else:
                return None
            return GatewayEvent(event_type, {"subscription": _subscription_payload(obj)})

        case "customer.subscription.paused":
            return GatewayEvent(
                GatewayEventType.SUBSCRIPTION_PAUSED, {"subscription": _subscription_payload(obj)}
            )

        case "customer.subscription.resumed":
            return GatewayEvent(
                GatewayEventType.SUBSCRIPTION_RESUMED, {"subscription": _subscription_payload(obj)}
            )

        case "customer.subscription.deleted":
            return GatewayEvent(
                GatewayEventType.SUBSCRIPTION_CANCELLED,
                {"subscription": _subscription_payload(obj)},
            )

        case _:
            return None
