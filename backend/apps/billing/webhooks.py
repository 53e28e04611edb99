"""
Stripe webhook ingress.

A plain Django view (not Django Ninja) because signature verification needs
the raw request body. Stripe events are translated into the gateway-neutral
taxonomy and handed to apps.billing.processor.
"""

import stripe
from django.http import HttpRequest, HttpResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST
from pydantic import ValidationError

from apps.billing.gateway import translate_stripe_event
from apps.billing.processor import process_gateway_event
from apps.billing.stripe_client import get_stripe
from apps.core.logging import bind_contextvars, clear_contextvars, get_logger
from config.settings.base import settings

logger = get_logger(__name__)


@csrf_exempt
@require_POST
def stripe_webhook(request: HttpRequest) -> HttpResponse:
    """
    Handle Stripe webhook events.

    Returns 400 for payloads that fail verification or validation, 500 when
    processing fails so Stripe retries with backoff, and 200 otherwise
    (including event types billing ignores).
    """
    payload = request.body
    sig_header = request.headers.get("Stripe-Signature")

    if not sig_header:
        logger.warning("stripe_webhook_missing_signature")
        return HttpResponse(status=400)

    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("stripe_webhook_secret_not_configured")
        return HttpResponse(status=500)

    get_stripe()
    try:
        event = stripe.Webhook.construct_event(
            payload,
            sig_header,
            settings.STRIPE_WEBHOOK_SECRET,
        )
    except ValueError as e:
        logger.warning("stripe_webhook_invalid_payload", error=str(e))
        return HttpResponse(status=400)
    except stripe.SignatureVerificationError as e:
        logger.warning("stripe_webhook_invalid_signature", error=str(e))
        return HttpResponse(status=400)

    bind_contextvars(correlation_id=event["id"], stripe_event_type=event["type"])
    try:
        translated = translate_stripe_event(event)
        if translated is None:
            logger.debug("stripe_webhook_unhandled_event", event_type=event["type"])
            return HttpResponse(status=200)

        process_gateway_event(translated.event_type, translated.payload)
    except ValidationError as e:
        # Redelivery would fail the same way.
        logger.warning("stripe_webhook_invalid_event", error_count=e.error_count())
        return HttpResponse(status=400)
    except Exception:
        logger.exception("stripe_webhook_handler_error")
        return HttpResponse(status=500)
    finally:
        clear_contextvars()

    return HttpResponse(status=200)
