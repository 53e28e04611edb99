"""
Post-payment side effects: invoice document rendering and notification.

Both collaborators are configured by dotted path and run only after the
payment transaction commits. A failure here is logged and never undoes
or blocks a committed payment.
"""

from collections.abc import Callable

from django.utils.module_loading import import_string

from apps.billing.models import Invoice
from apps.core.logging import get_logger
from config.settings.base import settings

logger = get_logger(__name__)


def log_invoice_document(invoice: Invoice) -> str | None:
    """Default renderer. Returns the document URL, or None when nothing was stored."""
    logger.info(
        "invoice_document_requested",
        invoice_id=invoice.id,
        invoice_number=invoice.invoice_number,
    )
    return None


def log_payment_notification(invoice: Invoice) -> None:
    """Default notifier."""
    logger.info(
        "payment_notification_requested",
        invoice_id=invoice.id,
        subscriber_id=invoice.subscriber_id,
    )


def _load(path: str) -> Callable:
    return import_string(path)


def dispatch_payment_side_effects(invoice_id: int) -> None:
    """
    Render and announce a paid invoice.

    Scheduled with transaction.on_commit by apply_captured_payment.
    """
    try:
        invoice = Invoice.objects.select_related("subscription").get(pk=invoice_id)
    except Invoice.DoesNotExist:
        logger.warning("billing_side_effect_invoice_missing", invoice_id=invoice_id)
        return

    try:
        document_url = _load(settings.BILLING_INVOICE_RENDERER)(invoice)
        if document_url:
            Invoice.objects.filter(pk=invoice.pk).update(document_url=document_url)
    except Exception:
        logger.exception("billing_side_effect_failed", effect="render_invoice", invoice_id=invoice_id)

    try:
        _load(settings.BILLING_PAYMENT_NOTIFIER)(invoice)
    except Exception:
        logger.exception("billing_side_effect_failed", effect="notify_payment", invoice_id=invoice_id)
