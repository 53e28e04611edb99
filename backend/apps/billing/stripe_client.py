"""
Stripe SDK configuration.

Only apps.billing.gateway and the webhook view touch the SDK directly.
"""

from types import ModuleType

import stripe

from config.settings.base import settings

STRIPE_API_VERSION = "2025-06-30.basil"

# Retries are safe: the SDK generates idempotency keys for POSTs.
STRIPE_MAX_NETWORK_RETRIES = 2


def configure_stripe() -> None:
    stripe.api_key = settings.STRIPE_SECRET_KEY
    stripe.api_version = STRIPE_API_VERSION
    stripe.max_network_retries = STRIPE_MAX_NETWORK_RETRIES


def get_stripe() -> ModuleType:
    """Get the Stripe module, configured from settings."""
    configure_stripe()
    return stripe
