"""
Stripe client configuration.

Provides a configured Stripe client for billing operations.
"""

from types import ModuleType

import stripe

from config.settings.base import settings

# Pinned so subscription payloads keep top-level current_period_end and
# latest_invoice.payment_intent stays expandable
STRIPE_API_VERSION = "2024-06-20"

# Network configuration
# Retries are safe due to automatic idempotency key generation.
STRIPE_MAX_NETWORK_RETRIES = 2


def configure_stripe() -> None:
    """Configure Stripe API with settings."""
    stripe.api_key = settings.STRIPE_SECRET_KEY
    stripe.api_version = STRIPE_API_VERSION
    stripe.max_network_retries = STRIPE_MAX_NETWORK_RETRIES
    stripe.set_app_info("billing-engine")


def get_stripe() -> ModuleType:
    """
    Get configured Stripe module.

    Ensures Stripe is configured before use.
    """
    configure_stripe()
    return stripe
