"""Stripe SDK setup for the payment gateway adapter."""

import logging

import stripe

from src.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


def configure_stripe(settings: Settings | None = None) -> bool:
    """Configure the Stripe SDK from settings.

    Network retries are safe because every PaymentIntent and Refund request
    carries an idempotency key derived from the payment or refund id.

    Args:
        settings: Defaults to ``get_settings()``.

    Returns:
        bool: Whether a secret key was configured.
    """
    settings = settings or get_settings()
    if not settings.stripe_secret_key:
        logger.warning("Stripe secret key not configured. Online payments and refunds are disabled.")
        return False

    stripe.api_key = settings.stripe_secret_key
    stripe.max_network_retries = settings.stripe_max_network_retries
    stripe.set_app_info(settings.app_name)
    logger.info(
        "Stripe configured (%s mode, %d network retries)",
        "test" if settings.is_stripe_test_mode else "live",
        settings.stripe_max_network_retries,
    )
    return True


def get_stripe() -> stripe:
    """Get the configured Stripe module.

    Returns:
        stripe: The Stripe module with API key configured.

    Note:
        Stripe SDK uses module-level configuration, so this returns
        the stripe module itself. Ensure configure_stripe() has been
        called before using Stripe API calls.
    """
    return stripe
