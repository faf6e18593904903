"""Checkout initiation — turn a user's email into a hosted Polar checkout URL."""

import logging

from app.billing.plans import premium_product_id
from app.billing.polar_client import (
    BillingConfigurationError,
    BillingProviderError,
    create_checkout_session,
    get_or_create_customer,
)
from app.config import settings

logger = logging.getLogger(__name__)


async def start_checkout(user_email: str, name: str | None = None) -> str:
    """Return the Polar checkout URL the browser should be redirected to.

    Raises:
        BillingConfigurationError: the premium product id is not configured.
        BillingProviderError: customer or checkout creation failed at Polar.
    """
    product_id = premium_product_id()
    if not product_id:
        raise BillingConfigurationError(
            "POLAR_PREMIUM_PRODUCT_ID is not configured; cannot start checkout."
        )

    logger.info("Starting checkout for %s", user_email)
    try:
        customer = await get_or_create_customer(user_email, name)
        session = await create_checkout_session(
            customer_id=customer.id,
            product_id=product_id,
            success_url=settings.checkout_success_url,
            customer_email=user_email,
        )
    except BillingProviderError as e:
        logger.error("Checkout failed for %s: %s", user_email, e)
        raise BillingProviderError(f"Checkout session creation failed: {e}") from e

    if not getattr(session, "url", None):
        raise BillingProviderError("Checkout session creation failed: no checkout URL returned")

    logger.info("Checkout %s created for %s", getattr(session, "id", "?"), user_email)
    return session.url
