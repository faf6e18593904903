"""Async Polar API wrapper and webhook verification for the consultation app."""

import base64
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

from polar_sdk import Polar, models
from standardwebhooks.webhooks import Webhook, WebhookVerificationError

from app.config import settings

logger = logging.getLogger(__name__)

# Errors the generated Polar SDK raises for failed API calls.
_PROVIDER_ERRORS = (models.SDKError, models.HTTPValidationError)


class BillingError(Exception):
    """Base class for billing failures surfaced to API callers."""


class BillingConfigurationError(BillingError):
    """A required billing setting (product id, secret, token) is missing."""


class BillingProviderError(BillingError):
    """Polar rejected or failed a request; message carries the provider's reason."""


class WebhookVerificationFailed(BillingError):
    """Webhook signature, timestamp or headers did not verify."""


@lru_cache(maxsize=1)
def get_polar_client() -> Polar:
    """Create the Polar SDK client once per process."""
    return Polar(
        access_token=settings.polar_access_token,
        server=settings.polar_environment,
    )


async def get_customer(email: str) -> Any | None:
    """Return the first Polar customer registered with ``email``, if any."""
    client = get_polar_client()
    logger.info("Looking up Polar customer for %s", email)
    try:
        response = await client.customers.list_async(email=email, limit=1)
    except _PROVIDER_ERRORS as e:
        raise BillingProviderError(f"Customer lookup failed: {e}") from e
    items = response.result.items if response is not None else []
    return items[0] if items else None


async def create_customer(email: str, name: str) -> Any:
    """Create a Polar customer for ``email``."""
    client = get_polar_client()
    logger.info("Creating Polar customer for %s", email)
    try:
        customer = await client.customers.create_async(
            request={
                "email": email,
                "name": name,
                "metadata": {"source": "web_app"},
            }
        )
    except _PROVIDER_ERRORS as e:
        raise BillingProviderError(f"Customer creation failed: {e}") from e
    logger.info("Created Polar customer %s for %s", customer.id, email)
    return customer


async def get_or_create_customer(email: str, name: str | None = None) -> Any:
    """Look up the customer by email, creating one when none exists.

    ``name`` falls back to the local part of the email address.
    """
    existing = await get_customer(email)
    if existing is not None:
        return existing

    try:
        return await create_customer(email, name or email.split("@")[0])
    except BillingProviderError as e:
        # Lost a race with a concurrent checkout for the same email.
        if "already exists" not in str(e):
            raise
        logger.info("Polar customer for %s already exists, fetching it", email)
        existing = await get_customer(email)
        if existing is None:
            raise
        return existing


async def create_checkout_session(
    customer_id: str,
    product_id: str,
    success_url: str,
    customer_email: str,
) -> Any:
    """Create a Polar hosted checkout for a single product."""
    client = get_polar_client()
    logger.info("Creating checkout for customer %s, product %s", customer_id, product_id)
    try:
        return await client.checkouts.create_async(
            request={
                "products": [product_id],
                "customer_id": customer_id,
                "success_url": success_url,
                "metadata": {"customer_email": customer_email, "source": "web_app"},
            }
        )
    except _PROVIDER_ERRORS as e:
        raise BillingProviderError(str(e)) from e


async def create_portal_session(customer_id: str) -> Any:
    """Create a Polar customer session whose portal URL lets the user manage billing."""
    client = get_polar_client()
    logger.info("Creating customer portal session for customer %s", customer_id)
    try:
        return await client.customer_sessions.create_async(
            request={"customer_id": customer_id}
        )
    except _PROVIDER_ERRORS as e:
        raise BillingProviderError(str(e)) from e


def _webhook_verifier() -> Webhook:
    if not settings.polar_webhook_secret:
        raise BillingConfigurationError("POLAR_WEBHOOK_SECRET is not configured")
    # Polar signs with the raw secret; Standard Webhooks expects it base64-encoded.
    secret = base64.b64encode(settings.polar_webhook_secret.encode("utf-8")).decode("ascii")
    return Webhook(secret)


def construct_webhook_event(payload: bytes, headers: Mapping[str, str]) -> dict[str, Any]:
    """Verify a Polar webhook delivery and return its decoded JSON envelope.

    Raises:
        WebhookVerificationFailed: missing headers, stale timestamp, bad signature
            or a body that is not UTF-8.
        ValueError: the verified body is not a JSON object.
    """
    verifier = _webhook_verifier()
    try:
        event = verifier.verify(payload, dict(headers))
    except WebhookVerificationError as e:
        raise WebhookVerificationFailed(str(e)) from e
    except UnicodeDecodeError as e:
        # The body is decoded before the signature is checked.
        raise WebhookVerificationFailed("Payload is not valid UTF-8") from e
    if not isinstance(event, dict) or not isinstance(event.get("type"), str):
        raise ValueError("Webhook payload must be an object with a string 'type'")
    return event


def sign_webhook_payload(msg_id: str, payload: str, timestamp: datetime | None = None) -> dict[str, str]:
    """Build the Standard Webhooks headers Polar would send for ``payload``.

    Used to replay deliveries locally and in tests.
    """
    timestamp = timestamp or datetime.now(timezone.utc)
    signature = _webhook_verifier().sign(msg_id, timestamp, payload)
    return {
        "webhook-id": msg_id,
        "webhook-timestamp": str(int(timestamp.timestamp())),
        "webhook-signature": signature,
    }
