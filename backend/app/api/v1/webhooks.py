"""Polar webhook endpoint — receives and reconciles billing events."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.polar_client import (
    BillingConfigurationError,
    WebhookVerificationFailed,
    construct_webhook_event,
)
from app.billing.webhooks import EVENT_HANDLERS
from app.database import get_db
from app.schemas.billing import SubscriptionRecord
from app.services.subscription_events import (
    SubscriptionChange,
    SubscriptionChangeFeed,
    get_change_feed,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])

WEBHOOK_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": (
        "authorization, x-client-info, apikey, content-type, "
        "webhook-id, webhook-signature, webhook-timestamp"
    ),
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}


@router.options("/polar")
async def polar_webhook_preflight() -> Response:
    """Answer pre-flight requests with permissive CORS headers."""
    return Response(status_code=status.HTTP_200_OK, headers=WEBHOOK_CORS_HEADERS)


@router.post("/polar")
async def polar_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    feed: SubscriptionChangeFeed = Depends(get_change_feed),
) -> dict[str, str]:
    """Receive and process Polar webhook events."""
    # 1. Raw body; the signature covers the exact bytes
    payload = await request.body()

    # 2. Verify signature before touching anything
    try:
        event = construct_webhook_event(payload, request.headers)
    except BillingConfigurationError as e:
        logger.error("Webhook received but %s", e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook verification is not configured",
        ) from e
    except WebhookVerificationFailed as e:
        logger.warning("Webhook signature verification failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid signature",
        ) from e
    except ValueError as e:
        logger.warning("Invalid webhook payload")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload",
        ) from e

    event_type = event["type"]
    msg_id = request.headers.get("webhook-id")

    # 3. Dispatch; unknown types are acknowledged so Polar stops retrying them
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info("Unhandled webhook event type: %s (id=%s)", event_type, msg_id)
        return {"status": "ignored"}

    data = event.get("data")
    if not isinstance(data, dict):
        data = {}

    logger.info("Processing webhook event: %s (id=%s)", event_type, msg_id)

    # 4. Handler + commit succeed or fail as a unit
    try:
        result = await handler(db, data)
        change = None
        if result is not None:
            subscription, created = result
            change = SubscriptionChange.upserted(
                SubscriptionRecord.model_validate(subscription), created
            )
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.exception("Error processing webhook event %s (id=%s)", event_type, msg_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from e

    # 5. Notify readers only after the write is durable
    if change is not None:
        feed.publish(change)

    return {"status": "processed"}
