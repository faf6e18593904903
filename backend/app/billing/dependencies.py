"""Gating dependencies — load entitlements and enforce them on protected routes."""

import logging

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import get_current_active_user
from app.billing.entitlements import EntitlementReader, EntitlementSnapshot
from app.database import get_db
from app.models.user import User
from app.services.subscription_events import SubscriptionChangeFeed

logger = logging.getLogger(__name__)

UPGRADE_URL = "/api/v1/billing/checkout"


async def load_entitlements(
    db: AsyncSession,
    user: User,
    feed: SubscriptionChangeFeed | None = None,
) -> EntitlementReader:
    """Load the user's subscription into a reader, mapping store failures to 503.

    With a ``feed`` the reader is attached before the load, and the caller
    owns that registration and must ``detach()`` it.
    """
    reader = EntitlementReader(user.id, feed)
    if feed is not None:
        reader.attach()
    try:
        await reader.load(db)
    except Exception as e:
        reader.detach()
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to load subscription, try again.",
        ) from e
    return reader


async def get_entitlements(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_active_user),
) -> EntitlementSnapshot:
    """Entitlements of the authenticated user at request time."""
    reader = await load_entitlements(db, user)
    return reader.snapshot()


async def require_gated_feature(
    entitlements: EntitlementSnapshot = Depends(get_entitlements),
) -> EntitlementSnapshot:
    """Raise 402 unless the user has an active premium subscription or trial."""
    if not entitlements.can_use_gated_feature:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "message": "AI consultation requires a premium subscription or an active trial.",
                "status": entitlements.record.status if entitlements.record else None,
                "upgrade_url": UPGRADE_URL,
            },
        )
    return entitlements
