"""Polar webhook event handlers — reconcile subscription lifecycle events.

Handlers take the decoded ``data`` object of an event envelope and return the
subscription row they wrote together with whether it was created, or None
when the event maps to no store mutation. Store errors propagate so the
receiver can answer with a failure and let Polar redeliver.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

from pydantic import TypeAdapter, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.subscription import (
    PLAN_PREMIUM,
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    Subscription,
)
from app.models.user import User
from app.services.subscription_service import (
    get_user_by_email,
    mark_cancelled,
    upsert_subscription,
)

logger = logging.getLogger(__name__)

HandlerResult = tuple[Subscription, bool] | None
EventHandler = Callable[[AsyncSession, dict[str, Any]], Awaitable[HandlerResult]]

_datetime_adapter = TypeAdapter(datetime)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _to_naive_utc(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (or Unix timestamp) into naive UTC."""
    if value in (None, ""):
        return None
    parsed = _datetime_adapter.validate_python(value)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _email_at(data: dict[str, Any], *path: str) -> str | None:
    node: Any = data
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    if isinstance(node, str) and node.strip():
        return node.strip()
    return None


def extract_customer_email(data: dict[str, Any]) -> str | None:
    """Find the customer email in a webhook ``data`` object.

    Polar nests the customer differently depending on the event, so the
    locations are tried in this order:

    1. ``data.customer.email``
    2. ``data.subscription.customer.email``
    3. ``data.customer_email``

    Returns None when none of them holds a non-blank string.
    """
    return (
        _email_at(data, "customer", "email")
        or _email_at(data, "subscription", "customer", "email")
        or _email_at(data, "customer_email")
    )


def _subscription_fields(data: dict[str, Any]) -> dict[str, Any]:
    """Subscription attributes live under ``data.subscription`` or on ``data`` itself."""
    nested = data.get("subscription")
    return nested if isinstance(nested, dict) else data


def map_subscription_status(provider_status: Any) -> str:
    """Only an ``active`` provider subscription entitles; everything else is cancelled."""
    return STATUS_ACTIVE if provider_status == "active" else STATUS_CANCELLED


async def _resolve_user(db: AsyncSession, data: dict[str, Any], event_type: str) -> User | None:
    email = extract_customer_email(data)
    if email is None:
        logger.error("No customer email in %s event (data id=%s)", event_type, data.get("id"))
        return None

    user = await get_user_by_email(db, email)
    if user is None:
        # Terminal: a retry cannot succeed until the user mapping is fixed.
        logger.warning("No user found for billing customer %s (%s), event dropped", email, event_type)
    return user


async def handle_subscription_upsert(db: AsyncSession, data: dict[str, Any]) -> HandlerResult:
    """Handle subscription.created / subscription.updated — last-write-wins upsert."""
    user = await _resolve_user(db, data, "subscription")
    if user is None:
        return None

    fields = _subscription_fields(data)
    status = map_subscription_status(fields.get("status"))
    try:
        starts_at = _to_naive_utc(fields.get("current_period_start")) or _utcnow()
        ends_at = _to_naive_utc(fields.get("current_period_end"))
    except ValidationError:
        # Terminal: redelivering the same payload cannot parse either.
        logger.error(
            "Unparseable billing period on subscription %s (%r .. %r), event dropped",
            fields.get("id"),
            fields.get("current_period_start"),
            fields.get("current_period_end"),
        )
        return None

    subscription, created = await upsert_subscription(
        db,
        user_id=user.id,
        plan=PLAN_PREMIUM,
        status=status,
        starts_at=starts_at,
        ends_at=ends_at,
        billing_subscription_id=fields.get("id"),
        billing_customer_id=fields.get("customer_id"),
    )
    logger.info(
        "Subscription %s for %s reconciled: status=%s (provider %r)",
        fields.get("id"),
        user.email,
        status,
        fields.get("status"),
    )
    return subscription, created


async def handle_subscription_cancelled(db: AsyncSession, data: dict[str, Any]) -> HandlerResult:
    """Handle subscription.cancelled — flip status, keep plan and dates as history."""
    user = await _resolve_user(db, data, "subscription.cancelled")
    if user is None:
        return None

    subscription = await mark_cancelled(db, user.id)
    if subscription is None:
        return None
    return subscription, False


async def handle_order_created(db: AsyncSession, data: dict[str, Any]) -> HandlerResult:
    """Handle order.created — informational; subscription events carry the state."""
    logger.info(
        "Order %s created for customer %s",
        data.get("id"),
        extract_customer_email(data) or data.get("customer_id"),
    )
    return None


EVENT_HANDLERS: dict[str, EventHandler] = {
    "subscription.created": handle_subscription_upsert,
    "subscription.updated": handle_subscription_upsert,
    "subscription.cancelled": handle_subscription_cancelled,
    # Polar's API spells it with one "l"; revocation ends access immediately.
    "subscription.canceled": handle_subscription_cancelled,
    "subscription.revoked": handle_subscription_cancelled,
    "order.created": handle_order_created,
}
