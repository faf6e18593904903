"""Billing API endpoints — entitlements, gate, Polar checkout, cancellation and portal."""

import logging
from collections.abc import AsyncIterator, Awaitable, Callable

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from sse_starlette.sse import EventSourceResponse
from starlette.requests import Request

from app.api.deps import (
    get_current_active_user,
    get_db,
    get_optional_user,
    load_entitlements,
)
from app.billing.checkout import start_checkout
from app.billing.dependencies import UPGRADE_URL
from app.billing.entitlements import EntitlementReader, EntitlementSnapshot
from app.billing.gate import GateView, decide_gate
from app.billing.plans import PLANS
from app.billing.polar_client import (
    BillingConfigurationError,
    BillingProviderError,
    create_portal_session,
)
from app.models.user import User
from app.schemas.billing import (
    CancelResponse,
    CheckoutResponse,
    EntitlementResponse,
    GateResponse,
    PlanResponse,
    PlansListResponse,
    PortalResponse,
    SubscriptionRecord,
)
from app.services.subscription_events import (
    SubscriptionChange,
    SubscriptionChangeFeed,
    get_change_feed,
)
from app.services.subscription_service import get_subscription, mark_cancelled

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["billing"])

# Seconds between disconnect checks while the event stream is idle.
_STREAM_POLL_SECONDS = 15.0


def _entitlement_response(snapshot: EntitlementSnapshot) -> EntitlementResponse:
    return EntitlementResponse(
        subscription=snapshot.record,
        has_active_subscription=snapshot.has_active_subscription,
        has_active_trial=snapshot.has_active_trial,
        can_use_gated_feature=snapshot.can_use_gated_feature,
        trial_days_remaining=snapshot.trial_days_remaining,
    )


def _subscription_event(reader: EntitlementReader) -> dict[str, str]:
    return {
        "event": "subscription",
        "data": _entitlement_response(reader.snapshot()).model_dump_json(),
    }


async def entitlement_events(
    reader: EntitlementReader,
    is_disconnected: Callable[[], Awaitable[bool]],
    poll_seconds: float = _STREAM_POLL_SECONDS,
) -> AsyncIterator[dict[str, str]]:
    """Yield the reader's entitlements now and after every pushed change.

    Takes over the reader's feed registration (attaching if it is not yet
    attached) and releases it when the generator ends. Changes applied
    before the first event are already part of the current state.
    """
    reader.attach()
    try:
        yield _subscription_event(reader)
        while not await is_disconnected():
            if not await reader.wait_for_change(poll_seconds):
                continue
            logger.debug("Streaming subscription change to user %s", reader.user_id)
            yield _subscription_event(reader)
    finally:
        reader.detach()


@router.get("/plans", response_model=PlansListResponse)
async def list_plans() -> PlansListResponse:
    """List available plans (public — no auth required)."""
    return PlansListResponse(
        plans=[
            PlanResponse(
                name=p.name,
                display_name=p.display_name,
                price_monthly=p.price_monthly,
                currency=p.currency,
                features=list(p.features),
                includes_consultation=p.includes_consultation,
            )
            for p in PLANS.values()
        ]
    )


@router.get("/subscription", response_model=EntitlementResponse)
async def get_entitlement_status(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> EntitlementResponse:
    """Current subscription record and the entitlements derived from it."""
    reader = await load_entitlements(db, current_user)
    return _entitlement_response(reader.snapshot())


@router.get("/subscription/events")
async def stream_entitlement_status(
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    feed: SubscriptionChangeFeed = Depends(get_change_feed),
) -> EventSourceResponse:
    """Stream entitlements via SSE, pushing a new event whenever the record changes."""
    # Attached before loading; the stream takes the registration over.
    reader = await load_entitlements(db, current_user, feed)
    return EventSourceResponse(entitlement_events(reader, request.is_disconnected))


@router.get("/gate", response_model=GateResponse)
async def get_gate(
    db: AsyncSession = Depends(get_db),
    user: User | None = Depends(get_optional_user),
) -> GateResponse:
    """Decide what to render in front of the AI consultation feature."""
    if user is None:
        decision = decide_gate(user_present=False, loading=False, record=None)
    else:
        reader = EntitlementReader(user.id)
        try:
            await reader.load(db)
        except Exception:
            logger.warning("Gate shows load failure for user %s", user.id)
        decision = decide_gate(
            user_present=True,
            loading=reader.loading,
            record=reader.record,
            error=reader.error,
        )

    return GateResponse(
        view=decision.view.value,
        trial_days_remaining=decision.trial_days_remaining,
        upgrade_url=UPGRADE_URL if decision.view is GateView.PAYWALL else None,
    )


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    current_user: User = Depends(get_current_active_user),
) -> CheckoutResponse:
    """Create a Polar checkout for the premium plan and return its URL."""
    try:
        checkout_url = await start_checkout(current_user.email, current_user.name)
    except BillingConfigurationError as e:
        logger.error("Checkout misconfigured: %s", e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
        ) from e
    except BillingProviderError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=str(e),
        ) from e

    return CheckoutResponse(checkout_url=checkout_url)


@router.post("/cancel", response_model=CancelResponse)
async def cancel_subscription(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    feed: SubscriptionChangeFeed = Depends(get_change_feed),
) -> CancelResponse:
    """Mark the caller's subscription cancelled; plan and dates stay as history."""
    subscription = await mark_cancelled(db, current_user.id)
    if subscription is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No subscription to cancel.",
        )

    record = SubscriptionRecord.model_validate(subscription)
    await db.commit()
    feed.publish(SubscriptionChange.upserted(record, created=False))
    logger.info("User %s requested cancellation", current_user.id)
    return CancelResponse(subscription=record)


@router.post("/portal", response_model=PortalResponse)
async def create_portal(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> PortalResponse:
    """Create a Polar customer portal session for subscription management."""
    subscription = await get_subscription(db, current_user.id)

    if subscription is None or not subscription.billing_customer_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No billing customer found. Subscribe first.",
        )

    try:
        session = await create_portal_session(subscription.billing_customer_id)
    except BillingProviderError as e:
        logger.error("Polar portal error: %s", e)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=str(e),
        ) from e

    return PortalResponse(portal_url=session.customer_portal_url)
