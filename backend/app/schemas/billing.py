"""Pydantic v2 request/response schemas for billing endpoints."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict

# --- Shared ---


class SubscriptionRecord(BaseModel):
    """Detached snapshot of a ``subscriptions`` row."""

    id: uuid.UUID
    user_id: uuid.UUID
    plan: str
    status: str
    starts_at: datetime
    ends_at: datetime | None = None
    trial_ends_at: datetime | None = None
    billing_subscription_id: str | None = None
    billing_customer_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


# --- Response schemas ---


class PlanResponse(BaseModel):
    """Plan details for display."""

    name: str
    display_name: str
    price_monthly: int
    currency: str
    features: list[str]
    includes_consultation: bool


class PlansListResponse(BaseModel):
    """All available plans."""

    plans: list[PlanResponse]


class EntitlementResponse(BaseModel):
    """Subscription record plus the entitlements derived from it."""

    subscription: SubscriptionRecord | None
    has_active_subscription: bool
    has_active_trial: bool
    can_use_gated_feature: bool
    trial_days_remaining: int


class GateResponse(BaseModel):
    """What the client should render in front of a gated feature."""

    view: str
    trial_days_remaining: int | None = None
    upgrade_url: str | None = None


class CheckoutResponse(BaseModel):
    """Hosted checkout URL for a full-page redirect."""

    checkout_url: str


class CancelResponse(BaseModel):
    """Result of a user-initiated cancellation request."""

    subscription: SubscriptionRecord


class PortalResponse(BaseModel):
    """Polar customer portal URL returned to frontend."""

    portal_url: str
