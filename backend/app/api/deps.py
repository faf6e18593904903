"""Shared API dependencies — single import point for all routers.

Re-exports database session, authentication and entitlement dependencies so
that router modules can import everything they need from one place::

    from app.api.deps import get_db, get_current_active_user, require_gated_feature
"""

from app.auth.dependencies import (
    get_current_active_user,
    get_current_user,
    get_optional_user,
)
from app.billing.dependencies import (
    get_entitlements,
    load_entitlements,
    require_gated_feature,
)
from app.database import get_db
from app.services.subscription_events import get_change_feed

__all__ = [
    "get_db",
    "get_change_feed",
    "get_current_user",
    "get_current_active_user",
    "get_optional_user",
    "get_entitlements",
    "load_entitlements",
    "require_gated_feature",
]
