"""Gate decision — what a user sees in front of the consultation feature."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from app.billing.entitlements import (
    can_use_gated_feature,
    has_active_trial,
    trial_days_remaining,
    utcnow,
)
from app.schemas.billing import SubscriptionRecord


class GateView(str, Enum):
    LOGIN_PROMPT = "login_prompt"
    LOADING = "loading"
    LOAD_FAILED = "load_failed"
    PAYWALL = "paywall"
    PROTECTED = "protected"
    PROTECTED_WITH_TRIAL_BANNER = "protected_with_trial_banner"


@dataclass(frozen=True)
class GateDecision:
    view: GateView
    trial_days_remaining: int | None = None

    @property
    def allows_content(self) -> bool:
        return self.view in (GateView.PROTECTED, GateView.PROTECTED_WITH_TRIAL_BANNER)


def decide_gate(
    user_present: bool,
    loading: bool,
    record: SubscriptionRecord | None,
    error: str | None = None,
    now: datetime | None = None,
) -> GateDecision:
    """Evaluate the gate table.

    Anonymous users get the login prompt before anything else; a record that
    is still loading, or failed to load, never falls through to the paywall.
    """
    if not user_present:
        return GateDecision(GateView.LOGIN_PROMPT)
    if loading:
        return GateDecision(GateView.LOADING)
    if error is not None:
        return GateDecision(GateView.LOAD_FAILED)

    now = now or utcnow()
    if not can_use_gated_feature(record, now):
        return GateDecision(GateView.PAYWALL)
    if has_active_trial(record, now):
        return GateDecision(
            GateView.PROTECTED_WITH_TRIAL_BANNER,
            trial_days_remaining=trial_days_remaining(record, now),
        )
    return GateDecision(GateView.PROTECTED)
