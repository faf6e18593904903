"""Plan definitions — what free and premium include and what premium costs."""

from dataclasses import dataclass

from app.config import settings
from app.models.subscription import PLAN_FREE, PLAN_PREMIUM


@dataclass(frozen=True)
class PlanInfo:
    """Catalogue entry for a subscription plan."""

    name: str
    display_name: str
    price_monthly: int  # in minor units of currency (KRW has none)
    currency: str
    features: tuple[str, ...]
    includes_consultation: bool


PLANS: dict[str, PlanInfo] = {
    PLAN_FREE: PlanInfo(
        name=PLAN_FREE,
        display_name="Free",
        price_monthly=0,
        currency="KRW",
        features=("AI tool gallery", "Favorites", "Basic search and filters"),
        includes_consultation=False,
    ),
    PLAN_PREMIUM: PlanInfo(
        name=PLAN_PREMIUM,
        display_name="Premium",
        price_monthly=9900,
        currency="KRW",
        features=(
            "Everything in Free",
            "Personalised AI consultation",
            "Expert-grade tool recommendations",
            "Consultation history",
            "Priority support",
        ),
        includes_consultation=True,
    ),
}


def get_plan(plan_name: str) -> PlanInfo:
    """Get plan info by name. Defaults to free if unknown."""
    return PLANS.get(plan_name, PLANS[PLAN_FREE])


def premium_product_id() -> str | None:
    """Polar product id for premium, or None when not configured."""
    return settings.polar_premium_product_id or None
