"""Subscription model — plan, status and trial state per user."""

import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin

PLAN_FREE = "free"
PLAN_PREMIUM = "premium"
VALID_PLANS: set[str] = {PLAN_FREE, PLAN_PREMIUM}

STATUS_ACTIVE = "active"
STATUS_CANCELLED = "cancelled"
STATUS_EXPIRED = "expired"
STATUS_TRIAL = "trial"
VALID_STATUSES: set[str] = {STATUS_ACTIVE, STATUS_CANCELLED, STATUS_EXPIRED, STATUS_TRIAL}


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Tracks a user's plan, status and the Polar identifiers it maps to."""

    __tablename__ = "subscriptions"

    # One subscription per user; UNIQUE is the upsert conflict target
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )

    # Plan & status
    plan: Mapped[str] = mapped_column(String(50), nullable=False, server_default=PLAN_FREE)
    status: Mapped[str] = mapped_column(String(50), nullable=False, server_default=STATUS_ACTIVE)

    # Plan period (naive UTC); ends_at NULL means open-ended
    starts_at: Mapped[datetime] = mapped_column(nullable=False, server_default=func.now())
    ends_at: Mapped[datetime | None] = mapped_column(nullable=True)
    trial_ends_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Billing provider identifiers
    billing_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    billing_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Relationships
    user: Mapped["User"] = relationship(back_populates="subscription", lazy="selectin")  # type: ignore[name-defined]  # noqa: F821

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, user_id={self.user_id}, plan={self.plan}, status={self.status})>"
