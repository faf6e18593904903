"""Subscription service — reads and the upsert write path for user subscriptions."""

import logging
import uuid
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.subscription import STATUS_CANCELLED, Subscription
from app.models.user import User

logger = logging.getLogger(__name__)

# Columns overwritten on conflict; last write wins.
_UPSERT_COLUMNS = (
    "plan",
    "status",
    "starts_at",
    "ends_at",
    "trial_ends_at",
    "billing_subscription_id",
    "billing_customer_id",
)


def _insert_for(db: AsyncSession):
    """Pick the dialect-specific INSERT that supports ON CONFLICT."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Upsert is not supported on dialect {dialect!r}")


async def get_subscription(db: AsyncSession, user_id: uuid.UUID) -> Subscription | None:
    """Return the user's subscription row, or None for an implicit free user."""
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_user_by_email(db: AsyncSession, email: str) -> User | None:
    """Exact-match lookup used to map billing customers to users."""
    result = await db.execute(select(User).where(User.email == email))
    return result.scalar_one_or_none()


async def upsert_subscription(
    db: AsyncSession,
    user_id: uuid.UUID,
    plan: str,
    status: str,
    starts_at: datetime,
    ends_at: datetime | None = None,
    billing_subscription_id: str | None = None,
    billing_customer_id: str | None = None,
) -> tuple[Subscription, bool]:
    """Insert or overwrite the user's subscription in one atomic statement.

    Conflicts on ``user_id`` replace plan, status, period and billing ids
    unconditionally. ``trial_ends_at`` is cleared since the written status
    is never a trial. Returns the fresh row and whether it was created.
    """
    existed = (
        await db.execute(select(Subscription.id).where(Subscription.user_id == user_id))
    ).scalar_one_or_none() is not None

    insert = _insert_for(db)
    stmt = insert(Subscription).values(
        id=uuid.uuid4(),
        user_id=user_id,
        plan=plan,
        status=status,
        starts_at=starts_at,
        ends_at=ends_at,
        trial_ends_at=None,
        billing_subscription_id=billing_subscription_id,
        billing_customer_id=billing_customer_id,
    )
    set_ = {column: stmt.excluded[column] for column in _UPSERT_COLUMNS}
    set_["updated_at"] = func.now()
    stmt = stmt.on_conflict_do_update(index_elements=[Subscription.user_id], set_=set_)
    await db.execute(stmt)

    subscription = await get_subscription(db, user_id)
    if subscription is None:  # pragma: no cover - the statement above guarantees a row
        raise RuntimeError(f"Upsert for user {user_id} left no subscription row")

    logger.info(
        "Upserted subscription for user %s: plan=%s, status=%s, ends_at=%s (%s)",
        user_id,
        plan,
        status,
        ends_at,
        "updated" if existed else "created",
    )
    return subscription, not existed


async def mark_cancelled(db: AsyncSession, user_id: uuid.UUID) -> Subscription | None:
    """Set the user's subscription status to cancelled, keeping plan and dates.

    Returns None when the user has no subscription row.
    """
    subscription = await get_subscription(db, user_id)
    if subscription is None:
        logger.info("No subscription to cancel for user %s", user_id)
        return None

    subscription.status = STATUS_CANCELLED
    await db.flush()
    await db.refresh(subscription)
    logger.info(
        "Cancelled subscription %s (user %s), plan %s kept",
        subscription.id,
        user_id,
        subscription.plan,
    )
    return subscription
