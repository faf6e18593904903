"""Entitlements derived from a subscription record and the wall clock.

Nothing here is persisted: every value is recomputed from the record's fields
and ``now`` on each call. ``now`` defaults to the current naive UTC time so
callers and tests can pin it explicitly.
"""

import asyncio
import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.subscription import PLAN_PREMIUM, STATUS_ACTIVE, STATUS_TRIAL
from app.schemas.billing import SubscriptionRecord
from app.services.subscription_events import (
    ChangeType,
    FeedSubscription,
    SubscriptionChange,
    SubscriptionChangeFeed,
)
from app.services.subscription_service import get_subscription

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 24 * 60 * 60


def utcnow() -> datetime:
    """Current time as naive UTC, matching the stored timestamps."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def has_active_subscription(record: SubscriptionRecord | None, now: datetime | None = None) -> bool:
    if record is None:
        return False
    now = now or utcnow()
    return (
        record.status == STATUS_ACTIVE
        and record.plan == PLAN_PREMIUM
        and (record.ends_at is None or record.ends_at > now)
    )


def has_active_trial(record: SubscriptionRecord | None, now: datetime | None = None) -> bool:
    if record is None:
        return False
    now = now or utcnow()
    return (
        record.status == STATUS_TRIAL
        and record.trial_ends_at is not None
        and record.trial_ends_at > now
    )


def can_use_gated_feature(record: SubscriptionRecord | None, now: datetime | None = None) -> bool:
    now = now or utcnow()
    return has_active_subscription(record, now) or has_active_trial(record, now)


def trial_days_remaining(record: SubscriptionRecord | None, now: datetime | None = None) -> int:
    """Whole days left in the trial, rounded up; 0 once it has ended or without a trial."""
    if record is None or record.trial_ends_at is None:
        return 0
    now = now or utcnow()
    remaining = (record.trial_ends_at - now).total_seconds()
    return max(0, math.ceil(remaining / _SECONDS_PER_DAY))


@dataclass(frozen=True)
class EntitlementSnapshot:
    """A record together with everything derived from it at one instant."""

    record: SubscriptionRecord | None
    has_active_subscription: bool
    has_active_trial: bool
    can_use_gated_feature: bool
    trial_days_remaining: int

    @classmethod
    def of(cls, record: SubscriptionRecord | None, now: datetime | None = None) -> "EntitlementSnapshot":
        now = now or utcnow()
        return cls(
            record=record,
            has_active_subscription=has_active_subscription(record, now),
            has_active_trial=has_active_trial(record, now),
            can_use_gated_feature=can_use_gated_feature(record, now),
            trial_days_remaining=trial_days_remaining(record, now),
        )


class EntitlementReader:
    """Holds one user's subscription state and keeps it current from the change feed.

    Attach before loading so a change committed while the load is in flight
    is not lost::

        reader = EntitlementReader(user.id, feed)
        reader.attach()
        try:
            await reader.load(db)
            ...
        finally:
            reader.detach()
    """

    def __init__(self, user_id: uuid.UUID, feed: SubscriptionChangeFeed | None = None) -> None:
        self.user_id = user_id
        self.feed = feed
        self.record: SubscriptionRecord | None = None
        self.loading = False
        self.loaded = False
        self.error: str | None = None
        self._handle: FeedSubscription | None = None
        self._changes_applied = 0
        self._changed = asyncio.Event()

    async def load(self, db: AsyncSession) -> SubscriptionRecord | None:
        """Fetch the record from the store, replacing local state.

        A change pushed while the query runs is newer than what the query
        read, so it is kept instead of the loaded row. A store failure is
        kept in ``error`` (a retryable state) and re-raised.
        """
        applied_before = self._changes_applied
        self.loading = True
        try:
            subscription = await get_subscription(db, self.user_id)
        except Exception as e:
            logger.exception("Failed to load subscription for user %s", self.user_id)
            self.error = str(e) or e.__class__.__name__
            raise
        finally:
            self.loading = False

        if self._changes_applied == applied_before:
            self.record = SubscriptionRecord.model_validate(subscription) if subscription else None
        else:
            logger.debug("Change for user %s arrived during load, keeping it", self.user_id)
        self.loaded = True
        self.error = None
        return self.record

    def apply(self, change: SubscriptionChange) -> None:
        """Replace local state with a pushed change (deletes clear it)."""
        if change.user_id != self.user_id:
            return
        if change.type is ChangeType.DELETE:
            self.record = None
        else:
            self.record = change.record
        self.loaded = True
        self.error = None
        self._changes_applied += 1
        self._changed.set()

    async def wait_for_change(self, timeout: float) -> bool:
        """Wait until a change has been applied since the last wait.

        Returns False on timeout. Changes applied before the call count, so
        none are missed between two waits.
        """
        try:
            await asyncio.wait_for(self._changed.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        self._changed.clear()
        return True

    def attach(self) -> FeedSubscription:
        """Register with the change feed. Must be paired with ``detach()``."""
        if self.feed is None:
            raise RuntimeError("EntitlementReader has no change feed to attach to")
        if self._handle is None or not self._handle.active:
            self._handle = self.feed.subscribe(self.user_id, self.apply)
        return self._handle

    def detach(self) -> None:
        if self._handle is not None:
            self._handle.unsubscribe()
            self._handle = None

    @property
    def attached(self) -> bool:
        return self._handle is not None and self._handle.active

    def snapshot(self, now: datetime | None = None) -> EntitlementSnapshot:
        return EntitlementSnapshot.of(self.record, now)
