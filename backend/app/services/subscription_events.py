"""Subscription change feed — push notifications of store changes per user.

Readers register a callback for one user id and get every insert, update or
delete of that user's ``subscriptions`` row once the writing transaction has
committed. Registration returns a handle; callers must release it with
``unsubscribe()`` when they go away.
"""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from starlette.requests import Request

from app.schemas.billing import SubscriptionRecord

logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    """Kind of row change carried by a SubscriptionChange."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class SubscriptionChange:
    """One committed change to a user's subscription row."""

    type: ChangeType
    user_id: uuid.UUID
    record: SubscriptionRecord | None = None

    @classmethod
    def upserted(cls, record: SubscriptionRecord, created: bool) -> "SubscriptionChange":
        return cls(
            type=ChangeType.INSERT if created else ChangeType.UPDATE,
            user_id=record.user_id,
            record=record,
        )

    @classmethod
    def deleted(cls, user_id: uuid.UUID) -> "SubscriptionChange":
        return cls(type=ChangeType.DELETE, user_id=user_id)


ChangeCallback = Callable[[SubscriptionChange], None]


@dataclass(eq=False)
class FeedSubscription:
    """Handle returned by ``SubscriptionChangeFeed.subscribe``."""

    feed: "SubscriptionChangeFeed"
    user_id: uuid.UUID
    callback: ChangeCallback
    active: bool = field(default=True)

    def unsubscribe(self) -> None:
        self.feed.unsubscribe(self)


class SubscriptionChangeFeed:
    """In-process observer registry keyed by user id."""

    def __init__(self) -> None:
        self._listeners: dict[uuid.UUID, list[FeedSubscription]] = {}

    def subscribe(self, user_id: uuid.UUID, callback: ChangeCallback) -> FeedSubscription:
        """Register ``callback`` for changes to ``user_id``'s subscription."""
        handle = FeedSubscription(feed=self, user_id=user_id, callback=callback)
        self._listeners.setdefault(user_id, []).append(handle)
        logger.debug("Feed listener added for user %s", user_id)
        return handle

    def unsubscribe(self, handle: FeedSubscription) -> None:
        """Release a registration. Calling it twice is a no-op."""
        if not handle.active:
            return
        handle.active = False
        listeners = self._listeners.get(handle.user_id, [])
        if handle in listeners:
            listeners.remove(handle)
        if not listeners:
            self._listeners.pop(handle.user_id, None)
        logger.debug("Feed listener removed for user %s", handle.user_id)

    def publish(self, change: SubscriptionChange) -> int:
        """Deliver ``change`` to every listener of its user, in registration order.

        Returns the number of listeners that were notified.
        """
        delivered = 0
        for handle in list(self._listeners.get(change.user_id, [])):
            try:
                handle.callback(change)
                delivered += 1
            except Exception:
                logger.exception(
                    "Feed listener failed on %s change for user %s",
                    change.type.value,
                    change.user_id,
                )
        return delivered

    def listener_count(self, user_id: uuid.UUID | None = None) -> int:
        if user_id is not None:
            return len(self._listeners.get(user_id, []))
        return sum(len(listeners) for listeners in self._listeners.values())


def get_change_feed(request: Request) -> SubscriptionChangeFeed:
    """FastAPI dependency returning the feed created at application startup."""
    return request.app.state.subscription_feed
