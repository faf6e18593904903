"""Tests for the subscription change feed and the SSE event generator."""

import uuid
from datetime import datetime
from unittest.mock import patch

import pytest
from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.billing import entitlement_events
from app.billing.dependencies import load_entitlements
from app.billing.entitlements import EntitlementReader
from app.schemas.billing import SubscriptionRecord
from app.services.subscription_events import (
    ChangeType,
    SubscriptionChange,
    SubscriptionChangeFeed,
)


def _record(user_id: uuid.UUID, status: str = "active") -> SubscriptionRecord:
    return SubscriptionRecord(
        id=uuid.uuid4(),
        user_id=user_id,
        plan="premium",
        status=status,
        starts_at=datetime(2026, 10, 1),
    )


class TestSubscriptionChangeFeed:
    """Observer registration, delivery and explicit unregistration."""

    def test_delivers_to_listeners_of_that_user_only(self):
        feed = SubscriptionChangeFeed()
        alice, bob = uuid.uuid4(), uuid.uuid4()
        received_alice: list[SubscriptionChange] = []
        received_bob: list[SubscriptionChange] = []
        feed.subscribe(alice, received_alice.append)
        feed.subscribe(bob, received_bob.append)

        delivered = feed.publish(SubscriptionChange.upserted(_record(alice), created=True))

        assert delivered == 1
        assert [c.type for c in received_alice] == [ChangeType.INSERT]
        assert received_bob == []

    def test_unsubscribe_stops_delivery_and_releases_listener(self):
        feed = SubscriptionChangeFeed()
        user_id = uuid.uuid4()
        received: list[SubscriptionChange] = []
        handle = feed.subscribe(user_id, received.append)
        assert feed.listener_count(user_id) == 1

        handle.unsubscribe()
        feed.publish(SubscriptionChange.deleted(user_id))

        assert received == []
        assert feed.listener_count() == 0

    def test_unsubscribe_twice_is_noop(self):
        feed = SubscriptionChangeFeed()
        handle = feed.subscribe(uuid.uuid4(), lambda change: None)
        handle.unsubscribe()
        feed.unsubscribe(handle)
        assert handle.active is False
        assert feed.listener_count() == 0

    def test_failing_listener_does_not_block_others(self):
        feed = SubscriptionChangeFeed()
        user_id = uuid.uuid4()
        received: list[SubscriptionChange] = []

        def broken(change: SubscriptionChange) -> None:
            raise RuntimeError("listener bug")

        feed.subscribe(user_id, broken)
        feed.subscribe(user_id, received.append)

        delivered = feed.publish(SubscriptionChange.upserted(_record(user_id), created=False))

        assert delivered == 1
        assert received[0].type is ChangeType.UPDATE


class TestEntitlementEvents:
    """The SSE generator owns the reader's feed registration while it runs."""

    async def test_streams_initial_state_then_changes(self):
        feed = SubscriptionChangeFeed()
        user_id = uuid.uuid4()
        reader = EntitlementReader(user_id, feed)

        async def connected() -> bool:
            return False

        events = entitlement_events(reader, connected, poll_seconds=0.05)

        first = await events.__anext__()
        assert first["event"] == "subscription"
        assert '"can_use_gated_feature":false' in first["data"]
        assert feed.listener_count(user_id) == 1

        feed.publish(SubscriptionChange.upserted(_record(user_id), created=True))
        second = await events.__anext__()
        assert '"can_use_gated_feature":true' in second["data"]
        assert reader.record is not None

        await events.aclose()
        assert feed.listener_count(user_id) == 0

    async def test_change_before_stream_starts_is_not_lost(
        self, db_session: AsyncSession, test_user
    ):
        """A webhook committing between the initial load and the first event."""
        feed = SubscriptionChangeFeed()
        reader = await load_entitlements(db_session, test_user, feed)
        assert reader.record is None
        assert feed.listener_count(test_user.id) == 1

        delivered = feed.publish(SubscriptionChange.upserted(_record(test_user.id), created=True))
        assert delivered == 1

        async def connected() -> bool:
            return False

        events = entitlement_events(reader, connected, poll_seconds=0.05)
        first = await events.__anext__()
        assert '"can_use_gated_feature":true' in first["data"]

        # Registration is handed over, not duplicated
        assert feed.listener_count(test_user.id) == 1
        await events.aclose()
        assert feed.listener_count(test_user.id) == 0

    async def test_failed_load_releases_registration(self, db_session: AsyncSession, test_user):
        feed = SubscriptionChangeFeed()
        with patch(
            "app.billing.entitlements.get_subscription",
            side_effect=RuntimeError("connection reset"),
        ):
            with pytest.raises(HTTPException) as exc_info:
                await load_entitlements(db_session, test_user, feed)

        assert exc_info.value.status_code == 503
        assert feed.listener_count() == 0

    async def test_stops_when_client_disconnects(self):
        feed = SubscriptionChangeFeed()
        reader = EntitlementReader(uuid.uuid4(), feed)

        async def disconnected() -> bool:
            return True

        events = entitlement_events(reader, disconnected, poll_seconds=0.05)
        await events.__anext__()

        with pytest.raises(StopAsyncIteration):
            await events.__anext__()
        assert feed.listener_count() == 0
