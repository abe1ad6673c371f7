"""
Tests for the change notifier.

Tests cover:
- Delivery to sync and async subscribers
- Isolation of failing subscribers
- Unsubscribing
"""

import pytest

from wadash.notifier import NEW_MESSAGES, ChangeNotifier
from wadash.schemas import SyncEvent


class TestChangeNotifier:
    """Test publish/subscribe behaviour."""

    @pytest.mark.asyncio
    async def test_publish_reaches_all_subscribers(self):
        notifier = ChangeNotifier()
        received_sync = []
        received_async = []

        async def async_handler(event):
            received_async.append(event)

        notifier.subscribe(received_sync.append)
        notifier.subscribe(async_handler)

        delivered = await notifier.publish(SyncEvent(type=NEW_MESSAGES, data={"count": 2}))

        assert delivered == 2
        assert received_sync[0].data == {"count": 2}
        assert received_async[0].type == NEW_MESSAGES

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_others(self):
        notifier = ChangeNotifier()
        received = []

        async def broken(event):
            raise RuntimeError("socket closed")

        notifier.subscribe(broken)
        notifier.subscribe(received.append)

        delivered = await notifier.emit(NEW_MESSAGES, count=1, total_messages=4)

        assert delivered == 1
        assert received[0].data == {"count": 1, "total_messages": 4}

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        notifier = ChangeNotifier()
        received = []
        subscription_id = notifier.subscribe(received.append)

        notifier.unsubscribe(subscription_id)
        await notifier.emit(NEW_MESSAGES, count=1)

        assert received == []
        assert notifier.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_handler_may_unsubscribe_during_publish(self):
        notifier = ChangeNotifier()
        received = []
        ids = {}

        def once(event):
            received.append(event)
            notifier.unsubscribe(ids["once"])

        ids["once"] = notifier.subscribe(once)
        await notifier.emit(NEW_MESSAGES)
        await notifier.emit(NEW_MESSAGES)

        assert len(received) == 1

    def test_subscription_ids_are_unique(self):
        notifier = ChangeNotifier()
        ids = {notifier.subscribe(lambda event: None) for _ in range(5)}
        assert len(ids) == 5

    def test_unsubscribe_unknown_id_is_noop(self):
        ChangeNotifier().unsubscribe(999)
