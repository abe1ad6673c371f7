"""
Tests for the read-only query surface.

Tests cover:
- Partitioned conversation listing
- Conversation messages from the aggregate and from the fallback scan
- Empty-cache sync trigger
- Statistics
"""

import pytest

from wadash.cache import MessageCache
from wadash.query import ConversationQuery


@pytest.fixture
def cache(make_message):
    cache = MessageCache()
    cache.merge([
        make_message("m1", "+1", direction="outbound-api", seconds=10),
        make_message("m2", "+1", direction="inbound", seconds=20),
        make_message("m3", "+2", direction="inbound", seconds=30),
        make_message("m4", "+3", direction="inbound", seconds=5),
    ])
    return cache


class TestListConversations:
    """Test conversation listing."""

    def test_all_newest_first(self, cache):
        conversations = ConversationQuery(cache).list_conversations()

        assert [c.contact_number for c in conversations] == ["+2", "+1", "+3"]

    def test_partitions(self, cache):
        query = ConversationQuery(cache)
        blocked = {"+2"}

        normal = query.list_conversations("normal", blocked)
        only_blocked = query.list_conversations("blocked", blocked)

        assert [c.contact_number for c in normal] == ["+1", "+3"]
        assert [c.contact_number for c in only_blocked] == ["+2"]

    def test_invalid_partition(self, cache):
        with pytest.raises(ValueError):
            ConversationQuery(cache).list_conversations("archived")


class TestGetConversation:
    """Test single conversation reads."""

    def test_aggregated_ascending(self, cache):
        messages, aggregated = ConversationQuery(cache).get_conversation("+1")

        assert aggregated
        assert [m.sid for m in messages] == ["m1", "m2"]

    def test_scan_when_not_aggregated(self, make_message):
        cache = MessageCache()
        # Groupings stay stale, as during a full sync
        cache.merge(
            [
                make_message("late", "+1", direction="inbound", seconds=20),
                make_message("early", "+1", direction="outbound-api", seconds=10),
            ],
            regroup=False,
        )

        messages, aggregated = ConversationQuery(cache).get_conversation("+1")

        assert not aggregated
        assert [m.sid for m in messages] == ["early", "late"]

    def test_unknown_number(self, cache):
        messages, aggregated = ConversationQuery(cache).get_conversation("+999")

        assert messages == []
        assert not aggregated

    def test_get_message(self, cache):
        query = ConversationQuery(cache)

        assert query.get_message("m3").from_ == "+2"
        assert query.get_message("missing") is None


class TestEmptyCache:
    """Test the background sync trigger."""

    def test_empty_cache_requests_sync(self):
        calls = []
        query = ConversationQuery(MessageCache(), on_empty=lambda: calls.append(1))

        assert query.list_conversations() == []
        query.get_conversation("+1")

        assert len(calls) == 2

    def test_populated_cache_does_not_request_sync(self, cache):
        calls = []
        query = ConversationQuery(cache, on_empty=lambda: calls.append(1))

        query.list_conversations()
        query.get_conversation("+1")

        assert calls == []


class TestStats:
    """Test message statistics."""

    def test_stats(self, cache):
        stats = ConversationQuery(cache).stats()

        assert stats.total_messages == 4
        assert stats.conversations_count == 3
        assert stats.messages_per_contact[0].contact_number == "+1"
        assert stats.messages_per_contact[0].count == 2
        assert stats.by_direction == {"outbound-api": 1, "inbound": 3}
        assert stats.by_status == {"delivered": 1, "received": 3}
        assert stats.first_message_ts < stats.last_message_ts

    def test_stats_empty(self):
        stats = ConversationQuery(MessageCache()).stats()

        assert stats.total_messages == 0
        assert stats.messages_per_contact == []
        assert stats.first_message_ts is None
        assert stats.last_message_ts is None
