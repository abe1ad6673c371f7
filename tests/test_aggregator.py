"""
Tests for conversation aggregation.

Tests cover:
- Counterpart number rule (inbound -> sender, outbound -> recipient)
- Last-message tracking and tie handling
- Incremental apply vs full rebuild
- Conversation list and in-conversation ordering
"""

from datetime import timedelta

from conftest import BASE_TIME, SERVICE_NUMBER
from wadash import aggregator
from wadash.aggregator import Conversation, counterpart_number, effective_timestamp, sort_conversations


CONTACT = "whatsapp:+55119"


class TestCounterpart:
    """Test counterpart and timestamp helpers."""

    def test_inbound_counterpart_is_sender(self, make_message):
        msg = make_message("m1", CONTACT, direction="inbound", seconds=1)
        assert counterpart_number(msg) == CONTACT

    def test_outbound_counterpart_is_recipient(self, make_message):
        for direction in ("outbound-api", "outbound-reply", "outbound-call"):
            msg = make_message("m1", CONTACT, direction=direction, seconds=1)
            assert counterpart_number(msg) == CONTACT
            assert msg.from_ == SERVICE_NUMBER

    def test_effective_timestamp_falls_back_to_created(self, make_message):
        msg = make_message("m1", CONTACT, seconds=None, created_seconds=5)
        assert effective_timestamp(msg) == BASE_TIME + timedelta(seconds=5)

    def test_effective_timestamp_prefers_sent(self, make_message):
        msg = make_message("m1", CONTACT, seconds=3, created_seconds=5)
        assert effective_timestamp(msg) == BASE_TIME + timedelta(seconds=3)


class TestConversation:
    """Test the Conversation aggregate."""

    def test_outbound_and_inbound_share_conversation(self, make_message):
        """Scenario: A outbound to the contact at t=10, B inbound from it at t=20."""
        a = make_message("1", CONTACT, direction="outbound-api", seconds=10, body="A")
        b = make_message("2", CONTACT, direction="inbound", seconds=20, body="B")

        conversations = aggregator.rebuild({"1": a, "2": b})

        assert list(conversations) == [CONTACT]
        conv = conversations[CONTACT]
        assert conv.last_message == "B"
        assert conv.last_message_date == BASE_TIME + timedelta(seconds=20)
        assert conv.total_messages == 2

    def test_last_message_tracks_max_timestamp_regardless_of_order(self, make_message):
        conv = Conversation(CONTACT)
        conv.add(make_message("m3", CONTACT, seconds=30, body="newest"))
        conv.add(make_message("m1", CONTACT, seconds=10, body="oldest"))
        conv.add(make_message("m2", CONTACT, seconds=20, body="middle"))

        assert conv.last_message == "newest"
        assert conv.last_message_sid == "m3"

    def test_tie_keeps_first_seen(self, make_message):
        conv = Conversation(CONTACT)
        conv.add(make_message("m1", CONTACT, seconds=10, body="first"))
        conv.add(make_message("m2", CONTACT, seconds=10, body="second"))

        assert conv.last_message == "first"

    def test_readding_does_not_flicker(self, make_message):
        """Re-adding already held messages leaves last-message fields alone."""
        first = make_message("m1", CONTACT, seconds=10, body="first")
        second = make_message("m2", CONTACT, seconds=10, body="second")
        conv = Conversation(CONTACT)
        conv.add(first)
        conv.add(second)

        assert conv.add(second) is False
        assert conv.add(first) is False
        assert conv.last_message == "first"
        assert conv.total_messages == 2

    def test_untimestamped_message_replaced_by_timestamped(self, make_message):
        conv = Conversation(CONTACT)
        conv.add(make_message("m1", CONTACT, seconds=None, body="no time"))
        assert conv.last_message == "no time"
        assert conv.last_message_date is None

        conv.add(make_message("m2", CONTACT, seconds=5, body="timed"))
        assert conv.last_message == "timed"

    def test_untimestamped_message_never_replaces_timestamped(self, make_message):
        conv = Conversation(CONTACT)
        conv.add(make_message("m1", CONTACT, seconds=5, body="timed"))
        conv.add(make_message("m2", CONTACT, seconds=None, body="no time"))

        assert conv.last_message == "timed"
        assert conv.total_messages == 2

    def test_sorted_messages_ascending(self, make_message):
        conv = Conversation(CONTACT)
        for sid, seconds in (("c", 30), ("a", 10), ("x", None), ("b", 20)):
            conv.add(make_message(sid, CONTACT, seconds=seconds))

        assert [m.sid for m in conv.sorted_messages()] == ["a", "b", "c", "x"]

    def test_contains(self, make_message):
        conv = Conversation(CONTACT)
        conv.add(make_message("m1", CONTACT, seconds=1))

        assert "m1" in conv
        assert "m2" not in conv


class TestRebuildAndApply:
    """Test full rebuild and incremental apply."""

    def test_every_message_in_exactly_one_conversation(self, make_message):
        messages = {}
        for i in range(30):
            direction = "inbound" if i % 2 else "outbound-api"
            msg = make_message(f"m{i}", f"whatsapp:+{i % 4}", direction=direction, seconds=i)
            messages[msg.sid] = msg

        conversations = aggregator.rebuild(messages)

        seen = [m.sid for conv in conversations.values() for m in conv.messages]
        assert sorted(seen) == sorted(messages)
        for number, conv in conversations.items():
            assert conv.total_messages == len(conv.messages)
            assert all(counterpart_number(m) == number for m in conv.messages)

    def test_apply_keeps_unrelated_history(self, make_message):
        old = {
            "m1": make_message("m1", "+1", seconds=1),
            "m2": make_message("m2", "+2", seconds=2),
        }
        conversations = aggregator.rebuild(old)
        untouched = conversations["+2"]

        aggregator.apply(conversations, [make_message("m3", "+1", seconds=3, body="new")])

        assert conversations["+2"] is untouched
        assert conversations["+1"].total_messages == 2
        assert conversations["+1"].last_message == "new"

    def test_apply_matches_rebuild(self, make_message):
        first = [make_message(f"a{i}", f"+{i % 3}", seconds=i) for i in range(6)]
        second = [make_message(f"b{i}", f"+{i % 4}", seconds=100 + i) for i in range(6)]

        incremental = aggregator.apply(aggregator.rebuild({m.sid: m for m in first}), second)
        full = aggregator.rebuild({m.sid: m for m in first + second})

        assert set(incremental) == set(full)
        for number in full:
            assert {m.sid for m in incremental[number].messages} == {m.sid for m in full[number].messages}
            assert incremental[number].last_message_date == full[number].last_message_date

    def test_apply_ignores_duplicates(self, make_message):
        msg = make_message("m1", "+1", seconds=1)
        conversations = aggregator.rebuild({"m1": msg})

        aggregator.apply(conversations, [msg, msg])

        assert conversations["+1"].total_messages == 1


class TestSortConversations:
    """Test conversation list ordering."""

    def test_descending_by_last_message_date(self, make_message):
        messages = [
            make_message("m1", "+1", seconds=10),
            make_message("m2", "+2", seconds=30),
            make_message("m3", "+3", seconds=20),
            make_message("m4", "+4", seconds=None),
        ]
        ordered = sort_conversations(aggregator.rebuild({m.sid: m for m in messages}).values())

        assert [c.contact_number for c in ordered] == ["+2", "+3", "+1", "+4"]

    def test_non_increasing(self, make_message):
        messages = [make_message(f"m{i}", f"+{i % 7}", seconds=(i * 37) % 101) for i in range(40)]
        ordered = sort_conversations(aggregator.rebuild({m.sid: m for m in messages}).values())

        dates = [c.last_message_date for c in ordered]
        assert all(a >= b for a, b in zip(dates, dates[1:]))
