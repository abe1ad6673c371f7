"""
Read-only views over the message cache.

Reads never wait for a sync. If the cache is completely empty a background
full sync is requested and the read returns whatever is there right now.
"""

import logging
from collections import Counter
from typing import Callable, Collection, Optional

from wadash.aggregator import Conversation, chronological_key, effective_timestamp, sort_conversations
from wadash.cache import MessageCache
from wadash.schemas import ContactCount, Message, StatsResponse

logger = logging.getLogger(__name__)

PARTITIONS = ("all", "normal", "blocked")


class ConversationQuery:
    """
    Args:
        cache: The message cache to read from
        on_empty: Called (without awaiting) when a read finds the cache empty
    """

    def __init__(self, cache: MessageCache, on_empty: Optional[Callable[[], object]] = None):
        self.cache = cache
        self.on_empty = on_empty

    def _check_empty(self) -> None:
        if self.cache.is_empty() and self.on_empty is not None:
            logger.info("Cache is empty, requesting background sync")
            self.on_empty()

    def list_conversations(
        self, partition: str = "all", blocked: Collection[str] = ()
    ) -> list[Conversation]:
        """
        Conversations newest first, optionally split by blocklist membership.

        ``normal`` keeps counterparts not in ``blocked``; ``blocked`` keeps
        only those in it.
        """
        if partition not in PARTITIONS:
            raise ValueError(f"partition must be one of {', '.join(PARTITIONS)}")
        self._check_empty()

        conversations = self.cache.conversations()
        if partition == "normal":
            conversations = [c for c in conversations if c.contact_number not in blocked]
        elif partition == "blocked":
            conversations = [c for c in conversations if c.contact_number in blocked]
        return sort_conversations(conversations)

    def get_conversation(self, contact_number: str) -> tuple[list[Message], bool]:
        """
        Messages exchanged with ``contact_number``, oldest first.

        Falls back to scanning the whole message store when the number has no
        aggregated conversation yet, which happens while a full sync is still
        merging pages.

        Returns:
            (messages, aggregated) where ``aggregated`` is False for the scan
        """
        self._check_empty()
        conversation = self.cache.get_conversation(contact_number)
        if conversation is not None:
            return conversation.sorted_messages(), True

        matches = [
            m for m in self.cache.messages()
            if m.from_ == contact_number or m.to == contact_number
        ]
        logger.debug(f"No aggregate for {contact_number}, scan found {len(matches)} messages")
        return sorted(matches, key=chronological_key), False

    def get_message(self, sid: str) -> Optional[Message]:
        return self.cache.get_message(sid)

    def stats(self) -> StatsResponse:
        """Message-level analytics over the current cache."""
        messages = self.cache.messages()
        timestamps = [ts for ts in map(effective_timestamp, messages) if ts is not None]
        top_contacts = sorted(
            self.cache.conversations(), key=lambda c: c.total_messages, reverse=True
        )[:10]

        return StatsResponse(
            total_messages=len(messages),
            conversations_count=self.cache.conversation_count,
            messages_per_contact=[
                ContactCount(contact_number=c.contact_number, count=c.total_messages)
                for c in top_contacts
            ],
            by_direction=dict(Counter(m.direction for m in messages)),
            by_status=dict(Counter(m.status or "unknown" for m in messages)),
            first_message_ts=min(timestamps) if timestamps else None,
            last_message_ts=max(timestamps) if timestamps else None,
        )
