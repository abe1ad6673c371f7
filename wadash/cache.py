"""
In-memory message cache.

The cache owns the canonical ``sid -> Message`` mapping and the derived
``counterpart -> Conversation`` groupings. Only the sync controller writes to
it; readers use the accessors and always see a consistent snapshot because
every mutation runs to completion without yielding to the event loop.
"""

import logging
from datetime import datetime
from typing import Iterable, Optional

from wadash import aggregator
from wadash.aggregator import Conversation
from wadash.merge import merge_messages
from wadash.schemas import Message

logger = logging.getLogger(__name__)


class MessageCache:
    """Owned store with lifecycle: init, merge, rebuild, clear."""

    def __init__(self):
        self._messages: dict[str, Message] = {}
        self._conversations: dict[str, Conversation] = {}

    # -------------------------------------------------------------------------
    # Mutation (sync controller only)
    # -------------------------------------------------------------------------

    def merge(self, batch: Iterable[Message], regroup: bool = True) -> list[Message]:
        """
        Merge a batch into the message store.

        With ``regroup`` the added messages are applied to the existing
        groupings straight away; without it the groupings are left stale
        until :meth:`rebuild` is called.

        Returns:
            The messages that were not cached before.
        """
        result = merge_messages(self._messages, batch)
        self._messages = result.messages_by_id
        if regroup and result.added:
            aggregator.apply(self._conversations, result.added)
        return result.added

    def rebuild(self) -> None:
        """Discard the groupings and regroup every cached message."""
        self._conversations = aggregator.rebuild(self._messages)
        logger.debug(
            f"Rebuilt {len(self._conversations)} conversations from {len(self._messages)} messages"
        )

    def clear(self) -> None:
        self._messages = {}
        self._conversations = {}
        logger.info("Message cache cleared")

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @property
    def message_count(self) -> int:
        return len(self._messages)

    @property
    def conversation_count(self) -> int:
        return len(self._conversations)

    def is_empty(self) -> bool:
        return not self._messages

    def messages(self) -> list[Message]:
        return list(self._messages.values())

    def get_message(self, sid: str) -> Optional[Message]:
        return self._messages.get(sid)

    def get_conversation(self, contact_number: str) -> Optional[Conversation]:
        return self._conversations.get(contact_number)

    def conversations(self) -> list[Conversation]:
        return list(self._conversations.values())

    def latest_timestamp(self) -> Optional[datetime]:
        """Greatest effective timestamp across all cached messages."""
        timestamps = [
            ts for ts in map(aggregator.effective_timestamp, self._messages.values())
            if ts is not None
        ]
        return max(timestamps) if timestamps else None
