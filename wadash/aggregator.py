"""
Groups cached messages into per-contact conversations.

The counterpart of a message is its sender when it is inbound and its
recipient otherwise. Each conversation keeps its messages deduplicated by sid
and tracks the body and timestamp of its most recent message.
"""

from datetime import datetime
from typing import Iterable, Mapping, Optional

from wadash.schemas import Message

INBOUND = "inbound"


def counterpart_number(message: Message) -> str:
    """Address of the other party, derived from the message direction."""
    if message.direction == INBOUND:
        return message.from_
    return message.to


def effective_timestamp(message: Message) -> Optional[datetime]:
    """Sent timestamp, falling back to the created timestamp."""
    return message.date_sent or message.date_created


def chronological_key(message: Message):
    """Sort key: ascending by effective timestamp, untimestamped messages last."""
    ts = effective_timestamp(message)
    return (ts is None, ts.timestamp() if ts is not None else 0.0)


class Conversation:
    """
    Mutable aggregate of all cached messages exchanged with one counterpart.

    ``last_message`` and ``last_message_date`` always describe the held
    message with the greatest effective timestamp; on a tie the message seen
    first keeps the slot.
    """

    def __init__(self, contact_number: str):
        self.contact_number = contact_number
        self.messages: list[Message] = []
        self.last_message: Optional[str] = None
        self.last_message_date: Optional[datetime] = None
        self.last_message_sid: Optional[str] = None
        self._sids: set[str] = set()

    @property
    def total_messages(self) -> int:
        return len(self.messages)

    def __contains__(self, sid: str) -> bool:
        return sid in self._sids

    def __repr__(self) -> str:
        return f"Conversation({self.contact_number!r}, total_messages={self.total_messages})"

    def add(self, message: Message) -> bool:
        """Add a message unless its sid is already held. Returns True if added."""
        if message.sid in self._sids:
            return False
        self._sids.add(message.sid)
        self.messages.append(message)

        ts = effective_timestamp(message)
        if self.last_message_sid is None:
            self._set_last(message, ts)
        elif ts is not None and (self.last_message_date is None or ts > self.last_message_date):
            self._set_last(message, ts)
        return True

    def _set_last(self, message: Message, ts: Optional[datetime]) -> None:
        self.last_message = message.body
        self.last_message_date = ts
        self.last_message_sid = message.sid

    def sorted_messages(self) -> list[Message]:
        """Messages oldest first, for display."""
        return sorted(self.messages, key=chronological_key)


def apply(conversations: dict[str, Conversation], new_messages: Iterable[Message]) -> dict[str, Conversation]:
    """
    Merge ``new_messages`` into existing groupings in place.

    Conversations not touched by the batch are left as they are.
    """
    for message in new_messages:
        number = counterpart_number(message)
        conversation = conversations.get(number)
        if conversation is None:
            conversation = conversations[number] = Conversation(number)
        conversation.add(message)
    return conversations


def rebuild(messages_by_id: Mapping[str, Message]) -> dict[str, Conversation]:
    """Regroup the whole message store from scratch."""
    return apply({}, messages_by_id.values())


def sort_conversations(conversations: Iterable[Conversation]) -> list[Conversation]:
    """Newest last message first; conversations with no timestamp go last."""
    def key(conversation: Conversation):
        ts = conversation.last_message_date
        return (ts is None, -ts.timestamp() if ts is not None else 0.0)

    return sorted(conversations, key=key)
