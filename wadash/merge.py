"""
Deduplicating merge of message batches into the message store.
"""

from typing import Iterable, Mapping, NamedTuple

from wadash.schemas import Message


class MergeResult(NamedTuple):
    messages_by_id: dict[str, Message]
    added: list[Message]


def merge_messages(existing: Mapping[str, Message], incoming: Iterable[Message]) -> MergeResult:
    """
    Merge ``incoming`` into a copy of ``existing``, keyed by sid.

    The first copy of a sid ever seen stays authoritative: a later fetch of the
    same message never overwrites it, so a stale page cannot regress cached
    fields. Duplicate sids inside one batch collapse to their first occurrence.

    Merging the same batch twice yields the same mapping as merging it once,
    and the final mapping does not depend on the order of ``incoming``.

    Returns:
        MergeResult with the new mapping and the messages that were inserted,
        in batch order. ``existing`` is left untouched.
    """
    merged = dict(existing)
    added = []
    for message in incoming:
        if message.sid in merged:
            continue
        merged[message.sid] = message
        added.append(message)
    return MergeResult(merged, added)
