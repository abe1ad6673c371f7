"""
Publish/subscribe channel for cache change events.

Delivery is best effort: handlers are awaited one after another, a failing
handler is logged and skipped, and nothing is retried. Clients that miss an
event reconcile through the REST endpoints.
"""

import inspect
import itertools
import logging
from typing import Any, Awaitable, Callable, Union

from wadash.schemas import SyncEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[SyncEvent], Union[Awaitable[None], None]]

# Event names
MESSAGES_UPDATED = "messages-updated"
NEW_MESSAGES = "new-messages"
SYNC_PROGRESS = "sync-progress"
NUMBER_BLOCKED = "number-blocked"


class ChangeNotifier:
    def __init__(self):
        self._handlers: dict[int, EventHandler] = {}
        self._ids = itertools.count(1)

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    def subscribe(self, handler: EventHandler) -> int:
        """Register a sync or async handler. Returns its subscription id."""
        subscription_id = next(self._ids)
        self._handlers[subscription_id] = handler
        logger.debug(f"Subscriber {subscription_id} registered")
        return subscription_id

    def unsubscribe(self, subscription_id: int) -> None:
        if self._handlers.pop(subscription_id, None) is not None:
            logger.debug(f"Subscriber {subscription_id} removed")

    async def publish(self, event: SyncEvent) -> int:
        """
        Deliver ``event`` to every current subscriber.

        Returns:
            Number of handlers that completed without raising.
        """
        delivered = 0
        # Snapshot so handlers may unsubscribe while we iterate
        for subscription_id, handler in list(self._handlers.items()):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                logger.warning(
                    f"Subscriber {subscription_id} failed on {event.type}: {e}",
                    extra={"event": event.type},
                )
        logger.debug(f"Published {event.type} to {delivered}/{len(self._handlers)} subscribers")
        return delivered

    async def emit(self, event_type: str, **data: Any) -> int:
        return await self.publish(SyncEvent(type=event_type, data=data))
