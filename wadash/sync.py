"""
Sync controller: keeps the message cache in step with the messaging API.

Two kinds of sync share one lock so that only one ever writes to the cache:

- full sync: fetch a bounded window (last N days), merge every page, then
  rebuild all conversation groupings. Used at cold start, after a cache clear
  and on manual resync. Ends with a ``messages-updated`` event and a
  background backup write.
- incremental sync: fetch only messages sent after the newest cached one and
  apply just those to the existing groupings. Runs on a short timer and emits
  ``new-messages`` when something was added.

A slower timer runs a merge-mode resync over a wider recent window to pick up
anything the incremental window missed.

A request that arrives while a sync holds the lock returns a skipped result
immediately. If the API fails halfway, pages already merged stay in the cache
and the caller gets a SyncError.
"""

import asyncio
import logging
from contextlib import aclosing
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, NamedTuple, Optional

from wadash.backup import BackupStore
from wadash.cache import MessageCache
from wadash.errors import SyncError, UpstreamError
from wadash.metrics import record_cache_size, record_sync
from wadash.notifier import MESSAGES_UPDATED, NEW_MESSAGES, SYNC_PROGRESS, ChangeNotifier
from wadash.schemas import Message
from wadash.source import MessageFilter, TwilioMessageSource

logger = logging.getLogger(__name__)

FULL = "full"
INCREMENTAL = "incremental"
REPAIR = "repair"


class SyncResult(NamedTuple):
    mode: str
    added: int = 0
    total_messages: int = 0
    conversations: int = 0
    skipped: bool = False


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncController:
    def __init__(
        self,
        cache: MessageCache,
        source: TwilioMessageSource,
        notifier: ChangeNotifier,
        backup: Optional[BackupStore] = None,
        full_sync_days: int = 30,
        resync_days: int = 7,
        sync_interval: float = 30,
        resync_interval: float = 3600,
    ):
        self.cache = cache
        self.source = source
        self.notifier = notifier
        self.backup = backup
        self.full_sync_days = full_sync_days
        self.resync_days = resync_days
        self.sync_interval = sync_interval
        self.resync_interval = resync_interval

        self.last_sync_at: Optional[datetime] = None
        self.last_attempt_at: Optional[datetime] = None

        self._lock = asyncio.Lock()
        self._timers: list[asyncio.Task] = []
        self._background: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings, cache: MessageCache, notifier: ChangeNotifier) -> "SyncController":
        return cls(
            cache=cache,
            source=TwilioMessageSource.from_settings(settings),
            notifier=notifier,
            backup=BackupStore(settings.BACKUP_DIR, enabled=settings.BACKUP_ENABLED),
            full_sync_days=settings.FULL_SYNC_DAYS,
            resync_days=settings.RESYNC_DAYS,
            sync_interval=settings.SYNC_INTERVAL_SECONDS,
            resync_interval=settings.RESYNC_INTERVAL_SECONDS,
        )

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    @property
    def demo_mode(self) -> bool:
        return self.source.demo_mode

    # =========================================================================
    # Sync operations
    # =========================================================================

    async def full_sync(
        self,
        days: Optional[int] = None,
        sent_after: Optional[datetime] = None,
        sent_before: Optional[datetime] = None,
    ) -> SyncResult:
        """
        Fetch a bounded window and rebuild all groupings.

        Args:
            days: Look-back window; defaults to ``full_sync_days``
            sent_after: Explicit window start, overrides ``days``
            sent_before: Optional window end

        Raises:
            SyncError: the API failed; pages fetched before it are kept
        """
        if self._lock.locked():
            return self._skipped(FULL)

        async with self._lock:
            return await self._full_sync_locked(days, sent_after, sent_before)

    async def _full_sync_locked(
        self,
        days: Optional[int] = None,
        sent_after: Optional[datetime] = None,
        sent_before: Optional[datetime] = None,
    ) -> SyncResult:
        """Body of :meth:`full_sync`; the caller holds the lock."""
        started = utcnow()
        self.last_attempt_at = started
        if sent_after is None:
            sent_after = started - timedelta(days=days or self.full_sync_days)
        logger.info(f"Full sync started: window {sent_after.isoformat()} .. {sent_before or 'now'}")

        added, error = await self._pull(FULL, MessageFilter(sent_after, sent_before), progress=True)
        self.cache.rebuild()
        self._record_cache_size()

        if error is not None:
            record_sync(FULL, "failed")
            logger.error(f"Full sync failed after {len(added)} new messages: {error}")
            raise SyncError(str(error), FULL, len(added)) from error

        self.last_sync_at = started
        record_sync(FULL, "success")
        logger.info(
            f"Full sync complete: {len(added)} new, {self.cache.message_count} cached, "
            f"{self.cache.conversation_count} conversations"
        )
        self._schedule_backup()
        await self.notifier.emit(
            MESSAGES_UPDATED,
            total_messages=self.cache.message_count,
            timestamp=started.isoformat(),
            source="demo" if self.demo_mode else "twilio-api",
        )
        return self._result(FULL, len(added))

    async def incremental_sync(self) -> SyncResult:
        """
        Fetch messages newer than the newest cached one and merge them in.

        An empty cache falls back to the full-sync window as the lower bound.
        """
        if self._lock.locked():
            return self._skipped(INCREMENTAL)

        async with self._lock:
            sent_after = self.cache.latest_timestamp()
            if sent_after is None:
                sent_after = utcnow() - timedelta(days=self.full_sync_days)
            return await self._merge_sync(INCREMENTAL, MessageFilter(sent_after=sent_after))

    async def repair_sync(self, days: Optional[int] = None) -> SyncResult:
        """Merge-mode resync over the last ``days`` (default ``resync_days``)."""
        if self._lock.locked():
            return self._skipped(REPAIR)

        async with self._lock:
            sent_after = utcnow() - timedelta(days=days or self.resync_days)
            return await self._merge_sync(REPAIR, MessageFilter(sent_after=sent_after))

    async def sync_today(self) -> SyncResult:
        """Full sync of everything sent since local midnight."""
        midnight = datetime.now().astimezone().replace(hour=0, minute=0, second=0, microsecond=0)
        return await self.full_sync(sent_after=midnight)

    def clear_and_resync(self) -> asyncio.Task:
        """
        Wipe the cache and backups, then run a fresh full sync, in the background.

        The clear and the full sync run under a single hold of the lock, so a
        competing sync can finish before the clear or start after the full
        sync but never take its place. The returned task can be awaited by
        callers that need the result.
        """
        return self._spawn(self._clear_then_full_sync(), "full-sync-after-clear")

    async def _clear_then_full_sync(self) -> SyncResult:
        async with self._lock:
            self.cache.clear()
            if self.backup is not None:
                await asyncio.to_thread(self.backup.clear)
            self.last_sync_at = None
            self._record_cache_size()
            logger.info("Cache cleared, starting fresh full sync")
            return await self._full_sync_locked()

    async def load_backup(self) -> int:
        """Warm the cache from the newest backup. Returns the number of messages loaded."""
        if self.backup is None:
            return 0
        messages = await asyncio.to_thread(self.backup.load_latest)
        if not messages:
            return 0
        async with self._lock:
            added = self.cache.merge(messages, regroup=False)
            self.cache.rebuild()
            self._record_cache_size()
        logger.info(f"Cache warmed from backup: {len(added)} messages")
        return len(added)

    def request_full_sync(self) -> Optional[asyncio.Task]:
        """Start a full sync in the background unless one is already running."""
        if self.in_progress:
            return None
        return self._spawn(self.full_sync(), "full-sync")

    def request_incremental_sync(self) -> Optional[asyncio.Task]:
        """Start an incremental sync in the background unless a sync is running."""
        if self.in_progress:
            return None
        return self._spawn(self.incremental_sync(), "incremental-sync")

    # =========================================================================
    # Scheduling
    # =========================================================================

    def start(self) -> None:
        """Start the periodic incremental and repair timers."""
        if self._timers:
            return
        self._timers = [
            asyncio.create_task(self._every(self.sync_interval, self.incremental_sync), name="incremental-sync"),
            asyncio.create_task(self._every(self.resync_interval, self.repair_sync), name="repair-sync"),
        ]
        logger.info(
            f"Sync scheduler started: incremental every {self.sync_interval}s, "
            f"repair every {self.resync_interval}s"
        )

    async def stop(self) -> None:
        """Cancel timers and wait for background work (syncs, backups) to settle."""
        timers, self._timers = self._timers, []
        for task in timers:
            task.cancel()
        await asyncio.gather(*timers, return_exceptions=True)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        logger.info("Sync scheduler stopped")

    async def _every(self, interval: float, operation: Callable[[], Awaitable[SyncResult]]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await operation()
            except SyncError as e:
                logger.warning(f"Scheduled {e.mode} sync failed: {e}")
            except Exception:
                logger.exception("Scheduled sync crashed")

    # =========================================================================
    # Internals
    # =========================================================================

    async def _pull(
        self, mode: str, message_filter: MessageFilter, progress: bool = False
    ) -> tuple[list[Message], Optional[UpstreamError]]:
        """
        Merge pages into the cache as they arrive.

        Full syncs leave the groupings for a rebuild at the end; other modes
        apply each page's new messages immediately.
        """
        added: list[Message] = []
        fetched = 0
        page_number = 0
        try:
            async with aclosing(self.source.iter_pages(message_filter)) as pages:
                async for page in pages:
                    page_number += 1
                    fetched += len(page)
                    added.extend(self.cache.merge(page, regroup=mode != FULL))
                    if progress:
                        await self.notifier.emit(
                            SYNC_PROGRESS,
                            mode=mode,
                            page=page_number,
                            current=fetched,
                            added=len(added),
                        )
        except UpstreamError as e:
            return added, e
        logger.debug(f"{mode} sync fetched {fetched} messages over {page_number} pages, {len(added)} new")
        return added, None

    async def _merge_sync(self, mode: str, message_filter: MessageFilter) -> SyncResult:
        self.last_attempt_at = utcnow()
        added, error = await self._pull(mode, message_filter)

        if added:
            if error is None:
                self.last_sync_at = self.last_attempt_at
            self._record_cache_size()
            logger.info(f"{mode} sync added {len(added)} messages ({self.cache.message_count} cached)")
            await self.notifier.emit(
                NEW_MESSAGES,
                count=len(added),
                total_messages=self.cache.message_count,
            )

        if error is not None:
            record_sync(mode, "failed")
            logger.error(f"{mode} sync failed after {len(added)} new messages: {error}")
            raise SyncError(str(error), mode, len(added)) from error

        record_sync(mode, "success")
        return self._result(mode, len(added))

    def _result(self, mode: str, added: int) -> SyncResult:
        return SyncResult(
            mode=mode,
            added=added,
            total_messages=self.cache.message_count,
            conversations=self.cache.conversation_count,
        )

    def _skipped(self, mode: str) -> SyncResult:
        logger.info(f"{mode} sync requested while another sync is running, ignoring")
        record_sync(mode, "skipped")
        return self._result(mode, 0)._replace(skipped=True)

    def _record_cache_size(self) -> None:
        record_cache_size(self.cache.message_count, self.cache.conversation_count)

    def _schedule_backup(self) -> None:
        if self.backup is None or not self.backup.enabled:
            return
        self._spawn(asyncio.to_thread(self.backup.save, self.cache.messages()), "backup")

    def _spawn(self, coro: Awaitable, name: str) -> asyncio.Task:
        task = asyncio.ensure_future(self._logged(coro, name))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _logged(self, coro: Awaitable, name: str):
        try:
            return await coro
        except SyncError as e:
            logger.warning(f"Background {name} failed: {e}")
        except Exception:
            logger.exception(f"Background {name} crashed")
