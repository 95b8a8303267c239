"""
Applies social-graph events to a session's feed cache.

Events are queued and applied by a single worker task, so the cache only
ever has one writer driven by the event stream.

    Event                   Action
    collection followed     mark stale, next read reloads
    collection unfollowed   remove that collection's entries
    collection hidden       remove that collection's entries, invalidate
    collection unhidden     invalidate
    user blocked            remove entries by or owned by the user, invalidate
    user unblocked          invalidate
    post created            invalidate if the collection is cached or loading
    own profile updated     invalidate

Every action bumps the cache generation, so a load that started before the
event is refused when it tries to write its result.
"""
import asyncio
import logging
from typing import Optional

from feed.cacheManager import FeedCache
from feed.events import EventChannel, FeedEvent, FeedEventType

logger = logging.getLogger(__name__)

TRIGGER_EVENT_TYPES = (
    FeedEventType.COLLECTION_FOLLOWED,
    FeedEventType.COLLECTION_UNFOLLOWED,
    FeedEventType.COLLECTION_HIDDEN,
    FeedEventType.COLLECTION_UNHIDDEN,
    FeedEventType.USER_BLOCKED,
    FeedEventType.USER_UNBLOCKED,
    FeedEventType.POST_CREATED,
    FeedEventType.PROFILE_UPDATED,
)


class FeedCacheInvalidator:
    def __init__(self, cache: FeedCache, channel: Optional[EventChannel] = None):
        self.cache = cache
        self.channel = channel
        self.applied_count = 0
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._handlers = {
            FeedEventType.COLLECTION_FOLLOWED: self._on_collection_followed,
            FeedEventType.COLLECTION_UNFOLLOWED: self._on_collection_unfollowed,
            FeedEventType.COLLECTION_HIDDEN: self._on_collection_hidden,
            FeedEventType.COLLECTION_UNHIDDEN: self._on_collection_unhidden,
            FeedEventType.USER_BLOCKED: self._on_user_blocked,
            FeedEventType.USER_UNBLOCKED: self._on_user_unblocked,
            FeedEventType.POST_CREATED: self._on_post_created,
            FeedEventType.PROFILE_UPDATED: self._on_profile_updated,
        }

    def attach(self) -> None:
        """Subscribe to the channel's trigger events"""
        if self.channel is not None:
            self.channel.subscribe(self.submit, event_types=TRIGGER_EVENT_TYPES)

    def detach(self) -> None:
        if self.channel is not None:
            self.channel.unsubscribe(self.submit)

    @property
    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        """Start the worker task on the running loop"""
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

        # Pending events are dropped so drain() callers are released
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

    async def submit(self, event: FeedEvent) -> None:
        await self._queue.put(event)

    async def drain(self) -> None:
        """Wait until every queued event has been applied"""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.handle(event)
            except Exception as e:
                logger.error(f"Error applying {event.event_type.value} for user {self.cache.user_id}: {e}")
                await self.cache.invalidate(reason='event handler failed')
            finally:
                self._queue.task_done()

    async def handle(self, event: FeedEvent) -> bool:
        """
        Apply one event to the cache

        Returns:
            True if the cache changed
        """
        handler = self._handlers.get(event.event_type)
        if handler is None:
            return False

        changed = await handler(event)
        if changed:
            self.applied_count += 1
            logger.info(f"Applied {event.event_type.value} to feed cache of user {self.cache.user_id}")
            await self._publish_feed_updated()
        return changed

    async def _publish_feed_updated(self) -> None:
        if self.channel is None:
            return
        await self.channel.publish(FeedEvent(FeedEventType.FEED_UPDATED, self.cache.user_id))

    def _is_own(self, event: FeedEvent) -> bool:
        return event.user_id == self.cache.user_id

    def _blocked_counterpart(self, event: FeedEvent) -> Optional[str]:
        """The other user of a block event involving this session, in either direction"""
        if event.user_id == self.cache.user_id:
            return event.target_user_id
        if event.target_user_id == self.cache.user_id:
            return event.user_id
        return None

    async def _on_collection_followed(self, event: FeedEvent) -> bool:
        if not self._is_own(event):
            return False
        await self.cache.mark_stale()
        return True

    async def _on_collection_unfollowed(self, event: FeedEvent) -> bool:
        if not self._is_own(event) or not event.collection_id:
            return False
        collection_id = event.collection_id
        await self.cache.patch_remove(lambda entry: entry.collection.id == collection_id)
        await self.cache.forget_collection(collection_id)
        return True

    async def _on_collection_hidden(self, event: FeedEvent) -> bool:
        if not self._is_own(event) or not event.collection_id:
            return False
        collection_id = event.collection_id
        await self.cache.patch_remove(lambda entry: entry.collection.id == collection_id)
        await self.cache.invalidate(reason=f'collection {collection_id} hidden', clear_profile=True)
        return True

    async def _on_collection_unhidden(self, event: FeedEvent) -> bool:
        if not self._is_own(event):
            return False
        await self.cache.invalidate(reason=f'collection {event.collection_id} unhidden', clear_profile=True)
        return True

    async def _on_user_blocked(self, event: FeedEvent) -> bool:
        blocked_user_id = self._blocked_counterpart(event)
        if not blocked_user_id:
            return False
        await self.cache.patch_remove(
            lambda entry: entry.post.author_id == blocked_user_id or entry.collection.owner_id == blocked_user_id
        )
        await self.cache.invalidate(reason=f'user {blocked_user_id} blocked', clear_profile=True)
        return True

    async def _on_user_unblocked(self, event: FeedEvent) -> bool:
        if not self._blocked_counterpart(event):
            return False
        await self.cache.invalidate(reason='user unblocked', clear_profile=True)
        return True

    async def _on_post_created(self, event: FeedEvent) -> bool:
        # Broadcast by the author, so it is matched on collection not user
        if event.collection_id not in self.cache.tracked_collection_ids:
            return False
        await self.cache.invalidate(reason=f'new post in collection {event.collection_id}')
        return True

    async def _on_profile_updated(self, event: FeedEvent) -> bool:
        if not self._is_own(event):
            return False
        await self.cache.invalidate(reason='profile updated', clear_profile=True)
        return True
