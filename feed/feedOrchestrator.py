"""
Feed aggregator that coordinates fetching, filtering, ranking and caching.
"""
import logging
import random
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from feed.cacheManager import FeedCache
from feed.config import INITIAL_COLLECTION_LIMIT, MAX_LOAD_ATTEMPTS, PageSizes
from feed.contentFilters import deduplicate_entries, filter_for_follow_set, filter_viewable_collections
from feed.errors import AuthenticationRequired, FeedUnavailable
from feed.events import EventChannel, FeedEvent, FeedEventType
from feed.interfaces import DocumentStore, FollowGraph, ProfileService
from feed.models import Collection, FeedEntry, FeedPage, FollowSet, UserProfile
from feed.postCollector import collect_entries, partition_collections
from feed.rankingEngine import rank_entries, sort_chronologically
from feed.sourceFetcher import SourceFetcher

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FeedAggregator:
    def __init__(
        self,
        store: DocumentStore,
        follow_graph: FollowGraph,
        profile_service: ProfileService,
        cache: FeedCache,
        channel: Optional[EventChannel] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = _utcnow,
        page_size: int = PageSizes.DISPLAY,
        initial_collection_limit: int = INITIAL_COLLECTION_LIMIT
    ):
        """
        Initialize aggregator for one user session

        Args:
            store: Document store holding posts
            follow_graph: Source of followed collections
            profile_service: Source of block and hide sets
            cache: Session cache this aggregator reads and writes
            channel: Event channel for outward notifications
            rng: Random source for ranking jitter and reshuffles
            clock: Returns the reference time for recency scoring
            page_size: Entries returned by initial load and refresh
            initial_collection_limit: Collections fetched on initial load
        """
        self.fetcher = SourceFetcher(store)
        self.follow_graph = follow_graph
        self.profile_service = profile_service
        self.cache = cache
        self.channel = channel
        self.rng = rng or random.Random()
        self.clock = clock
        self.page_size = page_size
        self.initial_collection_limit = initial_collection_limit
        self._refresh_epoch = 0

    def _require_user(self, user_id: Optional[str]) -> None:
        if not user_id:
            raise AuthenticationRequired()
        if user_id != self.cache.user_id:
            raise AuthenticationRequired(f"Session belongs to a different user than {user_id}")

    async def _get_collections(self, user_id: str) -> List[Collection]:
        try:
            collections = await self.follow_graph.get_followed_collections(user_id)
        except Exception as e:
            logger.error(f"Failed to load followed collections for user {user_id}: {e}")
            raise FeedUnavailable(f"Followed collections unavailable: {e}") from e
        return filter_viewable_collections(list(collections), user_id)

    async def _get_profile(self, user_id: str) -> UserProfile:
        profile = self.cache.get_profile()
        if profile is not None:
            return profile

        try:
            profile = await self.profile_service.get_current_user_profile(user_id)
        except Exception as e:
            logger.error(f"Failed to load profile for user {user_id}: {e}")
            raise FeedUnavailable(f"User profile unavailable: {e}") from e

        await self.cache.set_profile(profile)
        return profile

    async def _load_context(self, user_id: str) -> Tuple[List[Collection], FollowSet]:
        """
        Read the follow graph and profile into a FollowSet snapshot

        Returns:
            Tuple of (fetchable collections, follow set); hidden
            collections are excluded from the fetchable list
        """
        collections = await self._get_collections(user_id)
        profile = await self._get_profile(user_id)
        follow_set = FollowSet.from_profile(collections, profile)
        fetchable = [c for c in collections if c.id not in follow_set.hidden_collection_ids]
        return fetchable, follow_set

    def _prepare(self, entries: List[FeedEntry], follow_set: FollowSet, is_refresh: bool) -> List[FeedEntry]:
        entries = deduplicate_entries(entries)
        entries = filter_for_follow_set(entries, follow_set)
        return rank_entries(entries, now=self.clock(), is_refresh=is_refresh, rng=self.rng)

    async def load_initial(self, user_id: str, page_size: Optional[int] = None) -> FeedPage:
        """
        Build the first page from an initial subset of followed collections

        Args:
            user_id: Current user
            page_size: Override for the display page size

        Returns:
            FeedPage with ranked entries and the cursor of the last one

        Raises:
            AuthenticationRequired: if there is no current user
            FeedUnavailable: if the follow graph or profile cannot be read
        """
        self._require_user(user_id)
        page_size = page_size or self.page_size
        epoch = self._refresh_epoch

        for attempt in range(1, MAX_LOAD_ATTEMPTS + 1):
            generation = self.cache.generation

            collections, follow_set = await self._load_context(user_id)
            initial, deferred = partition_collections(collections, self.initial_collection_limit)
            logger.info(f"Initial load for user {user_id}: {len(initial)} collections now, {len(deferred)} deferred")

            await self.cache.begin_load(collections)
            result = await collect_entries(self.fetcher, initial, PageSizes.INITIAL)
            ranked = self._prepare(result.entries, follow_set, is_refresh=False)

            page = ranked[:page_size]
            cursor = page[-1].created_at if page else None
            has_more = len(ranked) > len(page) or bool(deferred) or not result.exhausted

            if epoch != self._refresh_epoch:
                logger.info(f"Initial load for user {user_id} superseded by refresh")
                return FeedPage(entries=page, has_more=has_more, cursor=cursor, superseded=True)

            stored = await self.cache.set(
                page, follow_set.fingerprint(), collections=collections, cursor=cursor,
                has_more=has_more, expected_generation=generation
            )
            if stored is not None:
                logger.info(f"Initial load complete for user {user_id}: {len(page)}/{len(ranked)} entries served")
                return FeedPage(entries=page, has_more=has_more, cursor=cursor)

            logger.info(f"Cache event during initial load for user {user_id} (attempt {attempt}/{MAX_LOAD_ATTEMPTS})")

        return FeedPage(entries=page, has_more=has_more, cursor=cursor, superseded=True)

    async def load_more(self, user_id: str, cursor: Optional[datetime] = None) -> FeedPage:
        """
        Fetch older posts from every followed collection and append them

        Pagination pages keep chronological order and are never re-ranked.

        Args:
            user_id: Current user
            cursor: Only posts created strictly before this time; defaults
                to the cached cursor

        Returns:
            FeedPage of newly appended entries, marked superseded if a
            refresh happened while it was in flight
        """
        self._require_user(user_id)
        epoch = self._refresh_epoch
        generation = self.cache.generation
        cached = self.cache.get()

        if cursor is None and cached is not None:
            cursor = cached.cursor
        if cursor is None:
            return FeedPage(entries=[], has_more=False)

        if cached is not None:
            collections = cached.collections
            follow_set = FollowSet.from_profile(collections, await self._get_profile(user_id))
            delivered_ids = cached.delivered_ids
        else:
            collections, follow_set = await self._load_context(user_id)
            delivered_ids = set()

        result = await collect_entries(self.fetcher, collections, PageSizes.LOAD_MORE, cursor)

        horizon = result.horizon
        entries = [e for e in result.entries if e.created_at < cursor]
        if horizon is not None:
            # Older posts may be missing from collections that filled their page
            entries = [e for e in entries if e.created_at >= horizon]
        entries = sort_chronologically(entries)
        entries = deduplicate_entries(entries, seen_ids=delivered_ids)
        entries = filter_for_follow_set(entries, follow_set)

        has_more = not result.exhausted
        next_cursor = horizon if horizon is not None else (entries[-1].created_at if entries else cursor)

        if epoch != self._refresh_epoch:
            logger.info(f"Discarding load_more for user {user_id}: superseded by refresh")
            return FeedPage(entries=[], has_more=has_more, cursor=cursor, superseded=True)

        if cached is not None:
            appended = await self.cache.append(entries, generation, next_cursor, has_more)
            if not appended:
                return FeedPage(entries=[], has_more=has_more, cursor=cursor, superseded=True)

        logger.info(f"Loaded {len(entries)} more entries for user {user_id} (has_more={has_more})")
        return FeedPage(entries=entries, has_more=has_more, cursor=next_cursor)

    async def refresh(self, user_id: str, page_size: Optional[int] = None) -> FeedPage:
        """
        Discard all cached state and rebuild from the full followed set

        The cache is wiped before reloading. If the reload then fails
        outright, the previously cached entries are returned marked stale
        but are not written back.

        Args:
            user_id: Current user
            page_size: Override for the display page size

        Returns:
            FeedPage ranked in refresh mode
        """
        self._require_user(user_id)
        page_size = page_size or self.page_size
        self._refresh_epoch += 1
        epoch = self._refresh_epoch

        previous = self.cache.get()
        await self.cache.invalidate(reason='refresh', clear_profile=True)

        for attempt in range(1, MAX_LOAD_ATTEMPTS + 1):
            # Taken after the wipe so only events arriving from here on count
            generation = self.cache.generation

            try:
                collections, follow_set = await self._load_context(user_id)
            except FeedUnavailable:
                if previous is not None:
                    logger.warning(f"Refresh failed for user {user_id}, serving {len(previous.entries)} stale entries")
                    return FeedPage(entries=previous.entries, has_more=previous.has_more,
                                    cursor=previous.cursor, stale=True)
                raise

            await self.cache.begin_load(collections)
            result = await collect_entries(self.fetcher, collections, PageSizes.REFRESH)
            if collections and len(result.failed_collection_ids) == len(collections) and previous is not None:
                logger.warning(f"Every collection failed during refresh for user {user_id}, serving stale entries")
                return FeedPage(entries=previous.entries, has_more=previous.has_more,
                                cursor=previous.cursor, stale=True)

            ranked = self._prepare(result.entries, follow_set, is_refresh=True)
            page = ranked[:page_size]
            cursor = page[-1].created_at if page else None
            has_more = len(ranked) > len(page) or not result.exhausted

            if epoch != self._refresh_epoch:
                logger.info(f"Refresh for user {user_id} superseded by a newer refresh")
                return FeedPage(entries=page, has_more=has_more, cursor=cursor, superseded=True)

            stored = await self.cache.set(
                page, follow_set.fingerprint(), collections=collections, cursor=cursor,
                has_more=has_more, expected_generation=generation
            )
            if stored is not None:
                logger.info(f"Refresh complete for user {user_id}: {len(page)} entries from {len(collections)} collections")
                return FeedPage(entries=page, has_more=has_more, cursor=cursor)

            logger.info(f"Cache event during refresh for user {user_id} (attempt {attempt}/{MAX_LOAD_ATTEMPTS})")

        return FeedPage(entries=page, has_more=has_more, cursor=cursor, superseded=True)

    async def get_feed(
        self,
        user_id: str,
        cursor: Optional[datetime] = None,
        page_size: Optional[int] = None
    ) -> FeedPage:
        """
        Serve a feed read: paginate, reuse the cache, or load fresh

        The cached feed is reused only when it is loaded, not stale, intact,
        and was built from the user's current follow set.
        """
        self._require_user(user_id)

        if cursor is not None:
            return await self.load_more(user_id, cursor)

        if self.cache.is_loaded and not self.cache.is_stale and await self.cache.verify_integrity():
            _, follow_set = await self._load_context(user_id)
            cached = self.cache.get()
            if cached is not None and self.cache.matches_follow_set(follow_set.fingerprint()):
                logger.info(f"Serving {len(cached.entries)} cached entries to user {user_id}")
                return FeedPage(entries=cached.entries, has_more=cached.has_more, cursor=cached.cursor)
            logger.info(f"Follow set changed for user {user_id}, reloading")

        return await self.load_initial(user_id, page_size)

    async def unfollow_collection(self, user_id: str, collection_id: str) -> None:
        """Unfollow through the follow graph and announce it on the channel"""
        self._require_user(user_id)
        await self.follow_graph.unfollow(collection_id, user_id)

        event = FeedEvent(FeedEventType.COLLECTION_UNFOLLOWED, user_id, collection_id=collection_id)
        if self.channel is not None:
            await self.channel.publish(event)
        else:
            await self.cache.patch_remove(lambda entry: entry.collection.id == collection_id)
            await self.cache.forget_collection(collection_id)
