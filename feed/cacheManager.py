"""
Per-session feed cache for the feed aggregation system.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set

from feed.contentFilters import check_unique_entries
from feed.errors import CacheCorrupt
from feed.models import CacheEntry, Collection, FeedEntry, UserProfile

logger = logging.getLogger(__name__)


class FeedCache:
    def __init__(self, user_id: str):
        """
        Initialize an empty cache owned by one user session

        All mutations are serialized through a single asyncio lock so
        concurrently arriving invalidations cannot interleave.

        Args:
            user_id: Owner of the cached feed
        """
        self.user_id = user_id
        self._entry: Optional[CacheEntry] = None
        self._profile: Optional[UserProfile] = None
        self._stale = False
        self._generation = 0
        self._loading_collection_ids: Set[str] = set()
        self._lock = asyncio.Lock()

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_loaded(self) -> bool:
        return self._entry is not None and self._entry.loaded

    @property
    def is_stale(self) -> bool:
        return self._stale

    def get(self) -> Optional[CacheEntry]:
        """
        Return a snapshot of the cached feed

        Returns:
            CacheEntry copy, or None if uninitialized
        """
        if not self.is_loaded:
            return None

        entry = self._entry
        return CacheEntry(
            entries=list(entry.entries),
            fingerprint=entry.fingerprint,
            collections=list(entry.collections),
            cursor=entry.cursor,
            has_more=entry.has_more,
            loaded=entry.loaded,
            delivered_ids=set(entry.delivered_ids),
            created_at=entry.created_at,
            updated_at=entry.updated_at
        )

    @property
    def tracked_collection_ids(self) -> Set[str]:
        """Collections of the cached feed plus those of a load in flight"""
        tracked = set(self._loading_collection_ids)
        if self.is_loaded:
            tracked |= self._entry.collection_ids
        return tracked

    def get_profile(self) -> Optional[UserProfile]:
        return self._profile

    async def begin_load(self, collections: List[Collection]) -> None:
        """Record the collections a load is about to fetch from"""
        async with self._lock:
            self._loading_collection_ids = {c.id for c in collections}

    async def set_profile(self, profile: UserProfile) -> None:
        async with self._lock:
            self._profile = profile

    async def set(
        self,
        entries: List[FeedEntry],
        follow_set_fingerprint: str,
        collections: Optional[List[Collection]] = None,
        cursor: Optional[datetime] = None,
        has_more: bool = True,
        expected_generation: Optional[int] = None
    ) -> Optional[int]:
        """
        Replace the cached feed wholesale and mark it loaded

        Args:
            expected_generation: Generation observed when the load started;
                the write is refused if an event moved the cache on since

        Returns:
            The new cache generation, or None if the write was refused
        """
        async with self._lock:
            if expected_generation is not None and expected_generation != self._generation:
                logger.info(f"Refusing outdated feed for user {self.user_id} "
                            f"(load generation {expected_generation}, current {self._generation})")
                return None

            self._loading_collection_ids = set()
            self._entry = CacheEntry(
                entries=list(entries),
                fingerprint=follow_set_fingerprint,
                collections=list(collections or []),
                cursor=cursor,
                has_more=has_more,
                loaded=True,
                delivered_ids={entry.post_id for entry in entries}
            )
            self._stale = False
            self._generation += 1
            logger.info(f"Cached {len(entries)} entries for user {self.user_id} (generation {self._generation})")
            return self._generation

    def matches_follow_set(self, candidate_fingerprint: str) -> bool:
        """Check whether the cached feed was built from this follow set snapshot"""
        if not self.is_loaded:
            return False
        return self._entry.fingerprint == candidate_fingerprint

    async def append(
        self,
        entries: List[FeedEntry],
        generation: int,
        cursor: Optional[datetime],
        has_more: bool
    ) -> bool:
        """
        Append a pagination page to the cached feed

        Args:
            entries: Newly delivered entries in display order
            generation: Cache generation observed when the request started
            cursor: Cursor for the next page
            has_more: Whether another page may exist

        Returns:
            False if the cache moved on since the request started
        """
        async with self._lock:
            if generation != self._generation or not self.is_loaded:
                logger.info(f"Discarding superseded page for user {self.user_id} "
                            f"(request generation {generation}, current {self._generation})")
                return False

            new_entries = [e for e in entries if e.post_id not in self._entry.delivered_ids]
            self._entry.entries.extend(new_entries)
            self._entry.delivered_ids.update(e.post_id for e in new_entries)
            if cursor is not None:
                self._entry.cursor = cursor
            self._entry.has_more = has_more
            self._entry.updated_at = datetime.now(timezone.utc)
            logger.info(f"Appended {len(new_entries)} entries for user {self.user_id}")
            return True

    async def patch_remove(self, predicate: Callable[[FeedEntry], bool]) -> int:
        """
        Remove matching entries without discarding the rest of the cache

        Returns:
            Number of entries removed
        """
        async with self._lock:
            if not self.is_loaded:
                return 0

            kept = [entry for entry in self._entry.entries if not predicate(entry)]
            removed_count = len(self._entry.entries) - len(kept)
            self._entry.entries = kept
            if removed_count:
                self._entry.updated_at = datetime.now(timezone.utc)
            logger.debug(f"Patched cache for user {self.user_id}: removed {removed_count} entries")
            return removed_count

    async def forget_collection(self, collection_id: str) -> None:
        """Drop a collection from the cached follow list and from any load in flight"""
        async with self._lock:
            if self.is_loaded:
                self._entry.collections = [c for c in self._entry.collections if c.id != collection_id]
            self._loading_collection_ids.discard(collection_id)
            self._generation += 1

    async def mark_stale(self) -> None:
        """Keep serving the cached feed but force a reload on the next read"""
        async with self._lock:
            self._stale = True
            self._generation += 1

    async def invalidate(self, reason: str = '', clear_profile: bool = False) -> None:
        """Reset to uninitialized"""
        async with self._lock:
            self._entry = None
            self._stale = False
            self._generation += 1
            if clear_profile:
                self._profile = None
            logger.info(f"Invalidated feed cache for user {self.user_id}" + (f" ({reason})" if reason else ''))

    async def verify_integrity(self) -> bool:
        """
        Check cached entries for duplicate post ids

        A corrupt cache is invalidated rather than raised.

        Returns:
            True if the cache is consistent or empty
        """
        entry = self._entry
        if entry is None:
            return True

        try:
            check_unique_entries(entry.entries)
        except CacheCorrupt as e:
            logger.error(f"Cache integrity check failed for user {self.user_id}: {e}")
            await self.invalidate(reason='integrity check failed')
            return False
        return True

    def stats(self) -> Dict:
        entry = self._entry
        return {
            'user_id': self.user_id,
            'loaded': self.is_loaded,
            'stale': self._stale,
            'generation': self._generation,
            'entries': len(entry.entries) if entry else 0,
            'updated_at': entry.updated_at.isoformat() if entry else None,
        }
