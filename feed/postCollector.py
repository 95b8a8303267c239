"""
Concurrent fan-out collection of posts across followed collections.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple

from feed.config import INITIAL_COLLECTION_LIMIT
from feed.errors import SourceUnavailable
from feed.models import Collection, FeedEntry
from feed.sourceFetcher import SourceFetcher

logger = logging.getLogger(__name__)


@dataclass
class CollectionResult:
    entries: List[FeedEntry] = field(default_factory=list)
    failed_collection_ids: List[str] = field(default_factory=list)
    requested_count: int = 0
    # Oldest post of every collection that filled its page
    full_page_floors: List[datetime] = field(default_factory=list)

    @property
    def fetched_count(self) -> int:
        return len(self.entries)

    @property
    def exhausted(self) -> bool:
        """True when no collection filled its page, so nothing older is left"""
        return not self.full_page_floors

    @property
    def horizon(self) -> Optional[datetime]:
        """
        Newest point down to which the merged round is complete

        Every post at or after this time, across all collections, was
        returned by the round.
        """
        if not self.full_page_floors:
            return None
        return max(self.full_page_floors)


def partition_collections(
    collections: List[Collection],
    initial_limit: int = INITIAL_COLLECTION_LIMIT
) -> Tuple[List[Collection], List[Collection]]:
    """
    Split followed collections into an initial subset and a deferred remainder

    Args:
        collections: Followed collections in follow order
        initial_limit: Size of the initial subset

    Returns:
        Tuple of (initial, deferred)
    """
    return list(collections[:initial_limit]), list(collections[initial_limit:])


async def collect_entries(
    fetcher: SourceFetcher,
    collections: List[Collection],
    limit: int,
    cursor: Optional[datetime] = None
) -> CollectionResult:
    """
    Fetch posts from every collection concurrently and join before returning

    A failing collection contributes zero posts; it never aborts the batch.

    Args:
        fetcher: Per-collection fetcher
        collections: Collections to fan out across
        limit: Posts per collection
        cursor: Only posts created strictly before this time

    Returns:
        CollectionResult with merged entries in collection order
    """
    result = CollectionResult(requested_count=limit * len(collections))
    if not collections:
        return result

    outcomes = await asyncio.gather(
        *(fetcher.fetch_entries(collection, limit, cursor) for collection in collections),
        return_exceptions=True
    )

    for collection, outcome in zip(collections, outcomes):
        if isinstance(outcome, SourceUnavailable):
            logger.warning(f"Failed to collect from collection {collection.id}: {outcome}")
            result.failed_collection_ids.append(collection.id)
        elif isinstance(outcome, BaseException):
            # Cancellation and programming errors are not per-source failures
            raise outcome
        else:
            result.entries.extend(outcome)
            if outcome and len(outcome) >= limit:
                result.full_page_floors.append(min(entry.created_at for entry in outcome))

    if result.failed_collection_ids:
        logger.info(f"{len(result.failed_collection_ids)}/{len(collections)} collections failed during collection")

    logger.info(f"Collected {result.fetched_count} posts from {len(collections)} collections")
    return result
