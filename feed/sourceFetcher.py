"""
Per-collection post retrieval for the feed aggregation system.
"""
import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from feed.config import FETCH_TIMEOUT_SECONDS
from feed.errors import SourceUnavailable
from feed.interfaces import DocumentStore
from feed.models import Collection, FeedEntry, Post

logger = logging.getLogger(__name__)


class SourceFetcher:
    def __init__(self, store: DocumentStore, timeout: float = FETCH_TIMEOUT_SECONDS):
        """
        Initialize fetcher over a document store

        Args:
            store: Backing document store
            timeout: Seconds before a single collection fetch is abandoned
        """
        self.store = store
        self.timeout = timeout

    async def fetch(self, collection_id: str, limit: int, cursor: Optional[datetime] = None) -> List[Post]:
        """
        Fetch a page of posts from one collection, newest first

        Args:
            collection_id: Collection to read
            limit: Maximum number of posts
            cursor: Only posts created strictly before this time

        Returns:
            Non-deleted posts ordered by creation time descending

        Raises:
            SourceUnavailable: if the store fails or times out
        """
        if limit <= 0:
            return []

        try:
            posts = await asyncio.wait_for(
                self.store.query_posts(collection_id, limit, before=cursor, exclude_deleted=True),
                timeout=self.timeout
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise SourceUnavailable(collection_id, e) from e

        # The store filters deletions too, but a stale index can still leak one
        posts = [post for post in posts if not post.is_deleted]
        if cursor is not None:
            posts = [post for post in posts if post.created_at < cursor]

        posts.sort(key=lambda post: post.created_at, reverse=True)
        return posts[:limit]

    async def fetch_entries(
        self,
        collection: Collection,
        limit: int,
        cursor: Optional[datetime] = None
    ) -> List[FeedEntry]:
        """Fetch posts and pair each with its source collection"""
        posts = await self.fetch(collection.id, limit, cursor)
        logger.debug(f"Fetched {len(posts)} posts from collection {collection.id}")
        return [FeedEntry(post=post, collection=collection) for post in posts]
