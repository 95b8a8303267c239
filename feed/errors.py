"""
Error types raised by the feed aggregation system.
"""
from typing import Iterable, Optional


class FeedError(Exception):
    """Base class for feed errors."""


class SourceUnavailable(FeedError):
    """A single collection could not be fetched from the document store."""

    def __init__(self, collection_id: str, cause: Optional[BaseException] = None):
        self.collection_id = collection_id
        self.cause = cause
        message = f"Collection {collection_id} unavailable"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class AuthenticationRequired(FeedError):
    """No current user to aggregate against."""

    def __init__(self, message: str = "User not authenticated"):
        super().__init__(message)


class FeedUnavailable(FeedError):
    """The follow graph or profile service failed, so no feed can be built."""


class CacheCorrupt(FeedError):
    """A cached feed violates an internal invariant."""

    def __init__(self, duplicate_ids: Iterable[str]):
        self.duplicate_ids = sorted(set(duplicate_ids))
        super().__init__(f"Duplicate post ids in cached feed: {self.duplicate_ids}")
