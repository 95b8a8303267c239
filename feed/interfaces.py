"""
Collaborator interfaces consumed by the feed engine.

The engine never implements these; client.redis provides the production
backing and the tests provide in-memory fakes.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from feed.models import Collection, Post, UserProfile


class DocumentStore(ABC):

    @abstractmethod
    async def query_posts(
        self,
        collection_id: str,
        limit: int,
        before: Optional[datetime] = None,
        exclude_deleted: bool = True
    ) -> List[Post]:
        """Page of posts in a collection, newest first, strictly older than `before`."""
        raise NotImplementedError


class FollowGraph(ABC):

    @abstractmethod
    async def get_followed_collections(self, user_id: str) -> List[Collection]:
        raise NotImplementedError

    @abstractmethod
    async def unfollow(self, collection_id: str, user_id: str) -> None:
        raise NotImplementedError


class ProfileService(ABC):

    @abstractmethod
    async def get_current_user_profile(self, user_id: str) -> UserProfile:
        raise NotImplementedError


class EventPublisher(ABC):

    @abstractmethod
    async def publish(self, event) -> None:
        raise NotImplementedError
