import asyncio
import random
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from feed.cacheManager import FeedCache
from feed.events import EventChannel, FeedEvent
from feed.feedOrchestrator import FeedAggregator
from feed.interfaces import DocumentStore, FollowGraph, ProfileService
from feed.models import Collection, FeedEntry, Post, UserProfile

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
VIEWER = "viewer"


def make_post(
    post_id: str,
    author_id: str,
    collection_id: str = "c1",
    hours_ago: float = 1.0,
    engagement: float = 0.0,
    deleted: bool = False
) -> Post:
    return Post(
        id=post_id,
        author_id=author_id,
        collection_id=collection_id,
        created_at=NOW - timedelta(hours=hours_ago),
        engagement_score=engagement,
        is_deleted=deleted
    )


def make_collection(collection_id: str, owner_id: str = "owner", **kwargs) -> Collection:
    return Collection(id=collection_id, owner_id=owner_id, name=collection_id.upper(), **kwargs)


def make_entry(
    post_id: str,
    author_id: str,
    collection_id: str = "c1",
    owner_id: str = "owner",
    hours_ago: float = 1.0,
    engagement: float = 0.0
) -> FeedEntry:
    return FeedEntry(
        post=make_post(post_id, author_id, collection_id, hours_ago, engagement),
        collection=make_collection(collection_id, owner_id)
    )


class InMemoryDocumentStore(DocumentStore):
    def __init__(self):
        self.posts: Dict[str, List[Post]] = defaultdict(list)
        self.failing = set()
        self.calls = []
        self.pagination_gate: Optional[asyncio.Event] = None
        # Holds every query after its result is read, as a slow store would
        self.fetch_gate: Optional[asyncio.Event] = None
        self.fetch_started: Optional[asyncio.Event] = None

    async def query_posts(self, collection_id, limit, before=None, exclude_deleted=True):
        self.calls.append((collection_id, limit, before))
        if before is not None and self.pagination_gate is not None:
            await self.pagination_gate.wait()
        if collection_id in self.failing:
            raise ConnectionError(f"store offline for {collection_id}")

        posts = [p for p in self.posts[collection_id] if not (exclude_deleted and p.is_deleted)]
        if before is not None:
            posts = [p for p in posts if p.created_at < before]
        posts.sort(key=lambda p: p.created_at, reverse=True)

        if self.fetch_started is not None:
            self.fetch_started.set()
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        return posts[:limit]


class InMemoryFollowGraph(FollowGraph):
    def __init__(self):
        self.following: Dict[str, List[Collection]] = defaultdict(list)
        self.failing = False

    async def get_followed_collections(self, user_id):
        if self.failing:
            raise ConnectionError("follow graph offline")
        return list(self.following[user_id])

    async def unfollow(self, collection_id, user_id):
        self.following[user_id] = [c for c in self.following[user_id] if c.id != collection_id]


class InMemoryProfileService(ProfileService):
    def __init__(self):
        self.profiles: Dict[str, UserProfile] = {}
        self.failing = False
        self.reads = 0

    async def get_current_user_profile(self, user_id):
        if self.failing:
            raise ConnectionError("profile service offline")
        self.reads += 1
        return self.profiles.get(user_id, UserProfile(user_id=user_id))


class FeedWorld:
    """In-memory collaborators plus builders for one viewing user."""

    def __init__(self, user_id: str = VIEWER):
        self.user_id = user_id
        self.store = InMemoryDocumentStore()
        self.graph = InMemoryFollowGraph()
        self.profiles = InMemoryProfileService()
        self.collections: Dict[str, Collection] = {}
        self._post_seq = 0

    def add_collection(self, collection_id: str, owner_id: str = "owner", follow: bool = True, **kwargs) -> Collection:
        collection = make_collection(collection_id, owner_id, **kwargs)
        self.collections[collection_id] = collection
        if follow:
            self.graph.following[self.user_id].append(collection)
        return collection

    def add_post(
        self,
        collection_id: str,
        author_id: str,
        hours_ago: float,
        engagement: float = 0.0,
        post_id: Optional[str] = None,
        deleted: bool = False
    ) -> Post:
        self._post_seq += 1
        post = make_post(
            post_id or f"{collection_id}-p{self._post_seq}",
            author_id,
            collection_id,
            hours_ago,
            engagement,
            deleted
        )
        self.store.posts[collection_id].append(post)
        return post

    def set_profile(self, **kwargs) -> UserProfile:
        profile = UserProfile(user_id=self.user_id, **kwargs)
        self.profiles.profiles[self.user_id] = profile
        return profile

    def make_aggregator(
        self,
        cache: Optional[FeedCache] = None,
        channel: Optional[EventChannel] = None,
        seed: int = 7,
        page_size: int = 20
    ) -> FeedAggregator:
        return FeedAggregator(
            store=self.store,
            follow_graph=self.graph,
            profile_service=self.profiles,
            cache=cache or FeedCache(self.user_id),
            channel=channel,
            rng=random.Random(seed),
            clock=lambda: NOW,
            page_size=page_size
        )


class EventRecorder:
    def __init__(self):
        self.events: List[FeedEvent] = []

    async def __call__(self, event: FeedEvent) -> None:
        self.events.append(event)


class FakeRedisClient(DocumentStore, FollowGraph, ProfileService):
    """Stands in for client.redis.Client in server tests."""

    def __init__(self, world: FeedWorld):
        self.world = world
        self.published = []
        self.closed = False

    async def query_posts(self, collection_id, limit, before=None, exclude_deleted=True):
        return await self.world.store.query_posts(collection_id, limit, before, exclude_deleted)

    async def get_followed_collections(self, user_id):
        return await self.world.graph.get_followed_collections(user_id)

    async def unfollow(self, collection_id, user_id):
        await self.world.graph.unfollow(collection_id, user_id)

    async def get_current_user_profile(self, user_id):
        return await self.world.profiles.get_current_user_profile(user_id)

    async def connect(self):
        return None

    async def close(self):
        self.closed = True

    async def ping(self):
        return True

    async def publish(self, event):
        self.published.append(event)

    async def listen_events(self, on_event):
        await asyncio.Event().wait()

    async def get_stats(self):
        return {'used_memory_human': '1.00M'}


@pytest.fixture()
def world() -> FeedWorld:
    return FeedWorld()


@pytest.fixture()
def rng() -> random.Random:
    return random.Random(42)
