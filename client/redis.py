import json
import logging
import os
import time
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

import redis.asyncio as aioredis

from feed.config import FEED_EVENTS_CHANNEL
from feed.events import FeedEvent
from feed.interfaces import DocumentStore, EventPublisher, FollowGraph, ProfileService
from feed.models import Collection, Post, UserProfile


class Client(DocumentStore, FollowGraph, ProfileService, EventPublisher):
    """
    Redis backing for posts, follows, profiles and feed events

    Keys:
        post:{post_id}                  JSON post document
        collection_posts:{collection}   ZSET post_id scored by creation time
        collection:{collection_id}      JSON collection document
        following:{user_id}             ZSET collection_id scored by follow time
        profile:{user_id}               JSON user profile
    """

    def __init__(self, redis_url: str = None, events_channel: str = FEED_EVENTS_CHANNEL):
        """
        Initialize Redis client for the feed backing store

        Args:
            redis_url: Redis connection URL (from environment)
            events_channel: Pub/sub channel carrying feed events
        """
        self.logger = logging.getLogger(self.__class__.__name__)

        if not redis_url:
            redis_url = os.getenv('REDIS_URL', 'redis://localhost:6379')

        self.events_channel = events_channel
        self.client = aioredis.from_url(redis_url, decode_responses=True)

    async def connect(self) -> None:
        """Verify the connection; raises if Redis is unreachable"""
        try:
            await self.client.ping()
            self.logger.info("Redis connection established")
        except Exception as e:
            self.logger.error(f"Failed to connect to Redis: {e}")
            raise

    async def close(self) -> None:
        await self.client.aclose()

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except Exception as e:
            self.logger.error(f"Redis ping failed: {e}")
            return False

    # Posts

    async def query_posts(
        self,
        collection_id: str,
        limit: int,
        before: Optional[datetime] = None,
        exclude_deleted: bool = True
    ) -> List[Post]:
        """
        Page of posts in a collection, newest first

        Args:
            collection_id: Collection to read
            limit: Maximum posts to return
            before: Only posts created strictly before this time
            exclude_deleted: Skip posts flagged as deleted

        Returns:
            List of posts ordered by creation time descending
        """
        key = f"collection_posts:{collection_id}"
        max_score = f"({before.timestamp()}" if before is not None else "+inf"

        posts = []
        offset = 0
        while len(posts) < limit:
            post_ids = await self.client.zrevrangebyscore(key, max_score, "-inf", start=offset, num=limit)
            if not post_ids:
                break

            raw_posts = await self.client.mget([f"post:{post_id}" for post_id in post_ids])
            for data in raw_posts:
                if not data:
                    continue
                post = Post.from_dict(json.loads(data))
                if exclude_deleted and post.is_deleted:
                    continue
                posts.append(post)

            offset += len(post_ids)
            if len(post_ids) < limit:
                break

        self.logger.debug(f"Queried {len(posts)} posts from collection {collection_id}")
        return posts[:limit]

    async def save_post(self, post: Post) -> bool:
        """Store a post and index it under its collection"""
        try:
            pipeline = self.client.pipeline()
            pipeline.set(f"post:{post.id}", json.dumps(post.to_dict(), default=str))
            pipeline.zadd(f"collection_posts:{post.collection_id}", {post.id: post.created_at.timestamp()})
            await pipeline.execute()
            return True
        except Exception as e:
            self.logger.error(f"Failed to save post {post.id}: {e}")
            return False

    async def delete_post(self, post_id: str) -> bool:
        """Flag a post deleted and drop it from its collection index"""
        try:
            data = await self.client.get(f"post:{post_id}")
            if not data:
                return False

            document = json.loads(data)
            document['isDeleted'] = True
            collection_id = document.get('collectionId', '')

            pipeline = self.client.pipeline()
            pipeline.set(f"post:{post_id}", json.dumps(document, default=str))
            pipeline.zrem(f"collection_posts:{collection_id}", post_id)
            await pipeline.execute()
            self.logger.info(f"Deleted post {post_id} from collection {collection_id}")
            return True
        except Exception as e:
            self.logger.error(f"Failed to delete post {post_id}: {e}")
            return False

    # Collections and follows

    async def save_collection(self, collection: Collection) -> bool:
        try:
            await self.client.set(f"collection:{collection.id}", json.dumps(collection.to_dict()))
            return True
        except Exception as e:
            self.logger.error(f"Failed to save collection {collection.id}: {e}")
            return False

    async def follow(self, user_id: str, collection_id: str, followed_at: Optional[float] = None) -> bool:
        try:
            score = followed_at if followed_at is not None else time.time()
            await self.client.zadd(f"following:{user_id}", {collection_id: score})
            self.logger.info(f"User {user_id} followed collection {collection_id}")
            return True
        except Exception as e:
            self.logger.error(f"Failed to follow collection {collection_id} for user {user_id}: {e}")
            return False

    async def get_followed_collections(self, user_id: str) -> List[Collection]:
        """
        Collections a user follows, oldest follow first

        Args:
            user_id: User identifier

        Returns:
            List of collections; ids without a stored document are skipped
        """
        collection_ids = await self.client.zrange(f"following:{user_id}", 0, -1)
        if not collection_ids:
            self.logger.info(f"User {user_id} follows no collections")
            return []

        raw_collections = await self.client.mget([f"collection:{cid}" for cid in collection_ids])

        collections = []
        for collection_id, data in zip(collection_ids, raw_collections):
            if not data:
                self.logger.warning(f"Followed collection {collection_id} not found for user {user_id}")
                continue
            collections.append(Collection.from_dict(json.loads(data)))

        self.logger.info(f"Retrieved {len(collections)} followed collections for user {user_id}")
        return collections

    async def unfollow(self, collection_id: str, user_id: str) -> None:
        await self.client.zrem(f"following:{user_id}", collection_id)
        self.logger.info(f"User {user_id} unfollowed collection {collection_id}")

    # Profiles

    async def save_profile(self, profile: UserProfile) -> bool:
        try:
            await self.client.set(f"profile:{profile.user_id}", json.dumps(profile.to_dict()))
            return True
        except Exception as e:
            self.logger.error(f"Failed to save profile for user {profile.user_id}: {e}")
            return False

    async def get_current_user_profile(self, user_id: str) -> UserProfile:
        data = await self.client.get(f"profile:{user_id}")
        if not data:
            self.logger.info(f"No stored profile for user {user_id}, using empty profile")
            return UserProfile(user_id=user_id)

        document = json.loads(data)
        document.setdefault('userId', user_id)
        return UserProfile.from_dict(document)

    # Events

    async def publish(self, event: FeedEvent) -> None:
        await self.client.publish(self.events_channel, json.dumps(event.to_dict()))
        self.logger.debug(f"Published {event.event_type.value} for user {event.user_id}")

    async def listen_events(self, on_event: Callable[[FeedEvent], Awaitable[None]]) -> None:
        """
        Forward events from the pub/sub channel until cancelled

        Args:
            on_event: Coroutine receiving each decoded event
        """
        pubsub = self.client.pubsub()
        await pubsub.subscribe(self.events_channel)
        self.logger.info(f"Listening for feed events on {self.events_channel}")

        try:
            async for message in pubsub.listen():
                if message.get('type') != 'message':
                    continue
                try:
                    event = FeedEvent.from_dict(json.loads(message['data']))
                except (ValueError, KeyError, TypeError) as e:
                    self.logger.warning(f"Ignoring malformed feed event: {e}")
                    continue
                await on_event(event)
        finally:
            await pubsub.unsubscribe(self.events_channel)
            await pubsub.aclose()

    async def get_stats(self) -> Dict:
        """Get Redis statistics"""
        try:
            info = await self.client.info()
            return {
                'connected_clients': info.get('connected_clients', 0),
                'used_memory_human': info.get('used_memory_human', '0B'),
                'total_commands_processed': info.get('total_commands_processed', 0),
                'keyspace_hits': info.get('keyspace_hits', 0),
                'keyspace_misses': info.get('keyspace_misses', 0)
            }
        except Exception as e:
            self.logger.error(f"Failed to get Redis stats: {e}")
            return {}
