import os
import json
import base64
import asyncio
import logging
import time
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from client.redis import Client as RedisClient
from feed.cacheManager import FeedCache
from feed.config import MAX_SESSIONS, SESSION_IDLE_SECONDS, LoggingConfig
from feed.errors import AuthenticationRequired, FeedUnavailable
from feed.events import EventChannel, FeedEvent, FeedEventType
from feed.feedOrchestrator import FeedAggregator
from feed.invalidationHandler import FeedCacheInvalidator
from feed.models import parse_timestamp

# Configure logging
LoggingConfig.configure_logging()
logger = logging.getLogger(__name__)


@dataclass
class FeedSession:
    cache: FeedCache
    aggregator: FeedAggregator
    invalidator: FeedCacheInvalidator
    last_seen: float = 0.0


class FeedServer:
    def __init__(
        self,
        redis_client=None,
        max_sessions: int = MAX_SESSIONS,
        session_idle_seconds: float = SESSION_IDLE_SECONDS,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize feed server

        Args:
            redis_client: Backing client; a Redis client from the environment if None
            max_sessions: Sessions kept before the least recently used is closed
            session_idle_seconds: Sessions unused for longer than this are closed
            clock: Monotonic seconds used to age sessions
        """
        self.redis_client = redis_client or RedisClient()
        self.channel = EventChannel()
        # Badge updates leave the process over Redis
        self.channel.subscribe(self.redis_client.publish, event_types=[FeedEventType.FEED_UPDATED])
        self.sessions: OrderedDict[str, FeedSession] = OrderedDict()
        self.max_sessions = max_sessions
        self.session_idle_seconds = session_idle_seconds
        self.clock = clock
        self.listener_task: Optional[asyncio.Task] = None
        self.app = FastAPI(lifespan=self.lifespan)
        self.setup_routes()

    @asynccontextmanager
    async def lifespan(self, app: FastAPI):
        try:
            await self.redis_client.connect()
            self.listener_task = asyncio.create_task(self.redis_client.listen_events(self.forward_event))
        except Exception as e:
            logger.error(f"Starting without Redis event listener: {e}")

        yield

        if self.listener_task is not None:
            self.listener_task.cancel()
            try:
                await self.listener_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Redis event listener stopped with error: {e}")
        for user_id in list(self.sessions):
            await self.close_session(user_id)
        await self.redis_client.close()

    async def forward_event(self, event: FeedEvent) -> None:
        """Deliver an event from Redis to local sessions"""
        if event.event_type == FeedEventType.FEED_UPDATED:
            # Our own outbound signal echoed back
            return
        await self.channel.publish(event)

    def decode_user_did(self, auth_header: str) -> Optional[str]:
        """Extract user id from JWT token"""
        try:
            if not auth_header or not auth_header.startswith('Bearer '):
                return None

            jwt_token = auth_header.replace('Bearer ', '')
            parts = jwt_token.split('.')
            if len(parts) != 3:
                return None

            # Decode payload
            payload = parts[1]
            payload += '=' * (-len(payload) % 4)

            decoded = base64.urlsafe_b64decode(payload)
            payload_data = json.loads(decoded)

            return payload_data.get('iss') or payload_data.get('sub')

        except Exception as e:
            logger.warning(f"Failed to decode JWT: {e}")
            return None

    def require_user(self, request: Request) -> str:
        user_id = self.decode_user_did(request.headers.get('authorization', ''))
        if not user_id:
            raise HTTPException(status_code=401, detail="Authentication required")
        return user_id

    async def close_session(self, user_id: str) -> None:
        """Unsubscribe and stop a session's invalidator, then drop the session"""
        session = self.sessions.pop(user_id, None)
        if session is None:
            return
        session.invalidator.detach()
        await session.invalidator.stop()
        logger.info(f"Closed feed session for user {user_id}")

    async def evict_sessions(self) -> None:
        """Close idle sessions, then the least recently used ones over the limit"""
        now = self.clock()
        idle = [user_id for user_id, session in self.sessions.items()
                if now - session.last_seen > self.session_idle_seconds]
        for user_id in idle:
            await self.close_session(user_id)

        while self.sessions and len(self.sessions) >= self.max_sessions:
            oldest_user_id = next(iter(self.sessions))
            await self.close_session(oldest_user_id)

    async def get_session(self, user_id: str) -> FeedSession:
        """Get or create the feed session for a user"""
        session = self.sessions.get(user_id)
        if session is not None:
            session.last_seen = self.clock()
            self.sessions.move_to_end(user_id)
            return session

        await self.evict_sessions()

        cache = FeedCache(user_id)
        aggregator = FeedAggregator(
            store=self.redis_client,
            follow_graph=self.redis_client,
            profile_service=self.redis_client,
            cache=cache,
            channel=self.channel
        )
        invalidator = FeedCacheInvalidator(cache, self.channel)
        invalidator.attach()
        invalidator.start()

        session = FeedSession(cache=cache, aggregator=aggregator, invalidator=invalidator, last_seen=self.clock())
        self.sessions[user_id] = session
        logger.info(f"Created feed session for user {user_id} ({len(self.sessions)} active)")
        return session

    async def run_feed_call(self, call):
        try:
            page = await call
        except AuthenticationRequired as e:
            raise HTTPException(status_code=401, detail=str(e))
        except FeedUnavailable as e:
            logger.error(f"Feed unavailable: {e}")
            raise HTTPException(status_code=503, detail=str(e))
        return page.to_dict()

    def setup_routes(self):
        """Setup FastAPI routes"""

        @self.app.get("/")
        async def root():
            return {"status": "healthy", "service": "feed-server"}

        @self.app.get("/feed")
        async def get_feed(
            request: Request,
            cursor: Optional[str] = None,
            page_size: Optional[int] = Query(None, alias="pageSize", ge=1, le=100)
        ):
            user_id = self.require_user(request)

            cursor_time = None
            if cursor:
                try:
                    cursor_time = parse_timestamp(cursor)
                except (ValueError, OverflowError):
                    raise HTTPException(status_code=400, detail=f"Invalid cursor: {cursor}")

            session = await self.get_session(user_id)
            response = await self.run_feed_call(
                session.aggregator.get_feed(user_id, cursor=cursor_time, page_size=page_size)
            )
            logger.info(f"Served {len(response['entries'])} entries to user {user_id}")
            return response

        @self.app.post("/feed/refresh")
        async def refresh_feed(
            request: Request,
            page_size: Optional[int] = Query(None, alias="pageSize", ge=1, le=100)
        ):
            user_id = self.require_user(request)
            session = await self.get_session(user_id)
            return await self.run_feed_call(session.aggregator.refresh(user_id, page_size=page_size))

        @self.app.post("/feed/events", status_code=202)
        async def ingest_event(request: Request, payload: Dict):
            user_id = self.require_user(request)
            try:
                event = FeedEvent.from_dict(payload)
            except (ValueError, KeyError) as e:
                raise HTTPException(status_code=400, detail=f"Invalid event: {e}")

            # Events are accepted only from the user who acted
            if event.user_id != user_id:
                logger.warning(f"User {user_id} tried to post a {event.event_type.value} event for {event.user_id}")
                raise HTTPException(status_code=403, detail="Event user does not match the authenticated user")

            await self.channel.publish(event)
            # Applied before responding so the next read sees it
            await asyncio.gather(*(session.invalidator.drain() for session in self.sessions.values()))
            return {"accepted": True, "type": event.event_type.value}

        @self.app.get("/health")
        async def health_check():
            redis_ok = await self.redis_client.ping()
            return {
                "status": "healthy" if redis_ok else "unhealthy",
                "redis": redis_ok,
                "timestamp": datetime.now(timezone.utc).isoformat()
            }

        @self.app.get("/stats")
        async def get_stats():
            redis_stats = await self.redis_client.get_stats()
            return {
                "sessions": len(self.sessions),
                "caches": [session.cache.stats() for session in self.sessions.values()],
                "redis_memory": redis_stats.get('used_memory_human', '0B'),
                "timestamp": datetime.now(timezone.utc).isoformat()
            }


# Global app instance
feed_server = FeedServer()
app = feed_server.app

if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv('PORT', 8080))
    host = os.getenv('HOST', '0.0.0.0')

    logger.info(f"Starting feed server on {host}:{port}")
    uvicorn.run(app, host=host, port=port)
