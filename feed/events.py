"""
Typed social-graph events and the in-process channel that delivers them.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, DefaultDict, Dict, Iterable, List, Optional

from feed.interfaces import EventPublisher

logger = logging.getLogger(__name__)


class FeedEventType(str, Enum):
    COLLECTION_FOLLOWED = 'collection_followed'
    COLLECTION_UNFOLLOWED = 'collection_unfollowed'
    COLLECTION_HIDDEN = 'collection_hidden'
    COLLECTION_UNHIDDEN = 'collection_unhidden'
    USER_BLOCKED = 'user_blocked'
    USER_UNBLOCKED = 'user_unblocked'
    POST_CREATED = 'post_created'
    PROFILE_UPDATED = 'profile_updated'
    # Outward signal for unread badges
    FEED_UPDATED = 'feed_updated'


@dataclass(frozen=True)
class FeedEvent:
    event_type: FeedEventType
    user_id: str
    collection_id: Optional[str] = None
    target_user_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict) -> 'FeedEvent':
        return cls(
            event_type=FeedEventType(data.get('type', data.get('event_type'))),
            user_id=data.get('userId', data.get('user_id', '')),
            collection_id=data.get('collectionId', data.get('collection_id')),
            target_user_id=data.get('targetUserId', data.get('target_user_id')),
        )

    def to_dict(self) -> Dict:
        return {
            'type': self.event_type.value,
            'userId': self.user_id,
            'collectionId': self.collection_id,
            'targetUserId': self.target_user_id,
        }


EventHandler = Callable[[FeedEvent], Awaitable[None]]


class EventChannel(EventPublisher):
    """In-process publish/subscribe channel for feed events."""

    def __init__(self):
        self._subscribers: DefaultDict[Optional[FeedEventType], List[EventHandler]] = defaultdict(list)

    def subscribe(self, handler: EventHandler, event_types: Optional[Iterable[FeedEventType]] = None) -> None:
        """
        Register an async handler

        Args:
            handler: Coroutine function receiving each event
            event_types: Restrict delivery to these types; all types if None
        """
        if event_types is None:
            self._subscribers[None].append(handler)
            return
        for event_type in event_types:
            self._subscribers[event_type].append(handler)

    def unsubscribe(self, handler: EventHandler) -> None:
        for handlers in self._subscribers.values():
            if handler in handlers:
                handlers.remove(handler)

    def is_subscribed(self, handler: EventHandler) -> bool:
        return any(handler in handlers for handlers in self._subscribers.values())

    async def publish(self, event: FeedEvent) -> None:
        handlers = list(self._subscribers.get(event.event_type, [])) + list(self._subscribers.get(None, []))
        logger.debug(f"Publishing {event.event_type.value} for user {event.user_id} to {len(handlers)} handlers")
        for handler in handlers:
            await handler(event)
