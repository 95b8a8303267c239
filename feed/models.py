"""
Data model for the feed aggregation system.

Posts and collections are read-only snapshots of documents owned by the
backing store. The engine only reorders references to them.
"""
import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, FrozenSet, List, Optional, Set, Tuple, Union

from dateutil import parser


def parse_timestamp(value: Union[str, int, float, datetime, None]) -> Optional[datetime]:
    """
    Normalise a stored timestamp to an aware UTC datetime

    Args:
        value: ISO string, unix seconds, or datetime

    Returns:
        UTC datetime, or None if value is empty
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        post_time = value
    elif isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        post_time = parser.parse(value)

    if post_time.tzinfo is None:
        post_time = post_time.replace(tzinfo=timezone.utc)
    return post_time.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class Post:
    id: str
    author_id: str
    collection_id: str
    created_at: datetime
    like_count: int = 0
    comment_count: int = 0
    view_count: int = 0
    engagement_score: float = 0.0
    caption: str = ''
    is_deleted: bool = False

    @classmethod
    def from_dict(cls, data: Dict) -> 'Post':
        created_at = parse_timestamp(data.get('createdAt', data.get('created_at')))
        if created_at is None:
            raise ValueError(f"Post {data['id']} has no creation time")

        return cls(
            id=data['id'],
            author_id=data.get('authorId', data.get('author_id', '')),
            collection_id=data.get('collectionId', data.get('collection_id', '')),
            created_at=created_at,
            like_count=int(data.get('likeCount', data.get('like_count', 0)) or 0),
            comment_count=int(data.get('commentCount', data.get('comment_count', 0)) or 0),
            view_count=int(data.get('viewCount', data.get('view_count', 0)) or 0),
            engagement_score=float(data.get('engagementScore', data.get('engagement_score', 0.0)) or 0.0),
            caption=data.get('caption', ''),
            is_deleted=bool(data.get('isDeleted', data.get('is_deleted', False))),
        )

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'authorId': self.author_id,
            'collectionId': self.collection_id,
            'createdAt': format_timestamp(self.created_at),
            'likeCount': self.like_count,
            'commentCount': self.comment_count,
            'viewCount': self.view_count,
            'engagementScore': self.engagement_score,
            'caption': self.caption,
            'isDeleted': self.is_deleted,
        }


@dataclass(frozen=True)
class Collection:
    id: str
    owner_id: str
    name: str = ''
    member_count: int = 0
    is_public: bool = True
    owners: Tuple[str, ...] = ()
    members: Tuple[str, ...] = ()
    allowed_users: Tuple[str, ...] = ()
    denied_users: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict) -> 'Collection':
        owner_id = data.get('ownerId', data.get('owner_id', ''))
        return cls(
            id=data['id'],
            owner_id=owner_id,
            name=data.get('name', ''),
            member_count=int(data.get('memberCount', data.get('member_count', 0)) or 0),
            is_public=bool(data.get('isPublic', data.get('is_public', True))),
            owners=tuple(data.get('owners') or [owner_id]),
            members=tuple(data.get('members') or ()),
            allowed_users=tuple(data.get('allowedUsers', data.get('allowed_users')) or ()),
            denied_users=tuple(data.get('deniedUsers', data.get('denied_users')) or ()),
        )

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'ownerId': self.owner_id,
            'name': self.name,
            'memberCount': self.member_count,
            'isPublic': self.is_public,
            'owners': list(self.owners),
            'members': list(self.members),
            'allowedUsers': list(self.allowed_users),
            'deniedUsers': list(self.denied_users),
        }


@dataclass(frozen=True)
class FeedEntry:
    """A post in the context of the collection it was fetched from."""

    post: Post
    collection: Collection

    @property
    def post_id(self) -> str:
        return self.post.id

    @property
    def author_id(self) -> str:
        return self.post.author_id

    @property
    def created_at(self) -> datetime:
        return self.post.created_at

    def to_dict(self) -> Dict:
        return {'post': self.post.to_dict(), 'collection': self.collection.to_dict()}


@dataclass(frozen=True)
class UserProfile:
    user_id: str
    name: str = ''
    username: str = ''
    profile_image_url: str = ''
    blocked_users: FrozenSet[str] = frozenset()
    blocked_by_users: FrozenSet[str] = frozenset()
    blocked_collection_ids: FrozenSet[str] = frozenset()
    hidden_post_ids: FrozenSet[str] = frozenset()

    @property
    def effective_blocked_users(self) -> FrozenSet[str]:
        # Blocking hides both directions
        return self.blocked_users | self.blocked_by_users

    @classmethod
    def from_dict(cls, data: Dict) -> 'UserProfile':
        return cls(
            user_id=data.get('userId', data.get('user_id', '')),
            name=data.get('name', ''),
            username=data.get('username', ''),
            profile_image_url=data.get('profileImageURL', data.get('profile_image_url', '')),
            blocked_users=frozenset(data.get('blockedUsers') or ()),
            blocked_by_users=frozenset(data.get('blockedByUsers') or ()),
            blocked_collection_ids=frozenset(data.get('blockedCollectionIds') or ()),
            hidden_post_ids=frozenset(data.get('hiddenPostIds') or ()),
        )

    def to_dict(self) -> Dict:
        return {
            'userId': self.user_id,
            'name': self.name,
            'username': self.username,
            'profileImageURL': self.profile_image_url,
            'blockedUsers': sorted(self.blocked_users),
            'blockedByUsers': sorted(self.blocked_by_users),
            'blockedCollectionIds': sorted(self.blocked_collection_ids),
            'hiddenPostIds': sorted(self.hidden_post_ids),
        }


@dataclass(frozen=True)
class FollowSet:
    """Snapshot of what the current user follows and has hidden or blocked."""

    collection_ids: FrozenSet[str] = frozenset()
    hidden_collection_ids: FrozenSet[str] = frozenset()
    blocked_user_ids: FrozenSet[str] = frozenset()
    hidden_post_ids: FrozenSet[str] = frozenset()

    @classmethod
    def from_profile(cls, collections: List[Collection], profile: Optional[UserProfile]) -> 'FollowSet':
        if profile is None:
            return cls(collection_ids=frozenset(c.id for c in collections))
        return cls(
            collection_ids=frozenset(c.id for c in collections),
            hidden_collection_ids=profile.blocked_collection_ids,
            blocked_user_ids=profile.effective_blocked_users,
            hidden_post_ids=profile.hidden_post_ids,
        )

    def fingerprint(self) -> str:
        digest = hashlib.sha1()
        for label, ids in (
            ('follow', self.collection_ids),
            ('hidden', self.hidden_collection_ids),
            ('blocked', self.blocked_user_ids),
            ('hidden_posts', self.hidden_post_ids),
        ):
            digest.update(label.encode('utf-8'))
            for item in sorted(ids):
                digest.update(b'\x00')
                digest.update(item.encode('utf-8'))
            digest.update(b'\x01')
        return digest.hexdigest()


@dataclass
class CacheEntry:
    entries: List[FeedEntry]
    fingerprint: str
    collections: List[Collection] = field(default_factory=list)
    cursor: Optional[datetime] = None
    has_more: bool = True
    loaded: bool = True
    delivered_ids: Set[str] = field(default_factory=set)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def collection_ids(self) -> Set[str]:
        return {c.id for c in self.collections}


@dataclass
class FeedPage:
    entries: List[FeedEntry]
    has_more: bool
    cursor: Optional[datetime] = None
    stale: bool = False
    superseded: bool = False

    def to_dict(self) -> Dict:
        return {
            'entries': [entry.to_dict() for entry in self.entries],
            'hasMore': self.has_more,
            'cursor': format_timestamp(self.cursor),
            'stale': self.stale,
        }
