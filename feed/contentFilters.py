"""
Content filtering functions for the feed aggregation system.
"""
import logging
from typing import AbstractSet, Iterable, List, Optional, Set

from feed.errors import CacheCorrupt
from feed.models import Collection, FeedEntry, FollowSet

logger = logging.getLogger(__name__)


def can_user_view_collection(collection: Collection, user_id: str) -> bool:
    """
    Check if a user can view a collection based on its privacy settings

    Args:
        collection: Collection to check
        user_id: Viewing user

    Returns:
        True if the user may see posts from the collection
    """
    if collection.owner_id == user_id or user_id in collection.owners:
        return True

    if user_id in collection.members:
        return True

    if not collection.is_public:
        return user_id in collection.allowed_users

    return user_id not in collection.denied_users


def filter_viewable_collections(collections: List[Collection], user_id: str) -> List[Collection]:
    """Drop followed collections the user is no longer allowed to view"""
    viewable = [c for c in collections if can_user_view_collection(c, user_id)]

    denied_count = len(collections) - len(viewable)
    if denied_count > 0:
        logger.info(f"Privacy: skipped {denied_count}/{len(collections)} collections for user {user_id}")

    return viewable


def is_entry_visible(
    entry: FeedEntry,
    hidden_collection_ids: AbstractSet[str],
    blocked_user_ids: AbstractSet[str],
    hidden_post_ids: AbstractSet[str] = frozenset()
) -> bool:
    if entry.collection.id in hidden_collection_ids:
        return False
    if entry.post.author_id in blocked_user_ids:
        return False
    if entry.collection.owner_id in blocked_user_ids:
        return False
    if entry.post.id in hidden_post_ids:
        return False
    return True


def filter_visible_entries(
    entries: List[FeedEntry],
    hidden_collection_ids: AbstractSet[str],
    blocked_user_ids: AbstractSet[str],
    hidden_post_ids: AbstractSet[str] = frozenset()
) -> List[FeedEntry]:
    """
    Remove entries from hidden collections or involving blocked users

    Pure and idempotent: filtering an already filtered list with the same
    sets returns it unchanged.

    Args:
        entries: Candidate feed entries
        hidden_collection_ids: Collections the user has hidden
        blocked_user_ids: Users blocked in either direction
        hidden_post_ids: Individual posts the user has hidden

    Returns:
        Entries that survive every visibility rule, order preserved
    """
    if not (hidden_collection_ids or blocked_user_ids or hidden_post_ids):
        return list(entries)

    original_count = len(entries)
    filtered_entries = [
        entry for entry in entries
        if is_entry_visible(entry, hidden_collection_ids, blocked_user_ids, hidden_post_ids)
    ]

    removed_count = original_count - len(filtered_entries)
    if removed_count > 0:
        filter_rate = removed_count / original_count * 100
        logger.info(f"Visibility: removed {removed_count}/{original_count} entries ({filter_rate:.1f}%)")

    return filtered_entries


def filter_for_follow_set(entries: List[FeedEntry], follow_set: FollowSet) -> List[FeedEntry]:
    return filter_visible_entries(
        entries,
        follow_set.hidden_collection_ids,
        follow_set.blocked_user_ids,
        follow_set.hidden_post_ids
    )


def deduplicate_entries(
    entries: Iterable[FeedEntry],
    seen_ids: Optional[Set[str]] = None
) -> List[FeedEntry]:
    """
    Deduplicate entries by post id, first occurrence wins

    Args:
        entries: Entries in priority order
        seen_ids: Ids already delivered; entries with these ids are dropped

    Returns:
        Entries with unique post ids
    """
    seen = set(seen_ids) if seen_ids else set()
    deduplicated = []
    duplicate_count = 0

    for entry in entries:
        if entry.post_id in seen:
            duplicate_count += 1
            continue
        seen.add(entry.post_id)
        deduplicated.append(entry)

    if duplicate_count > 0:
        logger.info(f"Deduplication: removed {duplicate_count} duplicate posts")

    return deduplicated


def check_unique_entries(entries: Iterable[FeedEntry]) -> None:
    """Raise CacheCorrupt if any post id appears more than once"""
    seen = set()
    duplicates = set()
    for entry in entries:
        if entry.post_id in seen:
            duplicates.add(entry.post_id)
        seen.add(entry.post_id)

    if duplicates:
        raise CacheCorrupt(duplicates)
