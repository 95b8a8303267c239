"""
Feed aggregation system - merged, ranked, cache-coherent collection feeds.

This package gathers posts from the collections a user follows, removes
anything hidden or blocked, ranks the rest by recency and engagement under a
creator-diversity constraint, and keeps a per-session cache coherent with
social-graph events.

Main modules:
- feedOrchestrator: FeedAggregator (initial load, pagination, refresh)
- sourceFetcher: Per-collection post retrieval
- postCollector: Concurrent fan-out across collections
- contentFilters: Visibility, privacy and deduplication filters
- rankingEngine: Recency/engagement scoring and creator diversity
- cacheManager: Per-session FeedCache
- events: Typed feed events and the in-process channel
- invalidationHandler: Applies events to the cache
- config: Constants and configuration
"""

from feed.config import LoggingConfig

from feed.errors import (
    FeedError,
    SourceUnavailable,
    AuthenticationRequired,
    FeedUnavailable,
    CacheCorrupt
)

from feed.models import (
    Post,
    Collection,
    FeedEntry,
    FeedPage,
    FollowSet,
    CacheEntry,
    UserProfile
)

from feed.contentFilters import (
    can_user_view_collection,
    filter_visible_entries,
    deduplicate_entries
)

from feed.rankingEngine import (
    calculate_recency_score,
    calculate_combined_score,
    distribute_creators,
    rank_entries
)

from feed.sourceFetcher import SourceFetcher
from feed.postCollector import collect_entries, partition_collections
from feed.cacheManager import FeedCache
from feed.events import EventChannel, FeedEvent, FeedEventType
from feed.invalidationHandler import FeedCacheInvalidator
from feed.feedOrchestrator import FeedAggregator

__version__ = "1.0.0"

# Public API
__all__ = [
    # Aggregation
    'FeedAggregator',
    'SourceFetcher',
    'collect_entries',
    'partition_collections',

    # Models
    'Post',
    'Collection',
    'FeedEntry',
    'FeedPage',
    'FollowSet',
    'CacheEntry',
    'UserProfile',

    # Filtering
    'can_user_view_collection',
    'filter_visible_entries',
    'deduplicate_entries',

    # Ranking
    'calculate_recency_score',
    'calculate_combined_score',
    'distribute_creators',
    'rank_entries',

    # Cache and events
    'FeedCache',
    'EventChannel',
    'FeedEvent',
    'FeedEventType',
    'FeedCacheInvalidator',

    # Errors
    'FeedError',
    'SourceUnavailable',
    'AuthenticationRequired',
    'FeedUnavailable',
    'CacheCorrupt',

    # Configuration
    'LoggingConfig',
]
