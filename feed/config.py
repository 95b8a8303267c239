"""
Configuration and constants for the feed aggregation system.
"""
import logging
import os

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Fan-out limits
INITIAL_COLLECTION_LIMIT = 10
INITIAL_POSTS_PER_COLLECTION = 10
LOAD_MORE_POSTS_PER_COLLECTION = 3
REFRESH_POSTS_PER_COLLECTION = 25
DISPLAY_PAGE_SIZE = 20
FETCH_TIMEOUT_SECONDS = 10.0
MAX_LOAD_ATTEMPTS = 2  # reloads when a cache event lands mid-fetch

# Recency decay
RECENCY_DECAY_HOURS = 48.0  # ~48 hour half-life
RECENCY_SCALE = 100.0

# Score mixing
RECENCY_WEIGHT = 0.6
ENGAGEMENT_WEIGHT = 0.4
ENGAGEMENT_SCALE = 2.0

# Creator diversity
MAX_BLOCK_SIZE = 2
MAX_REFRESH_SWAPS = 10

# Deployment settings
REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379')
FEED_EVENTS_CHANNEL = os.getenv('FEED_EVENTS_CHANNEL', 'feed-events')
MAX_SESSIONS = int(os.getenv('FEED_MAX_SESSIONS', 1000))
SESSION_IDLE_SECONDS = float(os.getenv('FEED_SESSION_IDLE_SECONDS', 1800))


class LoggingConfig:
    """Logging configuration for the feed system."""

    LEVEL = logging.INFO
    FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    @staticmethod
    def configure_logging():
        """Configure logging for the feed system."""
        logging.basicConfig(
            level=LoggingConfig.LEVEL,
            format=LoggingConfig.FORMAT
        )


class RankingWeights:
    """Composite score weights."""

    RECENCY = RECENCY_WEIGHT
    ENGAGEMENT = ENGAGEMENT_WEIGHT
    ENGAGEMENT_SCALE = ENGAGEMENT_SCALE


class JitterRanges:
    """Upper bounds of the uniform jitter added to each score."""

    REFRESH = 10.0
    INITIAL = 20.0


class PageSizes:
    """Per-collection page sizes for each aggregation path."""

    INITIAL = INITIAL_POSTS_PER_COLLECTION
    LOAD_MORE = LOAD_MORE_POSTS_PER_COLLECTION
    REFRESH = REFRESH_POSTS_PER_COLLECTION
    DISPLAY = DISPLAY_PAGE_SIZE
