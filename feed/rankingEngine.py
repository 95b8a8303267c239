"""
Ranking and scoring functions for the feed aggregation system.
"""
import logging
import math
import random
from collections import Counter, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from feed.config import (
    RECENCY_DECAY_HOURS, RECENCY_SCALE, MAX_BLOCK_SIZE, MAX_REFRESH_SWAPS,
    RankingWeights, JitterRanges
)
from feed.models import FeedEntry, Post

logger = logging.getLogger(__name__)


@dataclass
class ScoredEntry:
    entry: FeedEntry
    recency_score: float
    combined_score: float
    final_score: float

    @property
    def author_id(self) -> str:
        return self.entry.author_id


def calculate_post_age_hours(post: Post, now: datetime) -> float:
    """
    Calculate post age in hours

    Future-dated posts yield a negative age rather than an error.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return (now - post.created_at).total_seconds() / 3600.0


def calculate_recency_score(post: Post, now: datetime) -> float:
    """
    Exponential recency decay on a 0-100 scale

    Returns 100 for a post created now and more than 100 for one dated in
    the future.
    """
    hours_since_creation = calculate_post_age_hours(post, now)
    return RECENCY_SCALE * math.exp(-hours_since_creation / RECENCY_DECAY_HOURS)


def calculate_combined_score(post: Post, now: datetime) -> float:
    """Blend recency with the externally maintained engagement score"""
    recency_score = calculate_recency_score(post, now)
    engagement_score = post.engagement_score * RankingWeights.ENGAGEMENT_SCALE
    return RankingWeights.RECENCY * recency_score + RankingWeights.ENGAGEMENT * engagement_score


def score_entries(
    entries: List[FeedEntry],
    now: datetime,
    is_refresh: bool,
    rng: random.Random
) -> List[ScoredEntry]:
    """
    Score entries and sort them by final score, highest first

    Args:
        entries: Candidate entries
        now: Reference time for recency
        is_refresh: Narrower jitter on refresh, wider on first load
        rng: Random source for jitter

    Returns:
        Scored entries sorted descending by final score
    """
    jitter_range = JitterRanges.REFRESH if is_refresh else JitterRanges.INITIAL

    scored = []
    for entry in entries:
        recency_score = calculate_recency_score(entry.post, now)
        combined_score = calculate_combined_score(entry.post, now)
        final_score = combined_score + rng.uniform(0.0, jitter_range)
        scored.append(ScoredEntry(
            entry=entry,
            recency_score=recency_score,
            combined_score=combined_score,
            final_score=final_score
        ))

    scored.sort(key=lambda item: item.final_score, reverse=True)
    return scored


def distribute_creators(scored: List[ScoredEntry], max_block_size: int = MAX_BLOCK_SIZE) -> List[ScoredEntry]:
    """
    Reorder entries so no creator dominates a run of the feed

    Walks candidates in score order and emits the first whose author appears
    fewer than max_block_size times among the last max_block_size emitted.
    When every remaining author is saturated, the window is reset and the
    best remaining entry is emitted regardless.

    Args:
        scored: Entries sorted by final score, highest first
        max_block_size: Maximum appearances of one author per window

    Returns:
        Reordered entries
    """
    remaining = list(scored)
    distributed = []
    recent_authors = deque(maxlen=max_block_size)
    forced_count = 0

    while remaining:
        window_counts = Counter(recent_authors)
        chosen_index = None
        for index, candidate in enumerate(remaining):
            if window_counts[candidate.author_id] < max_block_size:
                chosen_index = index
                break

        if chosen_index is None:
            recent_authors.clear()
            chosen_index = 0
            forced_count += 1

        chosen = remaining.pop(chosen_index)
        distributed.append(chosen)
        recent_authors.append(chosen.author_id)

    if forced_count > 0:
        logger.debug(f"Creator diversity: forced {forced_count} emits after window saturation")

    return distributed


def reshuffle_adjacent(entries: List, rng: random.Random, max_swaps: int = MAX_REFRESH_SWAPS) -> List:
    """
    Swap a few random adjacent pairs so repeated refreshes do not look identical

    Performs min(len/4, max_swaps) swaps of positions i and i+1.
    """
    shuffled = list(entries)
    if len(shuffled) < 2:
        return shuffled

    swap_count = min(len(shuffled) // 4, max_swaps)
    for _ in range(swap_count):
        i = rng.randrange(len(shuffled) - 1)
        shuffled[i], shuffled[i + 1] = shuffled[i + 1], shuffled[i]

    return shuffled


def rank_entries(
    entries: List[FeedEntry],
    now: Optional[datetime] = None,
    is_refresh: bool = False,
    rng: Optional[random.Random] = None,
    max_block_size: int = MAX_BLOCK_SIZE
) -> List[FeedEntry]:
    """
    Rank feed entries with recency, engagement, jitter and creator diversity

    Args:
        entries: Deduplicated, visibility-filtered candidates
        now: Reference time (defaults to current UTC time)
        is_refresh: True for pull-to-refresh, False for first load
        rng: Injectable random source; a fresh unseeded one when omitted
        max_block_size: Creator diversity window

    Returns:
        Entries in final display order
    """
    if len(entries) <= 1:
        return list(entries)

    if now is None:
        now = datetime.now(timezone.utc)
    if rng is None:
        rng = random.Random()

    scored = score_entries(entries, now, is_refresh, rng)
    distributed = distribute_creators(scored, max_block_size)

    if is_refresh:
        distributed = reshuffle_adjacent(distributed, rng)

    top_authors = Counter(item.author_id for item in distributed[:10])
    avg_score = sum(item.final_score for item in distributed) / len(distributed)
    logger.info(f"Ranked {len(distributed)} entries (refresh={is_refresh}, avg score {avg_score:.2f})")
    logger.info(f"Top 10 author breakdown: {dict(top_authors)}")

    return [item.entry for item in distributed]


def sort_chronologically(entries: List[FeedEntry]) -> List[FeedEntry]:
    """Newest first; used for pagination pages which are never re-ranked"""
    return sorted(entries, key=lambda entry: entry.created_at, reverse=True)
