"""
Ranking strategies for the feed pipeline

Three tiers of decreasing cost: hybrid (personalized scoring), simplified
(engagement order) and chronological (recency only).
"""
import json
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from client.contentStore import parse_timestamp
from ranking.cacheManager import (
    CACHE_TTL,
    get_adaptive_ttl,
    get_feed_generation,
    get_user_activity_level,
    user_feed_key,
    user_vector_key
)
from ranking.config import CANDIDATE_MULTIPLIER, MAX_CANDIDATES

logger = logging.getLogger(__name__)

ScoreFn = Callable[[Dict, Dict], float]


def calculate_post_score(user_data: Dict, post: Dict) -> float:
    """
    Calculate relevance score for a single post

    Args:
        user_data: User profile information
        post: Post dictionary with content and metadata

    Returns:
        Relevance score (higher = more relevant)
    """
    base_score = 1.0

    engagement_score = (
        (post.get('like_count', 0) or 0) * 1.0 +
        (post.get('repost_count', 0) or 0) * 2.0 +
        (post.get('reply_count', 0) or 0) * 1.5
    )

    return base_score + (engagement_score * 0.1)


def should_include_post(post: Dict) -> bool:
    """Determine if a post can appear in a feed"""
    if not post.get('id'):
        return False
    return post.get('is_public', True) is not False


def apply_post_filters(posts: List[Dict]) -> List[Dict]:
    """
    Apply content filters to posts

    Args:
        posts: List of posts to filter

    Returns:
        Filtered list of posts
    """
    if not posts:
        return []

    filtered_posts = [post for post in posts if should_include_post(post)]

    filtered_count = len(posts) - len(filtered_posts)
    if filtered_count > 0:
        logger.info(f"Filtered out {filtered_count} posts")

    return filtered_posts


def page_offset(page: int, limit: int) -> int:
    return max(page - 1, 0) * limit


def author_diversity(posts: List[Dict]) -> Optional[float]:
    """Share of distinct authors in a feed page; None for an empty page"""
    if not posts:
        return None
    authors = {post.get('author_id') for post in posts}
    return len(authors) / len(posts)


class HybridStrategy:
    def __init__(self, content_store, cache, stampede_guard, score_fn: ScoreFn = calculate_post_score,
                 candidate_multiplier: int = CANDIDATE_MULTIPLIER, max_candidates: int = MAX_CANDIDATES,
                 feed_ttl: int = CACHE_TTL['user_feed'], monitor=None):
        """
        Personalized ranking over recent candidates

        Args:
            content_store: Source of posts and user profiles
            cache: Cache store client
            stampede_guard: StampedeGuard deduplicating concurrent computations
            score_fn: Scoring function (user_context, post) -> score
            candidate_multiplier: Candidates fetched per requested item
            max_candidates: Hard cap on candidates per ranked window
            feed_ttl: TTL for cached feed pages in seconds
            monitor: HealthMonitor receiving the author diversity of computed pages
        """
        self.content_store = content_store
        self.cache = cache
        self.stampede_guard = stampede_guard
        self.score_fn = score_fn
        self.candidate_multiplier = candidate_multiplier
        self.max_candidates = max_candidates
        self.feed_ttl = feed_ttl
        self.monitor = monitor

    async def __call__(self, user_id: str, page: int, limit: int) -> List[Dict]:
        generation = await get_feed_generation(self.cache, user_id)
        key = user_feed_key(user_id, page, limit, generation)

        return await self.stampede_guard.get_or_compute(
            key,
            lambda: self._rank(user_id, page, limit),
            self.cache.get_raw,
            self.cache.set_raw,
            self.feed_ttl
        )

    async def get_user_context(self, user_id: str) -> Dict:
        """Load the user's profile, cached with an activity-adaptive TTL"""
        return await self.stampede_guard.get_or_compute(
            user_vector_key(user_id),
            lambda: self._load_user_context(user_id),
            self.cache.get_raw,
            self._set_user_context,
            0
        )

    async def _load_user_context(self, user_id: str) -> Dict:
        profile = await self.content_store.get_user_profile(user_id)
        if not profile:
            raise LookupError(f"User not found: {user_id}")
        return profile

    async def _set_user_context(self, key: str, raw: str, ttl: int):
        # TTL depends on the loaded profile, so it is resolved here rather than by the caller
        await self.cache.set_raw(key, raw, self._context_ttl(raw))

    def _context_ttl(self, raw: str) -> int:
        try:
            profile = json.loads(raw)
            created_at = parse_timestamp(profile.get('created_at'))
            age_days = (datetime.now(timezone.utc) - created_at).total_seconds() / 86400
            level = get_user_activity_level(profile.get('total_interactions', 0), age_days)
        except (TypeError, ValueError, AttributeError):
            level = 'inactive'
        return get_adaptive_ttl(level)

    async def _rank(self, user_id: str, page: int, limit: int) -> List[Dict]:
        user_context = await self.get_user_context(user_id)

        offset = page_offset(page, limit)
        candidate_count = min(page * limit * self.candidate_multiplier, self.max_candidates)

        if offset + limit <= candidate_count:
            ranked_posts, _ = await self._rank_window(user_id, user_context, 0, candidate_count)
            page_posts = ranked_posts[offset:offset + limit]
        else:
            page_posts = await self._rank_deep_page(user_id, user_context, offset, limit)

        self._record_diversity(page_posts)
        return page_posts

    async def _rank_deep_page(self, user_id: str, user_context: Dict, offset: int, limit: int) -> List[Dict]:
        """
        Serve a page past the first candidate window

        Older candidates are ranked in fixed blocks of max_candidates, so each
        post lands in exactly one block and deep pages never repeat earlier ones.
        """
        page_posts = []
        block_start = (offset // self.max_candidates) * self.max_candidates
        position = offset - block_start

        while len(page_posts) < limit:
            ranked_posts, fetched = await self._rank_window(user_id, user_context, block_start, self.max_candidates)
            page_posts.extend(ranked_posts[position:position + limit - len(page_posts)])

            if fetched < self.max_candidates:
                break
            block_start += self.max_candidates
            position = 0

        return page_posts

    async def _rank_window(self, user_id: str, user_context: Dict, start: int, count: int):
        """Score one window of recent candidates; returns (ranked posts, raw fetched count)"""
        candidates = await self.content_store.get_recent_posts(user_id, start, count)
        fetched = len(candidates)
        candidates = apply_post_filters(candidates)

        logger.info(f"Ranking {len(candidates)} posts for user {user_id}")

        ranked_posts = []
        for post in candidates:
            scored = dict(post)
            scored['score'] = float(self.score_fn(user_context, post))
            ranked_posts.append(scored)

        ranked_posts.sort(key=lambda p: p['score'], reverse=True)
        return ranked_posts, fetched

    def _record_diversity(self, posts: List[Dict]):
        score = author_diversity(posts)
        if score is not None and self.monitor is not None:
            self.monitor.record_diversity_score(score)


class SimplifiedStrategy:
    """Engagement-ordered page straight from the content store"""

    def __init__(self, content_store):
        self.content_store = content_store

    async def __call__(self, user_id: str, page: int, limit: int) -> List[Dict]:
        posts = await self.content_store.get_top_posts(user_id, page_offset(page, limit), limit)
        return apply_post_filters(posts)


class ChronologicalStrategy:
    """Newest-first page; depends on nothing but the content store"""

    def __init__(self, content_store):
        self.content_store = content_store

    async def __call__(self, user_id: Optional[str], page: int, limit: int) -> List[Dict]:
        return await self.content_store.get_recent_posts(user_id, page_offset(page, limit), limit)
