"""
Cache management for ranked feeds and per-user artifacts
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from ranking.config import (
    CONTENT_SCORE_TTL_SECONDS,
    FEED_CACHE_TTL_SECONDS,
    INVALIDATION_BATCH_SIZE,
    INVALIDATION_DELAY_SECONDS,
    SIMILAR_USERS_TTL_SECONDS
)

logger = logging.getLogger(__name__)

ACTIVITY_TTL_SECONDS = {
    'very_active': 3 * 60,
    'active': 15 * 60,
    'moderate': 60 * 60,
    'inactive': 4 * 60 * 60,
}
DEFAULT_ACTIVITY_TTL_SECONDS = 2 * 60 * 60

CACHE_TTL = {
    'user_feed': FEED_CACHE_TTL_SECONDS,
    'similar_users': SIMILAR_USERS_TTL_SECONDS,
    'content_score': CONTENT_SCORE_TTL_SECONDS,
}


def user_feed_key(user_id: str, page: int, limit: int, generation: int = 0) -> str:
    return f"feed:{user_id}:g{generation}:{page}:{limit}"


def user_vector_key(user_id: str) -> str:
    return f"uiv:{user_id}"


def feed_generation_key(user_id: str) -> str:
    return f"feedgen:{user_id}"


def get_user_activity_level(total_interactions: int, account_age_days: float) -> str:
    """
    Classify a user by average daily interactions

    Args:
        total_interactions: Lifetime interaction count
        account_age_days: Account age in days

    Returns:
        One of 'very_active', 'active', 'moderate', 'inactive'
    """
    per_day = (total_interactions or 0) / max(account_age_days or 0, 1)

    if per_day > 20:
        return 'very_active'
    if per_day > 5:
        return 'active'
    if per_day > 1:
        return 'moderate'
    return 'inactive'


def get_adaptive_ttl(activity_level: str) -> int:
    """Shorter TTLs for active users so their artifacts track new interactions"""
    return ACTIVITY_TTL_SECONDS.get(activity_level, DEFAULT_ACTIVITY_TTL_SECONDS)


async def get_feed_generation(cache, user_id: str) -> int:
    """
    Read the user's feed generation counter

    Returns:
        Current generation, 0 when unset or the cache is unavailable
    """
    value = await cache.get(feed_generation_key(user_id))
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring malformed feed generation for {user_id}: {value!r}")
        return 0


async def invalidate_user_feed(cache, user_id: str) -> bool:
    """
    Invalidate all cached feed pages for a user

    Bumps the generation embedded in feed keys; stale pages expire by TTL
    instead of being deleted.

    Args:
        cache: Cache store client
        user_id: User identifier

    Returns:
        True if the generation was bumped
    """
    generation = await cache.incr(feed_generation_key(user_id))

    if generation:
        logger.info(f"Invalidated feed cache for user {user_id} (generation {generation})")
        return True

    logger.warning(f"Failed to invalidate feed cache for user {user_id}")
    return False


async def invalidate_users_staggered(cache, user_ids: List[str], batch_size: int = INVALIDATION_BATCH_SIZE,
                                     delay_seconds: float = INVALIDATION_DELAY_SECONDS) -> int:
    """
    Invalidate many users in batches so their recomputations don't all land at once

    Args:
        cache: Cache store client
        user_ids: Users to invalidate
        batch_size: Users per batch
        delay_seconds: Pause between batches

    Returns:
        Number of users invalidated
    """
    if not user_ids:
        return 0

    logger.info(f"Staggered invalidation for {len(user_ids)} users")
    invalidated = 0

    for i in range(0, len(user_ids), batch_size):
        batch = user_ids[i:i + batch_size]
        results = await asyncio.gather(*(invalidate_user_feed(cache, user_id) for user_id in batch))
        invalidated += sum(1 for ok in results if ok)

        if i + batch_size < len(user_ids):
            await asyncio.sleep(delay_seconds)

    logger.info(f"Staggered invalidation complete: {invalidated}/{len(user_ids)} users")
    return invalidated


async def on_new_content(cache, content: Dict,
                         get_users_by_interest: Callable[[Optional[str], Optional[str]], Awaitable[List[str]]],
                         **stagger_options) -> int:
    """
    Invalidate feeds of users interested in newly published content

    Args:
        cache: Cache store client
        content: Content dict with optional 'subject' and 'grade'
        get_users_by_interest: Lookup of interested user IDs
        **stagger_options: Passed to invalidate_users_staggered

    Returns:
        Number of users invalidated
    """
    interested_users = await get_users_by_interest(content.get('subject'), content.get('grade'))
    logger.info(f"New content {content.get('id', '')} affects {len(interested_users)} users")
    return await invalidate_users_staggered(cache, interested_users, **stagger_options)
