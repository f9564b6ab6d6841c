# tests/test_cache_manager.py
"""
Tests for feed cache keys, adaptive TTLs and invalidation.
"""
import pytest

from ranking import cacheManager
from ranking.cacheManager import (
    feed_generation_key,
    get_adaptive_ttl,
    get_feed_generation,
    get_user_activity_level,
    invalidate_user_feed,
    invalidate_users_staggered,
    on_new_content,
    user_feed_key
)


def test_feed_key_encodes_every_parameter():
    assert user_feed_key('u1', 2, 20, 3) == 'feed:u1:g3:2:20'
    assert user_feed_key('u1', 1, 20) != user_feed_key('u1', 1, 10)
    assert user_feed_key('u1', 1, 20) != user_feed_key('u2', 1, 20)


@pytest.mark.parametrize("interactions, age_days, level", [
    (300, 10, 'very_active'),
    (100, 10, 'active'),
    (20, 10, 'moderate'),
    (5, 10, 'inactive'),
    (25, 0, 'very_active'),
    (None, None, 'inactive'),
])
def test_activity_level(interactions, age_days, level):
    assert get_user_activity_level(interactions, age_days) == level


def test_adaptive_ttl_shrinks_with_activity():
    assert get_adaptive_ttl('very_active') < get_adaptive_ttl('active') < get_adaptive_ttl('moderate')
    assert get_adaptive_ttl('inactive') == 4 * 60 * 60
    assert get_adaptive_ttl('unknown') == cacheManager.DEFAULT_ACTIVITY_TTL_SECONDS


class TestInvalidation:
    @pytest.mark.asyncio
    async def test_invalidate_bumps_generation(self, cache):
        assert await get_feed_generation(cache, 'u1') == 0

        assert await invalidate_user_feed(cache, 'u1') is True
        assert await invalidate_user_feed(cache, 'u1') is True

        assert await get_feed_generation(cache, 'u1') == 2

    @pytest.mark.asyncio
    async def test_invalidate_reports_failure_when_cache_down(self, cache, fake_redis):
        fake_redis.fail = True
        assert await invalidate_user_feed(cache, 'u1') is False

    @pytest.mark.asyncio
    async def test_malformed_generation_reads_as_zero(self, cache, fake_redis):
        fake_redis.store[feed_generation_key('u1')] = '"abc"'
        assert await get_feed_generation(cache, 'u1') == 0

    @pytest.mark.asyncio
    async def test_staggered_invalidation_batches(self, cache, monkeypatch):
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        monkeypatch.setattr(cacheManager.asyncio, 'sleep', fake_sleep)
        users = [f'u{i}' for i in range(5)]

        count = await invalidate_users_staggered(cache, users, batch_size=2, delay_seconds=0.25)

        assert count == 5
        assert sleeps == [0.25, 0.25]
        for user in users:
            assert await get_feed_generation(cache, user) == 1

    @pytest.mark.asyncio
    async def test_staggered_invalidation_with_no_users(self, cache):
        assert await invalidate_users_staggered(cache, []) == 0

    @pytest.mark.asyncio
    async def test_new_content_invalidates_interested_users(self, cache):
        lookups = []

        async def users_by_interest(subject, grade):
            lookups.append((subject, grade))
            return ['u1', 'u2']

        count = await on_new_content(
            cache, {'id': 'c1', 'subject': 'math', 'grade': '5'}, users_by_interest, delay_seconds=0
        )

        assert count == 2
        assert lookups == [('math', '5')]
        assert await get_feed_generation(cache, 'u2') == 1
