# tests/test_feed_orchestrator.py
"""
Tests for tier degradation, attribution and monitoring in the feed orchestrator.
"""
import asyncio

import pytest

from monitoring.healthMonitor import HealthMonitor
from ranking.circuitBreaker import CircuitBreaker, CircuitState
from ranking.feedOrchestrator import (
    FeedOrchestrator,
    FeedResult,
    FeedUnavailableError,
    Tier,
    build_orchestrator
)
from ranking.stampedeGuard import StampedeGuard
from tests.fakes import FakeClock


class StubStrategy:
    def __init__(self, name, error=None, result=None):
        self.name = name
        self.error = error
        self.result = result
        self.calls = []

    async def __call__(self, user_id, page, limit):
        self.calls.append((user_id, page, limit))
        if self.error is not None:
            raise self.error
        if self.result is not None:
            return self.result
        return [{'id': f'{self.name}-{page}-{i}'} for i in range(limit)]


class TestFeedOrchestrator:
    def setup_method(self):
        self.monitor = HealthMonitor()
        self.clock = FakeClock()
        self.breaker = CircuitBreaker(failure_threshold=5, reset_timeout_ms=60000, clock=self.clock)
        self.hybrid = StubStrategy('hybrid')
        self.simplified = StubStrategy('simplified')
        self.chronological = StubStrategy('chronological')

    def orchestrator(self):
        return FeedOrchestrator(
            self.hybrid, self.simplified, self.chronological,
            breaker=self.breaker, monitor=self.monitor
        )

    @pytest.mark.asyncio
    async def test_hybrid_serves_when_healthy(self):
        result = await self.orchestrator().get_feed('u1', 1, 3)

        assert isinstance(result, FeedResult)
        assert result.tier_used == Tier.HYBRID
        assert [p['id'] for p in result.items] == ['hybrid-1-0', 'hybrid-1-1', 'hybrid-1-2']
        assert self.simplified.calls == []
        assert self.monitor.get_metrics().tier_usage == {'hybrid': 1}

    @pytest.mark.asyncio
    async def test_hybrid_failure_attributed_to_simplified(self):
        self.hybrid.error = RuntimeError("ranking down")

        result = await self.orchestrator().get_feed('u1', 2, 2)

        assert result.tier_used == Tier.SIMPLIFIED
        assert self.simplified.calls == [('u1', 2, 2)]
        assert self.chronological.calls == []
        assert self.breaker.failure_count == 1
        assert self.monitor.get_metrics().tier_usage == {'simplified': 1}

    @pytest.mark.asyncio
    async def test_falls_through_to_chronological(self):
        self.hybrid.error = RuntimeError("ranking down")
        self.simplified.error = RuntimeError("store slow")

        result = await self.orchestrator().get_feed('u1', 1, 2)

        assert result.tier_used == Tier.CHRONOLOGICAL
        # Breaker fallback, then the simplified tier itself
        assert len(self.simplified.calls) == 2
        metrics = self.monitor.get_metrics()
        assert metrics.tier_usage == {'chronological': 1}
        assert metrics.tier_failures == {'hybrid': 1, 'simplified': 1}
        assert metrics.errors == 0

    @pytest.mark.asyncio
    async def test_all_tiers_failing_raises_feed_unavailable(self):
        self.hybrid.error = RuntimeError("ranking down")
        self.simplified.error = RuntimeError("store slow")
        self.chronological.error = ConnectionError("store down")

        with pytest.raises(FeedUnavailableError) as exc_info:
            await self.orchestrator().get_feed('u1', 1, 2)

        assert isinstance(exc_info.value.__cause__, ConnectionError)
        metrics = self.monitor.get_metrics()
        assert metrics.errors == 1
        assert metrics.requests == 1
        assert metrics.tier_usage == {}

    @pytest.mark.asyncio
    async def test_none_result_is_a_tier_failure(self):
        self.hybrid.error = RuntimeError("ranking down")

        async def returns_none(user_id, page, limit):
            return None

        orchestrator = FeedOrchestrator(self.hybrid, returns_none, self.chronological,
                                        breaker=self.breaker, monitor=self.monitor)

        result = await orchestrator.get_feed('u1', 1, 1)
        assert result.tier_used == Tier.CHRONOLOGICAL

    @pytest.mark.asyncio
    async def test_empty_feed_is_a_valid_result(self):
        self.hybrid.result = []

        result = await self.orchestrator().get_feed('u1', 1, 5)

        assert result.items == ()
        assert result.tier_used == Tier.HYBRID
        assert self.simplified.calls == []

    @pytest.mark.asyncio
    async def test_open_breaker_skips_hybrid_across_requests(self):
        self.hybrid.error = RuntimeError("ranking down")
        orchestrator = self.orchestrator()

        for _ in range(5):
            await orchestrator.get_feed('u1', 1, 1)
        assert self.breaker.state == CircuitState.OPEN

        hybrid_calls = len(self.hybrid.calls)
        result = await orchestrator.get_feed('u1', 1, 1)

        assert len(self.hybrid.calls) == hybrid_calls
        assert result.tier_used == Tier.SIMPLIFIED

        self.hybrid.error = None
        self.clock.advance(61)
        result = await orchestrator.get_feed('u1', 1, 1)
        assert result.tier_used == Tier.HYBRID
        assert self.breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_shared_computation_sends_waiters_to_fallback(self):
        guard = StampedeGuard(monitor=self.monitor)
        started = asyncio.Event()

        async def slow_rank():
            started.set()
            await asyncio.sleep(10)
            return []

        async def no_cache(key):
            return None

        async def discard(key, raw, ttl):
            return None

        async def shared_hybrid(user_id, page, limit):
            return await guard.get_or_compute('feed:shared', slow_rank, no_cache, discard, 60)

        orchestrator = FeedOrchestrator(shared_hybrid, self.simplified, self.chronological,
                                        breaker=self.breaker, monitor=self.monitor)

        leader = asyncio.create_task(orchestrator.get_feed('a', 1, 2))
        await started.wait()
        waiter = asyncio.create_task(orchestrator.get_feed('b', 1, 2))
        await asyncio.sleep(0)

        leader.cancel()
        with pytest.raises(asyncio.CancelledError):
            await leader

        result = await asyncio.wait_for(waiter, timeout=1)
        assert result.tier_used == Tier.SIMPLIFIED
        assert self.simplified.calls == [('b', 1, 2)]
        assert guard.active_computations() == 0

    @pytest.mark.asyncio
    async def test_records_request_and_latency(self):
        orchestrator = self.orchestrator()
        await orchestrator.get_feed('u1', 1, 1)
        await orchestrator.get_feed('u2', 1, 1)

        metrics = self.monitor.get_metrics()
        assert metrics.requests == 2
        assert metrics.sample_count == 2


class TestBuildOrchestrator:
    @pytest.mark.asyncio
    async def test_hybrid_ranks_by_score_and_caches(self, content_store, cache, fake_redis):
        monitor = HealthMonitor()
        orchestrator = build_orchestrator(content_store, cache, monitor)

        result = await orchestrator.get_feed('reader', 1, 3)

        assert result.tier_used == Tier.HYBRID
        assert [p['id'] for p in result.items] == ['p2', 'p3', 'p1']
        assert all('score' in p for p in result.items)
        assert any(key.startswith('feed:reader:g0:1:3') for key in fake_redis.store)

        again = await orchestrator.get_feed('reader', 1, 3)
        assert again.items == result.items
        assert monitor.get_metrics().cache_hits >= 1

    @pytest.mark.asyncio
    async def test_unknown_user_degrades_to_simplified(self, content_store, cache):
        orchestrator = build_orchestrator(content_store, cache, HealthMonitor())

        result = await orchestrator.get_feed('stranger', 1, 2)

        assert result.tier_used == Tier.SIMPLIFIED
        assert [p['id'] for p in result.items] == ['p5', 'p2']

    @pytest.mark.asyncio
    async def test_works_without_cache(self, content_store, monkeypatch):
        from client.redis import Client as RedisClient

        monkeypatch.delenv('UPSTASH_REDIS_URL', raising=False)
        monkeypatch.delenv('REDIS_URL', raising=False)
        orchestrator = build_orchestrator(content_store, RedisClient(), HealthMonitor())

        result = await orchestrator.get_feed('reader', 1, 2)

        assert result.tier_used == Tier.HYBRID
        assert [p['id'] for p in result.items] == ['p2', 'p3']

    @pytest.mark.asyncio
    async def test_deep_page_served_by_hybrid(self, content_store, cache, tmp_path):
        from shared.config import Config

        config_file = tmp_path / "config.yaml"
        config_file.write_text("ranking:\n  max_candidates: 2\n")
        orchestrator = build_orchestrator(content_store, cache, HealthMonitor(), Config(str(config_file)))

        result = await orchestrator.get_feed('reader', 3, 1)

        assert result.tier_used == Tier.HYBRID
        assert [p['id'] for p in result.items] == ['p2']

    @pytest.mark.asyncio
    async def test_uses_config_overrides(self, content_store, cache, tmp_path):
        from shared.config import Config

        config_file = tmp_path / "config.yaml"
        config_file.write_text("circuit_breaker:\n  failure_threshold: 2\nstampede:\n  threshold: 4\n")

        orchestrator = build_orchestrator(content_store, cache, HealthMonitor(), Config(str(config_file)))

        assert orchestrator.breaker.failure_threshold == 2
        assert orchestrator.stampede_guard.stampede_threshold == 4
