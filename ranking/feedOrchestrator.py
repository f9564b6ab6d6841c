"""
Feed orchestrator that walks ranking tiers until one serves the request
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from monitoring.healthMonitor import HealthMonitor, with_monitoring
from ranking import config as defaults
from ranking.circuitBreaker import CircuitBreaker
from ranking.rankingEngine import ChronologicalStrategy, HybridStrategy, ScoreFn, SimplifiedStrategy, calculate_post_score
from ranking.stampedeGuard import StampedeGuard

logger = logging.getLogger(__name__)

Strategy = Callable[[str, int, int], Awaitable[List[Dict]]]


class Tier(str, Enum):
    HYBRID = 'hybrid'
    SIMPLIFIED = 'simplified'
    CHRONOLOGICAL = 'chronological'


@dataclass(frozen=True)
class FeedResult:
    items: Tuple[Dict, ...]
    tier_used: Tier


class FeedUnavailableError(Exception):
    """Every ranking tier failed, including the chronological one"""


class FeedOrchestrator:
    def __init__(self, hybrid: Strategy, simplified: Strategy, chronological: Strategy,
                 breaker: Optional[CircuitBreaker] = None, monitor: Optional[HealthMonitor] = None,
                 stampede_guard: Optional[StampedeGuard] = None):
        """
        Initialize orchestrator

        Args:
            hybrid: Full personalization strategy
            simplified: Coarse heuristic strategy
            chronological: Recency strategy, must depend only on the content store
            breaker: Circuit breaker guarding hybrid -> simplified (owned by this orchestrator)
            monitor: Health monitor receiving timing, errors and tier usage
            stampede_guard: Guard used by the hybrid tier, exposed for health stats
        """
        self.hybrid = hybrid
        self.simplified = simplified
        self.chronological = chronological
        self.breaker = breaker or CircuitBreaker(name='hybrid')
        self.monitor = monitor or HealthMonitor()
        self.stampede_guard = stampede_guard

    async def get_feed(self, user_id: str, page: int, limit: int) -> FeedResult:
        """
        Get a ranked feed page, degrading through tiers on failure

        Args:
            user_id: Requesting user
            page: 1-based page number
            limit: Items per page

        Returns:
            FeedResult with the items and the tier that produced them

        Raises:
            FeedUnavailableError: When the chronological tier fails too
        """
        return await with_monitoring(lambda: self._walk_tiers(user_id, page, limit), self.monitor)

    async def _walk_tiers(self, user_id: str, page: int, limit: int) -> FeedResult:
        tiers = [
            (Tier.HYBRID, self._run_hybrid_tier),
            (Tier.SIMPLIFIED, self._run_simplified_tier),
            (Tier.CHRONOLOGICAL, self._run_chronological_tier),
        ]

        last_error = None
        for tier, run in tiers:
            try:
                items, tier_used = await run(user_id, page, limit)
            except Exception as e:
                last_error = e
                self.monitor.record_tier_failure(tier)
                logger.warning(f"Tier {tier.value} failed for user {user_id}: {e}")
                continue

            self.monitor.record_tier(tier_used)
            if tier_used != Tier.HYBRID:
                logger.info(f"Served {len(items)} posts to {user_id} from {tier_used.value} tier")
            return FeedResult(items=tuple(items), tier_used=tier_used)

        logger.error(f"All ranking tiers failed for user {user_id}")
        raise FeedUnavailableError("Feed temporarily unavailable") from last_error

    async def _run_hybrid_tier(self, user_id: str, page: int, limit: int):
        served_by = {'tier': Tier.HYBRID}

        async def primary():
            return _require_items(await self.hybrid(user_id, page, limit), Tier.HYBRID)

        async def fallback():
            served_by['tier'] = Tier.SIMPLIFIED
            return _require_items(await self.simplified(user_id, page, limit), Tier.SIMPLIFIED)

        items = await self.breaker.execute(primary, fallback)
        return items, served_by['tier']

    async def _run_simplified_tier(self, user_id: str, page: int, limit: int):
        return _require_items(await self.simplified(user_id, page, limit), Tier.SIMPLIFIED), Tier.SIMPLIFIED

    async def _run_chronological_tier(self, user_id: str, page: int, limit: int):
        return _require_items(await self.chronological(user_id, page, limit), Tier.CHRONOLOGICAL), Tier.CHRONOLOGICAL


def _require_items(items, tier: Tier) -> List[Dict]:
    if items is None:
        raise ValueError(f"{tier.value} strategy returned no result")
    return list(items)


def build_orchestrator(content_store, cache, monitor: Optional[HealthMonitor] = None, config=None,
                       score_fn: ScoreFn = calculate_post_score) -> FeedOrchestrator:
    """
    Wire the default strategies, stampede guard and circuit breaker

    Args:
        content_store: ContentStore implementation
        cache: Cache store client
        monitor: Shared health monitor (new one when omitted)
        config: shared.config.Config with optional overrides
        score_fn: Scoring function for the hybrid tier

    Returns:
        Ready-to-use FeedOrchestrator
    """
    monitor = monitor or HealthMonitor()

    def setting(path: str, default):
        return config.get(path, default) if config is not None else default

    guard = StampedeGuard(
        monitor=monitor,
        stampede_threshold=setting('stampede.threshold', defaults.STAMPEDE_THRESHOLD)
    )
    breaker = CircuitBreaker(
        failure_threshold=setting('circuit_breaker.failure_threshold', defaults.FAILURE_THRESHOLD),
        reset_timeout_ms=setting('circuit_breaker.reset_timeout_ms', defaults.RESET_TIMEOUT_MS),
        name='hybrid'
    )
    hybrid = HybridStrategy(
        content_store,
        cache,
        guard,
        score_fn=score_fn,
        candidate_multiplier=setting('ranking.candidate_multiplier', defaults.CANDIDATE_MULTIPLIER),
        max_candidates=setting('ranking.max_candidates', defaults.MAX_CANDIDATES),
        feed_ttl=setting('cache.feed_ttl_seconds', defaults.FEED_CACHE_TTL_SECONDS),
        monitor=monitor
    )

    return FeedOrchestrator(
        hybrid=hybrid,
        simplified=SimplifiedStrategy(content_store),
        chronological=ChronologicalStrategy(content_store),
        breaker=breaker,
        monitor=monitor,
        stampede_guard=guard
    )
