"""
Feed ranking health monitor

Tracks calculation latency, cache effectiveness, errors, stampedes and which
ranking tier served each request. Threshold checks run out-of-band on a timer,
never on the request path.
"""
import asyncio
import json
import logging
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from ranking.config import SAMPLE_CAPACITY

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Exponential moving average smoothing for quality signals
EMA_ALPHA = 0.1


@dataclass(frozen=True)
class HealthMetrics:
    avg_calculation_time: float
    p95_calculation_time: float
    p99_calculation_time: float
    cache_hit_rate: float
    error_rate: float
    cache_hits: int
    cache_misses: int
    errors: int
    requests: int
    stampede_count: int
    sample_count: int
    tier_usage: Dict[str, int]
    tier_failures: Dict[str, int]
    # None until a ranking component reports the signal
    diversity_score: Optional[float]
    drift_detection_rate: Optional[float]
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AlertThresholds:
    max_avg_calculation_ms: float = 500
    max_p99_calculation_ms: float = 2000
    min_cache_hit_rate: float = 0.7
    max_error_rate: float = 0.05
    max_stampede_count: int = 10
    max_degraded_tier_rate: float = 0.2
    min_diversity_score: float = 0.3
    max_drift_rate: float = 0.2
    primary_tier: str = 'hybrid'

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]]) -> 'AlertThresholds':
        config = config or {}
        known = {k: v for k, v in config.items() if k in cls.__dataclass_fields__}
        return cls(**known)


def percentile(sorted_samples: List[float], q: float) -> float:
    """Exact percentile by index into an ascending list; 0 when empty"""
    if not sorted_samples:
        return 0.0
    index = min(int(len(sorted_samples) * q), len(sorted_samples) - 1)
    return float(sorted_samples[index])


class HealthMonitor:
    def __init__(self, sample_capacity: int = SAMPLE_CAPACITY, thresholds: Optional[AlertThresholds] = None):
        """
        Initialize health monitor

        Args:
            sample_capacity: Number of recent calculation times kept
            thresholds: Alert thresholds (defaults when omitted)
        """
        self.thresholds = thresholds or AlertThresholds()
        self._lock = threading.Lock()
        self._calculation_times = deque(maxlen=sample_capacity)
        self._cache_hits = 0
        self._cache_misses = 0
        self._errors = 0
        self._requests = 0
        self._stampede_events = 0
        self._tier_usage: Dict[str, int] = {}
        self._tier_failures: Dict[str, int] = {}
        self._diversity_score: Optional[float] = None
        self._drift_rate: Optional[float] = None

    def record_calculation_time(self, time_ms: float):
        with self._lock:
            self._calculation_times.append(float(time_ms))

    def record_cache_hit(self, hit: bool):
        with self._lock:
            if hit:
                self._cache_hits += 1
            else:
                self._cache_misses += 1

    def record_error(self):
        with self._lock:
            self._errors += 1

    def record_request(self):
        with self._lock:
            self._requests += 1

    def record_stampede(self):
        with self._lock:
            self._stampede_events += 1

    def record_tier(self, tier: str):
        """Count which ranking tier served a request"""
        tier = getattr(tier, 'value', tier)
        with self._lock:
            self._tier_usage[tier] = self._tier_usage.get(tier, 0) + 1

    def record_tier_failure(self, tier: str):
        tier = getattr(tier, 'value', tier)
        with self._lock:
            self._tier_failures[tier] = self._tier_failures.get(tier, 0) + 1

    def record_diversity_score(self, score: float):
        with self._lock:
            self._diversity_score = float(score)

    def record_drift_detection(self, drifted: bool):
        value = 1.0 if drifted else 0.0
        with self._lock:
            if self._drift_rate is None:
                self._drift_rate = value
            else:
                self._drift_rate = EMA_ALPHA * value + (1 - EMA_ALPHA) * self._drift_rate

    def get_metrics(self) -> HealthMetrics:
        """Compute a snapshot from the current window and counters"""
        with self._lock:
            samples = sorted(self._calculation_times)
            hits, misses = self._cache_hits, self._cache_misses
            errors, requests = self._errors, self._requests
            stampedes = self._stampede_events
            tier_usage = dict(self._tier_usage)
            tier_failures = dict(self._tier_failures)
            diversity, drift = self._diversity_score, self._drift_rate

        total_cache = hits + misses
        return HealthMetrics(
            avg_calculation_time=sum(samples) / len(samples) if samples else 0.0,
            p95_calculation_time=percentile(samples, 0.95),
            p99_calculation_time=percentile(samples, 0.99),
            cache_hit_rate=hits / total_cache if total_cache > 0 else 0.0,
            error_rate=errors / requests if requests > 0 else 0.0,
            cache_hits=hits,
            cache_misses=misses,
            errors=errors,
            requests=requests,
            stampede_count=stampedes,
            sample_count=len(samples),
            tier_usage=tier_usage,
            tier_failures=tier_failures,
            diversity_score=diversity,
            drift_detection_rate=drift,
            timestamp=datetime.now(timezone.utc).isoformat()
        )

    def export_metrics(self) -> str:
        """Serialize the current snapshot for external scrapers"""
        return json.dumps(self.get_metrics().to_dict(), indent=2)

    def check_thresholds_and_alert(self) -> List[str]:
        """
        Compare the latest snapshot against alert thresholds

        Returns:
            Human-readable alert strings (empty when healthy)
        """
        try:
            metrics = self.get_metrics()
            alerts = self._evaluate(metrics)
        except Exception as e:
            logger.error(f"Health threshold check failed: {e}")
            return []

        if alerts:
            logger.warning("=== FEED RANKING HEALTH ALERTS ===")
            for alert in alerts:
                logger.warning(alert)

        return alerts

    def _evaluate(self, metrics: HealthMetrics) -> List[str]:
        t = self.thresholds
        alerts = []

        if metrics.avg_calculation_time > t.max_avg_calculation_ms:
            alerts.append(f"SLOW: Avg {metrics.avg_calculation_time:.0f}ms (threshold: {t.max_avg_calculation_ms:.0f}ms)")

        if metrics.p99_calculation_time > t.max_p99_calculation_ms:
            alerts.append(f"VERY_SLOW: P99 {metrics.p99_calculation_time:.0f}ms (threshold: {t.max_p99_calculation_ms:.0f}ms)")

        # Hit rate means nothing before the first cache access
        if metrics.cache_hits + metrics.cache_misses > 0 and metrics.cache_hit_rate < t.min_cache_hit_rate:
            alerts.append(f"LOW_CACHE: {metrics.cache_hit_rate * 100:.1f}% (threshold: {t.min_cache_hit_rate * 100:.0f}%)")

        if metrics.error_rate > t.max_error_rate:
            alerts.append(f"HIGH_ERRORS: {metrics.error_rate * 100:.1f}% (threshold: {t.max_error_rate * 100:.0f}%)")

        if metrics.stampede_count > t.max_stampede_count:
            alerts.append(f"STAMPEDE_WARNING: {metrics.stampede_count} incidents in monitoring period")

        served = sum(metrics.tier_usage.values())
        if served > 0:
            degraded_rate = (served - metrics.tier_usage.get(t.primary_tier, 0)) / served
            if degraded_rate > t.max_degraded_tier_rate:
                alerts.append(
                    f"DEGRADED_RANKING: {degraded_rate * 100:.1f}% of feeds served by fallback tiers "
                    f"(threshold: {t.max_degraded_tier_rate * 100:.0f}%)"
                )

        if metrics.diversity_score is not None and metrics.diversity_score < t.min_diversity_score:
            alerts.append(f"ECHO_CHAMBER: {metrics.diversity_score * 100:.1f}% diversity (threshold: {t.min_diversity_score * 100:.0f}%)")

        if metrics.drift_detection_rate is not None and metrics.drift_detection_rate > t.max_drift_rate:
            alerts.append(f"HIGH_DRIFT: {metrics.drift_detection_rate * 100:.1f}% users drifting")

        return alerts

    def reset_stampede_count(self):
        with self._lock:
            self._stampede_events = 0

    def reset(self):
        """Clear all samples and counters (operator action)"""
        with self._lock:
            self._calculation_times.clear()
            self._cache_hits = 0
            self._cache_misses = 0
            self._errors = 0
            self._requests = 0
            self._stampede_events = 0
            self._tier_usage.clear()
            self._tier_failures.clear()
            self._diversity_score = None
            self._drift_rate = None
        logger.info("Health metrics reset")


async def with_monitoring(fn: Callable[[], Awaitable[T]], monitor: HealthMonitor) -> T:
    """
    Run fn while recording a request, its duration and any error

    The original exception is always re-raised. A cancelled call is not an
    error, but its duration is still recorded.
    """
    start = time.perf_counter()
    monitor.record_request()

    try:
        result = await fn()
    except asyncio.CancelledError:
        monitor.record_calculation_time((time.perf_counter() - start) * 1000)
        raise
    except Exception:
        monitor.record_error()
        raise

    monitor.record_calculation_time((time.perf_counter() - start) * 1000)
    return result


async def run_alert_loop(monitor: HealthMonitor, interval_seconds: float, stop_event: asyncio.Event):
    """
    Periodically check thresholds until stop_event is set

    Each interval is one monitoring period: the stampede count is reset after
    every check so STAMPEDE_WARNING reflects incidents within the period.
    """
    logger.info(f"Starting health alert loop (every {interval_seconds}s)")

    while not stop_event.is_set():
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass

        if stop_event.is_set():
            break

        try:
            monitor.check_thresholds_and_alert()
            monitor.reset_stampede_count()
        except Exception as e:
            logger.error(f"Alert loop iteration failed: {e}")

    logger.info("Health alert loop stopped")
