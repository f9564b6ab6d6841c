"""
Cache stampede protection

When many requests miss the cache for the same key at once, only the first
one computes; the rest wait on its result.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from ranking.config import STAMPEDE_THRESHOLD

logger = logging.getLogger(__name__)


@dataclass
class ComputeLock:
    future: asyncio.Future
    waiters: int = 0
    stampede_reported: bool = False


class StampedeGuard:
    def __init__(self, monitor=None, stampede_threshold: int = STAMPEDE_THRESHOLD):
        """
        Initialize stampede guard

        Args:
            monitor: HealthMonitor receiving cache hit/miss and stampede signals
            stampede_threshold: Concurrent misses per key before a stampede is reported
        """
        self.monitor = monitor
        self.stampede_threshold = stampede_threshold
        self._compute_locks: Dict[str, ComputeLock] = {}
        self._request_counters: Dict[str, int] = {}

    async def get_or_compute(self, key: str, compute_fn: Callable[[], Awaitable[Any]],
                             cache_get_fn: Callable[[str], Awaitable[Optional[str]]],
                             cache_set_fn: Callable[[str, str, int], Awaitable[Any]],
                             ttl: int) -> Any:
        """
        Get a cached value or compute it once for all concurrent callers

        Args:
            key: Cache key (must encode every parameter of compute_fn)
            compute_fn: Zero-arg coroutine function producing a JSON-serializable value
            cache_get_fn: Reads the serialized value for a key
            cache_set_fn: Stores a serialized value with a TTL
            ttl: Cache TTL in seconds

        Returns:
            Cached or freshly computed value
        """
        cached = await cache_get_fn(key)
        if cached is not None:
            try:
                value = json.loads(cached)
            except (TypeError, ValueError) as e:
                logger.error(f"Failed to parse cached value for {key}: {e}")
            else:
                self._request_counters.pop(key, None)
                self._record_cache_access(True)
                return value

        self._record_cache_access(False)

        # No await between lookup and insert below, so check-and-insert is atomic on the loop
        lock = self._compute_locks.get(key)
        if lock is not None:
            lock.waiters += 1
            self._count_request(key, lock)
            logger.debug(f"Waiting for existing computation: {key} ({lock.waiters} waiters)")
            return await asyncio.shield(lock.future)

        lock = ComputeLock(future=asyncio.get_running_loop().create_future())
        self._compute_locks[key] = lock
        self._count_request(key, lock)

        try:
            value = await compute_fn()
        except asyncio.CancelledError:
            # Waiters get an ordinary error so their callers can fall back
            self._fail(key, lock, RuntimeError(f"Computation cancelled for {key}"))
            raise
        except Exception as e:
            self._fail(key, lock, e)
            raise

        try:
            await self._store(key, value, cache_set_fn, ttl)
        finally:
            self._release(key, lock)
            if not lock.future.done():
                lock.future.set_result(value)
        return value

    async def _store(self, key: str, value: Any, cache_set_fn, ttl: int):
        try:
            await cache_set_fn(key, json.dumps(value, default=str), ttl)
        except Exception as e:
            logger.warning(f"Failed to cache computed value for {key}: {e}")

    def _release(self, key: str, lock: ComputeLock):
        # A lock installed after clear_locks() belongs to another computation
        if self._compute_locks.get(key) is lock:
            del self._compute_locks[key]
            self._request_counters.pop(key, None)

    def _fail(self, key: str, lock: ComputeLock, error: BaseException):
        self._release(key, lock)
        lock.future.set_exception(error)
        # Mark retrieved so an unwaited failure isn't reported as never retrieved
        lock.future.exception()

    def _count_request(self, key: str, lock: ComputeLock):
        count = self._request_counters.get(key, 0) + 1
        self._request_counters[key] = count

        if count > self.stampede_threshold and not lock.stampede_reported:
            lock.stampede_reported = True
            logger.warning(f"STAMPEDE DETECTED for {key}: {count} concurrent requests")
            if self.monitor is not None:
                self.monitor.record_stampede()

    def _record_cache_access(self, hit: bool):
        if self.monitor is not None:
            self.monitor.record_cache_hit(hit)

    def active_computations(self) -> int:
        return len(self._compute_locks)

    def get_stats(self) -> Dict[str, int]:
        """Current in-flight computations and the largest waiter count"""
        return {
            'active_computes': len(self._compute_locks),
            'max_waiters': max((lock.waiters for lock in self._compute_locks.values()), default=0)
        }

    def clear_locks(self):
        """Forget all in-flight computations (tests or emergency reset)"""
        self._compute_locks.clear()
        self._request_counters.clear()
