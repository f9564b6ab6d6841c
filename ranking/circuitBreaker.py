"""
Circuit breaker for ranking strategies
"""
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict

from ranking.config import FAILURE_THRESHOLD, RESET_TIMEOUT_MS

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = 'closed'
    OPEN = 'open'
    HALF_OPEN = 'half_open'


class CircuitBreaker:
    def __init__(self, failure_threshold: int = FAILURE_THRESHOLD, reset_timeout_ms: int = RESET_TIMEOUT_MS,
                 clock: Callable[[], float] = time.monotonic, name: str = 'ranking'):
        """
        Initialize circuit breaker

        Args:
            failure_threshold: Consecutive primary failures before opening
            reset_timeout_ms: Cooldown before a half-open probe is allowed
            clock: Monotonic clock in seconds (injectable for tests)
            name: Label used in logs
        """
        self.failure_threshold = failure_threshold
        self.reset_timeout_ms = reset_timeout_ms
        self.clock = clock
        self.name = name
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time = 0.0
        self._probe_in_flight = False

    async def execute(self, primary_fn: Callable[[], Awaitable[Any]],
                      fallback_fn: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run primary_fn unless the circuit is open, falling back on failure

        Primary errors are absorbed; fallback errors propagate.

        Args:
            primary_fn: Zero-arg coroutine function for the preferred path
            fallback_fn: Zero-arg coroutine function used when primary is skipped or fails

        Returns:
            Result of whichever function ran last
        """
        if not self._allow_primary():
            logger.debug(f"Circuit {self.name} is {self.state.value}, routing to fallback")
            return await fallback_fn()

        probing = self.state == CircuitState.HALF_OPEN
        if probing:
            self._probe_in_flight = True

        try:
            result = await primary_fn()
        except Exception as e:
            self._on_failure(e)
            return await fallback_fn()
        finally:
            if probing:
                self._probe_in_flight = False

        self._on_success()
        return result

    def _allow_primary(self) -> bool:
        if self.state == CircuitState.CLOSED:
            return True

        if self.state == CircuitState.OPEN:
            elapsed_ms = (self.clock() - self.last_failure_time) * 1000
            if elapsed_ms < self.reset_timeout_ms:
                return False
            logger.info(f"Circuit {self.name} half-open, probing primary")
            self.state = CircuitState.HALF_OPEN

        # Half-open admits a single probe; concurrent callers take the fallback
        return not self._probe_in_flight

    def _on_success(self):
        if self.state != CircuitState.CLOSED:
            logger.info(f"Circuit {self.name} closed after successful probe")
        self.failure_count = 0
        self.state = CircuitState.CLOSED

    def _on_failure(self, error: Exception):
        self.failure_count += 1
        self.last_failure_time = self.clock()

        if self.state == CircuitState.HALF_OPEN:
            self.state = CircuitState.OPEN
            logger.warning(f"Circuit {self.name} probe failed, reopening: {error}")
        elif self.failure_count >= self.failure_threshold:
            if self.state != CircuitState.OPEN:
                logger.warning(f"Circuit {self.name} opened after {self.failure_count} failures: {error}")
            self.state = CircuitState.OPEN
        else:
            logger.warning(f"Circuit {self.name} primary failed ({self.failure_count}/{self.failure_threshold}): {error}")

    def snapshot(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'state': self.state.value,
            'failure_count': self.failure_count,
            'failure_threshold': self.failure_threshold,
            'reset_timeout_ms': self.reset_timeout_ms
        }

    def reset(self):
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time = 0.0
        self._probe_in_flight = False
