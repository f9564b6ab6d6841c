import asyncio
import json
import logging
import os
from typing import Any, Optional

from redis import asyncio as aioredis

from ranking.config import CACHE_OPERATION_TIMEOUT_SECONDS, CACHE_SOCKET_TIMEOUT_SECONDS


class Client:
    def __init__(self, redis_url: str = None, operation_timeout: float = CACHE_OPERATION_TIMEOUT_SECONDS,
                 socket_timeout: float = CACHE_SOCKET_TIMEOUT_SECONDS, redis_client=None):
        """
        Initialize Redis client for feed ranking cache

        Connection priority:
        1. redis_url argument
        2. UPSTASH_REDIS_URL (cloud-hosted, rediss:// TLS)
        3. REDIS_URL

        With none of these set the cache is permanently unavailable: reads
        return None and writes are no-ops.

        Args:
            redis_url: Redis connection URL (from environment when omitted)
            operation_timeout: Upper bound in seconds for any single cache call
            socket_timeout: Socket connect/read timeout passed to redis
            redis_client: Pre-built async client (used by tests)
        """
        self.logger = logging.getLogger(self.__class__.__name__)
        self.operation_timeout = operation_timeout
        self._healthy = True

        if redis_client is not None:
            self.client = redis_client
            return

        if not redis_url:
            redis_url = os.getenv('UPSTASH_REDIS_URL') or os.getenv('REDIS_URL')

        if not redis_url:
            self.logger.warning("Redis not configured, feed cache disabled")
            self.client = None
            return

        try:
            # from_url does not connect; the first command does
            self.client = aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=socket_timeout,
                socket_timeout=socket_timeout,
            )
            self.logger.info("Redis client initialized")
        except Exception as e:
            self.logger.warning(f"Invalid Redis configuration, feed cache disabled: {e}")
            self.client = None

    def is_available(self) -> bool:
        """Check if the cache is configured and the last operation succeeded"""
        return self.client is not None and self._healthy

    async def _run(self, operation: str, key: str, coro_factory, default=None):
        """
        Run a single Redis command with a timeout, failing open

        Args:
            operation: Command name for logging
            key: Cache key for logging
            coro_factory: Zero-arg callable returning the command coroutine
            default: Value returned when the cache is unavailable or errors

        Returns:
            Command result, or default on any failure
        """
        if self.client is None:
            return default

        try:
            result = await asyncio.wait_for(coro_factory(), timeout=self.operation_timeout)
            if not self._healthy:
                self.logger.info("Redis connection recovered")
            self._healthy = True
            return result
        except asyncio.TimeoutError:
            self._healthy = False
            self.logger.warning(f"Redis {operation} timed out for {key}, treating as miss")
            return default
        except Exception as e:
            self._healthy = False
            self.logger.warning(f"Redis {operation} failed for {key}: {e}")
            return default

    async def get_raw(self, key: str) -> Optional[str]:
        """
        Retrieve the serialized value stored under key

        Args:
            key: Cache key

        Returns:
            Stored string or None if missing/expired/unavailable
        """
        return await self._run('GET', key, lambda: self.client.get(key))

    async def set_raw(self, key: str, raw: str, ttl: Optional[int] = None) -> bool:
        """
        Store an already-serialized value

        Args:
            key: Cache key
            raw: Serialized value
            ttl: Time to live in seconds; 0 or None means no expiration

        Returns:
            True if stored, False otherwise
        """
        if ttl:
            result = await self._run('SETEX', key, lambda: self.client.setex(key, int(ttl), raw), default=False)
        else:
            result = await self._run('SET', key, lambda: self.client.set(key, raw), default=False)
        return bool(result)

    async def get(self, key: str) -> Optional[Any]:
        """
        Retrieve and deserialize a JSON value

        Args:
            key: Cache key

        Returns:
            Decoded value or None if missing, expired, unavailable or corrupt
        """
        data = await self.get_raw(key)
        if data is None:
            return None

        try:
            return json.loads(data)
        except (TypeError, ValueError) as e:
            self.logger.error(f"Failed to decode cached value for {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """
        Serialize value as JSON and store it

        Args:
            key: Cache key
            value: JSON-serializable value
            ttl: Time to live in seconds; 0 or None means no expiration

        Returns:
            True if stored, False otherwise
        """
        try:
            raw = json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            self.logger.error(f"Failed to encode value for {key}: {e}")
            return False

        return await self.set_raw(key, raw, ttl)

    async def delete(self, key: str) -> bool:
        """Delete a cached key"""
        result = await self._run('DEL', key, lambda: self.client.delete(key), default=0)
        return bool(result)

    async def expire(self, key: str, seconds: int) -> bool:
        """Set a new TTL on an existing key"""
        result = await self._run('EXPIRE', key, lambda: self.client.expire(key, int(seconds)), default=False)
        return bool(result)

    async def incr(self, key: str) -> int:
        """
        Increment an integer counter

        Returns:
            New counter value, or 0 when the cache is unavailable
        """
        result = await self._run('INCR', key, lambda: self.client.incr(key), default=0)
        return int(result or 0)

    async def close(self):
        """Close the underlying connection pool"""
        if self.client is None:
            return

        try:
            await self.client.aclose()
        except Exception as e:
            self.logger.debug(f"Error closing Redis client: {e}")
