"""
Shared Redis connection for the job queue, job store and status pub/sub.

Every worker loop polls Redis, so when Redis goes away the loops would all
hammer it at once. RedisCircuitBreaker stops handing out the client after a
run of consecutive failures and lets one operation through again once the
backoff has elapsed. Callers feed it through report_redis_failure() and
report_redis_success().
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import ConnectionError as RedisConnectionError

from config import (
    REDIS_HEALTH_CHECK_INTERVAL,
    REDIS_POOL_SIZE,
    REDIS_SOCKET_CONNECT_TIMEOUT,
    REDIS_SOCKET_TIMEOUT,
    REDIS_URL,
)

logger = logging.getLogger(__name__)

CIRCUIT_FAILURE_THRESHOLD = 3
CIRCUIT_BASE_BACKOFF_SECONDS = 30
CIRCUIT_MAX_BACKOFF_SECONDS = 300


class RedisCircuitBreaker:
    """
    Counts consecutive Redis failures.

    Opens at `threshold` failures for base, 2*base, 4*base ... seconds, capped
    at `max_backoff`. Once the backoff has elapsed the breaker is half-open:
    allow() returns True and the next reported result decides what happens.
    """

    def __init__(
        self,
        threshold: int = CIRCUIT_FAILURE_THRESHOLD,
        base_backoff: float = CIRCUIT_BASE_BACKOFF_SECONDS,
        max_backoff: float = CIRCUIT_MAX_BACKOFF_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = threshold
        self.base_backoff = base_backoff
        self.max_backoff = max_backoff
        self.clock = clock
        self.failures = 0
        self.open_until: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.open_until is not None and self.clock() < self.open_until

    def backoff_for(self, failures: int) -> float:
        exponent = min(failures - self.threshold, 8)
        return min(self.max_backoff, self.base_backoff * (2**exponent))

    def allow(self) -> bool:
        if self.open_until is None:
            return True
        if self.clock() < self.open_until:
            return False
        self.open_until = None
        logger.info("Redis circuit half-open, letting the next operation through")
        return True

    def record_failure(self) -> None:
        self.failures += 1
        if self.failures >= self.threshold:
            backoff = self.backoff_for(self.failures)
            self.open_until = self.clock() + backoff
            logger.warning(f"Redis circuit open for {backoff:.0f}s after {self.failures} consecutive failures")

    def record_success(self) -> None:
        if self.failures:
            logger.info(f"Redis recovered after {self.failures} failed operation(s)")
        self.failures = 0
        self.open_until = None


class RedisClient:
    """Process-wide Redis pool. Use get_instance(); REDIS_URL empty disables Redis."""

    _instance: Optional["RedisClient"] = None
    _lock: Optional[asyncio.Lock] = None
    _initialized: bool = False

    def __init__(self, url: str = REDIS_URL, breaker: Optional[RedisCircuitBreaker] = None) -> None:
        self._url = url
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None
        self.breaker = breaker or RedisCircuitBreaker()
        self._healthy = False
        self._last_health_check: Optional[float] = None

    @classmethod
    def _get_lock(cls) -> asyncio.Lock:
        # The CLI runs one asyncio.run() per command; a lock from a finished
        # loop cannot be reused.
        loop = asyncio.get_running_loop()
        if cls._lock is None or getattr(cls._lock, "_loop", None) not in (None, loop):
            cls._lock = asyncio.Lock()
        return cls._lock

    @classmethod
    async def get_instance(cls) -> "RedisClient":
        async with cls._get_lock():
            if cls._instance is None:
                cls._instance = cls()
            if not cls._initialized:
                await cls._instance._initialize()
                cls._initialized = True
            return cls._instance

    @classmethod
    async def reset_instance(cls) -> None:
        """Close and forget the shared client."""
        async with cls._get_lock():
            if cls._instance is not None:
                await cls._instance.close()
                cls._instance = None
                cls._initialized = False

    async def _initialize(self) -> None:
        """Build the pool and ping once. A failed ping counts against the breaker but keeps the client."""
        if not self._url:
            logger.info("REELQUEUE_REDIS_URL not set, queue/store/pub-sub on Redis are disabled")
            return

        self._pool = ConnectionPool.from_url(
            self._url,
            max_connections=REDIS_POOL_SIZE,
            socket_timeout=REDIS_SOCKET_TIMEOUT,
            socket_connect_timeout=REDIS_SOCKET_CONNECT_TIMEOUT,
            retry_on_error=[RedisConnectionError],
            decode_responses=True,
        )
        self._client = Redis(connection_pool=self._pool)

        try:
            await self._client.ping()
            self._healthy = True
            self._last_health_check = time.monotonic()
            logger.info(f"Connected to Redis at {self._url.split('@')[-1]}")
        except Exception as e:
            logger.warning(f"Initial Redis ping failed: {e}")
            self.report_failure()

    @property
    def is_configured(self) -> bool:
        return bool(self._url)

    @property
    def is_healthy(self) -> bool:
        return self._healthy

    @property
    def is_available(self) -> bool:
        """Configured, connected and the breaker lets operations through."""
        if self._client is None:
            return False
        return self.breaker.allow()

    async def get_client(self) -> Optional[Redis]:
        return self._client if self.is_available else None

    def report_failure(self) -> None:
        self._healthy = False
        self.breaker.record_failure()

    def report_success(self) -> None:
        self._healthy = True
        self.breaker.record_success()

    async def health_check(self) -> bool:
        """Ping Redis for the worker's /ready probe, at most once per REDIS_HEALTH_CHECK_INTERVAL."""
        if not self._client:
            return False

        now = time.monotonic()
        if self._last_health_check is not None and now - self._last_health_check < REDIS_HEALTH_CHECK_INTERVAL:
            return self._healthy

        self._last_health_check = now
        try:
            await self._client.ping()
        except Exception as e:
            logger.warning(f"Redis health check failed: {e}")
            self.report_failure()
            return False
        self.report_success()
        return True

    async def close(self) -> None:
        if self._client:
            try:
                await self._client.aclose()
            except Exception as e:
                logger.debug(f"Error closing Redis client: {e}")
        if self._pool:
            try:
                await self._pool.disconnect()
            except Exception as e:
                logger.debug(f"Error disconnecting Redis pool: {e}")
        self._client = None
        self._pool = None
        self._healthy = False


async def get_redis() -> Optional[Redis]:
    """The shared client, or None when Redis is disabled or the circuit is open."""
    client = await RedisClient.get_instance()
    return await client.get_client()


async def report_redis_failure() -> None:
    client = await RedisClient.get_instance()
    client.report_failure()


async def report_redis_success() -> None:
    client = await RedisClient.get_instance()
    client.report_success()
