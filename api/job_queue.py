"""
Durable FIFO job queue for transcoding jobs.

Supports two backends:
- RedisJobQueue: Redis list (LPUSH/RPOP), survives restarts, shared across workers
- MemoryJobQueue: in-process deque for development and tests

Queue entries are bare job ids. The job record itself lives in the job store.
dequeue() never blocks; callers poll and back off when it returns None.

Use create_job_queue() to get the backend selected by REELQUEUE_JOB_BACKEND.
"""

import logging
from collections import deque
from typing import Deque, Optional

from redis.exceptions import RedisError

from api.errors import QueueUnavailableError
from api.redis_client import get_redis, report_redis_failure, report_redis_success
from config import JOB_BACKEND, REDIS_KEY_PREFIX

logger = logging.getLogger(__name__)


class JobQueue:
    """Interface shared by the queue backends."""

    backend = "abstract"

    async def enqueue(self, job_id: str) -> None:
        raise NotImplementedError

    async def dequeue(self) -> Optional[str]:
        raise NotImplementedError

    async def requeue(self, job_id: str) -> None:
        """Return a dequeued job id to the head of the queue (next to be dequeued)."""
        raise NotImplementedError

    async def length(self) -> int:
        raise NotImplementedError


class MemoryJobQueue(JobQueue):
    """
    In-process FIFO queue.

    Note: Not durable and not shared between processes. dequeue() is atomic
    with respect to other coroutines because it never awaits.
    """

    backend = "memory"

    def __init__(self) -> None:
        self._items: Deque[str] = deque()

    async def enqueue(self, job_id: str) -> None:
        self._items.appendleft(job_id)
        logger.debug(f"Enqueued job {job_id} (memory queue length {len(self._items)})")

    async def dequeue(self) -> Optional[str]:
        if not self._items:
            return None
        return self._items.pop()

    async def requeue(self, job_id: str) -> None:
        self._items.append(job_id)
        logger.debug(f"Requeued job {job_id} at the head of the memory queue")

    async def length(self) -> int:
        return len(self._items)


class RedisJobQueue(JobQueue):
    """
    Redis list queue. LPUSH on enqueue, RPOP on dequeue.

    RPOP is atomic on the server, so two workers polling at the same moment
    can never receive the same job id.
    """

    backend = "redis"

    def __init__(self, key_prefix: str = REDIS_KEY_PREFIX) -> None:
        self.queue_key = f"{key_prefix}:queue"

    async def _client(self):
        redis = await get_redis()
        if redis is None:
            raise QueueUnavailableError("Redis is unavailable (circuit open or not configured)")
        return redis

    async def enqueue(self, job_id: str) -> None:
        redis = await self._client()
        try:
            await redis.lpush(self.queue_key, job_id)
        except RedisError as e:
            await report_redis_failure()
            raise QueueUnavailableError(f"Failed to enqueue job {job_id}: {e}") from e
        await report_redis_success()
        logger.debug(f"Enqueued job {job_id} on {self.queue_key}")

    async def dequeue(self) -> Optional[str]:
        redis = await self._client()
        try:
            job_id = await redis.rpop(self.queue_key)
        except RedisError as e:
            await report_redis_failure()
            raise QueueUnavailableError(f"Failed to dequeue: {e}") from e
        await report_redis_success()
        return job_id

    async def requeue(self, job_id: str) -> None:
        """RPUSH onto the end RPOP reads, so the job is retried before newer ones."""
        redis = await self._client()
        try:
            await redis.rpush(self.queue_key, job_id)
        except RedisError as e:
            await report_redis_failure()
            raise QueueUnavailableError(f"Failed to requeue job {job_id}: {e}") from e
        await report_redis_success()
        logger.debug(f"Requeued job {job_id} on {self.queue_key}")

    async def length(self) -> int:
        redis = await self._client()
        try:
            length = await redis.llen(self.queue_key)
        except RedisError as e:
            await report_redis_failure()
            raise QueueUnavailableError(f"Failed to read queue length: {e}") from e
        return int(length)


def create_job_queue(backend: str = JOB_BACKEND) -> JobQueue:
    """
    Factory function to create the appropriate queue backend.

    Args:
        backend: "redis" or "memory"

    Returns:
        JobQueue instance
    """
    if backend == "memory":
        logger.info("Job queue backend: memory (single process, not durable)")
        return MemoryJobQueue()
    if backend != "redis":
        logger.warning(f"Unknown job backend '{backend}', using redis")
    return RedisJobQueue()
