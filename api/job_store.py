"""
Job store: per-job metadata, live progress and the cancellation flag.

Provides two implementations:
- MemoryJobStore: dict with expiry timestamps, for single-process runs and tests
- RedisJobStore: one Redis hash per job with a TTL, shared across workers

Every entry carries a TTL (JOB_TTL_SECONDS, 24h by default). When a job reaches
a terminal state the TTL is shortened to TERMINAL_JOB_TTL_SECONDS.

Check-and-set operations (create, progress, transition, cancel) are atomic: the
Redis backend runs them as Lua scripts, the memory backend never awaits inside
them.

Use create_job_store() to get the backend selected by REELQUEUE_JOB_BACKEND.
"""

import copy
import json
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from redis.exceptions import RedisError

from api.enums import ACTIVE_STATUSES, JobStatus
from api.errors import StoreUnavailableError
from api.models import Job, utcnow
from api.redis_client import get_redis, report_redis_failure, report_redis_success
from config import JOB_BACKEND, JOB_TTL_SECONDS, REDIS_KEY_PREFIX, TERMINAL_JOB_TTL_SECONDS

logger = logging.getLogger(__name__)

_TERMINAL_VALUES = tuple(s.value for s in (JobStatus.READY, JobStatus.FAILED, JobStatus.CANCELLED))

# KEYS[1]=job key, ARGV: ttl, then field/value pairs
_CREATE_SCRIPT = """
local status = redis.call('HGET', KEYS[1], 'status')
if status and status ~= 'ready' and status ~= 'failed' and status ~= 'cancelled' then
    return 0
end
redis.call('DEL', KEYS[1])
for i = 2, #ARGV, 2 do
    redis.call('HSET', KEYS[1], ARGV[i], ARGV[i + 1])
end
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
return 1
"""

# KEYS[1]=job key, ARGV: percent, message, updated_at
_SET_PROGRESS_SCRIPT = """
local status = redis.call('HGET', KEYS[1], 'status')
if not status or status == 'ready' or status == 'failed' or status == 'cancelled' then
    return 0
end
local current = tonumber(redis.call('HGET', KEYS[1], 'progress_percent') or '0') or 0
if tonumber(ARGV[1]) > current then
    redis.call('HSET', KEYS[1], 'progress_percent', ARGV[1])
end
redis.call('HSET', KEYS[1], 'progress_message', ARGV[2], 'updated_at', ARGV[3])
return 1
"""

# KEYS[1]=job key, ARGV: new status, terminal ttl, then field/value pairs
_TRANSITION_SCRIPT = """
local status = redis.call('HGET', KEYS[1], 'status')
if not status or status == 'ready' or status == 'failed' or status == 'cancelled' then
    return 0
end
redis.call('HSET', KEYS[1], 'status', ARGV[1])
for i = 3, #ARGV, 2 do
    redis.call('HSET', KEYS[1], ARGV[i], ARGV[i + 1])
end
if ARGV[1] == 'ready' or ARGV[1] == 'failed' or ARGV[1] == 'cancelled' then
    redis.call('EXPIRE', KEYS[1], tonumber(ARGV[2]))
end
return 1
"""

# KEYS[1]=job key, ARGV: updated_at
_SET_CANCELLED_SCRIPT = """
local status = redis.call('HGET', KEYS[1], 'status')
if not status or status == 'ready' or status == 'failed' or status == 'cancelled' then
    return 0
end
redis.call('HSET', KEYS[1], 'cancel_requested', '1', 'updated_at', ARGV[1])
return 1
"""


def _encode_field(name: str, value: Any) -> str:
    """Encode one transition field the same way Job.to_redis_hash does."""
    if name == "renditions":
        return json.dumps([r.to_dict() for r in value])
    if name == "artifacts":
        return json.dumps([a.to_dict() for a in value])
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


def _prepare_fields(status: JobStatus, fields: Dict[str, Any]) -> Dict[str, Any]:
    fields = dict(fields)
    if status == JobStatus.PROCESSING:
        # Progress restarts from zero when a worker starts the job
        fields["progress_percent"] = 0
    fields["updated_at"] = utcnow().isoformat()
    return fields


class JobStore:
    """Interface shared by the store backends."""

    backend = "abstract"

    async def put(self, job: Job) -> None:
        raise NotImplementedError

    async def create(self, job: Job) -> bool:
        """Store a new job unless an active one already holds its id. Returns False if refused."""
        raise NotImplementedError

    async def get(self, job_id: str) -> Optional[Job]:
        raise NotImplementedError

    async def set_progress(self, job_id: str, percent: int, message: str) -> bool:
        raise NotImplementedError

    async def transition(self, job_id: str, status: JobStatus, **fields: Any) -> bool:
        raise NotImplementedError

    async def set_cancelled(self, job_id: str) -> bool:
        raise NotImplementedError

    async def is_cancelled(self, job_id: str) -> bool:
        raise NotImplementedError

    async def delete(self, job_id: str) -> None:
        raise NotImplementedError

    async def list_active(self) -> List[Job]:
        raise NotImplementedError


class MemoryJobStore(JobStore):
    """
    In-memory job store with TTL.

    Note: Designed for a single process. Jobs are copied on the way in and out
    so callers never share mutable state with the store.
    """

    backend = "memory"

    def __init__(self, ttl_seconds: int = JOB_TTL_SECONDS, terminal_ttl_seconds: int = TERMINAL_JOB_TTL_SECONDS):
        self._jobs: Dict[str, Tuple[Job, float]] = {}
        self._ttl = ttl_seconds
        self._terminal_ttl = terminal_ttl_seconds

    def _live(self, job_id: str) -> Optional[Job]:
        entry = self._jobs.get(job_id)
        if entry is None:
            return None
        job, expires_at = entry
        if time.time() >= expires_at:
            del self._jobs[job_id]
            return None
        return job

    async def put(self, job: Job) -> None:
        ttl = self._terminal_ttl if job.is_terminal else self._ttl
        self._jobs[job.id] = (copy.deepcopy(job), time.time() + ttl)

    async def create(self, job: Job) -> bool:
        existing = self._live(job.id)
        if existing is not None and not existing.is_terminal:
            return False
        self._jobs[job.id] = (copy.deepcopy(job), time.time() + self._ttl)
        return True

    async def get(self, job_id: str) -> Optional[Job]:
        job = self._live(job_id)
        return copy.deepcopy(job) if job is not None else None

    async def set_progress(self, job_id: str, percent: int, message: str) -> bool:
        job = self._live(job_id)
        if job is None or job.is_terminal:
            return False
        job.progress_percent = max(job.progress_percent, int(percent))
        job.progress_message = message
        job.updated_at = utcnow()
        return True

    async def transition(self, job_id: str, status: JobStatus, **fields: Any) -> bool:
        job = self._live(job_id)
        if job is None or job.is_terminal:
            return False
        job.status = status
        for name, value in _prepare_fields(status, fields).items():
            if name == "updated_at":
                job.updated_at = utcnow()
            else:
                setattr(job, name, copy.deepcopy(value))
        if status.is_terminal:
            self._jobs[job_id] = (job, time.time() + self._terminal_ttl)
        return True

    async def set_cancelled(self, job_id: str) -> bool:
        job = self._live(job_id)
        if job is None or job.is_terminal:
            return False
        job.cancel_requested = True
        job.updated_at = utcnow()
        return True

    async def is_cancelled(self, job_id: str) -> bool:
        job = self._live(job_id)
        return bool(job and job.cancel_requested)

    async def delete(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)

    async def list_active(self) -> List[Job]:
        active = []
        for job_id in list(self._jobs):
            job = self._live(job_id)
            if job is not None and job.status in ACTIVE_STATUSES:
                active.append(copy.deepcopy(job))
        return sorted(active, key=lambda j: j.created_at)


class RedisJobStore(JobStore):
    """
    Redis-backed job store. Each job is a hash at <prefix>:job:<id>.

    Any RedisError is reported to the circuit breaker and re-raised as
    StoreUnavailableError.
    """

    backend = "redis"

    def __init__(
        self,
        key_prefix: str = REDIS_KEY_PREFIX,
        ttl_seconds: int = JOB_TTL_SECONDS,
        terminal_ttl_seconds: int = TERMINAL_JOB_TTL_SECONDS,
    ):
        self._prefix = f"{key_prefix}:job:"
        self._ttl = ttl_seconds
        self._terminal_ttl = terminal_ttl_seconds

    def _key(self, job_id: str) -> str:
        return f"{self._prefix}{job_id}"

    async def _client(self):
        redis = await get_redis()
        if redis is None:
            raise StoreUnavailableError("Redis is unavailable (circuit open or not configured)")
        return redis

    async def _failed(self, operation: str, error: RedisError) -> StoreUnavailableError:
        await report_redis_failure()
        return StoreUnavailableError(f"Job store {operation} failed: {error}")

    async def put(self, job: Job) -> None:
        redis = await self._client()
        key = self._key(job.id)
        ttl = self._terminal_ttl if job.is_terminal else self._ttl
        try:
            async with redis.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                pipe.hset(key, mapping=job.to_redis_hash())
                pipe.expire(key, ttl)
                await pipe.execute()
        except RedisError as e:
            raise await self._failed("put", e) from e
        await report_redis_success()

    async def create(self, job: Job) -> bool:
        redis = await self._client()
        args = [str(self._ttl)]
        for name, value in job.to_redis_hash().items():
            args.extend((name, value))
        try:
            created = await redis.eval(_CREATE_SCRIPT, 1, self._key(job.id), *args)
        except RedisError as e:
            raise await self._failed("create", e) from e
        await report_redis_success()
        return bool(created)

    async def get(self, job_id: str) -> Optional[Job]:
        redis = await self._client()
        try:
            data = await redis.hgetall(self._key(job_id))
        except RedisError as e:
            raise await self._failed("get", e) from e
        if not data:
            return None
        try:
            return Job.from_redis_hash(data)
        except (KeyError, ValueError) as e:
            logger.warning(f"Discarding malformed job record {job_id}: {e}")
            return None

    async def set_progress(self, job_id: str, percent: int, message: str) -> bool:
        redis = await self._client()
        try:
            applied = await redis.eval(
                _SET_PROGRESS_SCRIPT,
                1,
                self._key(job_id),
                str(int(percent)),
                message,
                utcnow().isoformat(),
            )
        except RedisError as e:
            raise await self._failed("set_progress", e) from e
        return bool(int(applied))

    async def transition(self, job_id: str, status: JobStatus, **fields: Any) -> bool:
        redis = await self._client()
        args: List[str] = [status.value, str(self._terminal_ttl)]
        for name, value in _prepare_fields(status, fields).items():
            args.extend([name, _encode_field(name, value)])
        try:
            applied = await redis.eval(_TRANSITION_SCRIPT, 1, self._key(job_id), *args)
        except RedisError as e:
            raise await self._failed("transition", e) from e
        if not int(applied):
            logger.debug(f"Transition of job {job_id} to {status.value} ignored (missing or terminal)")
        return bool(int(applied))

    async def set_cancelled(self, job_id: str) -> bool:
        redis = await self._client()
        try:
            applied = await redis.eval(_SET_CANCELLED_SCRIPT, 1, self._key(job_id), utcnow().isoformat())
        except RedisError as e:
            raise await self._failed("set_cancelled", e) from e
        return bool(int(applied))

    async def is_cancelled(self, job_id: str) -> bool:
        redis = await self._client()
        try:
            flag = await redis.hget(self._key(job_id), "cancel_requested")
        except RedisError as e:
            raise await self._failed("is_cancelled", e) from e
        return flag == "1"

    async def delete(self, job_id: str) -> None:
        redis = await self._client()
        try:
            await redis.delete(self._key(job_id))
        except RedisError as e:
            raise await self._failed("delete", e) from e

    async def list_active(self) -> List[Job]:
        redis = await self._client()
        active = []
        try:
            async for key in redis.scan_iter(match=f"{self._prefix}*", count=100):
                data = await redis.hgetall(key)
                if not data or data.get("status") in _TERMINAL_VALUES:
                    continue
                try:
                    active.append(Job.from_redis_hash(data))
                except (KeyError, ValueError) as e:
                    logger.warning(f"Skipping malformed job record {key}: {e}")
        except RedisError as e:
            raise await self._failed("list_active", e) from e
        return sorted(active, key=lambda j: j.created_at)


def create_job_store(backend: str = JOB_BACKEND) -> JobStore:
    """
    Factory function to create the appropriate store backend.

    Args:
        backend: "redis" or "memory"

    Returns:
        JobStore instance
    """
    if backend == "memory":
        logger.info("Job store backend: memory (single process, not durable)")
        return MemoryJobStore()
    if backend != "redis":
        logger.warning(f"Unknown job backend '{backend}', using redis")
    return RedisJobStore()
