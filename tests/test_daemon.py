"""Tests for the worker pool."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from api.enums import ArtifactKind, JobStatus, WorkerPhase
from api.errors import QueueUnavailableError, StoreUnavailableError
from api.job_queue import MemoryJobQueue
from conftest import make_inspector
from worker.daemon import WorkerPool


class TrackingProcessor:
    """Records which jobs ran and flags any job seen by two workers at once. Each entry in errors raises once."""

    def __init__(self, delay: float = 0.01, errors=None):
        self.delay = delay
        self.errors = errors or {}
        self.processed = []
        self.in_flight = set()
        self.duplicates = []

    async def process(self, job_id, on_phase=None):
        if job_id in self.in_flight:
            self.duplicates.append(job_id)
        self.in_flight.add(job_id)
        try:
            if on_phase:
                on_phase(WorkerPhase.ENCODING)
            await asyncio.sleep(self.delay)
            if job_id in self.errors:
                raise self.errors.pop(job_id)
            self.processed.append(job_id)
            return JobStatus.READY
        finally:
            self.in_flight.discard(job_id)


async def wait_until(predicate, timeout: float = 2.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout=timeout)


class TestWorkerPoolStartStop:
    @pytest.mark.asyncio
    async def test_rejects_zero_concurrency(self):
        pool = WorkerPool(MemoryJobQueue(), TrackingProcessor())
        with pytest.raises(ValueError):
            await pool.start(0)

    @pytest.mark.asyncio
    async def test_rejects_double_start(self):
        pool = WorkerPool(MemoryJobQueue(), TrackingProcessor(), poll_interval=0.01)
        await pool.start(1)
        try:
            with pytest.raises(RuntimeError):
                await pool.start(1)
        finally:
            await pool.stop()

    @pytest.mark.asyncio
    async def test_stop_interrupts_poll_sleep(self):
        pool = WorkerPool(MemoryJobQueue(), TrackingProcessor(), poll_interval=60)
        await pool.start(2)
        await asyncio.sleep(0.01)

        await asyncio.wait_for(pool.stop(), timeout=1)

        assert pool.is_running is False
        assert pool.stop_requested is True

    @pytest.mark.asyncio
    async def test_run_forever_returns_after_stop(self):
        queue = MemoryJobQueue()
        processor = TrackingProcessor(delay=0)
        pool = WorkerPool(queue, processor, poll_interval=0.01)
        await queue.enqueue("job-1")

        runner = asyncio.create_task(pool.run_forever(2))
        await wait_until(lambda: processor.processed == ["job-1"])
        pool.request_stop()
        await asyncio.wait_for(runner, timeout=1)

        assert pool.is_running is False

    @pytest.mark.asyncio
    async def test_default_name(self):
        pool = WorkerPool(MemoryJobQueue(), TrackingProcessor())
        assert pool.name
        assert WorkerPool(MemoryJobQueue(), TrackingProcessor(), name="w1").name == "w1"


class TestJobDistribution:
    @pytest.mark.asyncio
    async def test_single_job_two_workers(self):
        """Two workers race for one job: it runs exactly once, the other worker sees an empty queue."""
        queue = MemoryJobQueue()
        processor = TrackingProcessor()
        pool = WorkerPool(queue, processor, poll_interval=0.01)
        await queue.enqueue("job-1")

        await pool.start(2)
        await wait_until(lambda: processor.processed == ["job-1"])
        await asyncio.sleep(0.05)
        await pool.stop()

        assert processor.processed == ["job-1"]
        assert await queue.length() == 0

    @pytest.mark.asyncio
    async def test_many_jobs_no_duplicates(self):
        queue = MemoryJobQueue()
        processor = TrackingProcessor(delay=0.005)
        pool = WorkerPool(queue, processor, poll_interval=0.01)
        job_ids = [f"job-{i}" for i in range(20)]
        for job_id in job_ids:
            await queue.enqueue(job_id)

        await pool.start(4)
        await wait_until(lambda: len(processor.processed) == len(job_ids))
        await pool.stop()

        assert sorted(processor.processed) == sorted(job_ids)
        assert processor.duplicates == []

    @pytest.mark.asyncio
    async def test_fifo_with_single_worker(self):
        queue = MemoryJobQueue()
        processor = TrackingProcessor(delay=0)
        pool = WorkerPool(queue, processor, poll_interval=0.01)
        for job_id in ("a", "b", "c"):
            await queue.enqueue(job_id)

        await pool.start(1)
        await wait_until(lambda: len(processor.processed) == 3)
        await pool.stop()

        assert processor.processed == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_end_to_end_with_processor(self, make_processor, memory_queue, memory_store, queued_job):
        pool = WorkerPool(memory_queue, make_processor(inspector=make_inspector()), poll_interval=0.01)

        await pool.start(2)

        async def job_ready():
            job = await memory_store.get(queued_job.id)
            return job.status == JobStatus.READY

        async def _poll():
            while not await job_ready():
                await asyncio.sleep(0.01)

        await asyncio.wait_for(_poll(), timeout=5)
        await pool.stop()


class TestErrorHandling:
    @pytest.mark.asyncio
    async def test_queue_outage_backs_off(self):
        queue = MemoryJobQueue()
        queue.dequeue = AsyncMock(side_effect=QueueUnavailableError("redis down"))
        pool = WorkerPool(queue, TrackingProcessor(), error_backoff=0.01)

        await pool.start(1)
        await wait_until(lambda: queue.dequeue.await_count >= 3)
        await pool.stop()

        assert pool.is_running is False

    @pytest.mark.asyncio
    async def test_worker_survives_job_errors(self):
        queue = MemoryJobQueue()
        processor = TrackingProcessor(
            delay=0,
            errors={"bad": RuntimeError("boom"), "outage": StoreUnavailableError("redis down")},
        )
        pool = WorkerPool(queue, processor, poll_interval=0.01, error_backoff=0.01)
        for job_id in ("bad", "outage", "good"):
            await queue.enqueue(job_id)

        await pool.start(1)
        await wait_until(lambda: len(processor.processed) == 2)
        await pool.stop()

        assert processor.processed == ["outage", "good"]
        assert pool.get_status()["active_job_count"] == 0


def fail_first_calls(func, error, times: int = 1):
    """Wrap an async method so its first `times` calls raise error."""
    calls = {"count": 0}

    async def wrapper(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] <= times:
            raise error
        return await func(*args, **kwargs)

    wrapper.calls = calls
    return wrapper


class TestOutageRecovery:
    """A backend outage after dequeue hands the job back instead of dropping it."""

    async def _wait_for_status(self, store, job_id, status, timeout: float = 5.0):
        async def _poll():
            while (await store.get(job_id)).status != status:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(_poll(), timeout=timeout)

    @pytest.mark.asyncio
    async def test_job_runs_after_store_outage_on_lookup(self, make_processor, memory_queue, memory_store, queued_job):
        memory_store.get = fail_first_calls(memory_store.get, StoreUnavailableError("redis down"))
        pool = WorkerPool(memory_queue, make_processor(), poll_interval=0.01, error_backoff=0.01)

        await pool.start(1)
        await self._wait_for_status(memory_store, queued_job.id, JobStatus.READY)
        await pool.stop()

        assert await memory_queue.length() == 0

    @pytest.mark.asyncio
    async def test_interrupted_processing_job_restarts(
        self, make_processor, memory_queue, memory_store, queued_job, source_file
    ):
        original = memory_store.transition
        failed = []

        async def transition(job_id, status, **fields):
            if status == JobStatus.READY and not failed:
                failed.append(job_id)
                raise StoreUnavailableError("redis down")
            return await original(job_id, status, **fields)

        memory_store.transition = transition
        pool = WorkerPool(memory_queue, make_processor(), poll_interval=0.01, error_backoff=0.01)

        await pool.start(1)
        await self._wait_for_status(memory_store, queued_job.id, JobStatus.READY)
        await pool.stop()

        assert failed == ["job-1"]
        job = await memory_store.get(queued_job.id)
        assert [a.name for a in job.artifacts if a.kind == ArtifactKind.RENDITION] == ["360p", "480p", "720p"]
        assert not source_file.exists()

    @pytest.mark.asyncio
    async def test_failed_requeue_is_retried(self, make_processor, memory_queue, memory_store, queued_job):
        memory_store.get = fail_first_calls(memory_store.get, StoreUnavailableError("redis down"))
        memory_queue.requeue = fail_first_calls(memory_queue.requeue, QueueUnavailableError("redis down"), times=2)
        pool = WorkerPool(memory_queue, make_processor(), poll_interval=0.01, error_backoff=0.01)

        await pool.start(1)
        await self._wait_for_status(memory_store, queued_job.id, JobStatus.READY)
        await pool.stop()

        assert memory_queue.requeue.calls["count"] == 3

    @pytest.mark.asyncio
    async def test_shutdown_abandons_requeue(self):
        queue = MemoryJobQueue()
        queue.requeue = AsyncMock(side_effect=QueueUnavailableError("redis down"))
        processor = TrackingProcessor(delay=0, errors={"job-1": StoreUnavailableError("redis down")})
        pool = WorkerPool(queue, processor, poll_interval=0.01, error_backoff=0.01)
        await queue.enqueue("job-1")

        await pool.start(1)
        await wait_until(lambda: queue.requeue.await_count >= 2)
        await asyncio.wait_for(pool.stop(), timeout=1)

        assert pool.is_running is False


class TestPoolStatus:
    @pytest.mark.asyncio
    async def test_reports_active_jobs_and_phase(self):
        queue = MemoryJobQueue()
        release = asyncio.Event()

        class BlockingProcessor:
            async def process(self, job_id, on_phase=None):
                on_phase(WorkerPhase.PUBLISHING)
                await release.wait()
                return JobStatus.READY

        pool = WorkerPool(queue, BlockingProcessor(), poll_interval=0.01, name="pool-a")
        await queue.enqueue("job-1")
        await pool.start(2)
        await wait_until(lambda: pool.get_status()["active_job_count"] == 1)

        status = pool.get_status()
        assert status["name"] == "pool-a"
        assert status["is_running"] is True
        assert status["concurrency"] == 2
        job = status["jobs"][0]
        assert job["job_id"] == "job-1"
        assert job["phase"] == "publishing"
        assert job["elapsed_seconds"] >= 0

        release.set()
        await pool.stop()
        assert pool.get_status()["jobs"] == []
