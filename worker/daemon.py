"""
Worker pool: N independent loops pulling job ids from the queue.

Each loop polls the queue, backs off when it is empty, and runs one job at a
time through JobProcessor. Renditions within a job are encoded sequentially,
so the pool size is the ceiling on concurrent encoder processes.
"""

import asyncio
import logging
import signal
import socket
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from api.database import create_status_mirror
from api.enums import WorkerPhase
from api.errors import InfrastructureError
from api.job_queue import JobQueue, create_job_queue
from api.job_store import create_job_store
from api.pubsub import create_status_publisher
from api.redis_client import RedisClient
from config import (
    JOB_BACKEND,
    LOG_FORMAT,
    LOG_LEVEL,
    WORKER_CONCURRENCY,
    WORKER_ERROR_BACKOFF,
    WORKER_HEALTH_PORT,
    WORKER_POLL_INTERVAL,
)
from worker.alerts import alert_worker_shutdown, alert_worker_startup
from worker.blob_publisher import create_blob_publisher
from worker.health_server import HealthServer
from worker.pipeline import JobProcessor
from worker.transcoder import TranscodeExecutor

logger = logging.getLogger(__name__)


@dataclass
class ActiveJob:
    """A job currently held by one worker slot."""

    job_id: str
    worker_id: int
    started_at: float
    phase: WorkerPhase = WorkerPhase.CLAIMED

    def elapsed_seconds(self) -> float:
        return time.monotonic() - self.started_at


class WorkerPool:
    """
    Fixed-size pool of worker loops.

    All pool state lives on the instance, so several pools can coexist in one
    process (tests do this).
    """

    def __init__(
        self,
        queue: JobQueue,
        processor: JobProcessor,
        poll_interval: float = WORKER_POLL_INTERVAL,
        error_backoff: float = WORKER_ERROR_BACKOFF,
        name: Optional[str] = None,
    ):
        self.queue = queue
        self.processor = processor
        self.poll_interval = poll_interval
        self.error_backoff = error_backoff
        self.name = name or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
        self.concurrency = 0
        self._tasks: List[asyncio.Task] = []
        self._stop_event: Optional[asyncio.Event] = None
        self._active: Dict[int, ActiveJob] = {}

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    @property
    def stop_requested(self) -> bool:
        return self._stop_event is not None and self._stop_event.is_set()

    async def start(self, concurrency: int = WORKER_CONCURRENCY) -> None:
        """Spawn `concurrency` worker loops."""
        if self.is_running:
            raise RuntimeError("Worker pool is already running")
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        self._stop_event = asyncio.Event()
        self.concurrency = concurrency
        self._tasks = [
            asyncio.create_task(self._worker_loop(worker_id), name=f"{self.name}-worker-{worker_id}")
            for worker_id in range(concurrency)
        ]
        logger.info(f"Worker pool {self.name} started with {concurrency} worker(s)")

    def request_stop(self) -> None:
        """Ask every loop to exit after its current job. Safe to call from signal handlers."""
        if self._stop_event is not None and not self._stop_event.is_set():
            logger.info("Shutdown requested, workers will exit after their current job")
            self._stop_event.set()

    async def wait(self) -> None:
        """Wait for every worker loop to exit."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def stop(self) -> None:
        self.request_stop()
        await self.wait()
        logger.info(f"Worker pool {self.name} stopped")

    async def run_forever(self, concurrency: int = WORKER_CONCURRENCY) -> None:
        """Start the loops and block until request_stop() has drained them."""
        await self.start(concurrency)
        await self.wait()

    def get_status(self) -> Dict[str, Any]:
        """Snapshot of the pool for the CLI and the health server."""
        jobs = [
            {
                "job_id": active.job_id,
                "worker_id": active.worker_id,
                "phase": active.phase.value,
                "elapsed_seconds": round(active.elapsed_seconds(), 1),
            }
            for active in sorted(self._active.values(), key=lambda a: a.worker_id)
        ]
        return {
            "name": self.name,
            "is_running": self.is_running,
            "concurrency": self.concurrency,
            "active_job_count": len(jobs),
            "jobs": jobs,
        }

    async def _sleep(self, seconds: float) -> None:
        """Sleep that wakes immediately when stop is requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _requeue(self, worker_id: int, job_id: str) -> None:
        """Hand a job interrupted by an outage back to the queue, retrying until it is accepted."""
        while True:
            try:
                await self.queue.requeue(job_id)
                logger.info(f"Worker {worker_id}: job {job_id} returned to the queue")
                return
            except InfrastructureError as e:
                if self.stop_requested:
                    logger.error(f"Worker {worker_id}: shutting down, job {job_id} could not be requeued: {e}")
                    return
                logger.warning(f"Worker {worker_id}: requeue of job {job_id} failed, retrying: {e}")
                await self._sleep(self.error_backoff)

    async def _worker_loop(self, worker_id: int) -> None:
        logger.debug(f"Worker {worker_id} started")
        while not self._stop_event.is_set():
            try:
                job_id = await self.queue.dequeue()
            except InfrastructureError as e:
                logger.warning(f"Worker {worker_id}: queue unavailable, retrying in {self.error_backoff:.0f}s: {e}")
                await self._sleep(self.error_backoff)
                continue

            if job_id is None:
                await self._sleep(self.poll_interval)
                continue

            active = ActiveJob(job_id=job_id, worker_id=worker_id, started_at=time.monotonic())
            self._active[worker_id] = active

            def on_phase(phase: WorkerPhase, _active: ActiveJob = active) -> None:
                _active.phase = phase

            logger.info(f"Worker {worker_id} claimed job {job_id}")
            try:
                status = await self.processor.process(job_id, on_phase=on_phase)
                if status is not None:
                    logger.info(
                        f"Worker {worker_id} finished job {job_id}: {status.value} "
                        f"in {active.elapsed_seconds():.1f}s"
                    )
            except InfrastructureError as e:
                logger.error(f"Worker {worker_id}: backend unavailable during job {job_id}: {e}")
                await self._sleep(self.error_backoff)
                await self._requeue(worker_id, job_id)
            except Exception:
                logger.exception(f"Worker {worker_id}: unhandled error processing job {job_id}")
            finally:
                self._active.pop(worker_id, None)

        logger.debug(f"Worker {worker_id} exiting")


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)


async def _redis_ready() -> bool:
    client = await RedisClient.get_instance()
    return await client.health_check()


async def run_worker(concurrency: int = WORKER_CONCURRENCY, health_port: int = WORKER_HEALTH_PORT) -> None:
    """Build the pipeline from configuration and run the pool until SIGINT/SIGTERM."""
    store = create_job_store()
    queue = create_job_queue()
    publisher = create_status_publisher()
    mirror = create_status_mirror()
    blob_publisher = create_blob_publisher()
    executor = TranscodeExecutor(store, publisher)
    processor = JobProcessor(
        store=store,
        publisher=publisher,
        executor=executor,
        blob_publisher=blob_publisher,
        mirror=mirror,
    )
    pool = WorkerPool(queue, processor)

    await mirror.connect()

    health_server = None
    if health_port:
        health_server = HealthServer(
            port=health_port,
            status_fn=pool.get_status,
            backend_check_fn=_redis_ready if JOB_BACKEND == "redis" else None,
        )
        await health_server.start()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, pool.request_stop)

    await pool.start(concurrency)
    await alert_worker_startup(pool.name, concurrency)

    try:
        await pool.wait()
    finally:
        active_jobs = pool.get_status()["active_job_count"]
        await alert_worker_shutdown(pool.name, active_jobs)
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
        if health_server is not None:
            await health_server.stop()
        if blob_publisher is not None:
            await blob_publisher.close()
        await mirror.disconnect()
        await RedisClient.reset_instance()
        logger.info("Worker stopped gracefully")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(run_worker())
