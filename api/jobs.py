"""
Ingest-facing job operations.

JobService is what the HTTP layer (and the CLI) call to submit, cancel and
inspect transcoding jobs. It never touches the encoder; it only writes the job
store, the queue, the status mirror and the status publisher.
"""

import logging
import shutil
import time
from pathlib import Path
from typing import Any, Dict, Optional

from api.database import create_status_mirror
from api.errors import InfrastructureError, JobAlreadyExists
from api.job_queue import JobQueue, create_job_queue
from api.job_store import JobStore, create_job_store
from api.models import Job, StatusEvent
from api.pubsub import StatusPublisher, create_status_publisher
from config import INBOX_DIR

logger = logging.getLogger(__name__)


def inbox_filename(job_id: str, original_name: str) -> str:
    """Inbox name: <job_id>_<epoch ms>_<original name>."""
    return f"{job_id}_{int(time.time() * 1000)}_{Path(original_name).name}"


class JobService:
    def __init__(
        self,
        queue: JobQueue,
        store: JobStore,
        mirror=None,
        publisher: Optional[StatusPublisher] = None,
        inbox_dir: Path = INBOX_DIR,
    ):
        self.queue = queue
        self.store = store
        self.mirror = mirror or create_status_mirror("")
        self.publisher = publisher
        self.inbox_dir = Path(inbox_dir)

    def _move_to_inbox(self, job_id: str, source: Path) -> Path:
        if source.parent.resolve() == self.inbox_dir.resolve():
            return source
        self.inbox_dir.mkdir(parents=True, exist_ok=True)
        destination = self.inbox_dir / inbox_filename(job_id, source.name)
        shutil.move(str(source), str(destination))
        logger.debug(f"Moved {source} to {destination}")
        return destination

    @staticmethod
    def _restore(inbox_path: Path, source: Path) -> None:
        if inbox_path != source:
            shutil.move(str(inbox_path), str(source))

    async def enqueue(self, job_id: str, source_path: str, owner_id: str) -> Job:
        """
        Submit a raw upload for transcoding.

        The job record is written before the queue entry so a worker never pops
        an id it cannot look up.

        Raises:
            FileNotFoundError: source_path does not exist
            JobAlreadyExists: a job with this id is still queued or processing
            InfrastructureError: queue or store unreachable
        """
        source = Path(source_path)
        if not source.is_file():
            raise FileNotFoundError(f"Source file not found: {source_path}")

        inbox_path = self._move_to_inbox(job_id, source)
        job = Job(
            id=job_id,
            owner_id=owner_id,
            source_path=str(inbox_path),
            original_name=source.name,
            progress_message="Queued for processing",
        )

        try:
            created = await self.store.create(job)
        except InfrastructureError:
            logger.error(f"Failed to record job {job_id}, restoring {source}")
            self._restore(inbox_path, source)
            raise
        if not created:
            self._restore(inbox_path, source)
            raise JobAlreadyExists(job_id)

        try:
            await self.queue.enqueue(job_id)
        except InfrastructureError:
            logger.error(f"Failed to enqueue job {job_id}, restoring {source}")
            try:
                await self.store.delete(job_id)
            except InfrastructureError as e:
                logger.warning(f"Could not remove job record {job_id}: {e}")
            self._restore(inbox_path, source)
            raise

        logger.info(f"Queued job {job_id} for owner {owner_id} ({source.name})")
        await self.mirror.record(job)
        if self.publisher is not None:
            await self.publisher.publish(StatusEvent.for_job(job))
        return job

    async def request_cancel(self, job_id: str) -> bool:
        """
        Ask the owning worker to stop.

        Only sets the cancellation flag; the worker observes it at its next
        checkpoint and performs the cleanup.

        Returns:
            True if the flag was set, False if the job is unknown or already finished
        """
        accepted = await self.store.set_cancelled(job_id)
        if accepted:
            logger.info(f"Cancellation requested for job {job_id}")
        else:
            logger.info(f"Cancellation ignored for job {job_id} (unknown or finished)")
        return accepted

    async def get_status(self, job_id: str) -> Optional[Job]:
        return await self.store.get(job_id)

    async def get_queue_snapshot(self) -> Dict[str, Any]:
        """Queue length plus every queued or processing job."""
        length = await self.queue.length()
        active = await self.store.list_active()
        return {"length": length, "active_jobs": active}


def create_job_service() -> JobService:
    """Build a JobService wired to the configured backends."""
    return JobService(
        queue=create_job_queue(),
        store=create_job_store(),
        mirror=create_status_mirror(),
        publisher=create_status_publisher(),
    )
