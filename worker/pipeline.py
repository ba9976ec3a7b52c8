"""
Per-job pipeline: inspect -> plan -> encode -> publish, with the failure and
cancellation paths.

JobProcessor.process() drives one job id from the queue to a terminal state.
Input and encode errors end the job as failed; a cancellation observed at a
checkpoint ends it as cancelled; infrastructure errors propagate to the worker
loop, which backs off and puts the job back on the queue.
"""

import logging
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from api.database import NullStatusMirror
from api.enums import ArtifactKind, JobStatus, WorkerPhase
from api.errors import (
    InfrastructureError,
    InputError,
    JobCancelled,
    PublishError,
    RenditionEncodeFailed,
    truncate_error,
)
from api.job_store import JobStore
from api.models import Artifact, Job, MediaInfo, StatusEvent, utcnow
from api.pubsub import StatusPublisher
from config import CLEANUP_SOURCE_ON_FAILURE, OUTPUT_DIR
from worker.alerts import (
    alert_job_failed,
    alert_job_metadata_missing,
    alert_publish_fallback_exhausted,
    get_metrics,
    send_alert_fire_and_forget,
)
from worker.blob_publisher import BlobPublisher
from worker.encode_plan import select_renditions
from worker.media_inspector import inspect
from worker.transcoder import TranscodeExecutor, cleanup_output_dir, cleanup_source_file

logger = logging.getLogger(__name__)

PhaseCallback = Callable[[WorkerPhase], None]
Inspector = Callable[[str], Awaitable[MediaInfo]]


class JobProcessor:
    def __init__(
        self,
        store: JobStore,
        publisher: StatusPublisher,
        executor: TranscodeExecutor,
        blob_publisher: Optional[BlobPublisher] = None,
        mirror=None,
        inspector: Inspector = inspect,
        output_root: Path = OUTPUT_DIR,
        presets: Optional[List[dict]] = None,
        cleanup_source_on_failure: bool = CLEANUP_SOURCE_ON_FAILURE,
    ):
        self.store = store
        self.publisher = publisher
        self.executor = executor
        self.blob_publisher = blob_publisher
        self.mirror = mirror or NullStatusMirror()
        self.inspector = inspector
        self.output_root = Path(output_root)
        self.presets = presets
        self.cleanup_source_on_failure = cleanup_source_on_failure

    def output_dir_for(self, job_id: str) -> Path:
        return self.output_root / job_id

    async def _announce(self, job: Job, message: Optional[str] = None) -> None:
        """Mirror the job and publish its status. Neither side raises."""
        await self.mirror.record(job)
        await self.publisher.publish(StatusEvent.for_job(job, message))

    async def process(self, job_id: str, on_phase: Optional[PhaseCallback] = None) -> Optional[JobStatus]:
        """
        Run one job to a terminal state.

        Returns:
            The terminal status reached, or None if the job was skipped

        Raises:
            InfrastructureError: job store unreachable
        """

        def phase(value: WorkerPhase) -> None:
            if on_phase is not None:
                on_phase(value)

        job = await self.store.get(job_id)
        if job is None:
            logger.warning(f"Job {job_id} popped from queue but its metadata is missing, skipping")
            send_alert_fire_and_forget(alert_job_metadata_missing(job_id))
            return None
        if job.is_terminal:
            logger.info(f"Job {job_id} already {job.status.value}, skipping")
            return None
        if job.status == JobStatus.PROCESSING:
            # Ids are only on the queue once per active job, so this is a job
            # handed back after an outage interrupted it.
            logger.warning(f"Job {job_id} was interrupted while processing, restarting it")

        output_dir = self.output_dir_for(job_id)

        if job.cancel_requested:
            phase(WorkerPhase.CANCELLING)
            return await self._cancel(job, output_dir)

        try:
            phase(WorkerPhase.INSPECTING)
            media_info = await self.inspector(job.source_path)
            renditions = select_renditions(media_info, self.presets)

            started = await self.store.transition(
                job_id,
                JobStatus.PROCESSING,
                renditions=renditions,
                progress_message="Starting transcode",
            )
            if not started:
                logger.warning(f"Job {job_id} disappeared or finished before encoding started")
                return None
            job.status = JobStatus.PROCESSING
            job.renditions = renditions
            job.progress_percent = 0
            job.progress_message = "Starting transcode"
            job.updated_at = utcnow()
            await self._announce(job)
            logger.info(f"Job {job_id}: renditions {', '.join(r.name for r in renditions)}")

            phase(WorkerPhase.ENCODING)
            artifacts = await self.executor.run(job, renditions, media_info, output_dir)

            phase(WorkerPhase.PUBLISHING)
            return await self._complete(job, artifacts, output_dir)

        except JobCancelled:
            phase(WorkerPhase.CANCELLING)
            return await self._cancel(job, output_dir)
        except (InputError, RenditionEncodeFailed) as e:
            phase(WorkerPhase.FAILING)
            return await self._fail(job, str(e), output_dir)
        except InfrastructureError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error processing job {job_id}")
            phase(WorkerPhase.FAILING)
            return await self._fail(job, f"Unexpected error: {e}", output_dir)

    async def _complete(self, job: Job, artifacts: List[Artifact], output_dir: Path) -> JobStatus:
        published = artifacts
        uploaded = False
        if self.blob_publisher is not None:
            try:
                published = await self.blob_publisher.publish(job.id, artifacts)
                uploaded = True
            except PublishError as e:
                logger.error(f"Job {job.id}: every publisher failed, keeping local files: {e}")
                send_alert_fire_and_forget(alert_publish_fallback_exhausted(job.id, str(e)))

        thumbnail = next((a for a in published if a.kind == ArtifactKind.THUMBNAIL), None)
        thumbnail_url = (thumbnail.url or thumbnail.path) if thumbnail else None
        message = "Transcoding complete" if uploaded or self.blob_publisher is None else "Complete (local files)"

        applied = await self.store.transition(
            job.id,
            JobStatus.READY,
            artifacts=published,
            thumbnail_url=thumbnail_url,
            progress_percent=100,
            progress_message=message,
        )
        if not applied:
            logger.warning(f"Job {job.id} record vanished before it could be marked ready")

        job.status = JobStatus.READY
        job.artifacts = published
        job.thumbnail_url = thumbnail_url
        job.progress_percent = 100
        job.progress_message = message
        job.updated_at = utcnow()
        await self._announce(job)
        get_metrics().jobs_completed += 1

        if uploaded:
            cleanup_output_dir(output_dir)
        cleanup_source_file(job.source_path)
        logger.info(f"Job {job.id} ready with {len(published) - (1 if thumbnail else 0)} rendition(s)")
        return JobStatus.READY

    async def _fail(self, job: Job, error: str, output_dir: Path) -> JobStatus:
        error = truncate_error(error)
        logger.error(f"Job {job.id} failed: {error}")

        # Files stay until the failure is recorded; a requeued retry needs the source
        await self.store.transition(job.id, JobStatus.FAILED, error_message=error, progress_message="Failed")
        job.status = JobStatus.FAILED
        job.error_message = error
        job.progress_message = "Failed"
        job.updated_at = utcnow()
        await self._announce(job)

        cleanup_output_dir(output_dir)
        if self.cleanup_source_on_failure:
            cleanup_source_file(job.source_path)
        send_alert_fire_and_forget(alert_job_failed(job.id, job.owner_id, error))
        return JobStatus.FAILED

    async def _cancel(self, job: Job, output_dir: Path) -> JobStatus:
        """Record the cancellation, then purge partial output, the inbox file and the store entry."""
        await self.store.transition(job.id, JobStatus.CANCELLED, progress_message="Cancelled")
        job.status = JobStatus.CANCELLED
        job.progress_message = "Cancelled"
        job.updated_at = utcnow()
        await self._announce(job)

        cleanup_output_dir(output_dir)
        cleanup_source_file(job.source_path)
        try:
            await self.store.delete(job.id)
        except InfrastructureError as e:
            logger.warning(f"Could not delete cancelled job {job.id}, it will expire on its own: {e}")
        get_metrics().jobs_cancelled += 1
        logger.info(f"Job {job.id} cancelled and cleaned up")
        return JobStatus.CANCELLED
