"""
Transcode executor.

Runs ffmpeg once per rendition, in ascending order, writing
<output_dir>/<rendition>.mp4, plus one thumbnail.jpg taken before the first
rendition starts. Progress is reported through ProgressReporter; the
cancellation flag is polled before each rendition and right after each one
completes.
"""

import asyncio
import logging
import shutil
import time
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Tuple

from api.enums import ArtifactKind
from api.errors import InfrastructureError, JobCancelled, RenditionEncodeFailed, truncate_error
from api.job_store import JobStore
from api.models import Artifact, Job, MediaInfo, Rendition, StatusEvent
from api.pubsub import StatusPublisher
from config import (
    ENCODE_TIMEOUT_SECONDS,
    ENCODER_BINARY,
    ENCODER_PRESET,
    ERROR_DETAIL_MAX_LENGTH,
    PROGRESS_UPDATE_INTERVAL,
    THUMBNAIL_HEIGHT,
    THUMBNAIL_OFFSET_SECONDS,
    THUMBNAIL_TIMEOUT,
    THUMBNAIL_WIDTH,
)

logger = logging.getLogger(__name__)

THUMBNAIL_FILENAME = "thumbnail.jpg"

ProgressCallback = Callable[[int], Awaitable[None]]


class ProgressReporter:
    """
    Rate-limits progress updates so a long encode does not flood the store.

    Each update is written twice, independently: durably to the job store and
    ephemerally to the status publisher. A store outage is logged and skipped;
    the publisher never raises.
    """

    def __init__(
        self,
        job: Job,
        store: JobStore,
        publisher: Optional[StatusPublisher] = None,
        min_interval: float = PROGRESS_UPDATE_INTERVAL,
    ):
        self.job = job
        self.store = store
        self.publisher = publisher
        self.min_interval = min_interval
        self.last_update_time: float = 0
        self.last_progress: int = -1

    async def report(self, percent: int, message: str, force: bool = False) -> bool:
        """
        Record progress if enough time has passed (or force is set).
        Returns True if an update was written, False if rate-limited.
        """
        percent = max(0, min(100, int(percent)))
        # Never go backwards within a run
        if percent < self.last_progress:
            percent = self.last_progress

        now = time.time()
        if not force and now - self.last_update_time < self.min_interval:
            return False
        if not force and percent == self.last_progress:
            return False

        self.last_update_time = now
        self.last_progress = percent

        try:
            await self.store.set_progress(self.job.id, percent, message)
        except InfrastructureError as e:
            logger.warning(f"Progress write for job {self.job.id} skipped: {e}")

        if self.publisher is not None:
            await self.publisher.publish(
                StatusEvent(
                    job_id=self.job.id,
                    owner_id=self.job.owner_id,
                    status=self.job.status,
                    progress_percent=percent,
                    message=message,
                )
            )
        return True


def overall_progress(completed: int, total: int, fraction: float = 0.0) -> int:
    """Job progress with equal weight per rendition: (completed + fraction) / total."""
    if total <= 0:
        return 0
    fraction = max(0.0, min(1.0, fraction))
    return min(100, int((completed + fraction) / total * 100))


async def cleanup_encoder_process(process: asyncio.subprocess.Process, context: str = "ffmpeg") -> None:
    """
    Kill an encoder subprocess if it is still running, tolerating the race
    where it exits between the returncode check and kill().
    """
    if process.returncode is None:
        try:
            process.kill()
        except (ProcessLookupError, OSError):
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning(f"{context} process did not terminate after kill")


async def run_encoder_with_progress(
    cmd: List[str],
    duration: float,
    timeout: Optional[float] = None,
    progress_callback: Optional[ProgressCallback] = None,
    context: str = "ffmpeg",
) -> Tuple[bool, Optional[str]]:
    """
    Run an ffmpeg command that writes -progress output to stdout.

    Args:
        cmd: Command as list of arguments
        duration: Source duration in seconds (for percentage calculation)
        timeout: Wall-clock limit in seconds; None or 0 disables it
        progress_callback: Optional async callback for progress updates (0-100)
        context: Description for logging

    Returns:
        (success, error_message) where error_message is None on success
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,  # stderr would fill its pipe and stall ffmpeg
        )
    except OSError as e:
        return False, f"Could not start {context}: {e}"

    last_progress = 0
    start_time = asyncio.get_running_loop().time()
    timed_out = False

    async def read_progress():
        nonlocal last_progress
        while True:
            line = await process.stdout.readline()
            if not line:
                break

            line_str = line.decode("utf-8", errors="ignore").strip()

            # Progress lines look like out_time_ms=123456789 (microseconds despite the name)
            if line_str.startswith("out_time_ms="):
                try:
                    current_seconds = int(line_str.split("=")[1]) / 1000000.0
                except (ValueError, IndexError):
                    continue
                if duration > 0:
                    progress = min(100, int(current_seconds / duration * 100))
                    if progress > last_progress:
                        last_progress = progress
                        if progress_callback:
                            await progress_callback(progress)

    async def timeout_killer():
        nonlocal timed_out
        await asyncio.sleep(timeout)
        timed_out = True
        elapsed = asyncio.get_running_loop().time() - start_time
        logger.warning(f"{context} exceeded {timeout:.0f}s limit (ran for {elapsed:.0f}s), killing")
        try:
            process.kill()
        except ProcessLookupError:
            pass

    timeout_task = asyncio.create_task(timeout_killer()) if timeout else None
    try:
        await read_progress()
        await process.wait()
    finally:
        if timeout_task is not None:
            timeout_task.cancel()
            try:
                await timeout_task
            except asyncio.CancelledError:
                pass
        await cleanup_encoder_process(process, context)

    if timed_out:
        elapsed = asyncio.get_running_loop().time() - start_time
        return False, f"{context} timed out after {elapsed:.0f} seconds (limit: {timeout:.0f}s)"

    if process.returncode != 0:
        return False, f"{context} exited with code {process.returncode}"

    return True, None


def build_encode_command(
    input_path: Path,
    output_path: Path,
    rendition: Rendition,
    encoder: str = ENCODER_BINARY,
    preset: str = ENCODER_PRESET,
) -> List[str]:
    """H.264/AAC MP4 scaled to fit the rendition box, letterboxed to its exact size."""
    video_filter = (
        f"scale={rendition.width}:{rendition.height}:force_original_aspect_ratio=decrease,"
        f"pad={rendition.width}:{rendition.height}:(ow-iw)/2:(oh-ih)/2"
    )
    return [
        encoder,
        "-y",
        "-hide_banner",
        "-i",
        str(input_path),
        "-vf",
        video_filter,
        "-c:v",
        "libx264",
        "-preset",
        preset,
        "-profile:v",
        "high",
        "-pix_fmt",
        "yuv420p",
        "-b:v",
        rendition.video_bitrate,
        "-c:a",
        "aac",
        "-b:a",
        rendition.audio_bitrate,
        "-movflags",
        "+faststart",
        "-progress",
        "pipe:1",
        "-nostats",
        str(output_path),
    ]


def thumbnail_timestamp(duration: float, offset: float = THUMBNAIL_OFFSET_SECONDS) -> float:
    """Fixed offset, pulled back inside clips shorter than the offset."""
    if duration <= 0:
        return 0.0
    if offset < duration:
        return offset
    return duration / 2


def build_thumbnail_command(
    input_path: Path,
    output_path: Path,
    timestamp: float,
    width: int = THUMBNAIL_WIDTH,
    height: int = THUMBNAIL_HEIGHT,
    encoder: str = ENCODER_BINARY,
) -> List[str]:
    # Input seeking (-ss before -i) jumps to the nearest keyframe without decoding up to it
    return [
        encoder,
        "-y",
        "-ss",
        f"{timestamp:.3f}",
        "-i",
        str(input_path),
        "-vframes",
        "1",
        "-vf",
        f"scale={width}:{height}:force_original_aspect_ratio=decrease",
        str(output_path),
    ]


class TranscodeExecutor:
    """Produces every rendition of a job plus its thumbnail."""

    def __init__(
        self,
        store: JobStore,
        publisher: Optional[StatusPublisher] = None,
        encoder: str = ENCODER_BINARY,
        encode_timeout: float = ENCODE_TIMEOUT_SECONDS,
        progress_interval: float = PROGRESS_UPDATE_INTERVAL,
    ):
        self.store = store
        self.publisher = publisher
        self.encoder = encoder
        self.encode_timeout = encode_timeout or None
        self.progress_interval = progress_interval

    async def encode(
        self,
        input_path: Path,
        output_path: Path,
        rendition: Rendition,
        duration: float,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> None:
        """Encode one rendition. Raises RenditionEncodeFailed."""
        cmd = build_encode_command(input_path, output_path, rendition, encoder=self.encoder)
        success, error = await run_encoder_with_progress(
            cmd,
            duration,
            timeout=self.encode_timeout,
            progress_callback=progress_callback,
            context=f"ffmpeg {rendition.name}",
        )
        if not success:
            raise RenditionEncodeFailed(rendition.name, error or "unknown error")

    async def generate_thumbnail(self, input_path: Path, output_dir: Path, duration: float) -> Artifact:
        """Capture one frame at a fixed offset. Raises RenditionEncodeFailed."""
        output_path = Path(output_dir) / THUMBNAIL_FILENAME
        output_path.parent.mkdir(parents=True, exist_ok=True)
        cmd = build_thumbnail_command(input_path, output_path, thumbnail_timestamp(duration), encoder=self.encoder)

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd, stdout=asyncio.subprocess.DEVNULL, stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise RenditionEncodeFailed("thumbnail", f"Could not start {self.encoder}: {e}") from e

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=THUMBNAIL_TIMEOUT)
        except asyncio.TimeoutError:
            await cleanup_encoder_process(process, "ffmpeg thumbnail")
            raise RenditionEncodeFailed("thumbnail", f"timed out after {THUMBNAIL_TIMEOUT:.0f}s")

        if process.returncode != 0 or not output_path.exists():
            detail = truncate_error(stderr.decode("utf-8", errors="ignore").strip(), ERROR_DETAIL_MAX_LENGTH)
            raise RenditionEncodeFailed("thumbnail", detail or f"exited with code {process.returncode}")

        return Artifact(
            name="thumbnail",
            path=str(output_path),
            size_bytes=output_path.stat().st_size,
            kind=ArtifactKind.THUMBNAIL,
        )

    async def _check_cancelled(self, job_id: str) -> bool:
        try:
            return await self.store.is_cancelled(job_id)
        except InfrastructureError as e:
            logger.warning(f"Cancellation check for job {job_id} failed, continuing: {e}")
            return False

    async def run(
        self,
        job: Job,
        renditions: List[Rendition],
        media_info: MediaInfo,
        output_dir: Path,
    ) -> List[Artifact]:
        """
        Encode every rendition sequentially.

        Returns:
            One artifact per rendition followed by the thumbnail artifact

        Raises:
            RenditionEncodeFailed: encoder failed; remaining renditions skipped
            JobCancelled: cancellation observed at a checkpoint
        """
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        source = Path(job.source_path)
        total = len(renditions)
        reporter = ProgressReporter(job, self.store, self.publisher, min_interval=self.progress_interval)

        thumbnail = await self.generate_thumbnail(source, output_dir, media_info.duration)
        artifacts: List[Artifact] = []

        for index, rendition in enumerate(renditions):
            if await self._check_cancelled(job.id):
                logger.info(f"Job {job.id} cancelled before {rendition.name}")
                raise JobCancelled(job.id, completed_renditions=index)

            output_path = output_dir / f"{rendition.name}.mp4"
            await reporter.report(
                overall_progress(index, total),
                f"Encoding {rendition.name} ({index + 1}/{total})",
                force=True,
            )

            async def on_progress(percent: int, _index: int = index, _name: str = rendition.name) -> None:
                await reporter.report(
                    overall_progress(_index, total, percent / 100),
                    f"Encoding {_name} ({_index + 1}/{total}): {percent}%",
                )

            logger.info(f"Job {job.id}: encoding {rendition.name} ({rendition.width}x{rendition.height})")
            try:
                await self.encode(source, output_path, rendition, media_info.duration, on_progress)
            except RenditionEncodeFailed:
                output_path.unlink(missing_ok=True)
                raise

            artifacts.append(
                Artifact(
                    name=rendition.name,
                    path=str(output_path),
                    size_bytes=output_path.stat().st_size if output_path.exists() else 0,
                    kind=ArtifactKind.RENDITION,
                    bitrate=rendition.video_bitrate,
                )
            )
            await reporter.report(
                overall_progress(index + 1, total),
                f"Finished {rendition.name} ({index + 1}/{total})",
                force=True,
            )

            if await self._check_cancelled(job.id):
                output_path.unlink(missing_ok=True)
                logger.info(f"Job {job.id} cancelled after {rendition.name}")
                raise JobCancelled(job.id, completed_renditions=index + 1)

        artifacts.append(thumbnail)
        return artifacts


def cleanup_output_dir(output_dir: Path) -> None:
    """Remove a job's output directory and everything in it."""
    if Path(output_dir).exists():
        shutil.rmtree(output_dir, ignore_errors=True)
        logger.debug(f"Removed output directory {output_dir}")


def cleanup_source_file(source_path: str) -> bool:
    """
    Delete the raw upload from the inbox.

    Returns:
        True if a file was deleted, False otherwise
    """
    path = Path(source_path)
    if not path.exists():
        return False
    try:
        path.unlink()
        logger.info(f"Removed source file {path.name}")
        return True
    except OSError as e:
        logger.error(f"Failed to remove source file {path}: {e}")
        return False
