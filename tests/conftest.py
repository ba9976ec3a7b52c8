"""
Pytest fixtures for ReelQueue tests.

Runs everything against the in-memory queue and store with Redis, the status
mirror, blob storage and alert webhooks disabled. Encoder and ffprobe calls
are replaced by fakes that write small files into a temporary directory.
"""

import os
import tempfile
from pathlib import Path
from typing import List, Optional

import pytest

# Set up test environment BEFORE importing config
_test_temp_dir = tempfile.mkdtemp()
os.environ["REELQUEUE_TEST_MODE"] = "1"
os.environ["REELQUEUE_STORAGE_PATH"] = _test_temp_dir
os.environ["REELQUEUE_JOB_BACKEND"] = "memory"
os.environ["REELQUEUE_REDIS_URL"] = ""
os.environ["REELQUEUE_DATABASE_URL"] = ""
os.environ["REELQUEUE_ALERT_WEBHOOK_URL"] = ""
os.environ["REELQUEUE_CDN_STORAGE_ZONE"] = ""
os.environ["REELQUEUE_S3_BUCKET"] = ""

from api.job_queue import MemoryJobQueue  # noqa: E402
from api.job_store import MemoryJobStore  # noqa: E402
from api.models import Artifact, Job, MediaInfo, Rendition, StatusEvent  # noqa: E402
from api.pubsub import StatusPublisher  # noqa: E402
from api.redis_client import RedisClient  # noqa: E402
from worker.alerts import reset_metrics  # noqa: E402
from worker.pipeline import JobProcessor  # noqa: E402
from worker.transcoder import THUMBNAIL_FILENAME, TranscodeExecutor  # noqa: E402


class RecordingPublisher(StatusPublisher):
    """Status publisher that keeps every event in memory."""

    def __init__(self):
        self.events: List[StatusEvent] = []

    async def publish(self, event: StatusEvent) -> bool:
        self.events.append(event)
        return True

    def for_job(self, job_id: str) -> List[StatusEvent]:
        return [e for e in self.events if e.job_id == job_id]


class FakeTranscodeExecutor(TranscodeExecutor):
    """
    Executor whose encoder writes a placeholder file instead of running ffmpeg.

    Hooks:
        before_encode: async callable(rendition) run before each encode
        fail_on: rendition name whose encode raises RenditionEncodeFailed
    """

    def __init__(self, store, publisher=None, fail_on: Optional[str] = None, before_encode=None):
        super().__init__(store, publisher, progress_interval=0)
        self.fail_on = fail_on
        self.before_encode = before_encode
        self.encoded: List[str] = []

    async def encode(self, input_path, output_path, rendition, duration, progress_callback=None):
        from api.errors import RenditionEncodeFailed

        if self.before_encode is not None:
            await self.before_encode(rendition)
        Path(output_path).write_bytes(b"partial")
        if rendition.name == self.fail_on:
            raise RenditionEncodeFailed(rendition.name, "ffmpeg exited with code 1")
        for percent in (25, 50, 75, 100):
            if progress_callback:
                await progress_callback(percent)
        Path(output_path).write_bytes(b"encoded " + rendition.name.encode())
        self.encoded.append(rendition.name)

    async def generate_thumbnail(self, input_path, output_dir, duration):
        from api.enums import ArtifactKind

        path = Path(output_dir) / THUMBNAIL_FILENAME
        path.write_bytes(b"jpeg")
        return Artifact(name="thumbnail", path=str(path), size_bytes=4, kind=ArtifactKind.THUMBNAIL)


def make_inspector(width: int = 1280, height: int = 720, duration: float = 60.0, error: Exception = None):
    """Build an async inspector returning fixed metadata (or raising error)."""

    async def inspector(path):
        if error is not None:
            raise error
        return MediaInfo(
            duration=duration,
            width=width,
            height=height,
            frame_rate=30.0,
            video_codec="h264",
            container="mov,mp4,m4a,3gp,3g2,mj2",
            audio_codec="aac",
        )

    return inspector


@pytest.fixture(autouse=True)
def reset_alert_metrics():
    """Alert counters are module-global; start every test from zero."""
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture(autouse=True)
def reset_redis_client():
    """Drop the Redis singleton (never connected, REDIS_URL is empty) between tests."""
    yield
    RedisClient._instance = None
    RedisClient._initialized = False
    RedisClient._lock = None


@pytest.fixture
def test_storage(tmp_path: Path) -> dict:
    """Create inbox/output/uploads directories under tmp_path."""
    storage = {
        "inbox": tmp_path / "inbox",
        "output": tmp_path / "output",
        "uploads": tmp_path / "uploads",
    }
    for path in storage.values():
        path.mkdir(parents=True, exist_ok=True)
    return storage


@pytest.fixture
def memory_queue() -> MemoryJobQueue:
    return MemoryJobQueue()


@pytest.fixture
def memory_store() -> MemoryJobStore:
    return MemoryJobStore()


@pytest.fixture
def recording_publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def source_file(test_storage: dict) -> Path:
    path = test_storage["inbox"] / "clip.mp4"
    path.write_bytes(b"\x00" * 1024)
    return path


@pytest.fixture
async def queued_job(memory_store: MemoryJobStore, memory_queue: MemoryJobQueue, source_file: Path) -> Job:
    """A job that is stored and queued, ready for a worker to pick up."""
    job = Job(id="job-1", owner_id="user-1", source_path=str(source_file), original_name="clip.mp4")
    await memory_store.put(job)
    await memory_queue.enqueue(job.id)
    return job


@pytest.fixture
def sample_renditions() -> List[Rendition]:
    return [
        Rendition("360p", 640, 360, "1000k", "96k"),
        Rendition("480p", 854, 480, "2500k", "96k"),
        Rendition("720p", 1280, 720, "5000k", "128k"),
    ]


@pytest.fixture
def make_processor(memory_store, recording_publisher, test_storage):
    """Factory for a JobProcessor wired to the in-memory backends and fake encoder."""

    def _make(inspector=None, executor=None, blob_publisher=None, **kwargs):
        executor = executor or FakeTranscodeExecutor(memory_store, recording_publisher)
        return JobProcessor(
            store=memory_store,
            publisher=recording_publisher,
            executor=executor,
            blob_publisher=blob_publisher,
            inspector=inspector or make_inspector(),
            output_root=test_storage["output"],
            **kwargs,
        )

    return _make
