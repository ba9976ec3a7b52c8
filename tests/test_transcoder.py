"""Tests for the transcode executor and its helpers.

Tests cover:
- ffmpeg command construction for renditions and thumbnails
- Progress parsing from -progress output
- Rate-limited, monotonic progress reporting
- Sequential rendition encoding with cancellation checkpoints
- Output and source cleanup
"""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from conftest import FakeTranscodeExecutor

from api.enums import ArtifactKind, JobStatus
from api.errors import JobCancelled, RenditionEncodeFailed, StoreUnavailableError
from api.models import Job, MediaInfo, Rendition
from worker.transcoder import (
    ProgressReporter,
    TranscodeExecutor,
    build_encode_command,
    build_thumbnail_command,
    cleanup_output_dir,
    cleanup_source_file,
    overall_progress,
    run_encoder_with_progress,
    thumbnail_timestamp,
)

RENDITION_720 = Rendition("720p", 1280, 720, "5000k", "128k")


def _media(duration: float = 60.0) -> MediaInfo:
    return MediaInfo(duration=duration, width=1280, height=720, frame_rate=30.0, video_codec="h264")


def _encoder_process(lines, returncode=0):
    process = MagicMock()
    process.stdout.readline = AsyncMock(side_effect=[*lines, b""])
    process.wait = AsyncMock(return_value=returncode)
    process.returncode = returncode
    return process


class TestBuildEncodeCommand:
    def test_rendition_parameters(self):
        cmd = build_encode_command(Path("/in/src.mov"), Path("/out/720p.mp4"), RENDITION_720, encoder="ffmpeg")

        assert cmd[0] == "ffmpeg"
        assert cmd[cmd.index("-i") + 1] == "/in/src.mov"
        assert cmd[-1] == "/out/720p.mp4"
        assert cmd[cmd.index("-c:v") + 1] == "libx264"
        assert cmd[cmd.index("-b:v") + 1] == "5000k"
        assert cmd[cmd.index("-c:a") + 1] == "aac"
        assert cmd[cmd.index("-b:a") + 1] == "128k"
        assert cmd[cmd.index("-movflags") + 1] == "+faststart"
        assert cmd[cmd.index("-progress") + 1] == "pipe:1"

    def test_scale_preserves_aspect(self):
        cmd = build_encode_command(Path("a"), Path("b"), RENDITION_720)
        video_filter = cmd[cmd.index("-vf") + 1]
        assert "scale=1280:720:force_original_aspect_ratio=decrease" in video_filter
        assert "pad=1280:720" in video_filter


class TestThumbnail:
    def test_timestamp_uses_offset(self):
        assert thumbnail_timestamp(60.0, offset=1.0) == 1.0

    def test_timestamp_short_clip(self):
        assert thumbnail_timestamp(0.5, offset=1.0) == 0.25

    def test_timestamp_zero_duration(self):
        assert thumbnail_timestamp(0.0) == 0.0

    def test_command_seeks_before_input(self):
        cmd = build_thumbnail_command(Path("/in/a.mp4"), Path("/out/thumbnail.jpg"), 1.0, 1280, 720, "ffmpeg")
        assert cmd.index("-ss") < cmd.index("-i")
        assert cmd[cmd.index("-ss") + 1] == "1.000"
        assert cmd[cmd.index("-vframes") + 1] == "1"


class TestOverallProgress:
    def test_equal_weight_per_rendition(self):
        assert overall_progress(0, 3) == 0
        assert overall_progress(1, 3) == 33
        assert overall_progress(1, 3, 0.5) == 50
        assert overall_progress(3, 3) == 100

    def test_bounds(self):
        assert overall_progress(0, 0) == 0
        assert overall_progress(2, 2, 5.0) == 100
        assert overall_progress(0, 2, -1.0) == 0


class TestRunEncoderWithProgress:
    @pytest.mark.asyncio
    async def test_reports_progress(self):
        process = _encoder_process([b"frame=10\n", b"out_time_ms=15000000\n", b"out_time_ms=30000000\n", b"progress=end\n"])
        callback = AsyncMock()

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            success, error = await run_encoder_with_progress(["ffmpeg"], 60.0, progress_callback=callback)

        assert success is True
        assert error is None
        assert [c.args[0] for c in callback.await_args_list] == [25, 50]

    @pytest.mark.asyncio
    async def test_nonzero_exit(self):
        process = _encoder_process([], returncode=1)
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            success, error = await run_encoder_with_progress(["ffmpeg"], 60.0, context="ffmpeg 720p")

        assert success is False
        assert error == "ffmpeg 720p exited with code 1"

    @pytest.mark.asyncio
    async def test_missing_binary(self):
        with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError("ffmpeg"))):
            success, error = await run_encoder_with_progress(["ffmpeg"], 60.0)

        assert success is False
        assert "Could not start" in error


class TestProgressReporter:
    @pytest.mark.asyncio
    async def test_rate_limited(self, memory_store, recording_publisher):
        job = Job(id="job-1", owner_id="u", source_path="", status=JobStatus.PROCESSING)
        await memory_store.put(job)
        reporter = ProgressReporter(job, memory_store, recording_publisher, min_interval=3600)

        assert await reporter.report(10, "a") is True
        assert await reporter.report(20, "b") is False
        assert await reporter.report(30, "c", force=True) is True
        assert (await memory_store.get("job-1")).progress_percent == 30
        assert [e.progress_percent for e in recording_publisher.events] == [10, 30]

    @pytest.mark.asyncio
    async def test_never_goes_backwards(self, memory_store, recording_publisher):
        job = Job(id="job-1", owner_id="u", source_path="", status=JobStatus.PROCESSING)
        await memory_store.put(job)
        reporter = ProgressReporter(job, memory_store, recording_publisher, min_interval=0)

        for percent in (10, 50, 20, 150):
            await reporter.report(percent, "x", force=True)

        assert [e.progress_percent for e in recording_publisher.events] == [10, 50, 50, 100]

    @pytest.mark.asyncio
    async def test_store_outage_tolerated(self, recording_publisher):
        """Progress is best effort: a store outage still publishes the event."""
        store = MagicMock()
        store.set_progress = AsyncMock(side_effect=StoreUnavailableError("down"))
        job = Job(id="job-1", owner_id="u", source_path="", status=JobStatus.PROCESSING)
        reporter = ProgressReporter(job, store, recording_publisher, min_interval=0)

        assert await reporter.report(10, "x") is True
        assert len(recording_publisher.events) == 1


class TestExecutorRun:
    """Sequential encoding with the fake encoder."""

    @pytest.mark.asyncio
    async def test_produces_all_renditions_and_thumbnail(
        self, memory_store, recording_publisher, sample_renditions, source_file, tmp_path
    ):
        job = Job(id="job-1", owner_id="u", source_path=str(source_file), status=JobStatus.PROCESSING)
        await memory_store.put(job)
        executor = FakeTranscodeExecutor(memory_store, recording_publisher)

        artifacts = await executor.run(job, sample_renditions, _media(), tmp_path / "out")

        assert [a.name for a in artifacts] == ["360p", "480p", "720p", "thumbnail"]
        assert artifacts[-1].kind == ArtifactKind.THUMBNAIL
        assert all(Path(a.path).exists() for a in artifacts)
        assert artifacts[0].bitrate == "1000k"
        progress = [e.progress_percent for e in recording_publisher.events]
        assert progress == sorted(progress)
        assert progress[-1] == 100

    @pytest.mark.asyncio
    async def test_encode_failure_stops_remaining(
        self, memory_store, recording_publisher, sample_renditions, source_file, tmp_path
    ):
        job = Job(id="job-1", owner_id="u", source_path=str(source_file), status=JobStatus.PROCESSING)
        await memory_store.put(job)
        executor = FakeTranscodeExecutor(memory_store, recording_publisher, fail_on="480p")

        with pytest.raises(RenditionEncodeFailed) as exc_info:
            await executor.run(job, sample_renditions, _media(), tmp_path / "out")

        assert exc_info.value.rendition_name == "480p"
        assert executor.encoded == ["360p"]
        assert not (tmp_path / "out" / "480p.mp4").exists()

    @pytest.mark.asyncio
    async def test_cancel_before_first_rendition(
        self, memory_store, recording_publisher, sample_renditions, source_file, tmp_path
    ):
        job = Job(id="job-1", owner_id="u", source_path=str(source_file), status=JobStatus.PROCESSING)
        await memory_store.put(job)
        await memory_store.set_cancelled("job-1")
        executor = FakeTranscodeExecutor(memory_store, recording_publisher)

        with pytest.raises(JobCancelled) as exc_info:
            await executor.run(job, sample_renditions, _media(), tmp_path / "out")

        assert exc_info.value.completed_renditions == 0
        assert executor.encoded == []

    @pytest.mark.asyncio
    async def test_cancel_during_second_rendition(
        self, memory_store, recording_publisher, sample_renditions, source_file, tmp_path
    ):
        """The in-flight rendition finishes, then the post-rendition checkpoint aborts."""
        job = Job(id="job-1", owner_id="u", source_path=str(source_file), status=JobStatus.PROCESSING)
        await memory_store.put(job)

        async def cancel_on_480p(rendition):
            if rendition.name == "480p":
                await memory_store.set_cancelled("job-1")

        executor = FakeTranscodeExecutor(memory_store, recording_publisher, before_encode=cancel_on_480p)

        with pytest.raises(JobCancelled) as exc_info:
            await executor.run(job, sample_renditions, _media(), tmp_path / "out")

        assert executor.encoded == ["360p", "480p"]
        assert exc_info.value.completed_renditions == 2
        assert not (tmp_path / "out" / "480p.mp4").exists()
        assert not (tmp_path / "out" / "720p.mp4").exists()

    @pytest.mark.asyncio
    async def test_finished_rendition_recorded_before_cancel_checkpoint(
        self, memory_store, recording_publisher, sample_renditions, source_file, tmp_path
    ):
        job = Job(id="job-1", owner_id="u", source_path=str(source_file), status=JobStatus.PROCESSING)
        await memory_store.put(job)

        async def cancel_on_480p(rendition):
            if rendition.name == "480p":
                await memory_store.set_cancelled("job-1")

        executor = FakeTranscodeExecutor(memory_store, recording_publisher, before_encode=cancel_on_480p)

        with pytest.raises(JobCancelled):
            await executor.run(job, sample_renditions, _media(), tmp_path / "out")

        stored = await memory_store.get("job-1")
        assert stored.progress_percent == overall_progress(2, 3)
        assert stored.progress_message == "Finished 480p (2/3)"
        assert recording_publisher.events[-1].message == "Finished 480p (2/3)"

    @pytest.mark.asyncio
    async def test_store_outage_during_cancel_check(self, recording_publisher, sample_renditions, source_file, tmp_path):
        """An unreachable store is treated as 'not cancelled' so the encode carries on."""
        store = MagicMock()
        store.is_cancelled = AsyncMock(side_effect=StoreUnavailableError("down"))
        store.set_progress = AsyncMock(return_value=True)
        job = Job(id="job-1", owner_id="u", source_path=str(source_file), status=JobStatus.PROCESSING)
        executor = FakeTranscodeExecutor(store, recording_publisher)

        artifacts = await executor.run(job, sample_renditions[:1], _media(), tmp_path / "out")
        assert [a.name for a in artifacts] == ["360p", "thumbnail"]


class TestRealExecutor:
    """TranscodeExecutor.encode and generate_thumbnail with ffmpeg mocked out."""

    @pytest.mark.asyncio
    async def test_encode_failure_raises(self, memory_store, tmp_path):
        executor = TranscodeExecutor(memory_store)
        with patch(
            "worker.transcoder.run_encoder_with_progress", AsyncMock(return_value=(False, "ffmpeg 720p exited with code 1"))
        ):
            with pytest.raises(RenditionEncodeFailed, match="exited with code 1"):
                await executor.encode(tmp_path / "in.mp4", tmp_path / "720p.mp4", RENDITION_720, 60.0)

    @pytest.mark.asyncio
    async def test_encode_timeout_disabled_by_default(self, memory_store, tmp_path):
        executor = TranscodeExecutor(memory_store, encode_timeout=0)
        mock_run = AsyncMock(return_value=(True, None))
        with patch("worker.transcoder.run_encoder_with_progress", mock_run):
            await executor.encode(tmp_path / "in.mp4", tmp_path / "720p.mp4", RENDITION_720, 60.0)
        assert mock_run.call_args.kwargs["timeout"] is None

    @pytest.mark.asyncio
    async def test_generate_thumbnail(self, memory_store, tmp_path):
        executor = TranscodeExecutor(memory_store)
        output_dir = tmp_path / "out"

        async def fake_exec(*cmd, **kwargs):
            Path(cmd[-1]).write_bytes(b"jpeg")
            process = MagicMock()
            process.communicate = AsyncMock(return_value=(b"", b""))
            process.returncode = 0
            return process

        with patch("asyncio.create_subprocess_exec", side_effect=fake_exec):
            artifact = await executor.generate_thumbnail(tmp_path / "in.mp4", output_dir, 60.0)

        assert artifact.kind == ArtifactKind.THUMBNAIL
        assert artifact.path == str(output_dir / "thumbnail.jpg")
        assert artifact.size_bytes == 4

    @pytest.mark.asyncio
    async def test_generate_thumbnail_failure(self, memory_store, tmp_path):
        executor = TranscodeExecutor(memory_store)
        process = MagicMock()
        process.communicate = AsyncMock(return_value=(b"", b"Output file is empty"))
        process.returncode = 1

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(RenditionEncodeFailed) as exc_info:
                await executor.generate_thumbnail(tmp_path / "in.mp4", tmp_path / "out", 60.0)

        assert exc_info.value.rendition_name == "thumbnail"


class TestCleanup:
    def test_cleanup_output_dir(self, tmp_path):
        output_dir = tmp_path / "job-1"
        output_dir.mkdir()
        (output_dir / "360p.mp4").write_bytes(b"x")

        cleanup_output_dir(output_dir)
        cleanup_output_dir(output_dir)

        assert not output_dir.exists()

    def test_cleanup_source_file(self, tmp_path):
        source = tmp_path / "job-1_1_clip.mp4"
        source.write_bytes(b"x")

        assert cleanup_source_file(str(source)) is True
        assert not source.exists()
        assert cleanup_source_file(str(source)) is False
