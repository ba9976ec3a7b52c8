"""
Media inspection with ffprobe.

inspect() probes a raw upload and validates it against the platform limits.
Every failure raised here is an InputError and therefore terminal for the job.
"""

import asyncio
import json
import logging
import math
from pathlib import Path
from typing import Any, Optional

from api.errors import (
    DurationExceeded,
    FrameRateExceeded,
    ResolutionOutOfRange,
    SourceTooLarge,
    UnreadableMedia,
    truncate_error,
)
from api.models import MediaInfo
from config import (
    ERROR_SUMMARY_MAX_LENGTH,
    MAX_DURATION_SECONDS,
    MAX_FRAME_RATE,
    MAX_HEIGHT,
    MAX_SOURCE_SIZE,
    MAX_WIDTH,
    MIN_HEIGHT,
    MIN_WIDTH,
    PROBE_BINARY,
    PROBE_TIMEOUT,
)

logger = logging.getLogger(__name__)


def parse_frame_rate(value: Optional[str]) -> float:
    """
    Parse ffprobe's rational frame rate ("30000/1001", "25/1", "29.97").

    Returns 0.0 for missing or malformed values, including a zero denominator.
    """
    if not value:
        return 0.0
    try:
        if "/" in value:
            num, den = value.split("/", 1)
            denominator = float(den)
            if denominator == 0:
                return 0.0
            rate = float(num) / denominator
        else:
            rate = float(value)
    except (ValueError, TypeError):
        return 0.0
    if math.isnan(rate) or math.isinf(rate) or rate < 0:
        return 0.0
    return rate


def validate_duration(duration: Any) -> float:
    """
    Validate and normalize video duration from ffprobe.

    Raises:
        UnreadableMedia: If duration is missing, not a number, or not positive
    """
    if duration is None:
        raise UnreadableMedia("Could not determine video duration")

    if not isinstance(duration, (int, float)):
        try:
            duration = float(duration)
        except (ValueError, TypeError) as e:
            raise UnreadableMedia(f"Could not convert duration to float: {type(duration).__name__}") from e

    if math.isnan(duration) or math.isinf(duration):
        raise UnreadableMedia(f"Invalid duration value: {duration}")

    if duration <= 0:
        raise UnreadableMedia(f"Invalid duration: {duration} seconds (must be positive)")

    return float(duration)


def build_media_info(probe_data: dict, size_bytes: int = 0) -> MediaInfo:
    """
    Turn ffprobe JSON into MediaInfo.

    Raises:
        UnreadableMedia: no video stream or unusable duration/dimensions
    """
    streams = probe_data.get("streams", [])
    video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
    if not video_stream:
        raise UnreadableMedia("No video stream found")
    audio_stream = next((s for s in streams if s.get("codec_type") == "audio"), None)

    fmt = probe_data.get("format", {})
    # Container duration first, stream duration as a fallback (some MKVs omit it)
    duration = validate_duration(fmt.get("duration") or video_stream.get("duration"))

    try:
        width = int(video_stream.get("width", 0))
        height = int(video_stream.get("height", 0))
    except (ValueError, TypeError) as e:
        raise UnreadableMedia("Invalid video dimensions") from e
    if width <= 0 or height <= 0:
        raise UnreadableMedia("Video stream has no dimensions")

    frame_rate = parse_frame_rate(video_stream.get("r_frame_rate"))
    if frame_rate <= 0:
        frame_rate = parse_frame_rate(video_stream.get("avg_frame_rate"))

    bitrate = fmt.get("bit_rate")
    try:
        bitrate = int(bitrate) if bitrate else None
    except (ValueError, TypeError):
        bitrate = None

    return MediaInfo(
        duration=duration,
        width=width,
        height=height,
        frame_rate=frame_rate,
        video_codec=video_stream.get("codec_name", "unknown"),
        container=fmt.get("format_name", ""),
        audio_codec=audio_stream.get("codec_name") if audio_stream else None,
        bitrate=bitrate,
        size_bytes=size_bytes or int(fmt.get("size", 0) or 0),
    )


def validate_media_info(
    info: MediaInfo,
    max_duration: float = MAX_DURATION_SECONDS,
    min_size: tuple = (MIN_WIDTH, MIN_HEIGHT),
    max_size: tuple = (MAX_WIDTH, MAX_HEIGHT),
    max_frame_rate: float = MAX_FRAME_RATE,
) -> MediaInfo:
    """Apply the platform limits. Returns info unchanged when it passes."""
    if info.duration > max_duration:
        raise DurationExceeded(info.duration, max_duration)

    if not (min_size[0] <= info.width <= max_size[0] and min_size[1] <= info.height <= max_size[1]):
        raise ResolutionOutOfRange(info.width, info.height, min_size, max_size)

    if info.frame_rate > max_frame_rate:
        raise FrameRateExceeded(info.frame_rate, max_frame_rate)

    return info


async def probe(input_path: Path, timeout: float = PROBE_TIMEOUT) -> dict:
    """Run ffprobe and return its JSON output.

    Raises:
        UnreadableMedia: If ffprobe fails, times out or prints garbage
    """
    cmd = [PROBE_BINARY, "-v", "quiet", "-print_format", "json", "-show_format", "-show_streams", str(input_path)]

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
    except OSError as e:
        raise UnreadableMedia(f"Could not run {PROBE_BINARY}: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise UnreadableMedia(f"ffprobe timed out after {timeout}s (file may be on slow storage or corrupted)")

    if process.returncode != 0:
        detail = truncate_error(stderr.decode("utf-8", errors="ignore").strip(), ERROR_SUMMARY_MAX_LENGTH)
        raise UnreadableMedia(f"ffprobe failed: {detail or 'unrecognized format'}")

    try:
        return json.loads(stdout.decode("utf-8", errors="ignore"))
    except json.JSONDecodeError as e:
        raise UnreadableMedia("ffprobe returned invalid JSON") from e


async def inspect(path, max_source_size: int = MAX_SOURCE_SIZE) -> MediaInfo:
    """Probe a raw upload and check it against the platform limits.

    Raises:
        UnreadableMedia, DurationExceeded, ResolutionOutOfRange,
        FrameRateExceeded, SourceTooLarge
    """
    input_path = Path(path)
    try:
        size_bytes = input_path.stat().st_size
    except FileNotFoundError as e:
        raise UnreadableMedia(f"Source file not found: {input_path.name}") from e

    if size_bytes > max_source_size:
        raise SourceTooLarge(size_bytes, max_source_size)

    info = build_media_info(await probe(input_path), size_bytes)
    validate_media_info(info)
    logger.info(
        f"Inspected {input_path.name}: {info.width}x{info.height} @ {info.frame_rate:.2f}fps, "
        f"{info.duration:.1f}s, {info.video_codec}/{info.audio_codec or 'no audio'}"
    )
    return info
