"""
Exception hierarchy for the transcoding pipeline.

Errors fall into four families with different handling in the worker:

- InputError: the source file is unusable. Terminal, job -> failed, no retry.
- RenditionEncodeFailed: the encoder failed. Terminal, job -> failed.
- PublishError: a blob publisher failed. Triggers fallback; never job-terminal.
- InfrastructureError: queue/store unreachable. Worker backs off and retries.

JobCancelled is a control-flow signal rather than an error.
"""

from typing import Optional

from config import ERROR_DETAIL_MAX_LENGTH


def truncate_error(message: Optional[str], max_length: int = ERROR_DETAIL_MAX_LENGTH) -> Optional[str]:
    """Truncate an error message to max_length characters, marking the cut with '...'."""
    if message is None:
        return None
    if len(message) <= max_length:
        return message
    if max_length <= 3:
        return message[:max_length]
    return message[: max_length - 3] + "..."


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class InputError(PipelineError):
    """The source media was rejected. Terminal for the job."""


class UnreadableMedia(InputError):
    """The source could not be probed or has no video stream."""


class DurationExceeded(InputError):
    """The source is longer than the platform maximum."""

    def __init__(self, duration: float, max_duration: float):
        self.duration = duration
        self.max_duration = max_duration
        super().__init__(f"Video duration {duration:.1f}s exceeds maximum of {max_duration:.0f}s")


class ResolutionOutOfRange(InputError):
    """Source dimensions fall outside the accepted range."""

    def __init__(self, width: int, height: int, min_size: tuple, max_size: tuple):
        self.width = width
        self.height = height
        super().__init__(
            f"Resolution {width}x{height} is outside the accepted range "
            f"{min_size[0]}x{min_size[1]} to {max_size[0]}x{max_size[1]}"
        )


class FrameRateExceeded(InputError):
    """Source frame rate is above the platform maximum."""

    def __init__(self, frame_rate: float, max_frame_rate: float):
        self.frame_rate = frame_rate
        self.max_frame_rate = max_frame_rate
        super().__init__(f"Frame rate {frame_rate:.2f}fps exceeds maximum of {max_frame_rate:.0f}fps")


class SourceTooLarge(InputError):
    """Source file is larger than the configured maximum."""

    def __init__(self, size_bytes: int, max_bytes: int):
        self.size_bytes = size_bytes
        self.max_bytes = max_bytes
        super().__init__(f"Source file is {size_bytes} bytes, maximum is {max_bytes} bytes")


class RenditionEncodeFailed(PipelineError):
    """The encoder failed for one rendition. Remaining renditions are skipped."""

    def __init__(self, rendition_name: str, cause: str):
        self.rendition_name = rendition_name
        self.cause = cause
        super().__init__(f"Encoding {rendition_name} failed: {cause}")


class PublishError(PipelineError):
    """Uploading artifacts to a blob provider failed."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class InfrastructureError(PipelineError):
    """A shared backend (queue or store) is unreachable. Never terminal for a job."""


class QueueUnavailableError(InfrastructureError):
    """The job queue backend could not be reached."""


class StoreUnavailableError(InfrastructureError):
    """The job store backend could not be reached."""


class JobAlreadyExists(PipelineError):
    """A job with this id is still queued or processing."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} is already active")


class JobCancelled(Exception):
    """Raised inside the executor when a cancellation request is observed."""

    def __init__(self, job_id: str, completed_renditions: int = 0):
        self.job_id = job_id
        self.completed_renditions = completed_renditions
        super().__init__(f"Job {job_id} cancelled after {completed_renditions} rendition(s)")
