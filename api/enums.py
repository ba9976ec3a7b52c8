"""
Centralized enums for status values used throughout the pipeline.
Using str-based enums so values serialize directly into Redis hashes and SQL.
"""

from enum import Enum


class JobStatus(str, Enum):
    """Lifecycle status of a transcoding job.

    State machine::

        queued ──> processing ──> ready
           │            ├──────> failed
           │            └──────> cancelled
           ├──────────────────> failed      (input rejected during inspection)
           └──────────────────> cancelled   (cancelled before a worker started)

    Terminal states are final. A job is never re-enqueued after reaching one.
    """

    QUEUED = "queued"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.READY, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.PROCESSING})


class WorkerPhase(str, Enum):
    """Phase of a single worker slot, reported by the pool status."""

    IDLE = "idle"
    CLAIMED = "claimed"
    INSPECTING = "inspecting"
    ENCODING = "encoding"
    PUBLISHING = "publishing"
    FAILING = "failing"
    CANCELLING = "cancelling"


class ArtifactKind(str, Enum):
    """Kind of file produced by the transcode executor."""

    RENDITION = "rendition"
    THUMBNAIL = "thumbnail"
