"""
Domain models shared by the API layer and the worker.

Jobs are stored as flat Redis hashes, so every model here knows how to turn
itself into string-valued fields and back.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from api.enums import ArtifactKind, JobStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except (ValueError, TypeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Rendition:
    """One output variant: target box plus fixed bitrates."""

    name: str
    width: int
    height: int
    video_bitrate: str
    audio_bitrate: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Rendition":
        return cls(
            name=data["name"],
            width=int(data["width"]),
            height=int(data["height"]),
            video_bitrate=data["video_bitrate"],
            audio_bitrate=data["audio_bitrate"],
        )


@dataclass
class MediaInfo:
    """Metadata reported by the media inspector."""

    duration: float
    width: int
    height: int
    frame_rate: float
    video_codec: str
    container: str = ""
    audio_codec: Optional[str] = None
    bitrate: Optional[int] = None
    size_bytes: int = 0


@dataclass
class Artifact:
    """A file produced for a job. url is filled in by the blob publisher."""

    name: str
    path: str
    size_bytes: int
    kind: ArtifactKind = ArtifactKind.RENDITION
    bitrate: Optional[str] = None
    url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Artifact":
        return cls(
            name=data["name"],
            path=data["path"],
            size_bytes=int(data.get("size_bytes", 0)),
            kind=ArtifactKind(data.get("kind", ArtifactKind.RENDITION.value)),
            bitrate=data.get("bitrate"),
            url=data.get("url"),
        )


@dataclass
class Job:
    """The unit of work tracked by the job store.

    Only the worker that owns a job mutates status and progress. External
    actors may only set cancel_requested.
    """

    id: str
    owner_id: str
    source_path: str
    status: JobStatus = JobStatus.QUEUED
    original_name: str = ""
    renditions: List[Rendition] = field(default_factory=list)
    progress_percent: int = 0
    progress_message: str = ""
    error_message: Optional[str] = None
    cancel_requested: bool = False
    artifacts: List[Artifact] = field(default_factory=list)
    thumbnail_url: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_redis_hash(self) -> Dict[str, str]:
        """Flatten into string fields for HSET."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "source_path": self.source_path,
            "status": self.status.value,
            "original_name": self.original_name,
            "renditions": json.dumps([r.to_dict() for r in self.renditions]),
            "progress_percent": str(self.progress_percent),
            "progress_message": self.progress_message,
            "error_message": self.error_message or "",
            "cancel_requested": "1" if self.cancel_requested else "0",
            "artifacts": json.dumps([a.to_dict() for a in self.artifacts]),
            "thumbnail_url": self.thumbnail_url or "",
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_redis_hash(cls, data: Dict[str, str]) -> "Job":
        """Rebuild a job from HGETALL output (decode_responses=True)."""
        renditions = [Rendition.from_dict(r) for r in json.loads(data.get("renditions") or "[]")]
        artifacts = [Artifact.from_dict(a) for a in json.loads(data.get("artifacts") or "[]")]
        return cls(
            id=data["id"],
            owner_id=data.get("owner_id", ""),
            source_path=data.get("source_path", ""),
            status=JobStatus(data.get("status", JobStatus.QUEUED.value)),
            original_name=data.get("original_name", ""),
            renditions=renditions,
            progress_percent=int(data.get("progress_percent") or 0),
            progress_message=data.get("progress_message", ""),
            error_message=data.get("error_message") or None,
            cancel_requested=data.get("cancel_requested") == "1",
            artifacts=artifacts,
            thumbnail_url=data.get("thumbnail_url") or None,
            created_at=_parse_datetime(data.get("created_at")) or utcnow(),
            updated_at=_parse_datetime(data.get("updated_at")) or utcnow(),
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly view used by the CLI and the health server."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "source_path": self.source_path,
            "status": self.status.value,
            "original_name": self.original_name,
            "renditions": [r.to_dict() for r in self.renditions],
            "progress_percent": self.progress_percent,
            "progress_message": self.progress_message,
            "error_message": self.error_message,
            "cancel_requested": self.cancel_requested,
            "artifacts": [a.to_dict() for a in self.artifacts],
            "thumbnail_url": self.thumbnail_url,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class StatusEvent:
    """Progress or completion notice pushed to listeners."""

    job_id: str
    owner_id: str
    status: JobStatus
    progress_percent: int
    message: str = ""
    timestamp: datetime = field(default_factory=utcnow)
    error: Optional[str] = None
    # Only on terminal ready events
    renditions: Optional[List[Dict[str, Optional[str]]]] = None
    thumbnail_url: Optional[str] = None

    @property
    def is_final(self) -> bool:
        return self.status.is_terminal

    def to_message(self) -> Dict[str, Any]:
        if self.status == JobStatus.READY:
            message_type = "completed"
        elif self.status.is_terminal:
            message_type = self.status.value
        else:
            message_type = "progress"
        message: Dict[str, Any] = {
            "type": message_type,
            "job_id": self.job_id,
            "owner_id": self.owner_id,
            "status": self.status.value,
            "progress_percent": self.progress_percent,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.error is not None:
            message["error"] = self.error
        if self.renditions is not None:
            message["renditions"] = self.renditions
            message["thumbnail_url"] = self.thumbnail_url
        return message

    @classmethod
    def for_job(cls, job: Job, message: Optional[str] = None) -> "StatusEvent":
        """Snapshot a job into an event. Ready jobs carry their artifact URLs."""
        event = cls(
            job_id=job.id,
            owner_id=job.owner_id,
            status=job.status,
            progress_percent=job.progress_percent,
            message=job.progress_message if message is None else message,
            error=job.error_message if job.status == JobStatus.FAILED else None,
        )
        if job.status == JobStatus.READY:
            event.renditions = [
                {"name": a.name, "url": a.url or a.path}
                for a in job.artifacts
                if a.kind == ArtifactKind.RENDITION
            ]
            event.thumbnail_url = job.thumbnail_url
        return event
