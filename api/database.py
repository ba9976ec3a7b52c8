"""
Relational status mirror.

The job store is the live source of truth and expires. This module keeps a
permanent copy of each job's status in a SQL table, written at enqueue and at
every status transition. The mirror is eventually consistent: a failed write is
logged and the pipeline carries on.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

import sqlalchemy as sa
from databases import Database

from api.enums import ArtifactKind
from api.errors import truncate_error
from api.models import Job
from config import DATABASE_URL

logger = logging.getLogger(__name__)

metadata = sa.MetaData()

transcode_jobs = sa.Table(
    "transcode_jobs",
    metadata,
    sa.Column("id", sa.String(64), primary_key=True),
    sa.Column("owner_id", sa.String(64), nullable=False),
    sa.Column("original_name", sa.String(255), default=""),
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('queued', 'processing', 'ready', 'failed', 'cancelled')",
            name="ck_transcode_jobs_status",
        ),
        nullable=False,
    ),
    sa.Column("progress_percent", sa.Integer, default=0),
    sa.Column("renditions", sa.Text, default="[]"),  # JSON list of rendition names
    sa.Column("rendition_urls", sa.Text, default="{}"),  # JSON {name: url}
    sa.Column("thumbnail_url", sa.Text, nullable=True),
    sa.Column("error_message", sa.Text, nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)),
    sa.Index("ix_transcode_jobs_status", "status"),
    sa.Index("ix_transcode_jobs_owner_id", "owner_id"),
)


def job_row_values(job: Job) -> dict:
    """Column values for one job snapshot."""
    urls = {
        a.name: a.url or a.path
        for a in job.artifacts
        if a.kind == ArtifactKind.RENDITION
    }
    return {
        "owner_id": job.owner_id,
        "original_name": job.original_name,
        "status": job.status.value,
        "progress_percent": job.progress_percent,
        "renditions": json.dumps([r.name for r in job.renditions]),
        "rendition_urls": json.dumps(urls),
        "thumbnail_url": job.thumbnail_url,
        "error_message": truncate_error(job.error_message),
        "created_at": job.created_at,
        "updated_at": job.updated_at,
    }


class NullStatusMirror:
    """Used when no DATABASE_URL is configured."""

    async def connect(self) -> None:
        logger.info("Status mirror disabled (REELQUEUE_DATABASE_URL not set)")

    async def disconnect(self) -> None:
        pass

    async def record(self, job: Job) -> bool:
        return False

    async def fetch(self, job_id: str) -> Optional[dict]:
        return None


class StatusMirror:
    """Writes job snapshots to the transcode_jobs table."""

    def __init__(self, database: Database):
        self.database = database

    async def connect(self) -> None:
        await self.database.connect()
        logger.info("Status mirror connected")

    async def disconnect(self) -> None:
        await self.database.disconnect()

    async def record(self, job: Job) -> bool:
        """
        Upsert the job's current status.

        Returns:
            True if the row was written, False if the write failed
        """
        values = job_row_values(job)
        try:
            async with self.database.transaction():
                existing = await self.database.fetch_one(
                    transcode_jobs.select().where(transcode_jobs.c.id == job.id)
                )
                if existing:
                    values.pop("created_at")
                    await self.database.execute(
                        transcode_jobs.update().where(transcode_jobs.c.id == job.id).values(**values)
                    )
                else:
                    await self.database.execute(transcode_jobs.insert().values(id=job.id, **values))
            return True
        except Exception as e:
            logger.warning(f"Status mirror write failed for job {job.id} ({job.status.value}): {e}")
            return False

    async def fetch(self, job_id: str) -> Optional[dict]:
        """Read the mirrored row (used by the CLI once the store entry has expired)."""
        row = await self.database.fetch_one(transcode_jobs.select().where(transcode_jobs.c.id == job_id))
        return dict(row) if row else None


def create_status_mirror(url: str = DATABASE_URL):
    if not url:
        return NullStatusMirror()
    return StatusMirror(Database(url))


def create_tables(url: str = DATABASE_URL) -> None:
    """
    Create database tables directly using SQLAlchemy metadata.
    This creates all tables if they don't exist.
    """
    engine = sa.create_engine(url)
    metadata.create_all(engine)
    engine.dispose()
