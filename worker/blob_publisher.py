"""
Blob publishers: upload finished artifacts to CDN/object storage.

- HttpStoragePublisher: primary. HTTP PUT into a storage zone with an
  AccessKey header; files are then served from a public CDN base URL.
- S3Publisher: secondary. Any S3-compatible bucket via boto3.
- FallbackPublisher: tries the primary, then the secondary.

Remote layout is videos/<job_id>/<file> for renditions and
thumbnails/<job_id>/<file> for thumbnails.
"""

import asyncio
import dataclasses
import logging
import random
from pathlib import Path
from typing import AsyncIterator, List, Optional

import boto3
import httpx
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from api.enums import ArtifactKind
from api.errors import PublishError
from api.models import Artifact
from config import (
    CDN_ACCESS_KEY,
    CDN_MAX_RETRIES,
    CDN_PUBLIC_URL,
    CDN_STORAGE_ENDPOINT,
    CDN_STORAGE_ZONE,
    CDN_UPLOAD_TIMEOUT,
    S3_ACCESS_KEY_ID,
    S3_BUCKET,
    S3_ENDPOINT_URL,
    S3_PUBLIC_URL,
    S3_REGION,
    S3_SECRET_ACCESS_KEY,
)

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_SIZE = 1024 * 1024
RETRY_BASE_DELAY = 1.0
RETRY_MAX_DELAY = 30.0

CONTENT_TYPES = {
    ".mp4": "video/mp4",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
}


def remote_key(job_id: str, artifact: Artifact) -> str:
    folder = "thumbnails" if artifact.kind == ArtifactKind.THUMBNAIL else "videos"
    return f"{folder}/{job_id}/{Path(artifact.path).name}"


def content_type_for(path: str) -> str:
    return CONTENT_TYPES.get(Path(path).suffix.lower(), "application/octet-stream")


class BlobPublisher:
    """Uploads a job's artifacts and returns copies carrying their public URLs."""

    name = "abstract"

    async def publish(self, job_id: str, artifacts: List[Artifact]) -> List[Artifact]:
        """Raises PublishError if any artifact could not be uploaded."""
        raise NotImplementedError

    async def close(self) -> None:
        pass


async def _iter_file(path: Path) -> AsyncIterator[bytes]:
    """Stream a file in chunks without blocking the event loop."""
    handle = await asyncio.to_thread(open, path, "rb")
    try:
        while True:
            chunk = await asyncio.to_thread(handle.read, UPLOAD_CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    finally:
        await asyncio.to_thread(handle.close)


class HttpStoragePublisher(BlobPublisher):
    """PUT uploads to an HTTP storage zone (Bunny-style storage API)."""

    name = "cdn"

    def __init__(
        self,
        storage_zone: str = CDN_STORAGE_ZONE,
        access_key: str = CDN_ACCESS_KEY,
        public_url: str = CDN_PUBLIC_URL,
        endpoint: str = CDN_STORAGE_ENDPOINT,
        timeout: float = CDN_UPLOAD_TIMEOUT,
        max_retries: int = CDN_MAX_RETRIES,
        retry_base_delay: float = RETRY_BASE_DELAY,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.storage_zone = storage_zone
        self.access_key = access_key
        self.public_url = public_url.rstrip("/")
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self.storage_zone and self.access_key and self.public_url)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            limits = httpx.Limits(max_connections=10, max_keepalive_connections=5, keepalive_expiry=30.0)
            self._client = httpx.AsyncClient(timeout=self.timeout, limits=limits)
        return self._client

    def _is_retryable_error(self, exc: Exception) -> bool:
        """Check if an error is transient and should be retried."""
        if isinstance(exc, httpx.HTTPStatusError):
            return exc.response.status_code >= 500 or exc.response.status_code == 429
        return isinstance(exc, (httpx.TimeoutException, httpx.ConnectError, httpx.ReadError, httpx.WriteError))

    async def upload_file(self, local_path: Path, key: str) -> str:
        """Upload one file and return its public URL."""
        client = await self._get_client()
        url = f"{self.endpoint}/{self.storage_zone}/{key}"
        headers = {
            "AccessKey": self.access_key,
            "Content-Type": content_type_for(str(local_path)),
            "Content-Length": str(local_path.stat().st_size),
        }

        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            try:
                resp = await client.put(url, content=_iter_file(local_path), headers=headers)
                resp.raise_for_status()
                return f"{self.public_url}/{key}"
            except httpx.HTTPError as e:
                last_error = e
                if not self._is_retryable_error(e):
                    break

            if attempt < self.max_retries:
                delay = min(self.retry_base_delay * (2**attempt), RETRY_MAX_DELAY)
                # Add jitter (±25%)
                await asyncio.sleep(delay * (0.75 + random.random() * 0.5))

        raise PublishError(self.name, f"upload of {key} failed: {last_error}")

    async def publish(self, job_id: str, artifacts: List[Artifact]) -> List[Artifact]:
        if not self.is_configured:
            raise PublishError(self.name, "storage zone not configured")
        published = []
        for artifact in artifacts:
            key = remote_key(job_id, artifact)
            url = await self.upload_file(Path(artifact.path), key)
            logger.debug(f"Uploaded {artifact.name} for job {job_id} to {url}")
            published.append(dataclasses.replace(artifact, url=url))
        return published

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None


class S3Publisher(BlobPublisher):
    """Uploads to an S3-compatible bucket with boto3 (run in a thread)."""

    name = "s3"

    def __init__(
        self,
        bucket: str = S3_BUCKET,
        region: str = S3_REGION,
        endpoint_url: str = S3_ENDPOINT_URL,
        access_key_id: str = S3_ACCESS_KEY_ID,
        secret_access_key: str = S3_SECRET_ACCESS_KEY,
        public_url: str = S3_PUBLIC_URL,
        client=None,
    ):
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url or None
        self.access_key_id = access_key_id or None
        self.secret_access_key = secret_access_key or None
        self.public_url = public_url.rstrip("/")
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self.bucket)

    def _get_client(self):
        if self._client is None:
            session = boto3.session.Session(
                aws_access_key_id=self.access_key_id,
                aws_secret_access_key=self.secret_access_key,
                region_name=self.region,
            )
            self._client = session.client(
                "s3",
                endpoint_url=self.endpoint_url,
                config=BotoConfig(s3={"addressing_style": "path"}, signature_version="s3v4"),
            )
        return self._client

    def object_url(self, key: str) -> str:
        if self.public_url:
            return f"{self.public_url}/{key}"
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def _upload(self, local_path: str, key: str) -> None:
        self._get_client().upload_file(
            local_path, self.bucket, key, ExtraArgs={"ContentType": content_type_for(local_path)}
        )

    async def publish(self, job_id: str, artifacts: List[Artifact]) -> List[Artifact]:
        if not self.is_configured:
            raise PublishError(self.name, "bucket not configured")
        published = []
        for artifact in artifacts:
            key = remote_key(job_id, artifact)
            try:
                await asyncio.to_thread(self._upload, artifact.path, key)
            except (BotoCoreError, ClientError, OSError) as e:
                raise PublishError(self.name, f"upload of {key} failed: {e}") from e
            published.append(dataclasses.replace(artifact, url=self.object_url(key)))
        return published


class FallbackPublisher(BlobPublisher):
    """Primary first; on any PublishError the whole set goes to the secondary."""

    name = "fallback"

    def __init__(self, primary: Optional[BlobPublisher], secondary: Optional[BlobPublisher]):
        self.primary = primary
        self.secondary = secondary

    async def publish(self, job_id: str, artifacts: List[Artifact]) -> List[Artifact]:
        errors = []
        for publisher in (self.primary, self.secondary):
            if publisher is None:
                continue
            try:
                published = await publisher.publish(job_id, artifacts)
                logger.info(f"Published {len(published)} artifact(s) for job {job_id} via {publisher.name}")
                return published
            except PublishError as e:
                logger.warning(f"Publishing job {job_id} via {publisher.name} failed: {e}")
                errors.append(str(e))
        raise PublishError(self.name, "; ".join(errors) or "no publisher configured")

    async def close(self) -> None:
        for publisher in (self.primary, self.secondary):
            if publisher is not None:
                await publisher.close()


def create_blob_publisher() -> Optional[BlobPublisher]:
    """
    Build the configured publisher chain.

    Returns:
        FallbackPublisher over whichever providers are configured, or None when
        neither is (artifacts then stay on local storage)
    """
    primary = HttpStoragePublisher()
    secondary = S3Publisher()
    if not primary.is_configured and not secondary.is_configured:
        logger.info("No blob storage configured, artifacts will stay on local storage")
        return None
    return FallbackPublisher(
        primary if primary.is_configured else None,
        secondary if secondary.is_configured else None,
    )
