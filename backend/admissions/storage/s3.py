"""
S3 Storage Service — uploaded admission documents

Key layout:
    s3://<BUCKET>/applications/<application_id>/<uuid>-<sanitized name>

Keys are built server-side by build_key(); the intake endpoint that accepts
an existing file reference only accepts relative keys without traversal
segments (see services.intake).

The pipeline needs three operations and nothing more:
    put_object   — store uploaded bytes
    head_object  — confirm a referenced object exists (intake)
    get_object   — fetch bytes for extraction (worker)

Missing objects surface as FileNotFoundError from both head_object and
get_object; every other ClientError propagates unchanged.
"""

from __future__ import annotations

import logging
import mimetypes
import re
import uuid
from dataclasses import dataclass

import aioboto3
from botocore.exceptions import ClientError

from admissions.core.config import settings

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = frozenset({"NoSuchKey", "404", "NotFound"})
_UNSAFE = re.compile(r"[^a-zA-Z0-9._\-]")


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class S3Object:
    """Represents a stored object — returned by put_object."""
    key:          str
    bucket:       str
    size_bytes:   int
    content_type: str
    etag:         str
    version_id:   str | None = None


def sanitize_filename(filename: str) -> str:
    """Basename only, S3-safe characters, capped length."""
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    return _UNSAFE.sub("_", basename)[:200] or "upload"


def build_key(application_id: str, filename: str) -> str:
    """applications/<application_id>/<uuid>-<name>"""
    return f"applications/{sanitize_filename(application_id)}/{uuid.uuid4()}-{sanitize_filename(filename)}"


def _is_not_found(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") in _NOT_FOUND_CODES


# ---------------------------------------------------------------------------
# S3 Service
# ---------------------------------------------------------------------------

class S3StorageService:
    """Async S3 operations on the documents bucket."""

    def __init__(self, bucket: str | None = None) -> None:
        self._bucket = bucket or settings.s3_bucket
        self._session = aioboto3.Session(
            aws_access_key_id=settings.aws_access_key_id or None,
            aws_secret_access_key=settings.aws_secret_access_key or None,
            region_name=settings.aws_region,
        )

    @property
    def bucket(self) -> str:
        return self._bucket

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client(
            "s3",
            endpoint_url=settings.s3_endpoint_url or None,
        )

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def put_object(
        self,
        key: str,
        body: bytes,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> S3Object:
        ct = content_type or mimetypes.guess_type(key)[0] or "application/octet-stream"
        async with self._client() as s3:
            resp = await s3.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=body,
                ContentType=ct,
                Metadata=metadata or {},
            )

        logger.info("S3 upload ok | key=%s size=%d", key, len(body))
        return S3Object(
            key=key,
            bucket=self._bucket,
            size_bytes=len(body),
            content_type=ct,
            etag=resp.get("ETag", "").strip('"'),
            version_id=resp.get("VersionId"),
        )

    async def get_object(self, key: str) -> bytes:
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=key)
                return await resp["Body"].read()
            except ClientError as exc:
                if _is_not_found(exc):
                    raise FileNotFoundError(f"Object not found: {key}") from exc
                raise

    async def head_object(self, key: str) -> dict:
        """Return metadata for an object without downloading it."""
        async with self._client() as s3:
            try:
                return await s3.head_object(Bucket=self._bucket, Key=key)
            except ClientError as exc:
                if _is_not_found(exc):
                    raise FileNotFoundError(f"Object not found: {key}") from exc
                raise
