"""
Artifact storage for finished exports.

Two stores share the ArtifactStore port:

- S3ArtifactStore uploads to the bucket named by S3_BUCKET_NAME and returns a
  presigned GET URL. boto3 calls are blocking, so they run in a worker thread.
- LocalArtifactStore writes under a local directory and returns a URL served
  by the ``/export/files`` route, signed with HMAC-SHA256 so it can neither be
  forged nor used after it expires.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import re
import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Optional
from uuid import uuid4

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .collaborators import ArtifactStore, StoredArtifact
from .errors import ArtifactStorageError
from .utils import ensure_directory, sanitize_label

logger = logging.getLogger(__name__)

OBJECT_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")
DEFAULT_MAX_REMOVALS = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class S3ArtifactStore(ArtifactStore):
    def __init__(
        self,
        bucket_name: str,
        url_expiry_hours: int = 24,
        key_prefix: str = "exports",
        client: Any = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._bucket_name = bucket_name
        self._expiry_seconds = url_expiry_hours * 3600
        self._key_prefix = key_prefix.strip("/")
        self._client = client
        self._clock = clock

    def _get_s3_client(self):
        """
        Get or create the S3 client.

        Returns:
            boto3 S3 client or None if bucket is not configured

        Note:
            Credentials are not probed here; credential errors surface during
            the actual upload.
        """
        if self._client is None:
            if not self._bucket_name:
                logger.warning("S3_BUCKET_NAME not configured")
                return None
            try:
                self._client = boto3.client("s3")
            except (BotoCoreError, ValueError) as e:
                logger.warning(f"Failed to create S3 client: {e}")
                self._client = None
        return self._client

    def _put_and_presign(self, data: bytes, s3_key: str, name: str, content_type: str) -> str:
        client = self._get_s3_client()
        if client is None:
            raise ArtifactStorageError("S3 storage is not configured")

        logger.info(f"Uploading {len(data)} bytes to s3://{self._bucket_name}/{s3_key}")
        client.put_object(Bucket=self._bucket_name, Key=s3_key, Body=data, ContentType=content_type)
        url = client.generate_presigned_url(
            "get_object",
            Params={
                "Bucket": self._bucket_name,
                "Key": s3_key,
                "ResponseContentDisposition": f'attachment; filename="{name}"',
            },
            ExpiresIn=self._expiry_seconds,
        )
        logger.info(f"Generated presigned URL for {s3_key} (expires in {self._expiry_seconds}s)")
        return url

    async def upload(self, data: bytes, name: str, content_type: str) -> StoredArtifact:
        s3_key = f"{self._key_prefix}/{uuid4().hex}/{sanitize_label(name, 'export')}"
        expires_at = self._clock() + timedelta(seconds=self._expiry_seconds)
        try:
            url = await asyncio.to_thread(self._put_and_presign, data, s3_key, name, content_type)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3 upload failed: {e}")
            raise ArtifactStorageError(f"S3 upload failed for {s3_key}") from e
        return StoredArtifact(download_url=url, expires_at=expires_at, object_key=s3_key)

    async def is_ready(self) -> bool:
        return bool(self._bucket_name) and self._get_s3_client() is not None


class LocalArtifactStore(ArtifactStore):
    def __init__(
        self,
        root: Path,
        public_base_url: str,
        signing_secret: str,
        url_expiry_hours: int = 24,
        clock: Callable[[], datetime] = _utcnow,
        max_removals: int = DEFAULT_MAX_REMOVALS,
    ) -> None:
        if not signing_secret:
            raise ValueError("DOWNLOAD_SIGNING_SECRET must be set for local artifact storage")
        self._root = Path(root)
        self._public_base_url = public_base_url.rstrip("/")
        self._secret = signing_secret.encode("utf-8")
        self._expiry = timedelta(hours=url_expiry_hours)
        self._clock = clock
        self._max_removals = max_removals

    @property
    def root(self) -> Path:
        return self._root

    def sign(self, object_id: str, name: str, expires: int) -> str:
        message = f"{object_id}/{name}:{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def verify(self, object_id: str, name: str, expires: int, signature: str) -> bool:
        if expires < int(self._clock().timestamp()):
            return False
        return hmac.compare_digest(self.sign(object_id, name, expires), signature)

    def resolve(self, object_id: str, name: str) -> Optional[Path]:
        """Return the stored file for a download, or None if it does not exist."""
        if not OBJECT_ID_PATTERN.match(object_id):
            return None
        base_path = self._root.resolve()
        file_path = (base_path / object_id / name).resolve()
        if not str(file_path).startswith(str(base_path)):
            return None
        if not file_path.exists() or not file_path.is_file():
            return None
        return file_path

    def _write(self, object_id: str, name: str, data: bytes) -> Path:
        directory = ensure_directory(self._root / object_id)
        destination = directory / name
        destination.write_bytes(data)
        return destination

    async def upload(self, data: bytes, name: str, content_type: str) -> StoredArtifact:
        object_id = uuid4().hex
        safe_name = sanitize_label(name, "export")
        try:
            await asyncio.to_thread(self._write, object_id, safe_name, data)
        except OSError as e:
            logger.error(f"Local artifact write failed: {e}")
            raise ArtifactStorageError(f"could not store {object_id}/{safe_name}") from e

        expires_at = self._clock() + self._expiry
        expires = int(expires_at.timestamp())
        signature = self.sign(object_id, safe_name, expires)
        url = f"{self._public_base_url}/export/files/{object_id}/{safe_name}?expires={expires}&signature={signature}"
        logger.info(f"Stored {len(data)} bytes ({content_type}) as {object_id}/{safe_name}")
        return StoredArtifact(download_url=url, expires_at=expires_at, object_key=f"{object_id}/{safe_name}")

    async def is_ready(self) -> bool:
        try:
            ensure_directory(self._root)
        except OSError as e:
            logger.warning(f"Artifact directory {self._root} unavailable: {e}")
            return False
        return True

    def _remove_expired(self, cutoff: datetime) -> int:
        if not self._root.is_dir():
            return 0
        removed = 0
        for entry in self._root.iterdir():
            if removed >= self._max_removals:
                break
            if not entry.is_dir() or not OBJECT_ID_PATTERN.match(entry.name):
                continue
            stored_at = datetime.fromtimestamp(entry.stat().st_mtime, timezone.utc)
            if stored_at >= cutoff:
                continue
            try:
                shutil.rmtree(entry)
            except OSError as e:
                logger.warning(f"Could not remove expired artifact {entry.name}: {e}")
                continue
            removed += 1
        return removed

    async def cleanup_expired(self) -> int:
        """
        Remove stored artifacts older than the download link lifetime.

        At most ``max_removals`` objects are deleted per sweep; the rest are
        picked up by the next one.
        """
        removed = await asyncio.to_thread(self._remove_expired, self._clock() - self._expiry)
        if removed:
            logger.info(f"Removed {removed} expired artifact(s) from {self._root}")
        return removed
