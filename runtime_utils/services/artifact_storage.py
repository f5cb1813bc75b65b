"""Blob storage for artifacts, log archives and runner persistent state.

Backed by an S3-compatible bucket through boto3. boto3 is blocking, so every
call is pushed onto a worker thread.
"""

from __future__ import annotations

import asyncio
import io
import logging
import mimetypes
from dataclasses import dataclass
from datetime import datetime
from typing import BinaryIO

import boto3
from botocore.config import Config as _BotocoreConfig
from botocore.exceptions import ClientError

from runtime_utils.errors import StorageError

logger = logging.getLogger(__name__)

ARTIFACTS_PREFIX = "artifacts/"
LOGS_PREFIX = "logs/"
RUNNER_STATE_PREFIX = "runner-state/"
JIT_DIFF_EXTRA_ASSEMBLIES_PREFIX = "jitdiff-extra-assemblies/"

# S3 presigned URLs are capped at 7 days
MAX_PRESIGN_SECONDS = 7 * 24 * 60 * 60


@dataclass(frozen=True)
class BlobInfo:
    size: int
    last_modified: datetime


def guess_content_type(file_name: str) -> str:
    content_type, _ = mimetypes.guess_type(file_name)
    return content_type or "application/octet-stream"


class BlobStorage:
    def __init__(
        self,
        bucket: str,
        *,
        client=None,
        endpoint_url: str | None = None,
        region: str | None = None,
        public_base_url: str | None = None,
    ) -> None:
        self.bucket = bucket
        self._public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self._client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            region_name=region,
            config=_BotocoreConfig(retries={"max_attempts": 3}),
        )

    def _upload_sync(self, key: str, data: BinaryIO, content_type: str) -> int:
        try:
            self._client.upload_fileobj(data, self.bucket, key, ExtraArgs={"ContentType": content_type})
            head = self._client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            raise StorageError(f"Failed to upload {key}: {exc}") from exc
        return int(head["ContentLength"])

    async def upload(self, key: str, data: BinaryIO | bytes, *, content_type: str | None = None) -> int:
        """Upload ``data`` under ``key`` and return the stored size in bytes."""
        if isinstance(data, (bytes, bytearray)):
            data = io.BytesIO(data)
        return await asyncio.to_thread(self._upload_sync, key, data, content_type or guess_content_type(key))

    def _get_info_sync(self, key: str) -> BlobInfo | None:
        try:
            head = self._client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return None
            raise StorageError(f"Failed to read {key}: {exc}") from exc
        return BlobInfo(size=int(head["ContentLength"]), last_modified=head["LastModified"])

    async def get_info(self, key: str) -> BlobInfo | None:
        return await asyncio.to_thread(self._get_info_sync, key)

    def _delete_sync(self, key: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            raise StorageError(f"Failed to delete {key}: {exc}") from exc

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete_sync, key)

    def presigned_url(self, key: str, expires_in: float, *, write: bool = False) -> str:
        return self._client.generate_presigned_url(
            "put_object" if write else "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=int(min(expires_in, MAX_PRESIGN_SECONDS)),
        )

    def presigned_list_url(self, prefix: str, expires_in: float) -> str:
        return self._client.generate_presigned_url(
            "list_objects_v2",
            Params={"Bucket": self.bucket, "Prefix": prefix},
            ExpiresIn=int(min(expires_in, MAX_PRESIGN_SECONDS)),
        )

    def public_url(self, key: str) -> str:
        if self._public_base_url:
            return f"{self._public_base_url}/{key}"
        return self.presigned_url(key, MAX_PRESIGN_SECONDS)


__all__ = [
    "ARTIFACTS_PREFIX",
    "BlobInfo",
    "BlobStorage",
    "JIT_DIFF_EXTRA_ASSEMBLIES_PREFIX",
    "LOGS_PREFIX",
    "RUNNER_STATE_PREFIX",
    "guess_content_type",
]
