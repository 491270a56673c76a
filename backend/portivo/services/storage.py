"""
Blob storage for project files: an S3-compatible bucket (Cloudflare R2 in the
hosted deployment) accessed with boto3. boto3 is blocking, so calls run in a
worker thread.
"""

import asyncio
import logging
import re
import time

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from portivo.config import settings
from portivo.errors import InternalError

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 50 * 1024 * 1024

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def sanitize_filename(name: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("_", name.strip()) or "file"
    return cleaned[-200:]


def build_file_key(workspace_id: str, project_id: str, filename: str) -> str:
    """``<workspace>/<project>/<millis>-<sanitised name>``"""
    return f"{workspace_id}/{project_id}/{int(time.time() * 1000)}-{sanitize_filename(filename)}"


class BlobStorage:
    """put / delete against a bucket. Subclassed by test doubles."""

    async def put(self, data: bytes, key: str, content_type: str) -> str:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError


class S3BlobStorage(BlobStorage):
    def __init__(
        self,
        bucket: str | None = None,
        endpoint_url: str | None = None,
        public_url: str | None = None,
    ):
        self.bucket = bucket or settings.s3_bucket
        self.endpoint_url = endpoint_url or settings.s3_endpoint_url
        self.public_url = public_url or settings.s3_public_url
        self._client = None

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client(
                "s3",
                endpoint_url=self.endpoint_url or None,
                aws_access_key_id=settings.s3_access_key_id,
                aws_secret_access_key=settings.s3_secret_access_key,
                config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
                region_name="auto",
            )
        return self._client

    def public_url_for(self, key: str) -> str:
        if self.public_url:
            return f"{self.public_url.rstrip('/')}/{key}"
        return f"{(self.endpoint_url or '').rstrip('/')}/{self.bucket}/{key}"

    async def put(self, data: bytes, key: str, content_type: str) -> str:
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error("Upload of %s to bucket %s failed: %s", key, self.bucket, exc)
            raise InternalError("File storage is unavailable") from exc
        return self.public_url_for(key)

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            logger.error("Delete of %s from bucket %s failed: %s", key, self.bucket, exc)
            raise InternalError("File storage is unavailable") from exc


_storage: BlobStorage | None = None


def get_storage() -> BlobStorage:
    global _storage
    if _storage is None:
        _storage = S3BlobStorage()
    return _storage
