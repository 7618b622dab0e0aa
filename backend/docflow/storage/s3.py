"""
S3 Object Store

Keys are built by the processors (``{org}/...``) and passed through as-is;
this adapter only speaks S3. Every call opens a short-lived aioboto3 client
from one shared session.

Missing objects surface as FileNotFoundError("Object not found: <key>") so
the error classifier treats them as PERMANENT.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator

import aioboto3
from botocore.exceptions import ClientError

from docflow.core.config import settings
from docflow.pipeline.interfaces import ObjectStore

logger = logging.getLogger(__name__)

_MISSING_CODES = ("NoSuchKey", "404", "NotFound")


class S3ObjectStore(ObjectStore):

    def __init__(
        self,
        bucket:       str | None = None,
        region:       str | None = None,
        session:      aioboto3.Session | None = None,
        download_ttl: int | None = None,
        upload_ttl:   int | None = None,
    ) -> None:
        self._bucket = bucket or settings.s3_bucket
        self._region = region or settings.aws_region
        self._session = session or aioboto3.Session()
        self._download_ttl = download_ttl or settings.presigned_download_ttl
        self._upload_ttl = upload_ttl or settings.presigned_upload_ttl

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client("s3", region_name=self._region)

    @staticmethod
    def _translate(exc: ClientError, key: str) -> Exception:
        if exc.response.get("Error", {}).get("Code") in _MISSING_CODES:
            return FileNotFoundError(f"Object not found: {key}")
        return exc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_object(self, key: str) -> bytes:
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=key)
                data = await resp["Body"].read()
            except ClientError as exc:
                raise self._translate(exc, key) from exc
        logger.debug("S3 download ok | key=%s size=%d", key, len(data))
        return data

    async def iter_object(self, key: str, chunk_size: int = 1024 * 1024) -> AsyncIterator[bytes]:
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=key)
            except ClientError as exc:
                raise self._translate(exc, key) from exc
            body = resp["Body"]
            while True:
                chunk = await body.read(chunk_size)
                if not chunk:
                    break
                yield chunk

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upload_buffer(self, key: str, data: bytes, content_type: str) -> None:
        async with self._client() as s3:
            await s3.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        logger.info("S3 upload ok | key=%s size=%d type=%s", key, len(data), content_type)

    async def copy_object(self, source_key: str, dest_key: str) -> None:
        async with self._client() as s3:
            try:
                await s3.copy_object(
                    Bucket=self._bucket,
                    Key=dest_key,
                    CopySource={"Bucket": self._bucket, "Key": source_key},
                )
            except ClientError as exc:
                raise self._translate(exc, source_key) from exc
        logger.info("S3 copy ok | src=%s dst=%s", source_key, dest_key)

    async def delete_object(self, key: str) -> None:
        async with self._client() as s3:
            await s3.delete_object(Bucket=self._bucket, Key=key)
        logger.info("S3 delete | key=%s", key)

    # ------------------------------------------------------------------
    # Presigned URLs
    # ------------------------------------------------------------------

    async def get_presigned_upload_url(
        self, key: str, content_type: str, expires_in: int | None = None,
    ) -> str:
        async with self._client() as s3:
            return await s3.generate_presigned_url(
                "put_object",
                Params={"Bucket": self._bucket, "Key": key, "ContentType": content_type},
                ExpiresIn=expires_in or self._upload_ttl,
            )

    async def get_presigned_download_url(self, key: str, expires_in: int | None = None) -> str:
        async with self._client() as s3:
            return await s3.generate_presigned_url(
                "get_object",
                Params={"Bucket": self._bucket, "Key": key},
                ExpiresIn=expires_in or self._download_ttl,
            )
