"""S3-compatible object store adapter (AWS S3, MinIO) using boto3.

boto3 is blocking, so every call is pushed to a worker thread with
asyncio.to_thread.

One instance is bound to one bucket:
    uploads_store: user media under users/{user_id}/
    exports_store: export archives under exports/{user_id}/{request_id}/
"""

from __future__ import annotations

import asyncio
import logging

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from compliance.config import settings
from compliance.errors import NotFoundError, TransientExternalError
from compliance.integrations.ports import StoredObject

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound"})


class S3ObjectStore:
    """ObjectStore implementation over a single S3 bucket."""

    def __init__(
        self,
        bucket_name: str,
        endpoint_url: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        region: str = "us-east-1",
    ) -> None:
        self.bucket_name = bucket_name
        self._client = boto3.client(
            "s3",
            endpoint_url=endpoint_url or None,
            aws_access_key_id=access_key or None,
            aws_secret_access_key=secret_key or None,
            region_name=region,
        )
        logger.info("S3 object store ready: bucket=%s endpoint=%s", bucket_name, endpoint_url or "AWS S3")

    # ── ObjectStore ──────────────────────────────────────────────────

    async def list_files(self, prefix: str) -> list[StoredObject]:
        """All objects under `prefix`, following pagination."""
        try:
            return await asyncio.to_thread(self._list_sync, prefix)
        except (ClientError, BotoCoreError) as exc:
            raise TransientExternalError(f"S3 list failed for {prefix}: {exc}") from exc

    async def delete_file(self, name: str) -> None:
        """Delete one object. Raises NotFoundError if it does not exist."""
        try:
            await asyncio.to_thread(self._client.head_object, Bucket=self.bucket_name, Key=name)
            await asyncio.to_thread(self._client.delete_object, Bucket=self.bucket_name, Key=name)
        except ClientError as exc:
            raise self._translate(exc, name) from exc
        except BotoCoreError as exc:
            raise TransientExternalError(f"S3 delete failed for {name}: {exc}") from exc
        logger.debug("Deleted object %s from %s", name, self.bucket_name)

    async def download_file(self, name: str) -> bytes:
        try:
            return await asyncio.to_thread(self._download_sync, name)
        except ClientError as exc:
            raise self._translate(exc, name) from exc
        except BotoCoreError as exc:
            raise TransientExternalError(f"S3 download failed for {name}: {exc}") from exc

    async def upload_file(
        self,
        name: str,
        data: bytes,
        content_type: str,
        metadata: dict[str, str] | None = None,
    ) -> None:
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self.bucket_name,
                Key=name,
                Body=data,
                ContentType=content_type,
                Metadata=metadata or {},
            )
        except (ClientError, BotoCoreError) as exc:
            raise TransientExternalError(f"S3 upload failed for {name}: {exc}") from exc
        logger.info("Uploaded %s (%d bytes) to %s", name, len(data), self.bucket_name)

    async def signed_url(self, name: str, expires_in: int) -> str:
        """Presigned GET URL valid for `expires_in` seconds."""
        try:
            return await asyncio.to_thread(
                self._client.generate_presigned_url,
                "get_object",
                Params={"Bucket": self.bucket_name, "Key": name},
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as exc:
            raise TransientExternalError(f"Presigned URL failed for {name}: {exc}") from exc

    # ── Blocking helpers ─────────────────────────────────────────────

    def _list_sync(self, prefix: str) -> list[StoredObject]:
        paginator = self._client.get_paginator("list_objects_v2")
        objects: list[StoredObject] = []
        for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
            for item in page.get("Contents", []):
                objects.append(
                    StoredObject(
                        name=item["Key"],
                        size=int(item.get("Size", 0)),
                        created_at=item.get("LastModified"),
                    )
                )
        return objects

    def _download_sync(self, name: str) -> bytes:
        response = self._client.get_object(Bucket=self.bucket_name, Key=name)
        return response["Body"].read()

    @staticmethod
    def _translate(exc: ClientError, name: str) -> Exception:
        code = str(exc.response.get("Error", {}).get("Code", "Unknown"))
        if code in _NOT_FOUND_CODES:
            return NotFoundError(f"Object not found: {name}")
        return TransientExternalError(f"S3 error {code} for {name}")


def _build(bucket: str) -> S3ObjectStore:
    return S3ObjectStore(
        bucket_name=bucket,
        endpoint_url=settings.storage.s3_endpoint_url,
        access_key=settings.storage.s3_access_key,
        secret_key=settings.storage.s3_secret_key,
        region=settings.storage.s3_region,
    )


uploads_store = _build(settings.storage.uploads_bucket)
exports_store = _build(settings.storage.exports_bucket)
