# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
S3 storage adapter.

Transfers switch on size: payloads up to multipart_threshold go up in one
put_object request; larger payloads use the multipart protocol:

1. create_multipart_upload - obtain an UploadId
2. upload_part - ordered parts of chunk_size bytes, each retried on
   failure (re-sending a part with the same number replaces it)
3. complete_multipart_upload - with the collected part ETags

Any failure after step 1 aborts the upload so no orphaned parts remain
in the bucket.
"""

from pathlib import Path
from typing import Any, Callable, Dict, List

import aiofiles
import structlog
from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from sitekeeper.config import MB, AdapterKind
from sitekeeper.exceptions import TransferError
from sitekeeper.storage.base import (
    Cipher,
    RemoteFile,
    RemoteMetadata,
    SettingsField,
    SettingsStore,
    StorageAdapter,
    StorageInfo,
    TransferProgress,
    normalize_remote_path,
)

logger = structlog.get_logger()

MULTIPART_THRESHOLD = 100 * MB
MIN_PART_SIZE = 5 * MB
PART_ATTEMPTS = 3
DOWNLOAD_BLOCK = 1 * MB

# Errors raised by the S3 client for request and transport failures
S3_ERRORS = (ClientError, BotoCoreError, OSError)

REGIONS = {
    "us-east-1": "US East (N. Virginia)",
    "us-east-2": "US East (Ohio)",
    "us-west-1": "US West (N. California)",
    "us-west-2": "US West (Oregon)",
    "eu-west-1": "EU (Ireland)",
    "eu-west-2": "EU (London)",
    "eu-central-1": "EU (Frankfurt)",
    "ap-northeast-1": "Asia Pacific (Tokyo)",
    "ap-southeast-1": "Asia Pacific (Singapore)",
    "ap-southeast-2": "Asia Pacific (Sydney)",
}


def _is_not_found(error: ClientError) -> bool:
    code = str(error.response.get("Error", {}).get("Code", ""))
    return code in ("404", "NoSuchKey", "NotFound")


class S3Adapter(StorageAdapter):
    """
    Store containers in an S3 (or S3-compatible) bucket.

    Args:
        bucket: Bucket name
        region: AWS region
        prefix: Key prefix every remote path is placed under
        endpoint_url: Custom endpoint for S3-compatible services
        multipart_threshold: Single-request uploads up to this size
        chunk_size: Part size for multipart uploads (minimum 5MB)
        client_factory: Returns an async context manager yielding an S3
            client; defaults to an aiobotocore session client
    """

    kind = AdapterKind.S3
    name = "Amazon S3"

    def __init__(
        self,
        bucket: str | None = None,
        region: str = "us-east-1",
        prefix: str = "",
        endpoint_url: str | None = None,
        multipart_threshold: int = MULTIPART_THRESHOLD,
        chunk_size: int = 10 * MB,
        client_factory: Callable[[], Any] | None = None,
        settings_store: SettingsStore | None = None,
        cipher: Cipher | None = None,
    ):
        super().__init__(settings_store, cipher)
        self.bucket = bucket
        self.region = region
        self.prefix = normalize_remote_path(prefix)
        self.endpoint_url = endpoint_url
        self.multipart_threshold = multipart_threshold
        self.chunk_size = max(MIN_PART_SIZE, chunk_size)
        self.access_key: str | None = None
        self.secret_key: str | None = None
        self._client_factory = client_factory
        self._session = None

    def _client(self) -> Any:
        if self._client_factory:
            return self._client_factory()
        if self._session is None:
            self._session = get_session()
        return self._session.create_client(
            "s3",
            region_name=self.region,
            endpoint_url=self.endpoint_url,
            aws_access_key_id=self.access_key,
            aws_secret_access_key=self.secret_key,
        )

    def key(self, remote_path: str) -> str:
        relative = normalize_remote_path(remote_path)
        if not self.prefix:
            return relative
        return f"{self.prefix}/{relative}" if relative else self.prefix

    def _relative(self, key: str) -> str:
        if self.prefix and key.startswith(self.prefix + "/"):
            return key[len(self.prefix) + 1:]
        return key

    def is_configured(self) -> bool:
        return bool(self.bucket)

    async def connect(self) -> bool:
        if not self.is_configured():
            return False
        try:
            async with self._client() as client:
                await client.head_bucket(Bucket=self.bucket)
        except S3_ERRORS as e:
            logger.error("s3_connection_failed", bucket=self.bucket, error=str(e))
            return False
        return True

    async def upload(self, local_path: Path, remote_path: str) -> bool:
        """Single request up to multipart_threshold, multipart above it."""
        local_path = Path(local_path)
        if not local_path.is_file():
            raise TransferError("Source file does not exist", details={"path": str(local_path)})

        if local_path.stat().st_size > self.multipart_threshold:
            return await self._multipart_upload(local_path, remote_path, self.chunk_size, None)

        key = self.key(remote_path)
        try:
            async with aiofiles.open(local_path, "rb") as f:
                body = await f.read()
            async with self._client() as client:
                await client.put_object(Bucket=self.bucket, Key=key, Body=body)
        except S3_ERRORS as e:
            raise TransferError(
                f"S3 upload failed: {e}",
                details={"bucket": self.bucket, "key": key},
            ) from e

        logger.info("s3_upload_completed", key=key, size=len(body))
        return True

    async def upload_chunked(
        self,
        local_path: Path,
        remote_path: str,
        chunk_size: int = 10 * MB,
        on_progress: TransferProgress | None = None,
    ) -> bool:
        """
        Multipart upload in chunk_size parts, whatever the file size.

        chunk_size is raised to the 5MB part minimum S3 enforces.
        """
        local_path = Path(local_path)
        if not local_path.is_file():
            raise TransferError("Source file does not exist", details={"path": str(local_path)})
        chunk_size = max(MIN_PART_SIZE, chunk_size)
        return await self._multipart_upload(local_path, remote_path, chunk_size, on_progress)

    async def _multipart_upload(
        self,
        local_path: Path,
        remote_path: str,
        chunk_size: int,
        on_progress: TransferProgress | None,
    ) -> bool:
        key = self.key(remote_path)
        size = local_path.stat().st_size
        total_parts = max(1, -(-size // chunk_size))
        parts: List[Dict[str, Any]] = []
        offset = 0

        async with self._client() as client:
            try:
                response = await client.create_multipart_upload(Bucket=self.bucket, Key=key)
            except S3_ERRORS as e:
                raise TransferError(
                    f"Failed to initiate multipart upload: {e}",
                    details={"bucket": self.bucket, "key": key},
                ) from e
            upload_id = response["UploadId"]

            logger.info("s3_multipart_started", key=key, size=size, parts=total_parts)

            try:
                async with aiofiles.open(local_path, "rb") as f:
                    part_number = 1
                    while True:
                        await f.seek(offset)
                        chunk = await f.read(chunk_size)
                        if not chunk and part_number > 1:
                            break

                        etag = await self._upload_part(client, key, upload_id, part_number, chunk)
                        parts.append({"PartNumber": part_number, "ETag": etag})
                        offset += len(chunk)

                        if on_progress:
                            await on_progress(
                                min(100, int(part_number / total_parts * 100)),
                                part_number,
                                total_parts,
                            )

                        if offset >= size:
                            break
                        part_number += 1

                await client.complete_multipart_upload(
                    Bucket=self.bucket,
                    Key=key,
                    UploadId=upload_id,
                    MultipartUpload={"Parts": parts},
                )
            except (*S3_ERRORS, TransferError) as e:
                await self._abort(client, key, upload_id)
                if isinstance(e, TransferError):
                    raise
                raise TransferError(
                    f"Multipart upload failed: {e}",
                    details={"bucket": self.bucket, "key": key, "parts_uploaded": len(parts)},
                ) from e

        logger.info("s3_multipart_completed", key=key, parts=len(parts), size=offset)
        return True

    async def _upload_part(
        self,
        client: Any,
        key: str,
        upload_id: str,
        part_number: int,
        chunk: bytes,
    ) -> str:
        last_error: Exception | None = None
        for attempt in range(1, PART_ATTEMPTS + 1):
            try:
                response = await client.upload_part(
                    Bucket=self.bucket,
                    Key=key,
                    UploadId=upload_id,
                    PartNumber=part_number,
                    Body=chunk,
                )
                return response["ETag"]
            except S3_ERRORS as e:
                last_error = e
                logger.warning("s3_part_failed", key=key, part=part_number, attempt=attempt, error=str(e))

        raise TransferError(
            f"Part {part_number} failed after {PART_ATTEMPTS} attempts: {last_error}",
            details={"key": key, "part": part_number},
        )

    async def _abort(self, client: Any, key: str, upload_id: str) -> None:
        try:
            await client.abort_multipart_upload(Bucket=self.bucket, Key=key, UploadId=upload_id)
            logger.warning("s3_multipart_aborted", key=key, upload_id=upload_id)
        except S3_ERRORS as e:
            logger.error("s3_multipart_abort_failed", key=key, upload_id=upload_id, error=str(e))

    async def download(self, remote_path: str, local_path: Path) -> bool:
        key = self.key(remote_path)
        local_path = Path(local_path)
        temp_path = local_path.with_name(local_path.name + ".part")
        try:
            local_path.parent.mkdir(parents=True, exist_ok=True)
            async with self._client() as client:
                response = await client.get_object(Bucket=self.bucket, Key=key)
                async with response["Body"] as stream, aiofiles.open(temp_path, "wb") as out:
                    while True:
                        block = await stream.read(DOWNLOAD_BLOCK)
                        if not block:
                            break
                        await out.write(block)
            temp_path.replace(local_path)
        except S3_ERRORS as e:
            temp_path.unlink(missing_ok=True)
            raise TransferError(
                f"S3 download failed: {e}",
                details={"bucket": self.bucket, "key": key},
            ) from e

        logger.info("s3_download_completed", key=key, path=str(local_path))
        return True

    async def delete(self, remote_path: str) -> bool:
        key = self.key(remote_path)
        try:
            async with self._client() as client:
                await client.delete_object(Bucket=self.bucket, Key=key)
        except S3_ERRORS as e:
            logger.error("s3_delete_failed", key=key, error=str(e))
            return False
        logger.info("s3_object_deleted", key=key)
        return True

    async def list(self, path: str = "") -> List[RemoteFile]:
        prefix = self.key(path)
        if prefix:
            prefix += "/"
        entries: List[RemoteFile] = []

        try:
            async with self._client() as client:
                paginator = client.get_paginator("list_objects_v2")
                async for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix, Delimiter="/"):
                    for common in page.get("CommonPrefixes", []):
                        relative = self._relative(common["Prefix"].rstrip("/"))
                        entries.append(
                            RemoteFile(
                                name=relative.rsplit("/", 1)[-1],
                                path=relative,
                                size=0,
                                modified=0.0,
                                is_dir=True,
                            )
                        )
                    for obj in page.get("Contents", []):
                        relative = self._relative(obj["Key"])
                        entries.append(
                            RemoteFile(
                                name=relative.rsplit("/", 1)[-1],
                                path=relative,
                                size=int(obj.get("Size", 0)),
                                modified=obj["LastModified"].timestamp(),
                            )
                        )
        except S3_ERRORS as e:
            raise TransferError(
                f"S3 list failed: {e}",
                details={"bucket": self.bucket, "prefix": prefix},
            ) from e

        entries.sort(key=lambda e: e.modified, reverse=True)
        return entries

    async def get_metadata(self, remote_path: str) -> RemoteMetadata | None:
        key = self.key(remote_path)
        try:
            async with self._client() as client:
                response = await client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _is_not_found(e):
                return None
            raise TransferError(f"S3 head failed: {e}", details={"key": key}) from e
        except (BotoCoreError, OSError) as e:
            raise TransferError(f"S3 head failed: {e}", details={"key": key}) from e

        return RemoteMetadata(
            name=key.rsplit("/", 1)[-1],
            size=int(response.get("ContentLength", 0)),
            modified=response["LastModified"].timestamp(),
            checksum=str(response.get("ETag", "")).strip('"') or None,
        )

    async def get_download_url(self, remote_path: str, expiry: int = 3600) -> str | None:
        key = self.key(remote_path)
        try:
            async with self._client() as client:
                return await client.generate_presigned_url(
                    "get_object",
                    Params={"Bucket": self.bucket, "Key": key},
                    ExpiresIn=expiry,
                )
        except S3_ERRORS as e:
            logger.error("s3_presign_failed", key=key, error=str(e))
            return None

    async def get_storage_info(self) -> StorageInfo:
        used = sum(entry.size for entry in await self.list("") if not entry.is_dir)
        return StorageInfo(used=used, total=None)

    def settings_fields(self) -> List[SettingsField]:
        return [
            SettingsField(name="access_key", label="Access Key ID", type="password", secret=True),
            SettingsField(name="secret_key", label="Secret Access Key", type="password", secret=True),
            SettingsField(name="bucket", label="Bucket Name", required=True),
            SettingsField(
                name="region",
                label="Region",
                type="select",
                default="us-east-1",
                options=dict(REGIONS),
            ),
            SettingsField(name="path_prefix", label="Path Prefix", default="backups"),
            SettingsField(name="endpoint", label="Custom Endpoint"),
        ]

    def apply_settings(self, values: Dict[str, Any]) -> None:
        self.access_key = values.get("access_key") or self.access_key
        self.secret_key = values.get("secret_key") or self.secret_key
        self.bucket = values.get("bucket") or self.bucket
        self.region = values.get("region") or self.region
        if "path_prefix" in values:
            self.prefix = normalize_remote_path(values["path_prefix"] or "")
        self.endpoint_url = values.get("endpoint") or self.endpoint_url
        self._session = None
