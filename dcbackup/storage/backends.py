# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Storage Backends - Provider-specific object storage clients.

Every backend offers the same small capability set:

- copy_in_place: server-side copy of an object onto itself. Used as an
  existence probe that also refreshes retention metadata. Raises
  ObjectNotFoundError when the object does not exist.
- write: streams exactly `size` bytes from an async readable.
- exists / list_prefixes: used when aggregating manifests.

Backends are cheap to create and are opened/closed once per uploader.
"""

import os
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, List, Protocol

import aiofiles
import structlog
from botocore.exceptions import ClientError
from ulid import ULID

from dcbackup.config import BackupConfig, StorageProvider
from dcbackup.exceptions import ObjectNotFoundError, StorageError, UploadError

logger = structlog.get_logger()

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


class AsyncReadable(Protocol):
    """Anything with an awaitable read(n), such as an aiofiles handle."""

    async def read(self, size: int = -1) -> bytes: ...


class StorageBackend(Protocol):
    """Capability set implemented once per storage provider."""

    async def open(self) -> None: ...

    async def close(self) -> None: ...

    async def copy_in_place(self, bucket: str, path: str) -> None: ...

    async def write(self, bucket: str, path: str, size: int, stream: AsyncReadable) -> None: ...

    async def exists(self, bucket: str, path: str) -> bool: ...

    async def list_prefixes(self, bucket: str, prefix: str) -> List[str]: ...


async def _read_exactly(stream: AsyncReadable, size: int, path: str) -> bytes:
    """Read `size` bytes, failing if the stream ends early."""
    buffer = bytearray()
    while len(buffer) < size:
        chunk = await stream.read(size - len(buffer))
        if not chunk:
            raise UploadError(
                f"Stream ended after {len(buffer)} of {size} bytes",
                details={"path": path},
            )
        buffer.extend(chunk)
    return bytes(buffer)


def _is_not_found(error: ClientError) -> bool:
    code = str(error.response.get("Error", {}).get("Code", ""))
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return code in NOT_FOUND_CODES or status == 404


# ============================================================================
# S3
# ============================================================================


class S3Backend:
    """
    S3 (or S3-compatible) backend built on aiobotocore.

    The client is created in open() and released in close(). A client can
    also be injected, in which case the caller owns its lifecycle.
    """

    def __init__(
        self,
        region: str = "us-east-1",
        endpoint_url: str | None = None,
        chunk_size: int = 8 * 1024 * 1024,
        session: Any = None,
        client: Any = None,
    ) -> None:
        self.region = region
        self.endpoint_url = endpoint_url
        self.chunk_size = chunk_size
        self._session = session
        self._client_cm: Any = None
        self._client = client

    async def open(self) -> None:
        if self._client is not None:
            return
        if self._session is None:
            from aiobotocore.session import get_session

            self._session = get_session()
        self._client_cm = self._session.create_client(
            "s3",
            region_name=self.region,
            endpoint_url=self.endpoint_url,
        )
        self._client = await self._client_cm.__aenter__()

    async def close(self) -> None:
        if self._client_cm is None:
            return
        client_cm = self._client_cm
        self._client_cm = None
        self._client = None
        await client_cm.__aexit__(None, None, None)

    @property
    def client(self) -> Any:
        if self._client is None:
            raise StorageError("S3 backend used before open()")
        return self._client

    async def copy_in_place(self, bucket: str, path: str) -> None:
        try:
            await self.client.copy_object(
                Bucket=bucket,
                Key=path,
                CopySource={"Bucket": bucket, "Key": path},
                MetadataDirective="REPLACE",
                Metadata={"freshened-at": datetime.now(UTC).isoformat()},
            )
        except ClientError as e:
            if _is_not_found(e):
                raise ObjectNotFoundError(
                    f"Object not found: {path}",
                    details={"bucket": bucket, "path": path},
                ) from e
            raise StorageError(
                f"Failed to freshen object: {e}",
                details={"bucket": bucket, "path": path},
            ) from e

    async def write(self, bucket: str, path: str, size: int, stream: AsyncReadable) -> None:
        try:
            if size <= self.chunk_size:
                body = await _read_exactly(stream, size, path)
                await self.client.put_object(
                    Bucket=bucket, Key=path, Body=body, ContentLength=size
                )
                return
            await self._write_multipart(bucket, path, size, stream)
        except ClientError as e:
            raise StorageError(
                f"Failed to write object: {e}",
                details={"bucket": bucket, "path": path, "size": size},
            ) from e

    async def _write_multipart(
        self, bucket: str, path: str, size: int, stream: AsyncReadable
    ) -> None:
        upload = await self.client.create_multipart_upload(Bucket=bucket, Key=path)
        upload_id = upload["UploadId"]
        parts = []
        try:
            remaining = size
            part_number = 1
            while remaining > 0:
                chunk = await _read_exactly(stream, min(self.chunk_size, remaining), path)
                response = await self.client.upload_part(
                    Bucket=bucket,
                    Key=path,
                    UploadId=upload_id,
                    PartNumber=part_number,
                    Body=chunk,
                )
                parts.append({"ETag": response["ETag"], "PartNumber": part_number})
                remaining -= len(chunk)
                part_number += 1

            await self.client.complete_multipart_upload(
                Bucket=bucket,
                Key=path,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
            )
        except BaseException:
            try:
                await self.client.abort_multipart_upload(
                    Bucket=bucket, Key=path, UploadId=upload_id
                )
            except ClientError as abort_error:
                logger.warning(
                    "multipart_abort_failed",
                    bucket=bucket,
                    path=path,
                    error=str(abort_error),
                )
            raise

    async def exists(self, bucket: str, path: str) -> bool:
        try:
            await self.client.head_object(Bucket=bucket, Key=path)
            return True
        except ClientError as e:
            if _is_not_found(e):
                return False
            raise StorageError(
                f"Failed to check object: {e}",
                details={"bucket": bucket, "path": path},
            ) from e

    async def list_prefixes(self, bucket: str, prefix: str) -> List[str]:
        prefixes: List[str] = []
        paginator = self.client.get_paginator("list_objects_v2")
        try:
            async for page in paginator.paginate(
                Bucket=bucket, Prefix=prefix, Delimiter="/"
            ):
                for common in page.get("CommonPrefixes", []):
                    prefixes.append(common["Prefix"])
        except ClientError as e:
            raise StorageError(
                f"Failed to list prefixes: {e}",
                details={"bucket": bucket, "prefix": prefix},
            ) from e
        return prefixes


# ============================================================================
# Local filesystem
# ============================================================================


class FilesystemBackend:
    """
    Backend writing to a local or mounted directory tree.

    Buckets are top-level directories under base_path. Writes go to a
    temporary file that is renamed into place, so a failed transfer never
    leaves a partial object behind.
    """

    def __init__(self, base_path: Path, chunk_size: int = 1024 * 1024) -> None:
        self.base_path = Path(base_path)
        self.chunk_size = chunk_size

    def _path(self, bucket: str, path: str) -> Path:
        return self.base_path / bucket / path

    async def open(self) -> None:
        self.base_path.mkdir(parents=True, exist_ok=True)

    async def close(self) -> None:
        pass

    async def copy_in_place(self, bucket: str, path: str) -> None:
        target = self._path(bucket, path)
        if not target.is_file():
            raise ObjectNotFoundError(
                f"Object not found: {path}",
                details={"bucket": bucket, "path": path},
            )
        try:
            os.utime(target)
        except OSError as e:
            raise StorageError(
                f"Failed to freshen object: {e}",
                details={"bucket": bucket, "path": path},
            ) from e

    async def write(self, bucket: str, path: str, size: int, stream: AsyncReadable) -> None:
        target = self._path(bucket, path)
        temp_path = target.with_name(f"{target.name}.{ULID()}.tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(temp_path, "wb") as f:
                remaining = size
                while remaining > 0:
                    chunk = await stream.read(min(self.chunk_size, remaining))
                    if not chunk:
                        raise UploadError(
                            f"Stream ended after {size - remaining} of {size} bytes",
                            details={"path": path},
                        )
                    await f.write(chunk)
                    remaining -= len(chunk)

            # Rename to final path (atomic on most filesystems)
            temp_path.replace(target)
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise StorageError(
                f"Failed to write object: {e}",
                details={"bucket": bucket, "path": path, "size": size},
            ) from e
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise

    async def exists(self, bucket: str, path: str) -> bool:
        return self._path(bucket, path).is_file()

    async def list_prefixes(self, bucket: str, prefix: str) -> List[str]:
        directory = self._path(bucket, prefix)
        if not directory.is_dir():
            return []
        return [
            f"{prefix}{child.name}/"
            for child in sorted(directory.iterdir())
            if child.is_dir()
        ]


def create_backend(config: BackupConfig, session: Any = None) -> StorageBackend:
    """Select the storage backend named by the configuration."""
    if config.provider == StorageProvider.FILESYSTEM:
        return FilesystemBackend(config.local_storage_path)
    return S3Backend(
        region=config.region,
        endpoint_url=config.endpoint_url,
        chunk_size=config.multipart_chunk_size,
        session=session,
    )
