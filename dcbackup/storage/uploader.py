# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Snapshot Uploader - Per-node, per-backup upload session.

A SnapshotUploader resolves object keys for one (cluster, node, backup)
triple and drives one storage backend. Callers must follow the order:

    result = await uploader.freshen_remote_object(ref)
    if result is FreshenResult.UPLOAD_REQUIRED:
        await uploader.upload_snapshot_file(size, stream, ref)

Freshening an object that already exists is what deduplicates unchanged
SSTables across backups. Uploading without freshening first re-sends bytes.
"""

import threading
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, AsyncIterator, Set

import structlog

from dcbackup.config import BackupConfig
from dcbackup.exceptions import DCBackupError, ObjectNotFoundError, UploadError
from dcbackup.storage.backends import AsyncReadable, StorageBackend, create_backend
from dcbackup.storage.reference import RemoteObjectReference, StorageInteractor

logger = structlog.get_logger()


class FreshenResult(str, Enum):
    """Outcome of a freshen probe."""

    FRESHENED = "freshened"  # Object exists, bytes untouched
    UPLOAD_REQUIRED = "upload_required"  # Object absent, caller must upload


class SnapshotUploader:
    """Uploads one node's snapshot files for one backup."""

    def __init__(
        self,
        interactor: StorageInteractor,
        backend: StorageBackend,
        backup_id: str | None = None,
    ) -> None:
        self.interactor = interactor
        self.backend = backend
        self.backup_id = backup_id
        self._opened = False
        self._closed = False

    @property
    def cluster_id(self) -> str:
        return self.interactor.cluster_id

    @property
    def node_id(self) -> str:
        return self.interactor.node_id

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> "SnapshotUploader":
        if self._closed:
            raise UploadError("Uploader already closed", details=self._context())
        if not self._opened:
            await self.backend.open()
            self._opened = True
        return self

    async def close(self) -> None:
        """Release backend resources. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        await self.backend.close()
        logger.debug("snapshot_uploader_closed", **self._context())

    async def __aenter__(self) -> "SnapshotUploader":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def object_key_to_remote_reference(self, object_key: str | PurePosixPath) -> RemoteObjectReference:
        return self.interactor.object_key_to_remote_reference(object_key)

    def task_description_remote_reference(self, task_name: str) -> RemoteObjectReference:
        return self.interactor.task_description_remote_reference(task_name)

    async def freshen_remote_object(self, ref: RemoteObjectReference) -> FreshenResult:
        """
        Probe the remote object with a copy onto itself.

        Returns FRESHENED when the object exists (and its metadata was
        refreshed) or UPLOAD_REQUIRED when the backend reports it missing.
        Any other backend error propagates.
        """
        with self._claim(ref):
            try:
                await self.backend.copy_in_place(ref.bucket, ref.remote_path)
            except ObjectNotFoundError:
                logger.debug("remote_object_missing", remote_path=ref.remote_path)
                return FreshenResult.UPLOAD_REQUIRED

        logger.debug("remote_object_freshened", remote_path=ref.remote_path)
        return FreshenResult.FRESHENED

    async def upload_snapshot_file(
        self,
        size: int,
        stream: AsyncReadable,
        ref: RemoteObjectReference,
    ) -> None:
        """Stream exactly `size` bytes to the referenced object."""
        with self._claim(ref):
            try:
                await self.backend.write(ref.bucket, ref.remote_path, size, stream)
            except UploadError:
                raise
            except DCBackupError as e:
                raise UploadError(
                    f"Upload failed for {ref.object_key}: {e.message}",
                    details={"remote_path": ref.remote_path, **e.details},
                ) from e
            except OSError as e:
                raise UploadError(
                    f"Upload failed for {ref.object_key}: {e}",
                    details={"remote_path": ref.remote_path},
                ) from e

        logger.debug("snapshot_file_uploaded", remote_path=ref.remote_path, size=size)

    def _claim(self, ref: RemoteObjectReference) -> "_InFlight":
        if self._closed:
            raise UploadError("Uploader already closed", details=self._context())
        if not self._opened:
            raise UploadError("Uploader used before open()", details=self._context())
        return _InFlight(ref)

    def _context(self) -> dict:
        return {
            "cluster_id": self.cluster_id,
            "node_id": self.node_id,
            "backup_id": self.backup_id,
        }


class _InFlight:
    """Marks a remote path busy, process-wide, for the duration of one backend call."""

    _busy: Set[str] = set()
    _lock = threading.Lock()

    def __init__(self, ref: RemoteObjectReference) -> None:
        self.key = f"{ref.bucket}/{ref.remote_path}"

    def __enter__(self) -> None:
        with self._lock:
            if self.key in self._busy:
                raise UploadError(
                    f"Another transfer is already in flight for {self.key}",
                    details={"remote_path": self.key},
                )
            self._busy.add(self.key)

    def __exit__(self, exc_type, exc, tb) -> None:
        with self._lock:
            self._busy.discard(self.key)


def create_snapshot_uploader(
    config: BackupConfig,
    cluster_id: str,
    node_id: str,
    backup_id: str | None = None,
    session: Any = None,
) -> SnapshotUploader:
    """Build an uploader whose backend is selected by config.provider."""
    interactor = StorageInteractor(
        cluster_id=cluster_id,
        node_id=node_id,
        bucket=config.bucket,
        root_dir=config.root_dir,
    )
    return SnapshotUploader(interactor, create_backend(config, session), backup_id)


@asynccontextmanager
async def open_snapshot_uploader(
    config: BackupConfig,
    cluster_id: str,
    node_id: str,
    backup_id: str | None = None,
) -> AsyncIterator[SnapshotUploader]:
    """Open an uploader for the duration of a block and always close it."""
    uploader = create_snapshot_uploader(config, cluster_id, node_id, backup_id)
    try:
        await uploader.open()
        yield uploader
    finally:
        await uploader.close()
