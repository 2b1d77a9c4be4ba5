# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Storage - Remote path resolution, storage backends and snapshot uploaders.
"""

from dcbackup.storage.backends import (
    FilesystemBackend,
    S3Backend,
    StorageBackend,
    create_backend,
)
from dcbackup.storage.reference import (
    MANIFESTS_DIR,
    TASK_DESCRIPTION_DOWNLOAD_DIR,
    TASK_DESCRIPTION_UPLOAD_DIR,
    TOKENS_DIR,
    RemoteObjectReference,
    StorageInteractor,
)
from dcbackup.storage.uploader import (
    FreshenResult,
    SnapshotUploader,
    create_snapshot_uploader,
    open_snapshot_uploader,
)

__all__ = [
    # Paths
    "RemoteObjectReference",
    "StorageInteractor",
    "MANIFESTS_DIR",
    "TOKENS_DIR",
    "TASK_DESCRIPTION_UPLOAD_DIR",
    "TASK_DESCRIPTION_DOWNLOAD_DIR",
    # Backends
    "StorageBackend",
    "S3Backend",
    "FilesystemBackend",
    "create_backend",
    # Uploader
    "FreshenResult",
    "SnapshotUploader",
    "create_snapshot_uploader",
    "open_snapshot_uploader",
]
