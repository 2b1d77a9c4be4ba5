# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dcbackup Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation so that uploaders,
queues and schedulers built from it never observe a change mid-backup.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List
import re

from dcbackup.errors import explain_missing_local_storage_path


# S3 refuses multipart parts smaller than 5 MiB (except the last one)
MIN_MULTIPART_CHUNK_SIZE = 5 * 1024 * 1024


class StorageProvider(str, Enum):
    """Remote object storage backend."""

    S3 = "s3"
    FILESYSTEM = "filesystem"


def _validate_bucket_name(bucket: str) -> bool:
    """
    Validate S3 bucket name according to AWS rules.

    Rules:
    - 3-63 characters
    - Lowercase letters, numbers, hyphens
    - Must start and end with letter or number
    - No consecutive periods
    - Not formatted as IP address
    """
    if not bucket or len(bucket) < 3 or len(bucket) > 63:
        return False

    if not re.match(r"^[a-z0-9][a-z0-9.-]*[a-z0-9]$", bucket):
        return False

    if ".." in bucket:
        return False

    if re.match(r"^\d+\.\d+\.\d+\.\d+$", bucket):
        return False

    return True


def _validate_root_dir(root_dir: str) -> bool:
    """A root dir is a relative, slash-separated prefix without '..' parts."""
    if root_dir.startswith("/"):
        return False
    return ".." not in root_dir.split("/")


@dataclass(frozen=True)
class BackupConfig:
    """
    Immutable configuration for backup orchestration.

    One instance is shared by the storage factory, the work queue and the
    backup scheduler.
    """

    # Required: bucket (S3) or top-level directory (filesystem) receiving backups
    bucket: str

    # Storage backend selected at uploader construction time
    provider: StorageProvider = StorageProvider.S3

    # AWS region (default: us-east-1)
    region: str = "us-east-1"

    # Custom S3 endpoint (MinIO, Ceph, ...)
    endpoint_url: str | None = None

    # Optional prefix placed before the cluster id in every remote path
    root_dir: str | None = None

    # Base directory for the filesystem provider
    local_storage_path: Path | None = None

    # Maximum concurrent freshen/upload calls per node
    max_concurrent_uploads: int = 4

    # Bytes read per multipart part
    multipart_chunk_size: int = 8 * 1024 * 1024

    # Seconds before a crashed work queue worker is restarted
    workqueue_restart_delay: float = 1.0

    # Task custom resource coordinates
    task_group: str = "elassandra.strapdata.com"
    task_version: str = "v1beta1"
    task_plural: str = "elassandratasks"
    task_kind: str = "ElassandraTask"

    # Kubernetes client settings
    kubeconfig_path: str | None = None
    kube_context: str | None = None
    in_cluster: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        if self.provider == StorageProvider.S3:
            if not _validate_bucket_name(self.bucket):
                errors.append(f"Invalid bucket name: {self.bucket}")
        elif not self.bucket:
            errors.append("bucket must not be empty")

        if self.provider == StorageProvider.FILESYSTEM and self.local_storage_path is None:
            errors.append(explain_missing_local_storage_path())

        if self.root_dir and not _validate_root_dir(self.root_dir):
            errors.append(f"Invalid root_dir: {self.root_dir}")

        if self.max_concurrent_uploads < 1:
            errors.append(
                f"max_concurrent_uploads must be >= 1, got {self.max_concurrent_uploads}"
            )

        if self.multipart_chunk_size < MIN_MULTIPART_CHUNK_SIZE:
            errors.append(
                f"multipart_chunk_size must be >= {MIN_MULTIPART_CHUNK_SIZE}, "
                f"got {self.multipart_chunk_size}"
            )

        if self.workqueue_restart_delay < 0:
            errors.append(
                f"workqueue_restart_delay must be >= 0, got {self.workqueue_restart_delay}"
            )

        if errors:
            from dcbackup.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    def with_updates(self, **kwargs) -> "BackupConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance.
        """
        from dataclasses import asdict

        current = asdict(self)
        current.update(kwargs)
        return BackupConfig(**current)
