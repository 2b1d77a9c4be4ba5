# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dcbackup - Backup orchestration for multi-node database clusters.

Schedules cron-driven backup tasks per cluster, serializes cluster-mutating
operations per cluster, uploads node snapshots to object storage with
content-based deduplication and assembles cluster-wide backup manifests.
"""

__version__ = "0.1.0"

from dcbackup.backup import GlobalManifest, aggregate_manifest, backup_node
from dcbackup.config import BackupConfig, StorageProvider
from dcbackup.env import create_config_from_env
from dcbackup.models import ClusterKey, DataCenter, ScheduledBackup, Task
from dcbackup.scheduler import BackupScheduler, parse_cron_expression
from dcbackup.storage import (
    FreshenResult,
    RemoteObjectReference,
    SnapshotUploader,
    StorageInteractor,
    open_snapshot_uploader,
)
from dcbackup.workqueue import WorkQueue

__all__ = [
    # Version
    "__version__",
    # Configuration
    "BackupConfig",
    "StorageProvider",
    "create_config_from_env",
    # Models
    "ClusterKey",
    "DataCenter",
    "ScheduledBackup",
    "Task",
    # Orchestration
    "WorkQueue",
    "BackupScheduler",
    "parse_cron_expression",
    # Storage
    "RemoteObjectReference",
    "StorageInteractor",
    "SnapshotUploader",
    "FreshenResult",
    "open_snapshot_uploader",
    # Manifests
    "backup_node",
    "GlobalManifest",
    "aggregate_manifest",
]
