# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup - Node snapshot upload pipeline and cluster-wide manifests.
"""

from dcbackup.backup.files import (
    EntryType,
    ManifestEntry,
    NodeBackupResult,
    backup_node,
    generate_manifest,
    upload_or_freshen_files,
)
from dcbackup.backup.manifest import GlobalManifest, aggregate_manifest

__all__ = [
    "EntryType",
    "ManifestEntry",
    "NodeBackupResult",
    "backup_node",
    "generate_manifest",
    "upload_or_freshen_files",
    "GlobalManifest",
    "aggregate_manifest",
]
