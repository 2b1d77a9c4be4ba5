# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Global Manifest - Cluster-wide record of one backup.

A GlobalManifest maps each node of a datacenter to the object key of that
node's manifest. Restore reads it to know exactly which remote objects
form a consistent backup set, so a manifest missing any expected node is
never restorable.
"""

from pathlib import PurePosixPath
from typing import Any, Dict, Iterable, List, Set

import structlog

from dcbackup.backup.files import NodeBackupResult
from dcbackup.exceptions import ManifestError
from dcbackup.storage.backends import StorageBackend
from dcbackup.storage.reference import MANIFESTS_DIR, TASK_DESCRIPTION_UPLOAD_DIR

logger = structlog.get_logger()


class GlobalManifest:
    """Per-node manifest object keys for one (datacenter, backup tag)."""

    def __init__(self, data_center_id: str, backup_tag: str) -> None:
        self.data_center_id = data_center_id
        self.backup_tag = backup_tag
        self._manifests: Dict[str, str] = {}

    def add_manifest(self, node: str, manifest_object_key: str) -> None:
        if not node or not manifest_object_key:
            raise ManifestError(
                "Node name and manifest object key are required",
                details={"node": node, "manifest": manifest_object_key},
            )
        previous = self._manifests.get(node)
        if previous is not None and previous != manifest_object_key:
            logger.warning(
                "manifest_node_overwritten",
                data_center_id=self.data_center_id,
                backup_tag=self.backup_tag,
                node=node,
                previous=previous,
                manifest=manifest_object_key,
            )
        self._manifests[node] = manifest_object_key

    def record(self, result: NodeBackupResult) -> None:
        """Add the contribution reported by a finished node backup."""
        self.add_manifest(result.node_id, result.manifest_object_key)

    def get_nodes(self) -> Set[str]:
        return set(self._manifests)

    def get_manifest_paths(self) -> List[str]:
        return [
            str(PurePosixPath(self.data_center_id) / node / key)
            for node, key in sorted(self._manifests.items())
        ]

    def missing_nodes(self, expected_nodes: Iterable[str]) -> Set[str]:
        return set(expected_nodes) - self.get_nodes()

    def is_restorable(self, expected_nodes: Iterable[str]) -> bool:
        """
        A backup is restorable only when every expected node contributed.

        An empty manifest is never restorable, even against an empty
        expected set.
        """
        return bool(self._manifests) and self.get_nodes() == set(expected_nodes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data_center_id": self.data_center_id,
            "backup_tag": self.backup_tag,
            "nodes": dict(sorted(self._manifests.items())),
            "manifest_paths": self.get_manifest_paths(),
        }

    def __len__(self) -> int:
        return len(self._manifests)

    def __repr__(self) -> str:
        return (
            f"GlobalManifest(data_center_id={self.data_center_id!r}, "
            f"backup_tag={self.backup_tag!r}, nodes={sorted(self._manifests)!r})"
        )


async def aggregate_manifest(
    backend: StorageBackend,
    bucket: str,
    cluster_id: str,
    manifest_name: str,
    root_dir: str | None = None,
) -> GlobalManifest:
    """
    Rebuild a GlobalManifest from what is stored remotely.

    Every node directory under [root_dir/]cluster_id/ holding
    manifests/<manifest_name> contributes one entry.

    Args:
        backend: Open storage backend
        bucket: Bucket holding the backups
        cluster_id: Cluster (datacenter) identifier
        manifest_name: Backup tag the node manifests are named after
        root_dir: Optional root directory of the bucket layout

    Raises:
        StorageError: If listing or probing the bucket fails
    """
    base = PurePosixPath(root_dir) / cluster_id if root_dir else PurePosixPath(cluster_id)
    manifest_key = str(PurePosixPath(MANIFESTS_DIR) / manifest_name)
    manifest = GlobalManifest(cluster_id, manifest_name)

    for prefix in await backend.list_prefixes(bucket, f"{base}/"):
        node = PurePosixPath(prefix).name
        if node == TASK_DESCRIPTION_UPLOAD_DIR:
            continue
        if await backend.exists(bucket, f"{prefix}{manifest_key}"):
            manifest.add_manifest(node, manifest_key)
        else:
            logger.debug("node_manifest_missing", cluster_id=cluster_id, node=node, manifest=manifest_name)

    logger.info(
        "manifest_aggregated",
        cluster_id=cluster_id,
        manifest=manifest_name,
        nodes=len(manifest),
    )
    return manifest
