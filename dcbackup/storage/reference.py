# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Remote path resolution - maps logical object keys to remote locations.

Everything here is a pure function of (object_key, cluster_id, node_id,
root_dir). The layout is persisted in existing backups and must not change:

    snapshot object:   [root_dir/]cluster_id/node_id/<object_key>
    task description:  [root_dir/]cluster_id/<TASK_DESCRIPTION_UPLOAD_DIR>/<task_name>
"""

from dataclasses import dataclass
from pathlib import PurePosixPath

from dcbackup.exceptions import StorageError

TASK_DESCRIPTION_UPLOAD_DIR = "tasks"
TASK_DESCRIPTION_DOWNLOAD_DIR = "task-descriptions"
MANIFESTS_DIR = "manifests"
TOKENS_DIR = "tokens"


@dataclass(frozen=True)
class RemoteObjectReference:
    """An object key resolved against one bucket."""

    object_key: str
    remote_path: str
    bucket: str


def _check_object_key(object_key: str | PurePosixPath) -> PurePosixPath:
    key = PurePosixPath(object_key)
    if not str(object_key) or key.is_absolute() or ".." in key.parts or str(key) == ".":
        raise StorageError(
            f"Cannot map object key to a remote path: {str(object_key)!r}",
            details={"object_key": str(object_key)},
        )
    return key


@dataclass(frozen=True)
class StorageInteractor:
    """Path resolver for one (cluster, node) pair within one bucket."""

    cluster_id: str
    node_id: str
    bucket: str
    root_dir: str | None = None

    def _base(self) -> PurePosixPath:
        if self.root_dir:
            return PurePosixPath(self.root_dir) / self.cluster_id
        return PurePosixPath(self.cluster_id)

    def resolve_remote_path(self, object_key: str | PurePosixPath) -> str:
        return str(self._base() / self.node_id / PurePosixPath(object_key))

    def resolve_task_description_remote_path(self, task_name: str) -> str:
        return str(self._base() / TASK_DESCRIPTION_UPLOAD_DIR / task_name)

    def object_key_to_remote_reference(
        self, object_key: str | PurePosixPath
    ) -> RemoteObjectReference:
        key = _check_object_key(object_key)
        return RemoteObjectReference(
            object_key=str(key),
            remote_path=self.resolve_remote_path(key),
            bucket=self.bucket,
        )

    def task_description_remote_reference(self, task_name: str) -> RemoteObjectReference:
        # object key mirrors the local download location of the description
        _check_object_key(task_name)
        return RemoteObjectReference(
            object_key=str(PurePosixPath(TASK_DESCRIPTION_DOWNLOAD_DIR) / task_name),
            remote_path=self.resolve_task_description_remote_path(task_name),
            bucket=self.bucket,
        )
