# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dcbackup Models - Cluster keys, datacenter snapshots and backup tasks.

These are plain value objects mirroring the datacenter and task custom
resources. The reconciliation layer owns the resources; this package
only reads datacenter snapshots and produces task creation requests.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Dict, List

MANAGED_BY_LABELS = {"app.kubernetes.io/managed-by": "elassandra-operator"}

LABEL_PARENT = "parent"
LABEL_CLUSTER = "cluster"
LABEL_DATACENTER = "datacenter"


@dataclass(frozen=True)
class ClusterKey:
    """Identity of one managed cluster, used as a map key by queues and schedulers."""

    name: str
    namespace: str

    @classmethod
    def from_metadata(cls, metadata: Dict[str, Any]) -> "ClusterKey":
        return cls(name=metadata["name"], namespace=metadata.get("namespace", "default"))

    @property
    def id(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class BackupTaskSpec:
    """Parameters of one backup execution."""

    repository: str | None = None
    bucket: str | None = None
    keyspace_regex: str | None = None
    keyspaces: tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {}
        if self.repository is not None:
            body["repository"] = self.repository
        if self.bucket is not None:
            body["bucket"] = self.bucket
        if self.keyspace_regex is not None:
            body["keyspaceRegex"] = self.keyspace_regex
        if self.keyspaces:
            body["keyspaces"] = list(self.keyspaces)
        return body

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "BackupTaskSpec":
        data = data or {}
        return cls(
            repository=data.get("repository"),
            bucket=data.get("bucket"),
            keyspace_regex=data.get("keyspaceRegex"),
            keyspaces=tuple(data.get("keyspaces") or ()),
        )


@dataclass(frozen=True)
class ScheduledBackup:
    """A cron-driven backup declared on a datacenter resource."""

    cron: str | None = None
    tag_suffix: str | None = None
    backup: BackupTaskSpec | None = None

    def fingerprint(self) -> str:
        """Short hash of the definition, so two definitions firing together never collide."""
        acc: List[Any] = [self.tag_suffix, self.cron]
        if self.backup is not None:
            acc.append(self.backup.to_dict())
        encoded = json.dumps(acc, separators=(",", ":"), sort_keys=True)
        return hashlib.sha1(encoded.encode("utf-8")).hexdigest()[:7]

    def compute_task_name(self, fired_at: datetime | None = None) -> str:
        """
        Compute the task name (and backup tag) for one timer fire.

        The name is the fire time in epoch milliseconds followed by the
        definition fingerprint and, when present, the tag suffix.
        """
        fired_at = fired_at or datetime.now(UTC)
        millis = int(fired_at.timestamp() * 1000)
        name = f"{millis}-{self.fingerprint()}"
        # An empty suffix would leave a trailing "-", which is not a valid resource name
        if self.tag_suffix:
            name = f"{name}-{self.tag_suffix}"
        return name.lower()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduledBackup":
        backup = data.get("backup")
        return cls(
            cron=data.get("cron"),
            tag_suffix=data.get("tagSuffix"),
            backup=BackupTaskSpec.from_dict(backup) if backup is not None else None,
        )


@dataclass(frozen=True)
class DataCenter:
    """Snapshot of a datacenter resource as observed by the reconciliation layer."""

    name: str
    namespace: str
    cluster_name: str
    datacenter_name: str
    scheduled_backups: tuple[ScheduledBackup, ...] = ()
    uid: str | None = None
    replicas: int | None = None

    @property
    def key(self) -> ClusterKey:
        return ClusterKey(name=self.name, namespace=self.namespace)

    def labels(self) -> Dict[str, str]:
        return {
            LABEL_CLUSTER: self.cluster_name,
            **MANAGED_BY_LABELS,
            "app": "elassandra",
            LABEL_PARENT: self.name,
            LABEL_DATACENTER: self.datacenter_name,
        }

    @classmethod
    def from_resource(cls, resource: Dict[str, Any]) -> "DataCenter":
        metadata = resource.get("metadata", {})
        spec = resource.get("spec", {})
        return cls(
            name=metadata["name"],
            namespace=metadata.get("namespace", "default"),
            cluster_name=spec["clusterName"],
            datacenter_name=spec["datacenterName"],
            scheduled_backups=tuple(
                ScheduledBackup.from_dict(item) for item in spec.get("scheduledBackups") or ()
            ),
            uid=metadata.get("uid"),
            replicas=spec.get("replicas"),
        )


class TaskPhase(str, Enum):
    """Task lifecycle phase, advanced by the external status layer."""

    WAITING = "WAITING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    IGNORED = "IGNORED"


@dataclass
class Task:
    """A backup request scoped to one cluster datacenter."""

    name: str
    namespace: str
    cluster: str
    datacenter: str
    backup: BackupTaskSpec | None = None
    labels: Dict[str, str] = field(default_factory=dict)
    parent: str | None = None
    owner_uid: str | None = None
    phase: TaskPhase = TaskPhase.WAITING
    start_date: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_datacenter(cls, name: str, dc: DataCenter) -> "Task":
        return cls(
            name=name,
            namespace=dc.namespace,
            cluster=dc.cluster_name,
            datacenter=dc.datacenter_name,
            labels=dc.labels(),
            parent=dc.name,
            owner_uid=dc.uid,
        )

    @property
    def id(self) -> str:
        return f"{self.namespace}/{self.name}"

    def to_resource(self, group: str, version: str, kind: str) -> Dict[str, Any]:
        """Render the custom resource body sent to the platform API."""
        metadata: Dict[str, Any] = {
            "name": self.name,
            "namespace": self.namespace,
            "labels": dict(self.labels),
        }
        if self.owner_uid and self.parent:
            metadata["ownerReferences"] = [
                {
                    "apiVersion": f"{group}/{version}",
                    "kind": "ElassandraDatacenter",
                    "name": self.parent,
                    "uid": self.owner_uid,
                    "controller": False,
                    "blockOwnerDeletion": True,
                }
            ]

        spec: Dict[str, Any] = {"cluster": self.cluster, "datacenter": self.datacenter}
        if self.backup is not None:
            spec["backup"] = self.backup.to_dict()

        return {
            "apiVersion": f"{group}/{version}",
            "kind": kind,
            "metadata": metadata,
            "spec": spec,
            "status": {
                "phase": self.phase.value,
                "startDate": self.start_date.isoformat(),
            },
        }
