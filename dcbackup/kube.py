# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Kubernetes Task Client - Creates backup task custom resources.

The kubernetes client is blocking, so every API call runs in a worker
thread and never stalls the event loop driving other clusters' jobs.
"""

import asyncio
import os
from typing import Any, Dict

import structlog
from kubernetes import client, config
from kubernetes.client import ApiException

from dcbackup.config import BackupConfig
from dcbackup.exceptions import ConfigurationError, TaskCreationError
from dcbackup.models import Task

logger = structlog.get_logger()


class KubernetesTaskClient:
    """TaskClient backed by the CustomObjectsApi."""

    def __init__(
        self,
        api: client.CustomObjectsApi,
        group: str = "elassandra.strapdata.com",
        version: str = "v1beta1",
        plural: str = "elassandratasks",
        kind: str = "ElassandraTask",
    ) -> None:
        self.api = api
        self.group = group
        self.version = version
        self.plural = plural
        self.kind = kind

    async def create_task(self, task: Task) -> Dict[str, Any]:
        """
        Create the task resource.

        Raises:
            TaskCreationError: With conflict=True when a task of the same
                name already exists, plain otherwise
        """
        body = task.to_resource(self.group, self.version, self.kind)
        try:
            created = await asyncio.to_thread(
                self.api.create_namespaced_custom_object,
                group=self.group,
                version=self.version,
                namespace=task.namespace,
                plural=self.plural,
                body=body,
            )
        except ApiException as e:
            details = {"task": task.id, "status": e.status, "reason": e.reason}
            if e.status == 409:
                raise TaskCreationError(
                    f"Task {task.id} already exists",
                    details=details,
                    conflict=True,
                ) from e
            raise TaskCreationError(
                f"Failed to create task {task.id}: {e.reason}",
                details=details,
            ) from e

        logger.debug("task_resource_created", task=task.id, kind=self.kind)
        return created


def load_task_client(cfg: BackupConfig) -> KubernetesTaskClient:
    """
    Load cluster credentials and build a task client.

    Raises:
        ConfigurationError: If neither in-cluster nor kubeconfig
            credentials can be loaded
    """
    kubeconfig = os.path.expanduser(cfg.kubeconfig_path) if cfg.kubeconfig_path else None
    try:
        if cfg.in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=kubeconfig, context=cfg.kube_context)
    except Exception as e:
        raise ConfigurationError(
            f"Unable to load Kubernetes credentials: {e}",
            details={
                "in_cluster": cfg.in_cluster,
                "kubeconfig": kubeconfig,
                "context": cfg.kube_context,
            },
        ) from e

    logger.info(
        "kubernetes_client_loaded",
        in_cluster=cfg.in_cluster,
        context=cfg.kube_context,
    )
    return KubernetesTaskClient(
        client.CustomObjectsApi(client.ApiClient()),
        group=cfg.task_group,
        version=cfg.task_version,
        plural=cfg.task_plural,
        kind=cfg.task_kind,
    )
