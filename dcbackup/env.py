# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based configuration helpers.

The operator process is configured through environment variables set on
its deployment. create_config_from_env() reads them and returns a
validated BackupConfig.
"""

from __future__ import annotations

import os
from pathlib import Path

from dcbackup.config import BackupConfig, StorageProvider
from dcbackup.errors import (
    explain_invalid_delay_env,
    explain_invalid_integer_env,
    explain_invalid_provider_env,
    explain_missing_bucket_env,
)
from dcbackup.exceptions import ConfigurationError


def _parse_provider(value: str | None) -> StorageProvider:
    if not value:
        return StorageProvider.S3
    try:
        return StorageProvider(value.lower())
    except ValueError as exc:
        raise ConfigurationError(explain_invalid_provider_env(value)) from exc


def _parse_int(name: str, value: str | None, default: int, minimum: int) -> int:
    if not value:
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_integer_env(name, value, minimum)) from exc
    if parsed < minimum:
        raise ConfigurationError(explain_invalid_integer_env(name, value, minimum))
    return parsed


def _parse_delay(value: str | None) -> float:
    if not value:
        return 1.0
    try:
        delay = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_delay_env(value)) from exc
    if delay < 0:
        raise ConfigurationError(explain_invalid_delay_env(value))
    return delay


def _parse_bool(value: str | None) -> bool:
    if not value:
        return False
    return value.strip().lower() in ("1", "true", "yes", "on")


def create_config_from_env() -> BackupConfig:
    """
    Create a BackupConfig from environment variables.

    Required:
        - DCBACKUP_BUCKET: Bucket (S3) or top-level directory (filesystem)

    Optional environment variables:
        - DCBACKUP_PROVIDER: 's3' | 'filesystem' (default: s3)
        - AWS_REGION: AWS region (default: us-east-1)
        - DCBACKUP_ENDPOINT_URL: Custom S3 endpoint
        - DCBACKUP_ROOT_DIR: Prefix placed before the cluster id
        - DCBACKUP_LOCAL_STORAGE_PATH: Base directory for the filesystem provider
        - DCBACKUP_MAX_CONCURRENT_UPLOADS: Positive integer (default: 4)
        - DCBACKUP_WORKQUEUE_RESTART_DELAY: Seconds (default: 1.0)
        - KUBECONFIG: Path to a kubeconfig file
        - DCBACKUP_KUBE_CONTEXT: Kubeconfig context name
        - DCBACKUP_IN_CLUSTER: 'true' to use the pod service account
    """

    bucket = os.getenv("DCBACKUP_BUCKET")
    if not bucket:
        raise ConfigurationError(explain_missing_bucket_env())

    local_path_env = os.getenv("DCBACKUP_LOCAL_STORAGE_PATH")

    return BackupConfig(
        bucket=bucket,
        provider=_parse_provider(os.getenv("DCBACKUP_PROVIDER")),
        region=os.getenv("AWS_REGION", "us-east-1"),
        endpoint_url=os.getenv("DCBACKUP_ENDPOINT_URL") or None,
        root_dir=os.getenv("DCBACKUP_ROOT_DIR") or None,
        local_storage_path=Path(local_path_env) if local_path_env else None,
        max_concurrent_uploads=_parse_int(
            "DCBACKUP_MAX_CONCURRENT_UPLOADS",
            os.getenv("DCBACKUP_MAX_CONCURRENT_UPLOADS"),
            default=4,
            minimum=1,
        ),
        workqueue_restart_delay=_parse_delay(os.getenv("DCBACKUP_WORKQUEUE_RESTART_DELAY")),
        kubeconfig_path=os.getenv("KUBECONFIG") or None,
        kube_context=os.getenv("DCBACKUP_KUBE_CONTEXT") or None,
        in_cluster=_parse_bool(os.getenv("DCBACKUP_IN_CLUSTER")),
    )
