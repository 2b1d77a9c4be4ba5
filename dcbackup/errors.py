# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for dcbackup.

These helpers centralize wording for common configuration errors so that
all modules present consistent, actionable messages.
"""


def explain_missing_bucket_env() -> str:
    """
    Explain that the backup bucket environment variable is missing.
    """

    return (
        "Backup bucket is not configured. "
        "Set the DCBACKUP_BUCKET environment variable or pass bucket=... to BackupConfig()."
    )


def explain_invalid_provider_env(value: str | None) -> str:
    """
    Explain that DCBACKUP_PROVIDER is invalid.
    """

    return (
        f"Invalid DCBACKUP_PROVIDER value: {value!r}. "
        "Expected one of: 's3' or 'filesystem'."
    )


def explain_missing_local_storage_path() -> str:
    """
    Explain that the filesystem provider needs a storage directory.
    """

    return (
        "The filesystem storage provider requires a local storage path. "
        "Set DCBACKUP_LOCAL_STORAGE_PATH or pass local_storage_path=... to BackupConfig()."
    )


def explain_invalid_integer_env(name: str, value: str | None, minimum: int) -> str:
    """
    Explain that an integer environment variable is invalid.
    """

    return (
        f"Invalid {name} value: {value!r}. "
        f"It must be an integer greater than or equal to {minimum}."
    )


def explain_invalid_delay_env(value: str | None) -> str:
    """
    Explain that DCBACKUP_WORKQUEUE_RESTART_DELAY is invalid.
    """

    return (
        f"Invalid DCBACKUP_WORKQUEUE_RESTART_DELAY value: {value!r}. "
        "It must be a non-negative number of seconds."
    )


def explain_empty_cron(datacenter: str, tag_suffix: str | None) -> str:
    """
    Explain why a scheduled backup without a cron expression was skipped.
    """

    return (
        f"Scheduled backup {tag_suffix!r} of datacenter {datacenter!r} has no cron "
        "expression and was not scheduled. Set 'cron' to a six-field expression "
        "such as '0 0 2 * * ?'."
    )
