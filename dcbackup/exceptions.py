# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dcbackup Exceptions - Custom exceptions for the dcbackup package.
"""


class DCBackupError(Exception):
    """Base exception for all dcbackup errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(DCBackupError):
    """Raised when configuration is invalid."""

    pass


class StorageError(DCBackupError):
    """Raised when a remote storage operation fails."""

    pass


class ObjectNotFoundError(StorageError):
    """Raised by a storage backend when the probed object does not exist."""

    pass


class UploadError(DCBackupError):
    """Raised when a snapshot file cannot be uploaded."""

    pass


class BackupError(DCBackupError):
    """Raised when a node snapshot cannot be turned into a backup manifest."""

    pass


class ManifestError(DCBackupError):
    """Raised when manifest aggregation fails."""

    pass


class SchedulingError(DCBackupError):
    """Raised when backup scheduling fails."""

    pass


class InvalidCronExpressionError(SchedulingError):
    """Raised when a cron expression cannot be parsed."""

    pass


class TaskCreationError(DCBackupError):
    """Raised when the platform refuses to create a task."""

    def __init__(self, message: str, details: dict | None = None, conflict: bool = False):
        super().__init__(message, details)
        self.conflict = conflict


class WorkQueueError(DCBackupError):
    """Raised when an operation cannot be queued."""

    pass
