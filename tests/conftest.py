# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for dcbackup tests.

Provides in-memory storage backends, snapshot trees, mock task clients
and test configuration helpers.
"""

import os
import tempfile
from pathlib import Path
from typing import Dict, Generator, List, Tuple
from unittest.mock import AsyncMock

import pytest

from dcbackup.exceptions import ObjectNotFoundError, StorageError

# Set test environment variables
os.environ["DCBACKUP_ADMIN_API_KEY"] = "test-api-key-12345"


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


class BytesStream:
    """Minimal async readable over a bytes buffer."""

    def __init__(self, data: bytes) -> None:
        self.data = data
        self.offset = 0

    async def read(self, size: int = -1) -> bytes:
        if size < 0:
            size = len(self.data) - self.offset
        chunk = self.data[self.offset:self.offset + size]
        self.offset += len(chunk)
        return chunk


class RecordingBackend:
    """
    In-memory StorageBackend recording every call.

    Objects live in `objects` keyed by (bucket, path). Paths listed in
    `fail_writes` or `fail_copies` raise StorageError.
    """

    def __init__(self) -> None:
        self.objects: Dict[Tuple[str, str], bytes] = {}
        self.calls: List[Tuple[str, str]] = []
        self.fail_writes: set = set()
        self.fail_copies: set = set()
        self.open_count = 0
        self.close_count = 0

    async def open(self) -> None:
        self.open_count += 1

    async def close(self) -> None:
        self.close_count += 1

    async def copy_in_place(self, bucket: str, path: str) -> None:
        self.calls.append(("copy", path))
        if path in self.fail_copies:
            raise StorageError(f"copy refused: {path}")
        if (bucket, path) not in self.objects:
            raise ObjectNotFoundError(f"Object not found: {path}")

    async def write(self, bucket: str, path: str, size: int, stream) -> None:
        self.calls.append(("write", path))
        if path in self.fail_writes:
            raise StorageError(f"write refused: {path}")
        self.objects[(bucket, path)] = await stream.read(size)

    async def exists(self, bucket: str, path: str) -> bool:
        return (bucket, path) in self.objects

    async def list_prefixes(self, bucket: str, prefix: str) -> List[str]:
        children = set()
        for obj_bucket, path in self.objects:
            if obj_bucket == bucket and path.startswith(prefix):
                rest = path[len(prefix):]
                if "/" in rest:
                    children.add(f"{prefix}{rest.split('/', 1)[0]}/")
        return sorted(children)

    def paths(self, operation: str) -> List[str]:
        return [path for op, path in self.calls if op == operation]


@pytest.fixture
def recording_backend() -> RecordingBackend:
    """Create an empty in-memory storage backend."""
    return RecordingBackend()


def write_file(path: Path, content: bytes | str) -> Path:
    """Write a file, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, str):
        content = content.encode("utf-8")
    path.write_bytes(content)
    return path


@pytest.fixture
def snapshot_tree(temp_dir: Path) -> Path:
    """
    Create a data directory holding snapshot "TESTTAG" of two tables.

    ks1/users-1a2b has one SSTable with a crc32 digest and one without
    any digest; system/local has one SSTable with an adler32 digest.
    Live (non-snapshot) SSTables sit beside the snapshots.
    """
    data_dir = temp_dir / "data"

    users = data_dir / "ks1" / "users-1a2b"
    snapshot = users / "snapshots" / "TESTTAG"
    write_file(snapshot / "mc-1-big-Data.db", b"users-data-1")
    write_file(snapshot / "mc-1-big-Index.db", b"users-index-1")
    write_file(snapshot / "mc-1-big-Digest.crc32", "2204263393\n")
    write_file(snapshot / "mc-2-big-Data.db", b"users-data-2")
    write_file(snapshot / "manifest.json", '{"files": []}')
    write_file(users / "mc-3-big-Data.db", b"live")

    local = data_dir / "system" / "local-7ad5"
    write_file(local / "snapshots" / "TESTTAG" / "mc-4-big-Data.db", b"local-data")
    write_file(local / "snapshots" / "TESTTAG" / "mc-4-big-Digest.adler32", "99")
    write_file(local / "snapshots" / "OTHERTAG" / "mc-5-big-Data.db", b"other")

    return data_dir


@pytest.fixture
def mock_task_client() -> AsyncMock:
    """Task client whose create_task succeeds."""
    task_client = AsyncMock()
    task_client.create_task.return_value = {}
    return task_client


@pytest.fixture
def datacenter():
    """Datacenter snapshot with one scheduled backup."""
    from dcbackup.models import BackupTaskSpec, DataCenter, ScheduledBackup

    return DataCenter(
        name="elassandra-cl1-dc1",
        namespace="default",
        cluster_name="cl1",
        datacenter_name="dc1",
        scheduled_backups=(
            ScheduledBackup(
                cron="0/10 * * * * ?",
                tag_suffix="daily",
                backup=BackupTaskSpec(bucket="test-bucket"),
            ),
        ),
        uid="0b6f6c1e-3d4e-4b8a-9c1d-2f1e0a9b8c7d",
        replicas=3,
    )


@pytest.fixture
def test_config(temp_dir: Path):
    """Create a filesystem-backed test configuration."""
    from dcbackup.config import BackupConfig, StorageProvider

    return BackupConfig(
        bucket="test-bucket",
        provider=StorageProvider.FILESYSTEM,
        local_storage_path=temp_dir / "remote",
        workqueue_restart_delay=0.05,
    )
