# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Snapshot Uploader Tests - freshen/upload contract and lifecycle.
"""

import asyncio
from pathlib import Path

import pytest

from dcbackup.exceptions import StorageError, UploadError
from dcbackup.storage import (
    FreshenResult,
    SnapshotUploader,
    StorageInteractor,
    create_snapshot_uploader,
    open_snapshot_uploader,
)

from conftest import BytesStream, RecordingBackend


def make_uploader(backend: RecordingBackend) -> SnapshotUploader:
    interactor = StorageInteractor("cl1-dc1", "node0", "test-bucket")
    return SnapshotUploader(interactor, backend, backup_id="TESTTAG")


class SlowBackend(RecordingBackend):
    """Holds every write until `release` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()

    async def write(self, bucket, path, size, stream):
        await self.release.wait()
        await super().write(bucket, path, size, stream)


# ============================================================================
# Lifecycle Tests
# ============================================================================

@pytest.mark.asyncio
async def test_close_twice_cleans_up_once(recording_backend: RecordingBackend):
    """A second close is a no-op and never raises."""
    uploader = make_uploader(recording_backend)
    await uploader.open()

    await uploader.close()
    await uploader.close()

    assert recording_backend.close_count == 1
    assert uploader.closed


@pytest.mark.asyncio
async def test_context_manager_closes_on_failure(recording_backend: RecordingBackend):
    """The backend is released even when the block raises."""
    with pytest.raises(RuntimeError):
        async with make_uploader(recording_backend):
            raise RuntimeError("boom")

    assert recording_backend.open_count == 1
    assert recording_backend.close_count == 1


@pytest.mark.asyncio
async def test_closed_uploader_refuses_work(recording_backend: RecordingBackend):
    """Neither freshen nor reopen is allowed after close."""
    uploader = make_uploader(recording_backend)
    await uploader.open()
    await uploader.close()
    ref = uploader.object_key_to_remote_reference("objA")

    with pytest.raises(UploadError):
        await uploader.freshen_remote_object(ref)
    with pytest.raises(UploadError):
        await uploader.open()


@pytest.mark.asyncio
async def test_unopened_uploader_refuses_work(recording_backend: RecordingBackend):
    """Calls before open() fail instead of using a missing client."""
    uploader = make_uploader(recording_backend)
    ref = uploader.object_key_to_remote_reference("objA")

    with pytest.raises(UploadError):
        await uploader.upload_snapshot_file(1, BytesStream(b"x"), ref)


# ============================================================================
# Freshen / Upload Tests
# ============================================================================

@pytest.mark.asyncio
async def test_freshen_missing_object_requires_upload(recording_backend: RecordingBackend):
    """Not-found is the upload signal, not an error."""
    async with make_uploader(recording_backend) as uploader:
        ref = uploader.object_key_to_remote_reference("objA")

        assert await uploader.freshen_remote_object(ref) is FreshenResult.UPLOAD_REQUIRED


@pytest.mark.asyncio
async def test_freshen_existing_object(recording_backend: RecordingBackend):
    """An object already stored is freshened and must not be re-sent."""
    recording_backend.objects[("test-bucket", "cl1-dc1/node0/objA")] = b"old"

    async with make_uploader(recording_backend) as uploader:
        ref = uploader.object_key_to_remote_reference("objA")

        assert await uploader.freshen_remote_object(ref) is FreshenResult.FRESHENED

    assert recording_backend.paths("write") == []
    assert recording_backend.objects[("test-bucket", "cl1-dc1/node0/objA")] == b"old"


@pytest.mark.asyncio
async def test_freshen_other_error_propagates(recording_backend: RecordingBackend):
    """Backend failures other than not-found reach the caller."""
    recording_backend.fail_copies.add("cl1-dc1/node0/objA")

    async with make_uploader(recording_backend) as uploader:
        ref = uploader.object_key_to_remote_reference("objA")

        with pytest.raises(StorageError):
            await uploader.freshen_remote_object(ref)


@pytest.mark.asyncio
async def test_upload_failure_is_upload_error(recording_backend: RecordingBackend):
    """Storage failures during upload are reported as UploadError."""
    recording_backend.fail_writes.add("cl1-dc1/node0/objA")

    async with make_uploader(recording_backend) as uploader:
        ref = uploader.object_key_to_remote_reference("objA")

        with pytest.raises(UploadError) as exc_info:
            await uploader.upload_snapshot_file(3, BytesStream(b"abc"), ref)

    assert exc_info.value.details["remote_path"] == "cl1-dc1/node0/objA"


@pytest.mark.asyncio
async def test_one_transfer_per_reference():
    """A second transfer on a reference already in flight is refused."""
    backend = SlowBackend()
    async with make_uploader(backend) as uploader:
        ref = uploader.object_key_to_remote_reference("objA")
        first = asyncio.create_task(uploader.upload_snapshot_file(1, BytesStream(b"x"), ref))
        await asyncio.sleep(0)

        with pytest.raises(UploadError):
            await uploader.upload_snapshot_file(1, BytesStream(b"y"), ref)

        backend.release.set()
        await first

    assert backend.objects[("test-bucket", "cl1-dc1/node0/objA")] == b"x"


@pytest.mark.asyncio
async def test_one_transfer_per_reference_across_uploaders():
    """Two uploaders in one process never transfer the same reference together."""
    backend = SlowBackend()
    async with make_uploader(backend) as first_uploader, make_uploader(backend) as second_uploader:
        ref = first_uploader.object_key_to_remote_reference("objB")
        first = asyncio.create_task(first_uploader.upload_snapshot_file(1, BytesStream(b"x"), ref))
        await asyncio.sleep(0)

        with pytest.raises(UploadError):
            await second_uploader.upload_snapshot_file(
                1, BytesStream(b"y"), second_uploader.object_key_to_remote_reference("objB")
            )

        backend.release.set()
        await first

        # Released once the first transfer is done
        assert await second_uploader.freshen_remote_object(ref) is FreshenResult.FRESHENED

    assert backend.objects[("test-bucket", "cl1-dc1/node0/objB")] == b"x"


@pytest.mark.asyncio
async def test_filesystem_uploader_end_to_end(test_config, temp_dir: Path):
    """Freshen-then-upload against the filesystem backend."""
    async with open_snapshot_uploader(test_config, "cl1-dc1", "node0", "TESTTAG") as uploader:
        ref = uploader.object_key_to_remote_reference("data/ks1/users/1-1/mc-1-big-Data.db")

        assert await uploader.freshen_remote_object(ref) is FreshenResult.UPLOAD_REQUIRED
        await uploader.upload_snapshot_file(4, BytesStream(b"data"), ref)
        assert await uploader.freshen_remote_object(ref) is FreshenResult.FRESHENED

    stored = temp_dir / "remote" / "test-bucket" / "cl1-dc1" / "node0" / ref.object_key
    assert stored.read_bytes() == b"data"
    assert uploader.closed


def test_create_snapshot_uploader_uses_config_root_dir(test_config):
    """The factory applies the configured root dir to every path."""
    config = test_config.with_updates(root_dir="backups")

    uploader = create_snapshot_uploader(config, "cl1-dc1", "node0")

    assert uploader.object_key_to_remote_reference("objA").remote_path == "backups/cl1-dc1/node0/objA"
    assert uploader.task_description_remote_reference("t1").remote_path == "backups/cl1-dc1/tasks/t1"
