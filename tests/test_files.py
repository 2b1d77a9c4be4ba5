# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Node Backup Tests - manifest generation and the freshen/upload pipeline.

Uses the snapshot_tree fixture: snapshot "TESTTAG" of ks1/users-1a2b
(two SSTables) and system/local-7ad5 (one SSTable).
"""

import threading
import zlib
from pathlib import Path

import pytest

from dcbackup.backup import files
from dcbackup.backup.files import (
    SSTABLE_RE,
    EntryType,
    ManifestEntry,
    backup_node,
    calculate_checksum,
    find_table_snapshots,
    generate_manifest,
    list_sstables,
    sstable_hash,
    upload_or_freshen_files,
    write_manifest_file,
    write_tokens_file,
)
from dcbackup.exceptions import BackupError, UploadError
from dcbackup.storage import SnapshotUploader, StorageInteractor

from conftest import RecordingBackend, write_file

USERS_DATA_2_HASH = f"2-{zlib.adler32(b'users-data-2')}"


def make_uploader(backend: RecordingBackend) -> SnapshotUploader:
    return SnapshotUploader(StorageInteractor("cl1-dc1", "node0", "test-bucket"), backend, "TESTTAG")


# ============================================================================
# SSTable Hashing Tests
# ============================================================================

@pytest.mark.parametrize(
    "file_name,prefix,generation",
    [
        ("com-recovery_codes-jb-1-Data.db", "com-recovery_codes-jb-1", "1"),
        ("lb-1-big-Data.db", "lb-1-big", "1"),
        ("mc-12-big-TOC.txt", "mc-12-big", "12"),
    ],
)
def test_sstable_name_formats(file_name, prefix, generation):
    """Cassandra 2.0, 2.1 and 3.0 names are all recognised."""
    match = SSTABLE_RE.fullmatch(file_name)

    assert match is not None
    assert match.group(1) == prefix
    assert match.group(2) == generation


def test_list_sstables_groups_by_generation(snapshot_tree: Path):
    """Components are grouped per generation; other files are ignored."""
    snapshot = snapshot_tree / "ks1" / "users-1a2b" / "snapshots" / "TESTTAG"

    groups = list_sstables(snapshot)

    assert set(groups) == {"1", "2"}
    assert [p.name for p in groups["1"]] == [
        "mc-1-big-Data.db",
        "mc-1-big-Digest.crc32",
        "mc-1-big-Index.db",
    ]


def test_sstable_hash_prefers_digest_files(temp_dir: Path):
    """crc32 is read before adler32 and sha1."""
    write_file(temp_dir / "mc-7-big-Data.db", b"data")
    write_file(temp_dir / "mc-7-big-Digest.sha1", "deadbeef  mc-7-big-Data.db")
    write_file(temp_dir / "mc-7-big-Digest.crc32", "1234")

    assert sstable_hash(temp_dir / "mc-7-big-Data.db") == "7-1234"

    (temp_dir / "mc-7-big-Digest.crc32").unlink()
    assert sstable_hash(temp_dir / "mc-7-big-Data.db") == "7-deadbeef"


def test_sstable_hash_falls_back_to_data_checksum(temp_dir: Path):
    """Without a digest file the Data.db tail is hashed."""
    write_file(temp_dir / "jb-3-Data.db", b"old format data")
    write_file(temp_dir / "jb-3-Index.db", b"index")

    expected = f"3-{zlib.adler32(b'old format data')}"
    assert sstable_hash(temp_dir / "jb-3-Index.db") == expected
    assert calculate_checksum(temp_dir / "jb-3-Data.db") == str(zlib.adler32(b"old format data"))


def test_sstable_hash_rejects_other_files(temp_dir: Path):
    """Files that are not SSTable components cannot be hashed."""
    with pytest.raises(BackupError):
        sstable_hash(write_file(temp_dir / "manifest.json", "{}"))


def test_sstable_hash_missing_data_file(temp_dir: Path):
    """No digest and no Data.db leaves nothing to hash."""
    with pytest.raises(BackupError):
        sstable_hash(write_file(temp_dir / "mc-9-big-Index.db", b"index"))


# ============================================================================
# Manifest Generation Tests
# ============================================================================

def test_find_table_snapshots(snapshot_tree: Path):
    """Snapshots are grouped by tag across tables."""
    snapshots = find_table_snapshots(snapshot_tree)

    assert set(snapshots) == {"TESTTAG", "OTHERTAG"}
    assert {(s.keyspace, s.table) for s in snapshots["TESTTAG"]} == {
        ("ks1", "users-1a2b"),
        ("system", "local-7ad5"),
    }


def test_generate_manifest_keys(snapshot_tree: Path):
    """Keys embed keyspace, table and SSTable hash."""
    manifest = generate_manifest(snapshot_tree, "TESTTAG")

    assert {entry.object_key for entry in manifest} == {
        "data/ks1/users-1a2b/1-2204263393/mc-1-big-Data.db",
        "data/ks1/users-1a2b/1-2204263393/mc-1-big-Digest.crc32",
        "data/ks1/users-1a2b/1-2204263393/mc-1-big-Index.db",
        f"data/ks1/users-1a2b/{USERS_DATA_2_HASH}/mc-2-big-Data.db",
        "data/system/local-7ad5/4-99/mc-4-big-Data.db",
        "data/system/local-7ad5/4-99/mc-4-big-Digest.adler32",
    }
    assert all(entry.type is EntryType.FILE for entry in manifest)
    data_entry = next(e for e in manifest if e.local_file.name == "mc-4-big-Data.db")
    assert data_entry.size == len(b"local-data")


def test_generate_manifest_keyspace_filter(snapshot_tree: Path):
    """Only the requested keyspaces are included."""
    manifest = generate_manifest(snapshot_tree, "TESTTAG", keyspaces=["system"])

    assert {entry.object_key.split("/")[1] for entry in manifest} == {"system"}


def test_generate_manifest_missing_snapshot(snapshot_tree: Path):
    """A missing full snapshot is an error; a missing keyspace snapshot is empty."""
    with pytest.raises(BackupError):
        generate_manifest(snapshot_tree, "NOSUCHTAG")

    assert generate_manifest(snapshot_tree, "NOSUCHTAG", keyspaces=["ks1"]) == []


def test_generate_manifest_without_data_files(temp_dir: Path):
    """A snapshot without any Data.db component is refused."""
    snapshot = temp_dir / "data" / "ks1" / "t1" / "snapshots" / "TAG"
    write_file(snapshot / "mc-1-big-Index.db", b"index")
    write_file(snapshot / "mc-1-big-Digest.crc32", "42")

    with pytest.raises(BackupError):
        generate_manifest(temp_dir / "data", "TAG")


@pytest.mark.asyncio
async def test_write_manifest_file(temp_dir: Path):
    """One "<size> <object key>" line per entry."""
    entries = [
        ManifestEntry("data/ks1/t1/1-1/mc-1-big-Data.db", temp_dir / "a", 10),
        ManifestEntry("tokens/TAG-tokens.yaml", temp_dir / "b", 3),
    ]

    manifest_entry = await write_manifest_file(entries, temp_dir / "manifests", "TAG")

    assert manifest_entry.object_key == "manifests/TAG"
    assert manifest_entry.type is EntryType.MANIFEST_FILE
    content = (temp_dir / "manifests" / "TAG").read_text()
    assert content == "10 data/ks1/t1/1-1/mc-1-big-Data.db\n3 tokens/TAG-tokens.yaml\n"
    assert manifest_entry.size == len(content)


@pytest.mark.asyncio
async def test_write_tokens_file(temp_dir: Path):
    """Tokens are written as a cassandra.yaml initial_token line."""
    entry = await write_tokens_file(["-9223372036854775808", "0"], temp_dir / "tokens", "TAG")

    assert entry.object_key == "tokens/TAG-tokens.yaml"
    content = entry.local_file.read_text()
    assert content.endswith("initial_token: -9223372036854775808,0\n")
    assert content.startswith("#")


# ============================================================================
# Upload Pipeline Tests
# ============================================================================

@pytest.mark.asyncio
async def test_first_backup_uploads_everything(snapshot_tree: Path, temp_dir: Path):
    """Every file is probed first, then uploaded; the manifest comes last."""
    backend = RecordingBackend()
    entries = generate_manifest(snapshot_tree, "TESTTAG")
    manifest_entry = await write_manifest_file(entries, temp_dir / "work", "TESTTAG")

    async with make_uploader(backend) as uploader:
        summary = await upload_or_freshen_files(uploader, [manifest_entry, *entries], 2)

    assert summary.uploaded == 7
    assert summary.freshened == 0
    assert backend.paths("write")[-1] == "cl1-dc1/node0/manifests/TESTTAG"
    for path in backend.paths("write"):
        copy_index = backend.calls.index(("copy", path))
        assert copy_index < backend.calls.index(("write", path))


@pytest.mark.asyncio
async def test_second_backup_only_freshens(snapshot_tree: Path, temp_dir: Path):
    """Unchanged SSTables are never re-sent."""
    backend = RecordingBackend()
    entries = generate_manifest(snapshot_tree, "TESTTAG")

    async with make_uploader(backend) as uploader:
        await upload_or_freshen_files(uploader, entries)
    backend.calls.clear()

    async with make_uploader(backend) as uploader:
        summary = await upload_or_freshen_files(uploader, entries)

    assert summary.uploaded == 0
    assert summary.freshened == len(entries)
    assert backend.paths("write") == []


@pytest.mark.asyncio
async def test_failed_file_blocks_manifest(snapshot_tree: Path, temp_dir: Path):
    """A failed data file is reported and the manifest is never uploaded."""
    backend = RecordingBackend()
    failing = "cl1-dc1/node0/data/system/local-7ad5/4-99/mc-4-big-Data.db"
    backend.fail_writes.add(failing)
    entries = generate_manifest(snapshot_tree, "TESTTAG")
    manifest_entry = await write_manifest_file(entries, temp_dir / "work", "TESTTAG")

    async with make_uploader(backend) as uploader:
        with pytest.raises(UploadError) as exc_info:
            await upload_or_freshen_files(uploader, [*entries, manifest_entry])

    assert list(exc_info.value.details["failed"]) == [
        "data/system/local-7ad5/4-99/mc-4-big-Data.db"
    ]
    assert ("test-bucket", "cl1-dc1/node0/manifests/TESTTAG") not in backend.objects
    # the other files still made it
    assert ("test-bucket", "cl1-dc1/node0/data/system/local-7ad5/4-99/mc-4-big-Digest.adler32") in backend.objects


@pytest.mark.asyncio
async def test_backup_node(snapshot_tree: Path, temp_dir: Path):
    """A node backup stores data, tokens and the manifest naming them."""
    backend = RecordingBackend()

    async with make_uploader(backend) as uploader:
        result = await backup_node(
            uploader,
            snapshot_tree,
            temp_dir / "work",
            "TESTTAG",
            tokens=["-100", "100"],
        )

    assert result.node_id == "node0"
    assert result.manifest_object_key == "manifests/TESTTAG"
    assert result.uploaded == 8
    manifest = backend.objects[("test-bucket", "cl1-dc1/node0/manifests/TESTTAG")].decode()
    keys = [line.split(" ", 1)[1] for line in manifest.splitlines()]
    assert "tokens/TESTTAG-tokens.yaml" in keys
    assert f"data/ks1/users-1a2b/{USERS_DATA_2_HASH}/mc-2-big-Data.db" in keys
    assert ("test-bucket", "cl1-dc1/node0/tokens/TESTTAG-tokens.yaml") in backend.objects


@pytest.mark.asyncio
async def test_backup_node_hashes_off_the_event_loop(
    snapshot_tree: Path, temp_dir: Path, monkeypatch
):
    """Snapshot discovery and hashing run in a worker thread."""
    threads = []

    def recording_generate_manifest(*args):
        threads.append(threading.current_thread())
        return generate_manifest(*args)

    monkeypatch.setattr(files, "generate_manifest", recording_generate_manifest)
    backend = RecordingBackend()

    async with make_uploader(backend) as uploader:
        result = await backup_node(uploader, snapshot_tree, temp_dir / "work", "TESTTAG")

    assert threads and threads[0] is not threading.main_thread()
    assert result.manifest_object_key == "manifests/TESTTAG"
