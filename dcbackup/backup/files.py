# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Node Backup Files - Turn a local snapshot into uploaded remote objects.

This module handles:
- Discovering the snapshot directories of a node
- Building the per-node manifest (object key -> local file)
- Uploading or freshening every file, then the manifest itself

Object keys embed a hash of each SSTable generation, so an SSTable that
was already backed up resolves to the same remote object and is only
freshened, never re-sent.
"""

import asyncio
import re
import zlib
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Sequence

import aiofiles
import structlog

from dcbackup.exceptions import BackupError, UploadError
from dcbackup.storage.reference import MANIFESTS_DIR, TOKENS_DIR
from dcbackup.storage.uploader import FreshenResult, SnapshotUploader

logger = structlog.get_logger()

DATA_DIR = "data"

# Ver. 2.0 = com-recovery_codes-jb-1-Data.db
# Ver. 2.1 = lb-1-big-Data.db
# Ver. 3.0 = mc-1-big-Data.db
SSTABLE_RE = re.compile(
    r"((?:[a-zA-Z0-9][a-zA-Z0-9_-]+[a-zA-Z0-9][a-zA-Z0-9_-]+-)?[a-z]{2}-(\d+)(?:-big)?)-.*"
)
DIGESTS = ("crc32", "adler32", "sha1")
CHECKSUM_RE = re.compile(r"^([a-zA-Z0-9]+)")

# Bytes at the end of a Data.db file hashed when no digest file exists
CHECKSUM_TAIL_BYTES = 10 * 1024 * 1024


class EntryType(str, Enum):
    FILE = "file"
    MANIFEST_FILE = "manifest_file"


@dataclass(frozen=True)
class ManifestEntry:
    """One local file and the object key it is stored under."""

    object_key: str
    local_file: Path
    size: int
    type: EntryType = EntryType.FILE


@dataclass(frozen=True)
class TableSnapshot:
    """Snapshot directory of one table: data/<keyspace>/<table>/snapshots/<tag>."""

    keyspace: str
    table: str
    snapshot_dir: Path

    @classmethod
    def from_snapshot_dir(cls, snapshot_dir: Path) -> "TableSnapshot":
        table_dir = snapshot_dir.parent.parent
        return cls(keyspace=table_dir.parent.name, table=table_dir.name, snapshot_dir=snapshot_dir)


@dataclass(frozen=True)
class UploadSummary:
    uploaded: int
    freshened: int


@dataclass(frozen=True)
class NodeBackupResult:
    """Outcome of one node's contribution to a backup."""

    node_id: str
    tag: str
    manifest_object_key: str
    uploaded: int
    freshened: int


# ============================================================================
# SSTable hashing
# ============================================================================


def list_sstables(table_dir: Path) -> Dict[str, List[Path]]:
    """Group the SSTable components of a directory by generation."""
    groups: Dict[str, List[Path]] = {}
    for path in sorted(table_dir.iterdir()):
        match = SSTABLE_RE.fullmatch(path.name)
        if match and path.is_file():
            groups.setdefault(match.group(2), []).append(path)
    return groups


def calculate_checksum(file_path: Path) -> str:
    """Adler-32 of the last 10 MiB of a file."""
    size = file_path.stat().st_size
    start = max(0, size - CHECKSUM_TAIL_BYTES)
    with open(file_path, "rb") as f:
        f.seek(start)
        return str(zlib.adler32(f.read(size - start)))


def sstable_hash(path: Path) -> str:
    """
    Compute "<generation>-<checksum>" for the SSTable owning `path`.

    The checksum comes from the SSTable's Digest file when one exists.
    Cassandra 2.0 writes none, so the tail of the Data.db file is hashed
    instead.
    """
    match = SSTABLE_RE.fullmatch(path.name)
    if not match:
        raise BackupError(
            f"Can't compute SSTable hash for {path}: doesn't look like an SSTable",
            details={"path": str(path)},
        )
    prefix, generation = match.group(1), match.group(2)

    for digest in DIGESTS:
        digest_path = path.with_name(f"{prefix}-Digest.{digest}")
        if not digest_path.exists():
            continue
        checksum = CHECKSUM_RE.match(digest_path.read_text(encoding="utf-8"))
        if checksum:
            return f"{generation}-{checksum.group(1)}"

    data_path = path.with_name(f"{prefix}-Data.db")
    logger.warning("sstable_digest_missing", data_file=str(data_path))
    try:
        return f"{generation}-{calculate_checksum(data_path)}"
    except OSError as e:
        raise BackupError(
            f"Couldn't generate checksum for {path}",
            details={"path": str(path), "error": str(e)},
        ) from e


def sstable_manifest(snapshot_dir: Path, table_key: PurePosixPath) -> List[ManifestEntry]:
    """Manifest entries for one table snapshot, keyed table_key/<hash>/<file>."""
    entries: List[ManifestEntry] = []
    for components in list_sstables(snapshot_dir).values():
        sstable_key = table_key / sstable_hash(components[0])
        for path in components:
            entries.append(
                ManifestEntry(
                    object_key=str(sstable_key / path.name),
                    local_file=path,
                    size=path.stat().st_size,
                )
            )
    return entries


# ============================================================================
# Manifest generation
# ============================================================================


def find_table_snapshots(data_dir: Path) -> Dict[str, List[TableSnapshot]]:
    """Map snapshot tag -> table snapshots found under the data directory."""
    snapshots: Dict[str, List[TableSnapshot]] = {}
    for snapshot_dir in sorted(data_dir.glob("*/*/snapshots/*")):
        if snapshot_dir.is_dir():
            snapshots.setdefault(snapshot_dir.name, []).append(
                TableSnapshot.from_snapshot_dir(snapshot_dir)
            )
    return snapshots


def generate_manifest(
    data_dir: Path,
    tag: str,
    keyspaces: Sequence[str] = (),
) -> List[ManifestEntry]:
    """
    Build the manifest of every file belonging to snapshot `tag`.

    Raises:
        BackupError: If no snapshot exists for a full backup, or if the
            snapshot holds no Data.db component
    """
    table_snapshots = find_table_snapshots(data_dir).get(tag)
    if keyspaces and table_snapshots:
        table_snapshots = [t for t in table_snapshots if t.keyspace in keyspaces]

    if not table_snapshots:
        if keyspaces:
            logger.warning("snapshot_not_found", tag=tag, keyspaces=list(keyspaces))
            return []
        # A full snapshot always includes the system keyspace tables
        raise BackupError(
            f'No table snapshot directories were found for snapshot "{tag}" of all data',
            details={"data_dir": str(data_dir), "tag": tag},
        )

    manifest: List[ManifestEntry] = []
    for table_snapshot in table_snapshots:
        table_key = PurePosixPath(DATA_DIR) / table_snapshot.keyspace / table_snapshot.table
        manifest.extend(sstable_manifest(table_snapshot.snapshot_dir, table_key))

    if not any(entry.local_file.name.endswith("-Data.db") for entry in manifest):
        raise BackupError(
            "No Data.db SSTables found in manifest, aborting backup",
            details={"tag": tag},
        )

    logger.debug("manifest_generated", tag=tag, files=len(manifest))
    return manifest


async def _write_atomically(path: Path, content: str) -> int:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(path.name + ".tmp")
    data = content.encode("utf-8")
    async with aiofiles.open(temp_path, "wb") as f:
        await f.write(data)
    temp_path.replace(path)
    return len(data)


async def write_manifest_file(
    entries: Iterable[ManifestEntry],
    manifest_dir: Path,
    tag: str,
) -> ManifestEntry:
    """
    Write the node manifest, one "<size> <object_key>" line per entry.

    Returns:
        The manifest's own entry, keyed manifests/<tag>
    """
    lines = "".join(f"{entry.size} {entry.object_key}\n" for entry in entries)
    manifest_path = manifest_dir / tag
    size = await _write_atomically(manifest_path, lines)
    return ManifestEntry(
        object_key=str(PurePosixPath(MANIFESTS_DIR) / tag),
        local_file=manifest_path,
        size=size,
        type=EntryType.MANIFEST_FILE,
    )


async def write_tokens_file(tokens: Sequence[str], tokens_dir: Path, tag: str) -> ManifestEntry:
    """Write the node's token list in cassandra.yaml syntax."""
    file_name = f"{tag}-tokens.yaml"
    content = (
        "# automatically generated by dcbackup.\n"
        "# add the following to cassandra.yaml when restoring to a new cluster.\n"
        f"initial_token: {','.join(tokens)}\n"
    )
    tokens_path = tokens_dir / file_name
    size = await _write_atomically(tokens_path, content)
    return ManifestEntry(
        object_key=str(PurePosixPath(TOKENS_DIR) / file_name),
        local_file=tokens_path,
        size=size,
    )


# ============================================================================
# Upload
# ============================================================================


async def upload_or_freshen(uploader: SnapshotUploader, entry: ManifestEntry) -> FreshenResult:
    """Freshen one remote object, uploading it only when it is missing."""
    ref = uploader.object_key_to_remote_reference(entry.object_key)
    result = await uploader.freshen_remote_object(ref)
    if result is FreshenResult.UPLOAD_REQUIRED:
        async with aiofiles.open(entry.local_file, "rb") as stream:
            await uploader.upload_snapshot_file(entry.size, stream, ref)
    return result


async def upload_or_freshen_files(
    uploader: SnapshotUploader,
    entries: Sequence[ManifestEntry],
    max_concurrent: int = 4,
) -> UploadSummary:
    """
    Upload or freshen every entry, manifest files last.

    Manifest files are only sent once every data file made it, so a
    remote manifest never names an object that failed to upload.

    Raises:
        UploadError: If any data file could not be uploaded
    """
    files = [e for e in entries if e.type == EntryType.FILE]
    manifests = [e for e in entries if e.type == EntryType.MANIFEST_FILE]
    semaphore = asyncio.Semaphore(max_concurrent)

    async def _bounded(entry: ManifestEntry) -> FreshenResult:
        async with semaphore:
            return await upload_or_freshen(uploader, entry)

    results = await asyncio.gather(*(_bounded(e) for e in files), return_exceptions=True)

    failed: Dict[str, str] = {}
    uploaded = 0
    freshened = 0
    for entry, result in zip(files, results):
        if isinstance(result, Exception):
            failed[entry.object_key] = str(result)
            logger.error(
                "snapshot_file_failed",
                node_id=uploader.node_id,
                object_key=entry.object_key,
                error=str(result),
            )
        elif isinstance(result, BaseException):
            raise result
        elif result is FreshenResult.UPLOAD_REQUIRED:
            uploaded += 1
        else:
            freshened += 1

    if failed:
        raise UploadError(
            f"{len(failed)} of {len(files)} snapshot files failed to upload",
            details={"node_id": uploader.node_id, "failed": failed},
        )

    for entry in manifests:
        if await upload_or_freshen(uploader, entry) is FreshenResult.UPLOAD_REQUIRED:
            uploaded += 1
        else:
            freshened += 1

    logger.info(
        "snapshot_files_synced",
        node_id=uploader.node_id,
        uploaded=uploaded,
        freshened=freshened,
    )
    return UploadSummary(uploaded=uploaded, freshened=freshened)


async def backup_node(
    uploader: SnapshotUploader,
    data_dir: Path,
    work_dir: Path,
    tag: str,
    keyspaces: Sequence[str] = (),
    tokens: Sequence[str] | None = None,
    max_concurrent: int = 4,
) -> NodeBackupResult:
    """
    Back up one node's snapshot `tag` through an open uploader.

    Args:
        uploader: Open uploader scoped to this node and backup
        data_dir: The database data directory (data/<keyspace>/<table>/...)
        work_dir: Scratch directory for the manifest and tokens files
        tag: Snapshot tag, also the manifest name
        keyspaces: Restrict the backup to these keyspaces
        tokens: Token list of the node, stored beside the data when given
        max_concurrent: Maximum concurrent transfers

    Returns:
        NodeBackupResult naming the node manifest object key
    """
    # Directory walks and tail checksums block; run them off the event loop
    loop = asyncio.get_running_loop()
    entries = await loop.run_in_executor(None, generate_manifest, data_dir, tag, keyspaces)
    if tokens is not None:
        entries.append(await write_tokens_file(tokens, work_dir / TOKENS_DIR, tag))

    manifest_entry = await write_manifest_file(entries, work_dir / MANIFESTS_DIR, tag)
    summary = await upload_or_freshen_files(uploader, [*entries, manifest_entry], max_concurrent)

    logger.info(
        "node_backup_completed",
        cluster_id=uploader.cluster_id,
        node_id=uploader.node_id,
        tag=tag,
        uploaded=summary.uploaded,
        freshened=summary.freshened,
    )
    return NodeBackupResult(
        node_id=uploader.node_id,
        tag=tag,
        manifest_object_key=manifest_entry.object_key,
        uploaded=summary.uploaded,
        freshened=summary.freshened,
    )
