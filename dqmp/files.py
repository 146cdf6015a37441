"""Whole-file storage on top of the shard store: upload, read back, list, delete."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import BinaryIO, Iterator

from .filemeta import (
    METADATA_KEY_PREFIX,
    FileMetadata,
    generate_shard_key,
    get_metadata_key,
    parse_file_metadata,
)
from .shard import MAX_PAYLOAD_SIZE

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadResult:
    """Outcome of a completed upload."""

    path: str
    shards: int
    size: int
    metadata: FileMetadata


class PartialDeleteError(Exception):
    """Raised when the metadata was removed but some shards were not."""

    def __init__(self, path: str, failed_shards: list[str], deleted: int) -> None:
        self.path = path
        self.failed_shards = list(failed_shards)
        self.deleted = deleted
        super().__init__(
            f"partial deletion of {path!r}: {len(self.failed_shards)} shards not deleted"
        )


def _base_name(path: str) -> str:
    if not path:
        return "."
    stripped = path.rstrip("/")
    if not stripped:
        return "/"
    return stripped.rsplit("/", 1)[-1]


def _read_block(stream: BinaryIO, size: int) -> bytes:
    parts: list[bytes] = []
    remaining = size
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            break
        parts.append(chunk)
        remaining -= len(chunk)
    return b"".join(parts)


def upload_file(data_manager, destination_path: str, stream: BinaryIO) -> UploadResult:
    """Split ``stream`` into shards, store them and store the file's metadata."""
    if not destination_path:
        raise ValueError("destination path is required")
    logger.info("upload requested for %r", destination_path)

    hasher = hashlib.sha256()
    shard_keys: list[str] = []
    total = 0
    while True:
        block = _read_block(stream, MAX_PAYLOAD_SIZE)
        if not block:
            break
        hasher.update(block)
        total += len(block)
        shard_key = generate_shard_key(block)
        data_manager.put(shard_key, block)
        shard_keys.append(shard_key)

    metadata = FileMetadata(
        filename=_base_name(destination_path),
        filesize=total,
        blocksize=MAX_PAYLOAD_SIZE,
        total_shards=len(shard_keys),
        shards=shard_keys,
        checksum_type="SHA256",
        checksum=hasher.hexdigest(),
        upload_time=datetime.now(timezone.utc).astimezone(),
    )
    data_manager.put(get_metadata_key(destination_path), metadata.to_json().encode("utf-8"))
    logger.info(
        "upload of %r done: %d shards, %d bytes, checksum %s",
        destination_path,
        len(shard_keys),
        total,
        metadata.checksum,
    )
    return UploadResult(path=destination_path, shards=len(shard_keys), size=total, metadata=metadata)


def load_file_metadata(data_manager, source_path: str) -> FileMetadata:
    """Read and decode the metadata stored for ``source_path``."""
    if not source_path:
        raise ValueError("source path is required")
    raw = data_manager.get(get_metadata_key(source_path))
    return parse_file_metadata(raw)


def iter_file_chunks(data_manager, metadata: FileMetadata) -> Iterator[bytes]:
    """Yield the file's shards in order; a missing shard stops with its error."""
    hasher = hashlib.sha256()
    written = 0
    for index, shard_key in enumerate(metadata.shards, start=1):
        try:
            chunk = data_manager.get(shard_key)
        except Exception:
            logger.error("missing shard %r (part %d) for %r", shard_key, index, metadata.filename)
            raise
        hasher.update(chunk)
        written += len(chunk)
        yield chunk

    digest = hasher.hexdigest()
    if digest != metadata.checksum:
        logger.error(
            "checksum mismatch for %r: expected %s, computed %s",
            metadata.filename,
            metadata.checksum,
            digest,
        )
    if written != metadata.filesize:
        logger.warning(
            "sent %d bytes but expected %d for %r", written, metadata.filesize, metadata.filename
        )


def list_files(data_manager) -> list[str]:
    """Paths of all stored files."""
    return [
        key[len(METADATA_KEY_PREFIX):]
        for key in data_manager.list_keys()
        if key.startswith(METADATA_KEY_PREFIX)
    ]


def delete_file(data_manager, source_path: str) -> int:
    """Delete a file's shards and metadata; return the number of shards deleted."""
    metadata = load_file_metadata(data_manager, source_path)
    logger.info("delete requested for %r", source_path)

    deleted = 0
    failed: list[str] = []
    for shard_key in metadata.shards:
        try:
            data_manager.delete(shard_key)
        except Exception as exc:
            logger.error("failed to delete shard %r of %r: %s", shard_key, source_path, exc)
            failed.append(shard_key)
        else:
            deleted += 1

    data_manager.delete(get_metadata_key(source_path))
    logger.info(
        "delete of %r done: %d/%d shards removed", source_path, deleted, len(metadata.shards)
    )
    if failed:
        raise PartialDeleteError(source_path, failed, deleted)
    return deleted