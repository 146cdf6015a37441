"""Data shards: fixed-size metadata, a bounded payload and a SHA-256 trailer."""

from __future__ import annotations

import hashlib
import hmac
import logging
import struct
import time
from dataclasses import dataclass

METADATA_SIZE = 16
INTEGRITY_SIZE = 32
MAX_PAYLOAD_SIZE = 240
TOTAL_SHARD_SIZE = METADATA_SIZE + MAX_PAYLOAD_SIZE + INTEGRITY_SIZE

_RESERVED_SIZE = 6
_METADATA_STRUCT = struct.Struct("<qH6s")

logger = logging.getLogger(__name__)


class ShardError(ValueError):
    """Raised when a shard cannot be built, encoded or decoded."""


@dataclass(frozen=True)
class Metadata:
    """Shard header: creation time in nanoseconds and the payload length."""

    timestamp: int
    payload_len: int
    reserved: bytes = bytes(_RESERVED_SIZE)

    def to_bytes(self) -> bytes:
        """Encode the header as 16 little-endian bytes."""
        if len(self.reserved) != _RESERVED_SIZE:
            raise ShardError(
                f"reserved field must be {_RESERVED_SIZE} bytes, got {len(self.reserved)}"
            )
        try:
            return _METADATA_STRUCT.pack(self.timestamp, self.payload_len, bytes(self.reserved))
        except struct.error as exc:
            raise ShardError(f"cannot encode metadata: {exc}") from exc


def parse_metadata(data: bytes) -> Metadata:
    """Decode a 16-byte shard header."""
    if len(data) != METADATA_SIZE:
        raise ShardError(
            f"metadata must be exactly {METADATA_SIZE} bytes, got {len(data)}"
        )
    timestamp, payload_len, reserved = _METADATA_STRUCT.unpack(bytes(data))
    return Metadata(timestamp=timestamp, payload_len=payload_len, reserved=reserved)


@dataclass(frozen=True)
class DataShard:
    """A unit of storage: header plus payload."""

    meta: Metadata
    payload: bytes

    def checksum(self) -> bytes:
        """SHA-256 over the encoded header followed by the payload."""
        return hashlib.sha256(self.meta.to_bytes() + self.payload).digest()

    def to_bytes(self) -> bytes:
        """Encode header, payload and checksum."""
        return self.meta.to_bytes() + self.payload + self.checksum()


def new_data_shard(payload: bytes) -> DataShard:
    """Build a shard for ``payload`` stamped with the current time."""
    payload = bytes(payload)
    if len(payload) > MAX_PAYLOAD_SIZE:
        raise ShardError("payload size exceeds maximum limit")
    meta = Metadata(timestamp=time.time_ns(), payload_len=len(payload))
    return DataShard(meta=meta, payload=payload)


def parse_shard(data: bytes) -> DataShard:
    """Decode an encoded shard and verify its checksum."""
    data = bytes(data)
    if len(data) < METADATA_SIZE + INTEGRITY_SIZE:
        raise ShardError("data too short to be a valid shard (missing metadata/checksum)")

    meta = parse_metadata(data[:METADATA_SIZE])
    payload_len = meta.payload_len
    if payload_len > MAX_PAYLOAD_SIZE:
        raise ShardError(f"invalid payload length in metadata: {payload_len}")

    remaining = len(data) - METADATA_SIZE
    if remaining < payload_len + INTEGRITY_SIZE:
        raise ShardError(
            f"not enough data for payload ({payload_len}) and checksum "
            f"({INTEGRITY_SIZE}), remaining: {remaining}"
        )

    payload_end = METADATA_SIZE + payload_len
    checksum_end = payload_end + INTEGRITY_SIZE
    shard = DataShard(meta=meta, payload=data[METADATA_SIZE:payload_end])
    provided = data[payload_end:checksum_end]
    if not hmac.compare_digest(provided, shard.checksum()):
        raise ShardError("checksum verification failed")

    extra = len(data) - checksum_end
    if extra > 0:
        logger.warning("%d extra bytes after shard data", extra)
    return shard