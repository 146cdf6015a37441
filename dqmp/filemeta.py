"""File metadata records and key helpers for sharded files."""

from __future__ import annotations

import base64
import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

METADATA_KEY_PREFIX = "_metadata_/"
SHARD_KEY_PREFIX = "dqmp_shard_"

_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_TIME_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})$"
)


def _format_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.astimezone()
    text = (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
        f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
    )
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    offset = value.utcoffset() or timedelta(0)
    if not offset:
        return text + "Z"
    sign = "-" if offset < timedelta(0) else "+"
    minutes = abs(int(offset.total_seconds())) // 60
    return f"{text}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def _parse_time(text: str) -> datetime:
    match = _TIME_RE.match(text)
    if not match:
        raise ValueError(f"invalid timestamp: {text!r}")
    year, month, day, hour, minute, second, fraction, zone = match.groups()
    micro = int((fraction or "0")[:6].ljust(6, "0"))
    if zone in ("Z", "z"):
        tz = timezone.utc
    else:
        sign = -1 if zone[0] == "-" else 1
        tz = timezone(sign * timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6])))
    return datetime(
        int(year), int(month), int(day), int(hour), int(minute), int(second), micro, tzinfo=tz
    )


@dataclass
class FileMetadata:
    """Description of a stored file and the ordered keys of its shards."""

    filename: str
    filesize: int
    blocksize: int
    total_shards: int
    shards: list[str] = field(default_factory=list)
    checksum_type: str = "SHA256"
    checksum: str = ""
    upload_time: datetime = _ZERO_TIME

    def to_json(self) -> str:
        """Serialise to the JSON document stored under the metadata key."""
        return json.dumps(
            {
                "filename": self.filename,
                "filesize": self.filesize,
                "blocksize": self.blocksize,
                "total_shards": self.total_shards,
                "shards": list(self.shards),
                "checksum_type": self.checksum_type,
                "checksum": self.checksum,
                "upload_time": _format_time(self.upload_time),
            },
            separators=(",", ":"),
            ensure_ascii=False,
        )


def _field(doc: dict, name: str, kind: type, default):
    value = doc.get(name)
    if value is None:
        return default
    if kind is int and (isinstance(value, bool) or not isinstance(value, int)):
        raise ValueError(f"field {name!r} must be an integer")
    if kind is str and not isinstance(value, str):
        raise ValueError(f"field {name!r} must be a string")
    return value


def parse_file_metadata(text: str | bytes) -> FileMetadata:
    """Parse a JSON metadata document; missing fields take zero values."""
    doc = json.loads(text)
    if not isinstance(doc, dict):
        raise ValueError("file metadata must be a JSON object")

    shards = doc.get("shards")
    if shards is None:
        shards = []
    if not isinstance(shards, list) or not all(isinstance(s, str) for s in shards):
        raise ValueError("field 'shards' must be a list of strings")

    upload_time = doc.get("upload_time")
    if upload_time is None:
        parsed_time = _ZERO_TIME
    elif isinstance(upload_time, str):
        parsed_time = _parse_time(upload_time)
    else:
        raise ValueError("field 'upload_time' must be a string")

    return FileMetadata(
        filename=_field(doc, "filename", str, ""),
        filesize=_field(doc, "filesize", int, 0),
        blocksize=_field(doc, "blocksize", int, 0),
        total_shards=_field(doc, "total_shards", int, 0),
        shards=list(shards),
        checksum_type=_field(doc, "checksum_type", str, ""),
        checksum=_field(doc, "checksum", str, ""),
        upload_time=parsed_time,
    )


def get_metadata_key(file_path: str) -> str:
    """Storage key holding the metadata of ``file_path``."""
    return METADATA_KEY_PREFIX + file_path


def generate_shard_key(data: bytes) -> str:
    """Content-derived shard key: base32 of the first 16 bytes of SHA-256."""
    digest = hashlib.sha256(bytes(data)).digest()[:16]
    return SHARD_KEY_PREFIX + base64.b32encode(digest).decode("ascii").rstrip("=")