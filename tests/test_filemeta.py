import json
from datetime import datetime, timedelta, timezone

import pytest

from dqmp.filemeta import (
    METADATA_KEY_PREFIX,
    FileMetadata,
    generate_shard_key,
    get_metadata_key,
    parse_file_metadata,
)


def _sample(upload_time=None):
    return FileMetadata(
        filename="report.txt",
        filesize=500,
        blocksize=240,
        total_shards=3,
        shards=["dqmp_shard_A", "dqmp_shard_B", "dqmp_shard_C"],
        checksum_type="SHA256",
        checksum="ab" * 32,
        upload_time=upload_time or datetime(2024, 5, 1, 12, 30, 45, 250000, tzinfo=timezone.utc),
    )


def test_metadata_key_uses_prefix():
    assert get_metadata_key("docs/report.txt") == "_metadata_/docs/report.txt"
    assert get_metadata_key("x").startswith(METADATA_KEY_PREFIX)


def test_shard_key_shape():
    key = generate_shard_key(b"some shard content")
    assert key.startswith("dqmp_shard_")
    suffix = key[len("dqmp_shard_"):]
    assert len(suffix) == 26
    assert set(suffix) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZ234567")


def test_shard_key_is_content_addressed():
    assert generate_shard_key(b"abc") == generate_shard_key(bytearray(b"abc"))
    assert generate_shard_key(b"abc") != generate_shard_key(b"abd")


def test_json_round_trip():
    meta = _sample()
    assert parse_file_metadata(meta.to_json()) == meta


def test_json_round_trip_with_offset():
    tz = timezone(timedelta(hours=-5, minutes=-30))
    meta = _sample(datetime(2023, 1, 2, 3, 4, 5, tzinfo=tz))
    text = meta.to_json()
    assert json.loads(text)["upload_time"].endswith("-05:30")
    assert parse_file_metadata(text) == meta


def test_json_field_names_and_order():
    doc = json.loads(_sample().to_json())
    assert list(doc) == [
        "filename",
        "filesize",
        "blocksize",
        "total_shards",
        "shards",
        "checksum_type",
        "checksum",
        "upload_time",
    ]
    assert doc["upload_time"].endswith("Z")


def test_parse_nanosecond_timestamp():
    text = json.dumps({"filename": "a", "upload_time": "2024-05-01T12:30:45.123456789Z"})
    meta = parse_file_metadata(text)
    assert meta.upload_time == datetime(2024, 5, 1, 12, 30, 45, 123456, tzinfo=timezone.utc)
    assert meta.filename == "a"


def test_missing_fields_take_zero_values():
    meta = parse_file_metadata(b'{"shards": null}')
    assert meta.shards == []
    assert meta.filesize == 0
    assert meta.checksum == ""
    assert meta.upload_time.year == 1


@pytest.mark.parametrize(
    "text",
    ["not json", "[1, 2]", '{"filesize": "big"}', '{"shards": [1]}', '{"upload_time": "yesterday"}'],
)
def test_invalid_documents(text):
    with pytest.raises(ValueError):
        parse_file_metadata(text)