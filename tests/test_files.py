import hashlib
import io

import pytest

from dqmp.filemeta import generate_shard_key, get_metadata_key
from dqmp.files import (
    PartialDeleteError,
    delete_file,
    iter_file_chunks,
    list_files,
    load_file_metadata,
    upload_file,
)
from dqmp.shard import MAX_PAYLOAD_SIZE
from dqmp.storage import DataManager, NotFoundError


@pytest.fixture
def manager(tmp_path):
    with DataManager(tmp_path / "store") as dm:
        yield dm


class _DictStore:
    def __init__(self, failing=()):
        self.items = {}
        self.failing = set(failing)

    def put(self, key, payload):
        self.items[key] = bytes(payload)

    def get(self, key):
        try:
            return self.items[key]
        except KeyError:
            raise NotFoundError(key) from None

    def delete(self, key):
        if key in self.failing:
            raise OSError("cannot delete")
        self.items.pop(key, None)

    def list_keys(self):
        return sorted(self.items)


def _content(size):
    return bytes((i * 7 + 3) % 256 for i in range(size))


def test_upload_and_read_back(manager):
    content = _content(MAX_PAYLOAD_SIZE * 2 + 17)
    result = upload_file(manager, "docs/report.bin", io.BytesIO(content))
    assert result.size == len(content)
    assert result.shards == 3
    assert result.path == "docs/report.bin"

    meta = load_file_metadata(manager, "docs/report.bin")
    assert meta.filename == "report.bin"
    assert meta.filesize == len(content)
    assert meta.blocksize == MAX_PAYLOAD_SIZE
    assert meta.total_shards == len(meta.shards) == result.shards
    assert meta.checksum_type == "SHA256"
    assert meta.checksum == hashlib.sha256(content).hexdigest()
    assert b"".join(iter_file_chunks(manager, meta)) == content


def test_shard_keys_are_content_derived(manager):
    content = _content(MAX_PAYLOAD_SIZE + 5)
    result = upload_file(manager, "f", io.BytesIO(content))
    assert result.metadata.shards == [
        generate_shard_key(content[:MAX_PAYLOAD_SIZE]),
        generate_shard_key(content[MAX_PAYLOAD_SIZE:]),
    ]


def test_upload_empty_file(manager):
    result = upload_file(manager, "empty.txt", io.BytesIO(b""))
    assert result.shards == 0
    meta = load_file_metadata(manager, "empty.txt")
    assert meta.checksum == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    assert list(iter_file_chunks(manager, meta)) == []


def test_upload_short_reads_still_fill_shards(manager):
    class Trickle(io.RawIOBase):
        def __init__(self, data):
            self.data = data

        def readable(self):
            return True

        def read(self, n=-1):
            chunk, self.data = self.data[:3], self.data[3:]
            return chunk

    content = _content(MAX_PAYLOAD_SIZE + 1)
    result = upload_file(manager, "slow", Trickle(content))
    assert result.shards == 2
    assert b"".join(iter_file_chunks(manager, result.metadata)) == content


def test_upload_requires_path(manager):
    with pytest.raises(ValueError):
        upload_file(manager, "", io.BytesIO(b"x"))


def test_load_missing_metadata(manager):
    with pytest.raises(NotFoundError):
        load_file_metadata(manager, "nope")


def test_missing_shard_stops_iteration(manager):
    content = _content(MAX_PAYLOAD_SIZE * 2)
    upload_file(manager, "f", io.BytesIO(content))
    meta = load_file_metadata(manager, "f")
    manager.delete(meta.shards[1])
    chunks = iter_file_chunks(manager, meta)
    assert next(chunks) == content[:MAX_PAYLOAD_SIZE]
    with pytest.raises(NotFoundError):
        next(chunks)


def test_list_files(manager):
    upload_file(manager, "a/one", io.BytesIO(b"1"))
    upload_file(manager, "b/two", io.BytesIO(b"2"))
    manager.put("plain", b"x")
    assert sorted(list_files(manager)) == ["a/one", "b/two"]


def test_delete_file(manager):
    content = _content(MAX_PAYLOAD_SIZE + 1)
    upload_file(manager, "gone", io.BytesIO(content))
    assert delete_file(manager, "gone") == 2
    assert manager.list_keys() == []
    with pytest.raises(NotFoundError):
        load_file_metadata(manager, "gone")


def test_delete_missing_file(manager):
    with pytest.raises(NotFoundError):
        delete_file(manager, "absent")


def test_partial_delete_reports_failed_shards():
    content = _content(MAX_PAYLOAD_SIZE * 2)
    first_key = generate_shard_key(content[:MAX_PAYLOAD_SIZE])
    store = _DictStore(failing={first_key})
    upload_file(store, "p", io.BytesIO(content))
    with pytest.raises(PartialDeleteError) as info:
        delete_file(store, "p")
    assert info.value.failed_shards == [first_key]
    assert info.value.deleted == 1
    assert get_metadata_key("p") not in store.items
    assert first_key in store.items