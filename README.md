# dqmp

Storage for a node that keeps data as integrity-checked shards, an HTTP API
that serves it, a Python client for that API and a command-line tool,
`dqmpctl`.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

- `dqmp.shard`: the binary shard format. A shard is 16 bytes of metadata
  (little-endian nanosecond timestamp, payload length, 6 reserved bytes), a
  payload of at most 240 bytes (`MAX_PAYLOAD_SIZE`) and a SHA-256 checksum
  over metadata and payload. `new_data_shard`, `parse_shard`,
  `parse_metadata`, `DataShard.to_bytes` and `Metadata.to_bytes` build, read
  and write shards. `ShardError` (a `ValueError`) is raised for an oversized
  payload, truncated data or a checksum mismatch.
- `dqmp.filemeta`: `FileMetadata` describes a file split into shards and
  serialises to JSON with `to_json`; `parse_file_metadata` reads it back.
  `generate_shard_key` derives a content-based key (`dqmp_shard_` followed by
  base32 of the first 16 bytes of the SHA-256 digest) and `get_metadata_key`
  gives the key under which a file's metadata is kept (`_metadata_/<path>`).
- `dqmp.config`: `load(config_path)` starts from built-in defaults, reads a
  YAML or JSON file (default `config/default.yaml`; a missing file is
  ignored), then applies `DQMP_*` environment variables such as
  `DQMP_NETWORK_LISTEN`, and returns a `Config`. When the data directory and
  identity path are still the defaults, the network listen port is appended
  to them. `parse_duration` reads durations like `1m` or `2h45m`;
  `add_config_flag` adds `-c/--config` to an `argparse` parser. Errors are
  raised as `ConfigError`.
- `dqmp.storage`: `DataManager(data_dir)` is the local key-value store, an
  SQLite file `dqmp_data.db` in `data_dir`. It has `put`, `get`, `delete`,
  `list_keys` and `close`, and works as a context manager. `get` raises
  `NotFoundError` for a missing key and `CorruptDataError` for a value that
  fails its checksum; `delete` of a missing key is not an error.
- `dqmp.files`: whole files on top of the store. `upload_file` splits a
  binary stream into 240-byte shards and stores them with their metadata,
  returning an `UploadResult`; `load_file_metadata`, `iter_file_chunks`,
  `list_files` and `delete_file` read, list and remove files.
  `delete_file` raises `PartialDeleteError` when some shards could not be
  removed.
- `dqmp.api`: `ApiServer`, the HTTP API, and `create_server`, which returns
  `None` when `config.enabled` is false. Routes: `GET /status`, `GET /peers`,
  `GET|PUT|DELETE /data/{key}`, `GET /data/` (list keys),
  `GET /energy/status`, `POST /files/upload?path=...`,
  `GET /files/download?path=...`, `GET /files/list` and
  `DELETE /files/delete?path=...`. `dispatch(method, target, body)` handles a
  request in-process and returns a `Response`; `start`, `stop` and
  `server_address` run it as a threaded HTTP server.
- `dqmp.client`: `ApiClient(target)` calls that API (`status`,
  `energy_status`, `peers`, `get_data`, `put_data`, `delete_data`,
  `list_keys`, `upload_file`, `download_file`) and raises `ApiError` on
  failures and unexpected status codes.
- `dqmp.ctl`: the `dqmpctl` command.

## Using the store from Python

```python
from dqmp.storage import DataManager

with DataManager("./node_data") as store:
    store.put("greeting", b"hello")
    print(store.get("greeting"))
    print(store.list_keys())
```

## Serving the API

```python
from datetime import datetime, timezone

from dqmp.api import create_server
from dqmp.config import load
from dqmp.storage import DataManager

cfg = load()
store = DataManager(cfg.data.directory)
server = create_server(cfg.api, None, store, None, None,
                       datetime.now(timezone.utc), "0.1.0")
server.start()          # listens on cfg.api.listen, ":8002" by default
...
server.stop()
store.close()
```

The other arguments are objects supplied by the caller:

- a peer manager with `get_all_peers()`, returning objects with `id`,
  `state`, `dqmp_addr`, `multiaddrs`, `eco_score`, `last_seen` and
  `last_error`; with `None`, `/peers` is an empty list;
- an energy watcher with `get_current_status()`; with `None`,
  `/energy/status` answers 503;
- a `NodeReplicator` with `replicate_data(key, value)`, called in a
  background thread after each successful `PUT /data/{key}`.

`start_time` must be a timezone-aware `datetime`.

## The command line

`dqmpctl` talks to a node's API; point it at a node with `--target`
(default `http://127.0.0.1:8080`). It exits with status 1 on errors.

```
dqmpctl --target http://127.0.0.1:8002 status
dqmpctl peers
dqmpctl energy status
dqmpctl data put greeting hello
dqmpctl data put config --input settings.json
dqmpctl data get greeting
dqmpctl data get greeting --output greeting.txt
dqmpctl data list
dqmpctl data delete greeting
dqmpctl file upload report.pdf docs/report.pdf
dqmpctl file download docs/report.pdf copy.pdf
```

Single values stored with `data put` are limited to 240 bytes; larger
content goes through `file upload`, which the node splits into shards.

## What this package does not do

- There is no command that starts a node; a server is run from Python as
  shown above.
- There is no peer discovery, network transport or replication between
  nodes, and no energy monitoring: peers, energy status and replication come
  only from the objects passed to `create_server`.
- `dqmpctl` has no command for pinging a node, and no commands for listing or
  deleting files; use the `/files/list` and `/files/delete` endpoints or
  `dqmp.files` for that.