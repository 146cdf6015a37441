"""Local key/value store for data shards, backed by an SQLite file."""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from pathlib import Path

from .shard import ShardError, new_data_shard, parse_shard

DB_FILE_NAME = "dqmp_data.db"
DEFAULT_BUCKET = "dqmp_shards"
MAX_KEY_SIZE = 32768

logger = logging.getLogger(__name__)


class NotFoundError(LookupError):
    """Raised when a key is not present in the store."""


class CorruptDataError(ValueError):
    """Raised when a stored value fails to decode or verify."""


class DataManager:
    """Stores payloads as checksummed shards under string keys."""

    def __init__(self, data_dir: str | os.PathLike = "") -> None:
        directory = Path(data_dir) if str(data_dir) else Path(".")
        try:
            directory.mkdir(mode=0o750, parents=True, exist_ok=True)
        except OSError as exc:
            raise OSError(f"cannot create data directory {str(directory)!r}: {exc}") from exc

        self.db_path = directory / DB_FILE_NAME
        logger.info("initialising local storage at %s", self.db_path)
        existed = self.db_path.exists()
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=1.0, check_same_thread=False)
        except sqlite3.Error as exc:
            raise OSError(f"cannot open database {str(self.db_path)!r}: {exc}") from exc
        try:
            with conn:
                conn.execute(
                    f"CREATE TABLE IF NOT EXISTS {DEFAULT_BUCKET} "
                    "(key BLOB PRIMARY KEY, value BLOB NOT NULL)"
                )
        except sqlite3.Error as exc:
            conn.close()
            raise OSError(f"cannot create bucket {DEFAULT_BUCKET!r}: {exc}") from exc
        if not existed:
            try:
                os.chmod(self.db_path, 0o600)
            except OSError:
                pass
        self._conn: sqlite3.Connection | None = conn
        self._lock = threading.RLock()
        logger.info("local storage ready")

    def __enter__(self) -> DataManager:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._conn is None

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("database not open")
        return self._conn

    def close(self) -> None:
        """Close the underlying database; closing twice is harmless."""
        with self._lock:
            if self._conn is not None:
                logger.info("closing local storage")
                self._conn.close()
                self._conn = None

    def put(self, key: str, payload: bytes) -> None:
        """Store ``payload`` under ``key``, replacing any previous value."""
        raw_key = key.encode("utf-8")
        if not raw_key:
            raise ValueError("key required")
        if len(raw_key) > MAX_KEY_SIZE:
            raise ValueError("key too large")
        shard = new_data_shard(payload)
        encoded = shard.to_bytes()
        with self._lock:
            conn = self._connection()
            try:
                with conn:
                    conn.execute(
                        f"INSERT OR REPLACE INTO {DEFAULT_BUCKET} (key, value) VALUES (?, ?)",
                        (raw_key, encoded),
                    )
            except sqlite3.Error as exc:
                logger.error("failed to store key %r: %s", key, exc)
                raise OSError(f"cannot store key {key!r}: {exc}") from exc
        logger.debug("stored key %r (%d payload bytes)", key, len(shard.payload))

    def get(self, key: str) -> bytes:
        """Return the payload stored under ``key``."""
        with self._lock:
            conn = self._connection()
            try:
                row = conn.execute(
                    f"SELECT value FROM {DEFAULT_BUCKET} WHERE key = ?",
                    (key.encode("utf-8"),),
                ).fetchone()
            except sqlite3.Error as exc:
                logger.error("failed to read key %r: %s", key, exc)
                raise OSError(f"cannot read key {key!r}: {exc}") from exc
        if row is None:
            raise NotFoundError(key)
        try:
            shard = parse_shard(row[0])
        except ShardError as exc:
            logger.error("corrupt data for key %r: %s", key, exc)
            raise CorruptDataError(f"corrupt data for key {key!r}: {exc}") from exc
        logger.debug("read key %r (%d payload bytes)", key, len(shard.payload))
        return shard.payload

    def delete(self, key: str) -> None:
        """Remove ``key``; a missing key is not an error."""
        with self._lock:
            conn = self._connection()
            try:
                with conn:
                    conn.execute(
                        f"DELETE FROM {DEFAULT_BUCKET} WHERE key = ?",
                        (key.encode("utf-8"),),
                    )
            except sqlite3.Error as exc:
                logger.error("failed to delete key %r: %s", key, exc)
                raise OSError(f"cannot delete key {key!r}: {exc}") from exc
        logger.debug("deleted key %r", key)

    def list_keys(self) -> list[str]:
        """All stored keys in byte order."""
        with self._lock:
            conn = self._connection()
            try:
                rows = conn.execute(
                    f"SELECT key FROM {DEFAULT_BUCKET} ORDER BY key"
                ).fetchall()
            except sqlite3.Error as exc:
                logger.error("failed to list keys: %s", exc)
                raise OSError(f"cannot list keys: {exc}") from exc
        keys = [bytes(row[0]).decode("utf-8") for row in rows]
        logger.debug("listed %d keys", len(keys))
        return keys