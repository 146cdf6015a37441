"""HTTP client for a node's REST API."""

from __future__ import annotations

import json
import os
import urllib.error
import urllib.request
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator
from urllib.parse import quote, quote_plus

DEFAULT_TARGET = "http://127.0.0.1:8080"

_STATUS_TIMEOUT = 5.0
_DATA_TIMEOUT = 10.0
_PUT_TIMEOUT = 15.0
_FILE_TIMEOUT = 30 * 60.0
_COPY_BLOCK = 64 * 1024


class ApiError(Exception):
    """Raised when a request fails or the node answers with an unexpected status."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        reason: str = "",
        body: bytes = b"",
    ) -> None:
        self.status = status
        self.reason = reason
        self.body = body
        text = message
        if body:
            text += f"\nresponse: {body.decode('utf-8', errors='replace').strip()}"
        super().__init__(text)


def _status_error(response, body: bytes, hint: str = "") -> ApiError:
    status = _status_of(response)
    reason = str(getattr(response, "reason", "") or "")
    message = f"server responded with status {status} {reason}".rstrip()
    if hint:
        message += f" ({hint})"
    return ApiError(message, status=status, reason=reason, body=body)


def _status_of(response) -> int:
    status = getattr(response, "status", None)
    if status is None:
        status = getattr(response, "code", 0)
    return int(status)


def _read_all(response) -> bytes:
    try:
        return response.read() or b""
    except (OSError, AttributeError, ValueError):
        return b""


class ApiClient:
    """Talks to one node through its HTTP API."""

    def __init__(self, target: str = DEFAULT_TARGET) -> None:
        self.target = target.rstrip("/")

    # --- plumbing ---

    @contextmanager
    def _send(
        self,
        method: str,
        path: str,
        timeout: float,
        data: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Iterator[Any]:
        url = self.target + path
        request = urllib.request.Request(url, data=data, method=method, headers=headers or {})
        try:
            response = urllib.request.urlopen(request, timeout=timeout)
        except urllib.error.HTTPError as exc:
            response = exc
        except (urllib.error.URLError, OSError, ValueError) as exc:
            raise ApiError(f"{method} request to {url} failed: {exc}") from exc
        try:
            yield response
        finally:
            response.close()

    def _get_json(self, path: str, timeout: float) -> Any:
        with self._send("GET", path, timeout) as response:
            body = _read_all(response)
            if _status_of(response) != 200:
                raise _status_error(response, body)
        try:
            return json.loads(body)
        except ValueError as exc:
            raise ApiError(f"cannot decode JSON response: {exc}", status=200, body=body) from exc

    @staticmethod
    def _data_path(key: str) -> str:
        return "/data/" + quote(key, safe="/")

    # --- node information ---

    def status(self) -> dict[str, Any]:
        """General status of the node."""
        result = self._get_json("/status", _STATUS_TIMEOUT)
        if not isinstance(result, dict):
            raise ApiError("status response is not a JSON object", status=200)
        return result

    def energy_status(self) -> dict[str, Any]:
        """Current energy status of the node."""
        result = self._get_json("/energy/status", _STATUS_TIMEOUT)
        if not isinstance(result, dict):
            raise ApiError("energy status response is not a JSON object", status=200)
        return result

    def peers(self) -> list[dict[str, Any]]:
        """Peers known to the node."""
        result = self._get_json("/peers", _DATA_TIMEOUT)
        if result is None:
            return []
        if not isinstance(result, list) or not all(isinstance(p, dict) for p in result):
            raise ApiError("peers response is not a list of objects", status=200)
        return result

    # --- key/value data ---

    def get_data(self, key: str) -> bytes:
        """Value stored under ``key``."""
        with self._send("GET", self._data_path(key), _DATA_TIMEOUT) as response:
            body = _read_all(response)
            status = _status_of(response)
            if status == 404:
                raise ApiError(f"key {key!r} not found on the node", status=404, reason="Not Found")
            if status != 200:
                raise _status_error(response, body)
            return body

    def put_data(self, key: str, payload: bytes | str) -> None:
        """Store ``payload`` under ``key``."""
        data = payload.encode("utf-8") if isinstance(payload, str) else bytes(payload)
        headers = {
            "Content-Type": "application/octet-stream",
            "Content-Length": str(len(data)),
        }
        with self._send("PUT", self._data_path(key), _PUT_TIMEOUT, data, headers) as response:
            body = _read_all(response)
            status = _status_of(response)
            if status != 204:
                hint = "payload probably exceeds the server limit" if status == 413 else ""
                raise _status_error(response, body, hint)

    def delete_data(self, key: str) -> None:
        """Delete ``key``; deleting a missing key succeeds."""
        with self._send("DELETE", self._data_path(key), _DATA_TIMEOUT) as response:
            body = _read_all(response)
            if _status_of(response) != 204:
                raise _status_error(response, body)

    def list_keys(self) -> list[str]:
        """All keys stored on the node."""
        result = self._get_json("/data/", _DATA_TIMEOUT)
        if result is None:
            return []
        if not isinstance(result, list) or not all(isinstance(k, str) for k in result):
            raise ApiError("key list response is not a list of strings", status=200)
        return result

    # --- whole files ---

    def upload_file(self, local_path: str | os.PathLike, destination_path: str) -> str:
        """Upload a local file under ``destination_path``; return the server's reply."""
        path = "/files/upload?path=" + quote_plus(destination_path)
        with open(local_path, "rb") as source:
            size = os.fstat(source.fileno()).st_size
            headers = {
                "Content-Type": "application/octet-stream",
                "Content-Length": str(size),
            }
            with self._send("POST", path, _FILE_TIMEOUT, source, headers) as response:
                body = _read_all(response)
                if _status_of(response) != 201:
                    raise _status_error(response, body)
        return body.decode("utf-8", errors="replace")

    def download_file(self, source_path: str, local_path: str | os.PathLike) -> int:
        """Download ``source_path`` into ``local_path``; return the bytes written."""
        path = "/files/download?path=" + quote_plus(source_path)
        destination = Path(local_path)
        with open(destination, "wb") as out:
            try:
                with self._send("GET", path, _FILE_TIMEOUT) as response:
                    if _status_of(response) != 200:
                        raise _status_error(response, _read_all(response))
                    written = 0
                    while True:
                        try:
                            block = response.read(_COPY_BLOCK)
                        except OSError as exc:
                            raise ApiError(f"error while copying data: {exc}") from exc
                        if not block:
                            break
                        out.write(block)
                        written += len(block)
            except ApiError as exc:
                if exc.status is not None and exc.status != 200:
                    out.close()
                    destination.unlink(missing_ok=True)
                raise
        return written