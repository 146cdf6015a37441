"""HTTP API of a node: status, peers, key/value data, energy and whole files."""

from __future__ import annotations

import dataclasses
import enum
import io
import json
import logging
import os
import platform
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Protocol, runtime_checkable
from urllib.parse import parse_qs, quote_plus, unquote, urlsplit

from .config import APIConfig
from .filemeta import _format_time
from .files import (
    PartialDeleteError,
    delete_file,
    iter_file_chunks,
    list_files,
    load_file_metadata,
    upload_file,
)
from .shard import MAX_PAYLOAD_SIZE
from .storage import NotFoundError

logger = logging.getLogger(__name__)

_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_TEXT_PLAIN = "text/plain; charset=utf-8"


@runtime_checkable
class NodeReplicator(Protocol):
    """Something that spreads a freshly stored value to other nodes."""

    def replicate_data(self, key: str, value: bytes) -> None: ...


@dataclass
class Response:
    """An HTTP response produced by the API."""

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""


def _error(status: int, message: str) -> Response:
    return Response(
        status,
        {"Content-Type": _TEXT_PLAIN, "X-Content-Type-Options": "nosniff"},
        (message + "\n").encode("utf-8"),
    )


def _to_jsonable(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return value


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return _format_time(value)
    if isinstance(value, timedelta):
        return (value // timedelta(microseconds=1)) * 1000
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (bytes, bytearray)):
        import base64

        return base64.b64encode(bytes(value)).decode("ascii")
    raise TypeError(f"cannot encode {type(value).__name__} as JSON")


def _json_response(status: int, data: Any) -> Response:
    body = json.dumps(_to_jsonable(data), default=_json_default, ensure_ascii=False)
    return Response(status, {"Content-Type": "application/json"}, (body + "\n").encode("utf-8"))


def _format_uptime(delta: timedelta) -> str:
    micros = delta // timedelta(microseconds=1)
    negative = micros < 0
    seconds, rest = divmod(abs(micros), 1_000_000)
    if rest >= 500_000:
        seconds += 1
    if seconds == 0:
        return "0s"
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        text = f"{hours}h{minutes}m{secs}s"
    elif minutes:
        text = f"{minutes}m{secs}s"
    else:
        text = f"{secs}s"
    return "-" + text if negative else text


def _query_get(query: dict[str, list[str]], name: str) -> str:
    values = query.get(name)
    return values[0] if values else ""


def _split_listen(listen: str) -> tuple[str, int]:
    host, sep, port = listen.rpartition(":")
    if not sep:
        raise ValueError(f"invalid listen address: {listen!r}")
    host = host.strip("[]")
    return host, int(port) if port else 0


class ApiServer:
    """Routes REST requests to the node's storage, peers and energy watcher."""

    def __init__(
        self,
        config: APIConfig,
        peer_manager,
        data_manager,
        energy_watcher,
        replicator: NodeReplicator | None,
        start_time: datetime,
        version: str,
    ) -> None:
        self.config = config
        self.peer_manager = peer_manager
        self.data_manager = data_manager
        self.energy_watcher = energy_watcher
        self.replicator = replicator
        self.start_time = start_time
        self.version = version
        self._httpd: _HTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._routes: dict[str, Callable[[str, dict[str, list[str]], bytes], Response]] = {
            "/status": self._handle_status,
            "/peers": self._handle_peers,
            "/energy/status": self._handle_energy_status,
            "/files/upload": self._handle_file_upload,
            "/files/download": self._handle_file_download,
            "/files/list": self._handle_file_list,
            "/files/delete": self._handle_file_delete,
        }

    # --- routing ---

    def dispatch(self, method: str, target: str, body: bytes = b"") -> Response:
        """Handle one request and return its response."""
        parts = urlsplit(target)
        path = unquote(parts.path) or "/"
        query = parse_qs(parts.query, keep_blank_values=True)
        method = method.upper()
        body = bytes(body or b"")

        route = self._routes.get(path)
        if route is not None:
            return route(method, query, body)
        if path.startswith("/data/"):
            return self._handle_data(method, path[len("/data/"):], body)
        if path == "/data":
            location = "/data/" + (f"?{parts.query}" if parts.query else "")
            return Response(301, {"Location": location, "Content-Type": "text/html; charset=utf-8"})
        return _error(404, "404 page not found")

    # --- lifecycle ---

    def start(self) -> None:
        """Bind the listen address and serve requests in a background thread."""
        if self._httpd is not None:
            return
        address = _split_listen(self.config.listen)
        logger.info("starting HTTP API on %s", self.config.listen)
        self._httpd = _HTTPServer(address, self)
        self._thread = threading.Thread(
            target=self._httpd.serve_forever, name="dqmp-api", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        """Stop serving and release the socket."""
        httpd, thread = self._httpd, self._thread
        if httpd is None:
            return
        logger.info("stopping HTTP API")
        httpd.shutdown()
        httpd.server_close()
        if thread is not None:
            thread.join(timeout)
        self._httpd = None
        self._thread = None
        logger.info("HTTP API stopped")

    def server_address(self) -> tuple[str, int] | None:
        """The bound (host, port), or None when not running."""
        if self._httpd is None:
            return None
        host, port = self._httpd.server_address[:2]
        return str(host), int(port)

    # --- handlers ---

    def _all_peers(self) -> list:
        if self.peer_manager is None:
            return []
        return list(self.peer_manager.get_all_peers())

    def _handle_status(self, method, query, body) -> Response:
        if method != "GET":
            return Response(200)
        status = {
            "version": self.version,
            "start_time": self.start_time,
            "uptime": _format_uptime(datetime.now(timezone.utc) - self.start_time),
            "python_version": platform.python_version(),
            "num_cpu": os.cpu_count() or 1,
            "num_threads": threading.active_count(),
            "peer_count": len(self._all_peers()),
        }
        return _json_response(200, status)

    def _handle_peers(self, method, query, body) -> Response:
        if method != "GET":
            return _error(405, "Method Not Allowed")
        peers = self._all_peers()
        logger.debug("peer manager returned %d peers", len(peers))
        result = []
        for peer in peers:
            if peer is None:
                continue
            peer_id = getattr(peer, "id", "")
            state = getattr(peer, "state", "")
            if isinstance(state, enum.Enum):
                state = state.value
            dqmp_addr = getattr(peer, "dqmp_addr", None)
            last_error = getattr(peer, "last_error", None)
            multiaddrs = [
                str(addr) for addr in (getattr(peer, "multiaddrs", None) or []) if addr is not None
            ]
            entry: dict[str, Any] = {
                "peer_id": str(peer_id) if peer_id else "(unknown)",
                "state": str(state),
            }
            if dqmp_addr is not None and str(dqmp_addr):
                entry["dqmp_address"] = str(dqmp_addr)
            if multiaddrs:
                entry["multiaddrs"] = multiaddrs
            entry["eco_score"] = float(getattr(peer, "eco_score", 0.0))
            entry["last_seen"] = getattr(peer, "last_seen", None) or _ZERO_TIME
            if last_error is not None and str(last_error):
                entry["last_error"] = str(last_error)
            result.append(entry)
        return _json_response(200, result)

    def _handle_data(self, method: str, key: str, body: bytes) -> Response:
        if not key:
            if method == "GET":
                return self._list_keys()
            return _error(400, "Missing key in URL (/data/{key})")
        if method == "GET":
            return self._get_data(key)
        if method == "PUT":
            return self._put_data(key, body)
        if method == "DELETE":
            return self._delete_data(key)
        return _error(405, "Method Not Allowed")

    def _get_data(self, key: str) -> Response:
        try:
            payload = self.data_manager.get(key)
        except NotFoundError:
            return _error(404, "Key not found")
        except Exception as exc:
            logger.error("internal error reading %r: %s", key, exc)
            return _error(500, "Internal server error")
        return Response(200, {"Content-Type": "application/octet-stream"}, payload)

    def _put_data(self, key: str, payload: bytes) -> Response:
        if len(payload) > MAX_PAYLOAD_SIZE:
            return _error(
                413,
                f"Payload size ({len(payload)}) exceeds the limit ({MAX_PAYLOAD_SIZE})",
            )
        try:
            self.data_manager.put(key, payload)
        except Exception as exc:
            logger.error("internal error storing %r: %s", key, exc)
            return _error(500, "Internal server error while storing")
        logger.info("stored %r locally", key)
        if self.replicator is not None:
            threading.Thread(
                target=self.replicator.replicate_data, args=(key, payload), daemon=True
            ).start()
        else:
            logger.warning("no replicator set, replication skipped")
        return Response(204)

    def _delete_data(self, key: str) -> Response:
        try:
            self.data_manager.delete(key)
        except Exception as exc:
            logger.error("internal error deleting %r: %s", key, exc)
            return _error(500, "Internal server error while deleting")
        return Response(204)

    def _list_keys(self) -> Response:
        try:
            keys = self.data_manager.list_keys()
        except Exception as exc:
            logger.error("internal error listing keys: %s", exc)
            return _error(500, "Internal server error")
        return _json_response(200, keys)

    def _handle_energy_status(self, method, query, body) -> Response:
        if method != "GET":
            return _error(405, "Method Not Allowed")
        if self.energy_watcher is None:
            return _error(503, "Energy monitoring service unavailable")
        try:
            status = self.energy_watcher.get_current_status()
        except Exception as exc:
            logger.error("cannot read energy status: %s", exc)
            return _error(500, "Internal server error")
        return _json_response(200, status)

    def _handle_file_upload(self, method, query, body) -> Response:
        if method != "POST":
            return _error(405, "Method Not Allowed")
        path = _query_get(query, "path")
        if not path:
            return _error(400, "Missing 'path' parameter in URL")
        try:
            result = upload_file(self.data_manager, path, io.BytesIO(body))
        except Exception as exc:
            logger.error("upload of %r failed: %s", path, exc)
            return _error(500, "Internal error during upload")
        message = (
            f'{{"message": "Upload successful", "path": {json.dumps(path, ensure_ascii=False)}, '
            f'"shards": {result.shards}, "size": {result.size}}}'
        )
        return Response(
            201,
            {"Location": "/files/download?path=" + quote_plus(path), "Content-Type": _TEXT_PLAIN},
            message.encode("utf-8"),
        )

    def _handle_file_download(self, method, query, body) -> Response:
        if method != "GET":
            return _error(405, "Method Not Allowed")
        path = _query_get(query, "path")
        if not path:
            return _error(400, "Missing 'path' parameter")
        try:
            metadata = load_file_metadata(self.data_manager, path)
        except NotFoundError:
            return _error(404, "File (metadata) not found")
        except ValueError as exc:
            logger.error("bad metadata for %r: %s", path, exc)
            return _error(500, "Internal error: metadata format")
        except Exception as exc:
            logger.error("cannot read metadata for %r: %s", path, exc)
            return _error(500, "Internal error reading metadata")

        chunks: list[bytes] = []
        try:
            for chunk in iter_file_chunks(self.data_manager, metadata):
                chunks.append(chunk)
        except Exception as exc:
            logger.error("download of %r cut short: %s", path, exc)
        headers = {
            "Content-Type": "application/octet-stream",
            "Content-Disposition": f'attachment; filename="{metadata.filename}"',
            "Content-Length": str(metadata.filesize),
        }
        return Response(200, headers, b"".join(chunks))

    def _handle_file_list(self, method, query, body) -> Response:
        if method != "GET":
            return Response(200)
        try:
            paths = list_files(self.data_manager)
        except Exception as exc:
            logger.error("cannot list files: %s", exc)
            return Response(200)
        return _json_response(200, paths)

    def _handle_file_delete(self, method, query, body) -> Response:
        if method != "DELETE":
            return Response(200)
        path = _query_get(query, "path")
        if not path:
            return Response(200)
        try:
            load_file_metadata(self.data_manager, path)
        except Exception as exc:
            logger.error("cannot read metadata of %r for deletion: %s", path, exc)
            return Response(200)
        try:
            delete_file(self.data_manager, path)
        except PartialDeleteError as exc:
            return _error(409, f"Partial deletion, {len(exc.failed_shards)} shards not deleted")
        except Exception as exc:
            logger.error("cannot delete metadata of %r: %s", path, exc)
            return _error(500, "Partial error during deletion (metadata)")
        return Response(204)


class _RequestHandler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"
    timeout = 60

    def _read_body(self) -> bytes:
        if "chunked" in self.headers.get("Transfer-Encoding", "").lower():
            parts: list[bytes] = []
            while True:
                line = self.rfile.readline(65537)
                size = int(line.split(b";", 1)[0].strip() or b"0", 16)
                if size == 0:
                    while self.rfile.readline(65537) not in (b"\r\n", b"\n", b""):
                        pass
                    return b"".join(parts)
                parts.append(self.rfile.read(size))
                self.rfile.readline(65537)
        length = int(self.headers.get("Content-Length") or 0)
        if length < 0:
            raise ValueError("negative content length")
        return self.rfile.read(length) if length else b""

    def _handle(self) -> None:
        try:
            body = self._read_body()
        except (ValueError, OSError):
            self.send_error(400)
            return
        response = self.server.api.dispatch(self.command, self.path, body)
        self.send_response(response.status)
        for name, value in response.headers.items():
            self.send_header(name, value)
        no_body = response.status in (204, 304)
        declared = response.headers.get("Content-Length")
        if declared is None and not no_body:
            self.send_header("Content-Length", str(len(response.body)))
        elif declared is not None and int(declared) != len(response.body):
            self.send_header("Connection", "close")
            self.close_connection = True
        self.end_headers()
        if self.command != "HEAD" and not no_body:
            self.wfile.write(response.body)

    do_GET = do_PUT = do_POST = do_DELETE = do_PATCH = do_HEAD = do_OPTIONS = _handle

    def log_message(self, format: str, *args) -> None:
        logger.debug("%s - %s", self.address_string(), format % args)


class _HTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], api: ApiServer) -> None:
        self.api = api
        super().__init__(address, _RequestHandler)


def create_server(
    config: APIConfig,
    peer_manager,
    data_manager,
    energy_watcher,
    replicator: NodeReplicator | None,
    start_time: datetime,
    version: str,
) -> ApiServer | None:
    """Build the API server, or return None when the API is disabled."""
    if not config.enabled:
        return None
    return ApiServer(
        config, peer_manager, data_manager, energy_watcher, replicator, start_time, version
    )