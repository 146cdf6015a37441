"""Command-line control tool for DQMP nodes, talking to their HTTP API."""

from __future__ import annotations

import argparse
import os
import sys
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable

import yaml

from .api import _format_uptime
from .client import DEFAULT_TARGET, ApiClient, ApiError
from .config import parse_duration
from .filemeta import _parse_time

_ENERGY_KEYS = (
    "timestamp",
    "source",
    "battery_level_percent",
    "is_charging",
    "current_consumption_mw",
    "estimated_uptime",
    "eco_score",
)
_CONFIG_NAME = ".dqmpctl"
_CONFIG_EXTENSIONS = ("json", "toml", "yaml", "yml")


class _Parser(argparse.ArgumentParser):
    """Argument parser that reports usage errors with exit status 1."""

    def error(self, message: str):
        self.print_usage(sys.stderr)
        self.exit(1, f"Error: {message}\n")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _format_value(value: Any) -> str:
    """Render a decoded JSON value the way a plain value dump shows it."""
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if value.is_integer() and abs(value) < 1e21:
            return str(int(value))
        return repr(value)
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "[" + " ".join(_format_value(item) for item in value) + "]"
    if isinstance(value, dict):
        items = " ".join(f"{key}:{_format_value(value[key])}" for key in sorted(value))
        return "map[" + items + "]"
    return str(value)


def _local_time(text: Any, fmt: str) -> str | None:
    if not isinstance(text, str):
        return None
    try:
        moment = _parse_time(text)
    except ValueError:
        return None
    local = moment.astimezone()
    return local.strftime(fmt) + " " + (local.tzname() or "")


def format_status(status: dict[str, Any]) -> str:
    """Human-readable rendering of a node status document."""
    lines = ["", "--- Node Status ---"]
    for key, value in status.items():
        shown = _format_value(value)
        if key == "start_time":
            local = _local_time(value, "%Y-%m-%d %H:%M:%S")
            if local is not None:
                shown = local
        lines.append(f"{key:<15}: {shown}")
    return "\n".join(lines)


def _format_energy_value(key: str, value: Any) -> str:
    if key == "timestamp":
        local = _local_time(value, "%H:%M:%S")
        return local if local is not None else _format_value(value)
    if key == "estimated_uptime":
        if _is_number(value):
            return _format_uptime(timedelta(seconds=float(value)))
        if isinstance(value, str):
            try:
                return _format_uptime(parse_duration(value))
            except ValueError:
                return value
        return _format_value(value)
    if not _is_number(value):
        return _format_value(value)
    if key == "battery_level_percent":
        return f"{float(value):.0f}%"
    if key == "current_consumption_mw":
        return f"{float(value):.1f} mW"
    if key == "eco_score":
        return f"{float(value):.2f}"
    return _format_value(value)


def format_energy_status(status: dict[str, Any]) -> str:
    """Human-readable rendering of an energy status document."""
    lines = ["", "--- Energy Status ---"]
    for key in _ENERGY_KEYS:
        if key in status:
            lines.append(f"{key:<25}: {_format_energy_value(key, status[key])}")
    lines.append("---------------------------")
    for key, value in status.items():
        if key not in _ENERGY_KEYS:
            lines.append(f"{key:<25}: {_format_value(value)}")
    return "\n".join(lines)


def format_peers(peers: list[dict[str, Any]]) -> str:
    """Table of known peers."""
    lines = ["", "--- Known Peers ---"]
    if not peers:
        lines.append("(No known peer)")
        return "\n".join(lines)
    lines.append(
        f"{'Peer ID':<58} | {'State':<11} | {'DQMP Address':<21} | {'EcoScore':<9} | "
        "Last Conn. Error"
    )
    lines.append(
        "-" * 60 + "|-" + "-" * 13 + "|-" + "-" * 23 + "|-" + "-" * 11 + "|-" + "-" * 25
    )
    for peer in peers:
        score = peer.get("eco_score") or 0.0
        if not _is_number(score):
            score = 0.0
        lines.append(
            f"{str(peer.get('peer_id') or ''):<58} | "
            f"{str(peer.get('state') or ''):<11} | "
            f"{str(peer.get('dqmp_address') or ''):<21} | "
            f"{float(score):<9.3f} | "
            f"{str(peer.get('last_error') or '')}"
        )
    return "\n".join(lines)


def _write_stdout_bytes(data: bytes) -> None:
    sys.stdout.flush()
    buffer = getattr(sys.stdout, "buffer", None)
    if buffer is None:
        sys.stdout.write(data.decode("utf-8", errors="replace"))
    else:
        buffer.write(data)
        buffer.flush()


def _fail(message: str) -> int:
    print(f"Error: {message}", file=sys.stderr)
    return 1


# --- command handlers ---


def _cmd_status(client: ApiClient, args: argparse.Namespace) -> int:
    print(f"Querying status at {args.target}/status...")
    print(format_status(client.status()))
    return 0


def _cmd_peers(client: ApiClient, args: argparse.Namespace) -> int:
    print(f"Fetching peer list from {args.target}/peers...")
    print(format_peers(client.peers()))
    return 0


def _cmd_energy_status(client: ApiClient, args: argparse.Namespace) -> int:
    print(f"Querying energy status at {args.target}/energy/status...")
    print(format_energy_status(client.energy_status()))
    return 0


def _cmd_data_get(client: ApiClient, args: argparse.Namespace) -> int:
    key = args.key
    print(f"Fetching key '{key}' from {args.target}/data/{key}...")
    value = client.get_data(key)
    if args.output:
        try:
            with open(args.output, "wb") as out:
                print(f"Writing value to '{args.output}'...")
                out.write(value)
        except OSError as exc:
            return _fail(f"cannot write output file '{args.output}': {exc}")
    else:
        print("\n--- Value ---")
        _write_stdout_bytes(value)
        print("\n--------------")
    print(f"Success: {len(value)} bytes retrieved.")
    return 0


def _cmd_data_put(client: ApiClient, args: argparse.Namespace) -> int:
    key = args.key
    if args.value is not None:
        payload = args.value.encode("utf-8")
    elif args.input:
        try:
            payload = Path(args.input).read_bytes()
        except OSError as exc:
            return _fail(f"cannot open input file '{args.input}': {exc}")
    else:
        return _fail("you must provide a value as an argument or use --input <file>.")
    print(f"Storing key '{key}' on {args.target}/data/{key}...")
    client.put_data(key, payload)
    print(f"Success: key '{key}' stored/updated.")
    return 0


def _cmd_data_list(client: ApiClient, args: argparse.Namespace) -> int:
    print(f"Listing keys from {args.target}/data/...")
    keys = client.list_keys()
    print("\n--- Stored Keys ---")
    if not keys:
        print("(No keys found)")
    for key in keys:
        print(key)
    print(f"Total: {len(keys)} key(s).")
    return 0


def _cmd_data_delete(client: ApiClient, args: argparse.Namespace) -> int:
    key = args.key
    print(f"Deleting key '{key}' on {args.target}/data/{key}...")
    client.delete_data(key)
    print(f"Success: key '{key}' deleted (if it existed).")
    return 0


def _cmd_file_upload(client: ApiClient, args: argparse.Namespace) -> int:
    local = Path(args.local_path)
    try:
        size = local.stat().st_size
    except OSError as exc:
        return _fail(f"cannot open local file '{args.local_path}': {exc}")
    print(
        f"Uploading '{local.name}' ({size} bytes) to '{args.destination_path}' "
        f"on {args.target}..."
    )
    try:
        reply = client.upload_file(local, args.destination_path)
    except OSError as exc:
        return _fail(f"cannot open local file '{args.local_path}': {exc}")
    print(f"Success: file uploaded.\nServer response: {reply}")
    return 0


def _cmd_file_download(client: ApiClient, args: argparse.Namespace) -> int:
    print(
        f"Downloading '{args.source_path}' from {args.target} to '{args.local_path}'..."
    )
    try:
        written = client.download_file(args.source_path, args.local_path)
    except OSError as exc:
        return _fail(f"cannot write local file '{args.local_path}': {exc}")
    print(f"Success: download finished. {written} bytes written to '{args.local_path}'.")
    return 0


# --- parser ---


def _group(subparsers, name: str, help_text: str, description: str, common):
    parser = subparsers.add_parser(
        name, help=help_text, description=description, parents=[common]
    )
    parser.set_defaults(handler=None, help_parser=parser)
    return parser


def _command(subparsers, name: str, help_text: str, description: str, common,
             handler: Callable[[ApiClient, argparse.Namespace], int]):
    parser = subparsers.add_parser(
        name, help=help_text, description=description, parents=[common]
    )
    parser.set_defaults(handler=handler)
    return parser


def build_parser() -> argparse.ArgumentParser:
    """Build the dqmpctl argument parser with all its subcommands."""
    parser = _Parser(
        prog="dqmpctl",
        description="Send control commands to DQMP nodes, fetch information "
        "and manage a DQMP network.",
    )
    parser.add_argument(
        "-t",
        "--target",
        default=DEFAULT_TARGET,
        help="REST API address of the target node (e.g. http://host:port)",
    )
    parser.set_defaults(handler=None, help_parser=parser)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-t", "--target", default=argparse.SUPPRESS, help=argparse.SUPPRESS)

    commands = parser.add_subparsers(title="commands", metavar="<command>")

    _command(
        commands, "status", "Show the general status of a node",
        "Query the /status endpoint of the target node.", common, _cmd_status,
    )
    _command(
        commands, "peers", "List the peers known to a node",
        "Query the /peers endpoint of the target node.", common, _cmd_peers,
    )

    energy = _group(
        commands, "energy", "Energy management commands",
        "Query the energy aspects of a DQMP node.", common,
    )
    energy_commands = energy.add_subparsers(title="commands", metavar="<command>")
    _command(
        energy_commands, "status", "Show the current energy status of the node",
        "Query the /energy/status endpoint of the target node.", common,
        _cmd_energy_status,
    )

    data = _group(
        commands, "data", "Work with data stored on a node",
        "Get, put, list or delete key/value pairs on the target node.", common,
    )
    data_commands = data.add_subparsers(title="commands", metavar="<command>")
    get = _command(
        data_commands, "get", "Fetch the value stored under a key",
        "GET /data/{key} on the target node.", common, _cmd_data_get,
    )
    get.add_argument("key")
    get.add_argument("-o", "--output", default="", help="File to write the value to (default: stdout)")
    put = _command(
        data_commands, "put", "Store a key/value pair",
        "PUT /data/{key} on the target node; the value comes from the argument "
        "or from --input.", common, _cmd_data_put,
    )
    put.add_argument("key")
    put.add_argument("value", nargs="?", default=None)
    put.add_argument("-i", "--input", default="", help="File holding the value to store")
    _command(
        data_commands, "list", "List the keys stored on a node",
        "GET /data/ on the target node.", common, _cmd_data_list,
    )
    delete = _command(
        data_commands, "delete", "Delete a key/value pair",
        "DELETE /data/{key} on the target node.", common, _cmd_data_delete,
    )
    delete.add_argument("key")

    files = _group(
        commands, "file", "Manage files stored on the DQMP network",
        "Upload or download whole files stored in a distributed way.", common,
    )
    file_commands = files.add_subparsers(title="commands", metavar="<command>")
    upload = _command(
        file_commands, "upload", "Upload a local file to the DQMP network",
        "Send a local file to the target node to be split, stored and replicated "
        "under the destination path.", common, _cmd_file_upload,
    )
    upload.add_argument("local_path")
    upload.add_argument("destination_path")
    download = _command(
        file_commands, "download", "Download a file from the DQMP network",
        "Fetch a file's shards through the target node and reassemble them "
        "into a local file.", common, _cmd_file_download,
    )
    download.add_argument("source_path")
    download.add_argument("local_path")

    return parser


def _find_config_file() -> Path | None:
    try:
        home = Path.home()
    except (RuntimeError, KeyError):
        return None
    candidates = [home / f"{_CONFIG_NAME}.{ext}" for ext in _CONFIG_EXTENSIONS]
    candidates.append(home / _CONFIG_NAME)
    return next((path for path in candidates if path.is_file()), None)


def _report_config_file() -> None:
    path = _find_config_file()
    if path is None:
        return
    try:
        yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, yaml.YAMLError):
        return
    print("Using config file:", os.fspath(path), file=sys.stderr)


def main(argv: list[str] | None = None) -> int:
    """Run dqmpctl; return the process exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)
    _report_config_file()
    if args.handler is None:
        args.help_parser.print_help()
        return 0
    client = ApiClient(args.target)
    try:
        return args.handler(client, args)
    except ApiError as exc:
        return _fail(str(exc))


if __name__ == "__main__":
    sys.exit(main())