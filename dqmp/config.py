"""Node configuration: defaults, a YAML file and DQMP_* environment variables."""

from __future__ import annotations

import argparse
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from fractions import Fraction
from pathlib import Path
from typing import Any, Callable

import yaml

DEFAULT_CONFIG_PATH = "config/default.yaml"
ENV_PREFIX = "DQMP"

_DEFAULT_DATA_DIR = "./dqmp_node_data"
_DEFAULT_IDENTITY_PATH = "dqmp_identity.key"
_SUPPORTED_EXTENSIONS = {".yaml", ".yml", ".json"}

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when the configuration cannot be read or decoded."""


@dataclass
class MultipathConfig:
    enabled: bool = False
    max_paths: int = 1


@dataclass
class DHTConfig:
    bootstrap_nodes: list[str] = field(default_factory=list)


@dataclass
class NetworkConfig:
    listen: str = ":4242"
    multipath: MultipathConfig = field(default_factory=MultipathConfig)
    dht: DHTConfig = field(default_factory=DHTConfig)


@dataclass
class EnergyThresholds:
    critical: int = 5
    warning: int = 20


@dataclass
class EnergyConfig:
    policy: str = "balanced"
    thresholds: EnergyThresholds = field(default_factory=EnergyThresholds)


@dataclass
class LoggingConfig:
    level: str = "info"


@dataclass
class APIConfig:
    listen: str = ":8002"
    enabled: bool = True


@dataclass
class DataConfig:
    directory: str = _DEFAULT_DATA_DIR


@dataclass
class DiscoveryConfig:
    listen_addrs: list[str] = field(default_factory=list)
    bootstrap_peers: list[str] = field(default_factory=list)
    rendezvous: str = ""
    identity_path: str = ""
    discovery_interval: timedelta = timedelta(0)


@dataclass
class Config:
    network: NetworkConfig = field(default_factory=NetworkConfig)
    energy: EnergyConfig = field(default_factory=EnergyConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    api: APIConfig = field(default_factory=APIConfig)
    data: DataConfig = field(default_factory=DataConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)


_DEFAULTS: dict[str, Any] = {
    "network.listen": ":4242",
    "network.multipath.enabled": False,
    "network.multipath.max_paths": 1,
    "energy.policy": "balanced",
    "energy.thresholds.critical": 5,
    "energy.thresholds.warning": 20,
    "logging.level": "info",
    "api.listen": ":8002",
    "api.enabled": True,
    "data.directory": _DEFAULT_DATA_DIR,
    "discovery.listen_addrs": [
        "/ip4/0.0.0.0/tcp/0",
        "/ip4/0.0.0.0/udp/0/quic-v1",
    ],
    "discovery.bootstrap_peers": [
        "/dnsaddr/bootstrap.libp2p.io/p2p/QmcZf59beuWjBeUFzxA43sKyPkTCaxUSYphgcPNMFGkUgu",
        "/ip4/104.131.131.82/tcp/4001/p2p/QmaCpDMGvV2BGHeYERUEnRQAwe3N8SzbUtfsmvsqQLuvuJ",
    ],
    "discovery.rendezvous": "dqmp-network-v1.0",
    "discovery.identity_path": _DEFAULT_IDENTITY_PATH,
    "discovery.discovery_interval": "1m",
}

_DURATION_UNITS = {
    "ns": Fraction(1),
    "us": Fraction(1_000),
    "µs": Fraction(1_000),
    "μs": Fraction(1_000),
    "ms": Fraction(1_000_000),
    "s": Fraction(1_000_000_000),
    "m": Fraction(60_000_000_000),
    "h": Fraction(3_600_000_000_000),
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as "300ms", "1.5h" or "2h45m"."""
    original = text
    sign = 1
    if text[:1] in "+-" and text:
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    if text == "0":
        return timedelta(0)
    if not text:
        raise ValueError(f"invalid duration: {original!r}")
    total = Fraction(0)
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if not match:
            raise ValueError(f"invalid duration: {original!r}")
        total += Fraction(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    return timedelta(microseconds=int(sign * total / 1000))


def _to_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (str, int, float)):
        return str(value)
    raise ConfigError(f"expected a string, got {type(value).__name__}")


def _to_bool(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        if value in ("1", "t", "T", "true", "TRUE", "True"):
            return True
        if value in ("0", "f", "F", "false", "FALSE", "False", ""):
            return False
    raise ConfigError(f"expected a boolean, got {value!r}")


def _to_int(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        if value == "":
            return 0
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"expected an integer, got {value!r}") from exc
    raise ConfigError(f"expected an integer, got {type(value).__name__}")


def _to_str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return value.split(",") if value else []
    if isinstance(value, (list, tuple)):
        return [_to_str(item) for item in value]
    raise ConfigError(f"expected a list of strings, got {type(value).__name__}")


def _to_duration(value: Any) -> timedelta:
    if value is None:
        return timedelta(0)
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ConfigError(f"expected a duration, got {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(microseconds=int(value / 1000))
    if isinstance(value, str):
        try:
            return parse_duration(value)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc
    raise ConfigError(f"expected a duration, got {type(value).__name__}")


_FIELDS: dict[str, Callable[[Any], Any]] = {
    "network.listen": _to_str,
    "network.multipath.enabled": _to_bool,
    "network.multipath.max_paths": _to_int,
    "network.dht.bootstrap_nodes": _to_str_list,
    "energy.policy": _to_str,
    "energy.thresholds.critical": _to_int,
    "energy.thresholds.warning": _to_int,
    "logging.level": _to_str,
    "api.listen": _to_str,
    "api.enabled": _to_bool,
    "data.directory": _to_str,
    "discovery.listen_addrs": _to_str_list,
    "discovery.bootstrap_peers": _to_str_list,
    "discovery.rendezvous": _to_str,
    "discovery.identity_path": _to_str,
    "discovery.discovery_interval": _to_duration,
}


def _flatten(mapping: dict, prefix: str = "") -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in mapping.items():
        dotted = f"{prefix}{str(key).lower()}"
        if isinstance(value, dict):
            flat.update(_flatten(value, dotted + "."))
        else:
            flat[dotted] = value
    return flat


def _read_file(path: Path) -> dict[str, Any]:
    if path.suffix.lower() not in _SUPPORTED_EXTENSIONS:
        raise ConfigError(f"unsupported config type: {path.suffix or '(none)'}")
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}") from exc
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"cannot parse config file {path}: {exc}") from exc
    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ConfigError(f"config file {path} must hold a mapping")
    return _flatten(document)


def _listen_port(listen: str) -> str:
    if ":" in listen:
        parts = listen.split(":")
        if len(parts) == 2 and parts[1]:
            return parts[1]
    return ""


def _build(values: dict[str, Any]) -> Config:
    v = {key: convert(values.get(key)) for key, convert in _FIELDS.items()}
    return Config(
        network=NetworkConfig(
            listen=v["network.listen"],
            multipath=MultipathConfig(
                enabled=v["network.multipath.enabled"],
                max_paths=v["network.multipath.max_paths"],
            ),
            dht=DHTConfig(bootstrap_nodes=v["network.dht.bootstrap_nodes"]),
        ),
        energy=EnergyConfig(
            policy=v["energy.policy"],
            thresholds=EnergyThresholds(
                critical=v["energy.thresholds.critical"],
                warning=v["energy.thresholds.warning"],
            ),
        ),
        logging=LoggingConfig(level=v["logging.level"]),
        api=APIConfig(listen=v["api.listen"], enabled=v["api.enabled"]),
        data=DataConfig(directory=v["data.directory"]),
        discovery=DiscoveryConfig(
            listen_addrs=v["discovery.listen_addrs"],
            bootstrap_peers=v["discovery.bootstrap_peers"],
            rendezvous=v["discovery.rendezvous"],
            identity_path=v["discovery.identity_path"],
            discovery_interval=v["discovery.discovery_interval"],
        ),
    )


def load(config_path: str | os.PathLike | None = None) -> Config:
    """Load configuration from defaults, the file at ``config_path`` and the environment.

    A missing file is ignored; environment variables such as
    ``DQMP_NETWORK_LISTEN`` override both defaults and file values.
    """
    path = Path(config_path) if config_path else Path(DEFAULT_CONFIG_PATH)

    values: dict[str, Any] = dict(_DEFAULTS)
    values.update(_read_file(path))

    for key in list(values):
        env_name = f"{ENV_PREFIX}_{key.replace('.', '_').upper()}"
        env_value = os.environ.get(env_name)
        if env_value:
            values[key] = env_value

    cfg = _build(values)

    port = _listen_port(cfg.network.listen)
    if port:
        if cfg.data.directory == _DEFAULT_DATA_DIR:
            cfg.data.directory = f"{_DEFAULT_DATA_DIR}_{port}"
        if cfg.discovery.identity_path == _DEFAULT_IDENTITY_PATH:
            cfg.discovery.identity_path = f"dqmp_identity_{port}.key"

    if not cfg.api.enabled and cfg.api.listen:
        logger.warning("API is disabled but a listen address is set")
    return cfg


def add_config_flag(parser: argparse.ArgumentParser) -> argparse.Action:
    """Add the ``-c/--config`` option to ``parser``."""
    return parser.add_argument(
        "-c",
        "--config",
        default="",
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_PATH})",
    )