import argparse
import os
from datetime import timedelta

import pytest

from dqmp.config import (
    DEFAULT_CONFIG_PATH,
    Config,
    ConfigError,
    add_config_flag,
    load,
    parse_duration,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in list(os.environ):
        if name.startswith("DQMP_"):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)


def test_defaults_without_file(tmp_path):
    cfg = load(str(tmp_path / "missing.yaml"))
    assert isinstance(cfg, Config)
    assert cfg.network.listen == ":4242"
    assert cfg.api.listen == ":8002"
    assert cfg.api.enabled is True
    assert cfg.energy.policy == "balanced"
    assert cfg.energy.thresholds.critical == 5
    assert cfg.energy.thresholds.warning == 20
    assert cfg.network.multipath.max_paths == 1
    assert cfg.discovery.rendezvous == "dqmp-network-v1.0"
    assert cfg.discovery.discovery_interval == timedelta(minutes=1)
    assert cfg.discovery.listen_addrs == ["/ip4/0.0.0.0/tcp/0", "/ip4/0.0.0.0/udp/0/quic-v1"]
    assert cfg.network.dht.bootstrap_nodes == []


def test_port_derived_paths():
    cfg = load(None)
    assert cfg.data.directory == "./dqmp_node_data_4242"
    assert cfg.discovery.identity_path == "dqmp_identity_4242.key"


def test_default_path_is_read(tmp_path):
    target = tmp_path / DEFAULT_CONFIG_PATH
    target.parent.mkdir(parents=True)
    target.write_text("logging:\n  level: debug\n")
    assert load(None).logging.level == "debug"


def test_file_overrides(tmp_path):
    path = tmp_path / "node.yaml"
    path.write_text(
        "network:\n"
        "  listen: ':5000'\n"
        "  dht:\n"
        "    bootstrap_nodes: [a, b]\n"
        "data:\n"
        "  directory: /var/lib/node\n"
        "discovery:\n"
        "  discovery_interval: 30s\n"
    )
    cfg = load(str(path))
    assert cfg.network.listen == ":5000"
    assert cfg.network.dht.bootstrap_nodes == ["a", "b"]
    assert cfg.data.directory == "/var/lib/node"
    assert cfg.discovery.identity_path == "dqmp_identity_5000.key"
    assert cfg.discovery.discovery_interval == timedelta(seconds=30)
    assert cfg.api.listen == ":8002"


def test_listen_without_port_keeps_defaults(tmp_path):
    path = tmp_path / "node.yml"
    path.write_text("network:\n  listen: localhost\n")
    cfg = load(str(path))
    assert cfg.data.directory == "./dqmp_node_data"
    assert cfg.discovery.identity_path == "dqmp_identity.key"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("DQMP_NETWORK_LISTEN", ":4243")
    monkeypatch.setenv("DQMP_API_ENABLED", "false")
    monkeypatch.setenv("DQMP_ENERGY_THRESHOLDS_CRITICAL", "9")
    monkeypatch.setenv("DQMP_DISCOVERY_LISTEN_ADDRS", "x,y")
    cfg = load(None)
    assert cfg.network.listen == ":4243"
    assert cfg.discovery.identity_path == "dqmp_identity_4243.key"
    assert cfg.api.enabled is False
    assert cfg.energy.thresholds.critical == 9
    assert cfg.discovery.listen_addrs == ["x", "y"]


def test_empty_env_is_ignored(monkeypatch):
    monkeypatch.setenv("DQMP_LOGGING_LEVEL", "")
    assert load(None).logging.level == "info"


def test_invalid_yaml(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("network: [unclosed\n")
    with pytest.raises(ConfigError):
        load(str(path))


def test_invalid_value_type(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("energy:\n  thresholds:\n    critical: lots\n")
    with pytest.raises(ConfigError):
        load(str(path))


def test_unsupported_extension(tmp_path):
    path = tmp_path / "node.ini"
    path.write_text("[network]\n")
    with pytest.raises(ConfigError):
        load(str(path))


@pytest.mark.parametrize(
    "text, expected",
    [
        ("1m", timedelta(minutes=1)),
        ("1h30m", timedelta(hours=1, minutes=30)),
        ("1.5s", timedelta(seconds=1.5)),
        ("-2m", timedelta(minutes=-2)),
        ("300ms", timedelta(milliseconds=300)),
        ("0", timedelta(0)),
    ],
)
def test_parse_duration(text, expected):
    assert parse_duration(text) == expected


@pytest.mark.parametrize("text", ["", "abc", "5", "1x", "m"])
def test_parse_duration_invalid(text):
    with pytest.raises(ValueError):
        parse_duration(text)


def test_add_config_flag():
    parser = argparse.ArgumentParser()
    add_config_flag(parser)
    assert parser.parse_args(["-c", "node.yaml"]).config == "node.yaml"
    assert parser.parse_args(["--config", "other.yaml"]).config == "other.yaml"
    assert parser.parse_args([]).config == ""