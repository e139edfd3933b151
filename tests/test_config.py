import logging

import pytest

from relaychat.config import RelayConfig
from relaychat.errors import ConfigError
from relaychat.run_node import build_config, parse_args


def test_defaults():
    cfg = RelayConfig.from_env({})
    assert (cfg.host, cfg.port, cfg.transport, cfg.tag_mode) == ("0.0.0.0", 8080, "ws", "auto")
    assert cfg.handshake_timeout == 0
    assert cfg.level == logging.INFO


def test_env_values_are_parsed():
    cfg = RelayConfig.from_env({
        "RELAY_PORT": "9001",
        "RELAY_TRANSPORT": "TCP",
        "RELAY_TAG_MODE": "appended",
        "RELAY_HANDSHAKE_TIMEOUT": "2.5",
        "RELAY_LOG_LEVEL": "debug",
    })
    assert cfg.port == 9001
    assert cfg.transport == "tcp"
    assert cfg.tag_mode == "appended"
    assert cfg.handshake_timeout == 2.5
    assert cfg.level == logging.DEBUG


def test_overrides_beat_env_but_none_does_not():
    cfg = RelayConfig.from_env({"RELAY_PORT": "9001"}, port=7000, host=None)
    assert cfg.port == 7000
    assert cfg.host == "0.0.0.0"


@pytest.mark.parametrize("env", [
    {"RELAY_PORT": "eighty"},
    {"RELAY_PORT": "70000"},
    {"RELAY_TRANSPORT": "udp"},
    {"RELAY_TAG_MODE": "sideways"},
    {"RELAY_HANDSHAKE_TIMEOUT": "-1"},
    {"RELAY_LOG_LEVEL": "chatty"},
])
def test_bad_values_raise(env):
    with pytest.raises(ConfigError):
        RelayConfig.from_env(env)


def test_cli_flags_feed_config(monkeypatch):
    monkeypatch.delenv("RELAY_PORT", raising=False)
    args = parse_args(["--mode", "server", "--port", "9100", "--tag-mode", "separate"])
    cfg = build_config(args)
    assert cfg.port == 9100
    assert cfg.tag_mode == "separate"
