"""
config.py: deployment settings.

Values come from RELAY_* environment variables; run_node.py lets command-line
flags override them. Everything is checked once at startup and a bad value
raises ConfigError.
"""

import logging
import os
from typing import Any, Mapping, Optional

from .errors import ConfigError
from .framing import MAX_FRAME_SIZE

TRANSPORTS = ("ws", "tcp")
TAG_MODES = ("auto", "separate", "appended")


class RelayConfig:
    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 8080,
        transport: str = "ws",
        tag_mode: str = "auto",
        handshake_timeout: float = 0.0,
        sweep_after: float = 0.0,
        max_frame: int = MAX_FRAME_SIZE,
        log_level: str = "INFO",
    ) -> None:
        self.host = host
        self.port = port
        self.transport = transport
        self.tag_mode = tag_mode
        self.handshake_timeout = handshake_timeout
        self.sweep_after = sweep_after
        self.max_frame = max_frame
        self.log_level = log_level
        self.validate()

    def validate(self) -> None:
        if not 0 <= self.port <= 65535:
            raise ConfigError(f"port out of range: {self.port}")
        if self.transport not in TRANSPORTS:
            raise ConfigError(f"transport must be one of {TRANSPORTS}, got {self.transport!r}")
        if self.tag_mode not in TAG_MODES:
            raise ConfigError(f"tag mode must be one of {TAG_MODES}, got {self.tag_mode!r}")
        if self.handshake_timeout < 0:
            raise ConfigError("handshake timeout can't be negative")
        if self.sweep_after < 0:
            raise ConfigError("sweep interval can't be negative")
        if self.max_frame <= 0:
            raise ConfigError("max frame size must be positive")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ConfigError(f"unknown log level {self.log_level!r}")

    @property
    def level(self) -> int:
        return logging.getLevelName(self.log_level.upper())

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "RelayConfig":
        """
        Build a config from RELAY_* variables, then apply non-None overrides.

        Quick example:
            RELAY_PORT=9000 RELAY_TAG_MODE=appended relaychat --mode server
        """
        env = os.environ if environ is None else environ
        values = {
            "host": env.get("RELAY_HOST", "0.0.0.0"),
            "port": _number(env, "RELAY_PORT", 8080, int),
            "transport": env.get("RELAY_TRANSPORT", "ws").lower(),
            "tag_mode": env.get("RELAY_TAG_MODE", "auto").lower(),
            "handshake_timeout": _number(env, "RELAY_HANDSHAKE_TIMEOUT", 0.0, float),
            "sweep_after": _number(env, "RELAY_SWEEP_AFTER", 0.0, float),
            "max_frame": _number(env, "RELAY_MAX_FRAME", MAX_FRAME_SIZE, int),
            "log_level": env.get("RELAY_LOG_LEVEL", "INFO"),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def _number(env: Mapping[str, str], name: str, default, kind):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return kind(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc
