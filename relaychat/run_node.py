import argparse
import asyncio
import logging
from typing import List, Optional

from .client import run_client
from .config import TAG_MODES, TRANSPORTS, RelayConfig
from .errors import ConfigError
from .node import RelayServer

"""
run_node.py: single entry point for the relay and the terminal client.

- Server: the relay itself (WebSocket by default, or length-prefixed TCP)
- Client: an interactive terminal chat against a WebSocket relay
"""

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Parse modes and flags. Server flags left unset fall back to RELAY_* env vars.

    Quick examples:
      Server:   python -m relaychat.run_node --mode server --port 8080
      TCP:      python -m relaychat.run_node --mode server --transport tcp --port 9000
      Client:   python -m relaychat.run_node --mode client --url ws://127.0.0.1:8080 --name alice
    """
    p = argparse.ArgumentParser(prog="relaychat")
    p.add_argument("--mode", choices=["server", "client"], default="server")
    p.add_argument("--host")
    p.add_argument("--port", type=int)
    p.add_argument("--transport", choices=TRANSPORTS)
    p.add_argument("--tag-mode", choices=TAG_MODES)
    p.add_argument("--handshake-timeout", type=float, help="seconds; 0 disables")
    p.add_argument("--sweep-after", type=float, help="seconds; 0 keeps disconnected sessions")
    p.add_argument("--max-frame", type=int)
    p.add_argument("--log-level")

    # client mode
    p.add_argument("--url", default="ws://127.0.0.1:8080")
    p.add_argument("--name", help="username to announce (random if omitted)")
    p.add_argument("--appended-tag", action="store_true",
                   help="append the GCM tag to the ciphertext instead of sending it separately")
    return p.parse_args(argv)


def build_config(args: argparse.Namespace) -> RelayConfig:
    return RelayConfig.from_env(
        host=args.host,
        port=args.port,
        transport=args.transport,
        tag_mode=args.tag_mode,
        handshake_timeout=args.handshake_timeout,
        sweep_after=args.sweep_after,
        max_frame=args.max_frame,
        log_level=args.log_level,
    )


def main(argv: Optional[List[str]] = None) -> None:
    """Dispatch into the chosen mode; keep top-level code very small."""
    args = parse_args(argv)
    try:
        config = build_config(args)
    except ConfigError as exc:
        raise SystemExit(f"Bad configuration: {exc}")
    logging.basicConfig(level=config.level, format=LOG_FORMAT)

    try:
        if args.mode == "server":
            asyncio.run(RelayServer(config).start())
        else:
            asyncio.run(run_client(args.url, args.name, appended_tag=args.appended_tag))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
