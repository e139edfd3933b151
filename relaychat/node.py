import asyncio
import contextlib
import logging
from typing import Any, Optional

from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

from . import crypto
from . import messages as m
from .config import RelayConfig
from .errors import (
    AuthenticationFailure,
    KeyAgreementFailure,
    MalformedEnvelope,
    NotYetKeyed,
    RelayError,
)
from .framing import FrameTooLarge, StreamChannel, decode_envelope
from .registry import Session, SessionRegistry
from .router import PresenceRouter

"""
node.py: the relay server and its per-connection handler.

Lifecycle of one connection:
  connect      -> new Session (Pending), send server-public-key + user-list
  client key   -> ECDH + SHA-256 -> Keyed (first agreement wins)
  set-username -> Named, announce user-joined (once)
  chat         -> decrypt with the session key, fan out chat-message
  typing       -> fan out user-typing, no crypto involved
  close        -> mark disconnected, announce user-left if Named

Each inbound frame is handled to completion, fan-out included, before the
next frame from the same connection is read. Frames from different
connections interleave freely on the event loop.
"""

logger = logging.getLogger(__name__)


class RelayServer:
    """
    Owns the registry and router that every connection shares, and listens
    on either WebSocket or length-prefixed TCP.
    """
    def __init__(self, config: Optional[RelayConfig] = None,
                 registry: Optional[SessionRegistry] = None) -> None:
        self.config = config or RelayConfig()
        self.registry = registry or SessionRegistry()
        self.router = PresenceRouter(self.registry)

    # -------------------------
    # Listening
    # -------------------------

    async def start(self) -> None:
        """Bind, log the address and serve forever."""
        sweeper = None
        if self.config.sweep_after > 0:
            sweeper = asyncio.create_task(self.sweep_forever())
        try:
            if self.config.transport == "tcp":
                await self._serve_tcp()
            else:
                await self._serve_ws()
        finally:
            if sweeper is not None:
                sweeper.cancel()

    async def _serve_ws(self) -> None:
        async with serve(self.handle_conn, self.config.host, self.config.port,
                         max_size=self.config.max_frame) as server:
            addrs = ", ".join(str(sock.getsockname()) for sock in server.sockets)
            logger.info("Relay listening on ws://%s", addrs)
            await server.serve_forever()

    async def _serve_tcp(self) -> None:
        async def on_stream(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            await self.handle_conn(StreamChannel(reader, writer, self.config.max_frame))

        server = await asyncio.start_server(on_stream, self.config.host, self.config.port)
        addrs = ", ".join(str(sock.getsockname()) for sock in server.sockets or [])
        logger.info("Relay listening on tcp://%s", addrs)
        async with server:
            await server.serve_forever()

    async def sweep_forever(self) -> None:
        """Periodically forget long-disconnected sessions."""
        interval = max(self.config.sweep_after / 2, 1.0)
        while True:
            await asyncio.sleep(interval)
            self.registry.sweep(self.config.sweep_after)

    # -------------------------
    # Per-connection handling
    # -------------------------

    async def handle_conn(self, channel: Any) -> None:
        """Per-connection loop: open a session, feed frames to process_frame()."""
        session = self.registry.create(channel)
        logger.info("Client connected: %s", session.id)
        expiry = None
        if self.config.handshake_timeout > 0:
            expiry = asyncio.create_task(self._expire_handshake(session))
        try:
            await self.router.greet(session)
            async for raw in channel:
                await self.process_frame(session, raw)
        except ConnectionClosed as exc:
            logger.info("Connection %s closed abnormally: %s", session.id, exc)
        except (asyncio.IncompleteReadError, FrameTooLarge, ConnectionError) as exc:
            logger.warning("Transport error on %s: %s", session.id, exc)
        except Exception:
            logger.exception("Unexpected error on %s; dropping connection", session.id)
        finally:
            if expiry is not None:
                expiry.cancel()
            await self.disconnect(session)
            with contextlib.suppress(Exception):
                await channel.close()

    async def disconnect(self, session: Session) -> None:
        """Mark the session gone; announce it only if it ever had a name."""
        if not self.registry.mark_disconnected(session.id):
            return
        logger.info("Client disconnected: %s", session.id)
        if session.is_named:
            await self.router.announce_leave(session)

    async def _expire_handshake(self, session: Session) -> None:
        await asyncio.sleep(self.config.handshake_timeout)
        if session.connected and not session.is_keyed:
            logger.warning("%s never completed key agreement; closing", session.id)
            with contextlib.suppress(Exception):
                await session.channel.close()

    async def process_frame(self, session: Session, raw: Any) -> None:
        """
        Decode one record and route it. Protocol failures are logged and the
        frame is dropped; the connection stays up.
        """
        try:
            frame = decode_envelope(raw)
            msg_type = m.envelope_type(frame)
            if msg_type == m.CLIENT_PUBLIC_KEY:
                await self.on_client_public_key(session, frame)
            elif msg_type == m.SET_USERNAME:
                await self.on_set_username(session, frame)
            elif msg_type == m.CHAT:
                await self.on_chat(session, frame)
            elif msg_type == m.TYPING:
                await self.on_typing(session, frame)
            else:
                raise MalformedEnvelope(f"unknown type {msg_type!r}")
        except NotYetKeyed as exc:
            logger.debug("Dropped frame from %s: %s", session.id, exc)
        except KeyAgreementFailure as exc:
            logger.warning("Key agreement failed for %s: %s", session.id, exc)
        except AuthenticationFailure as exc:
            logger.warning("Dropped chat from %s: %s", session.id, exc)
        except RelayError as exc:
            logger.warning("Malformed envelope from %s: %s", session.id, exc)

    # -------------------------
    # Message handlers
    # -------------------------

    async def on_client_public_key(self, session: Session, frame: dict) -> None:
        peer_key = m.parse_client_public_key(frame)
        if session.is_keyed:
            logger.warning("%s sent a second public key; keeping the first agreement", session.id)
            return
        key = crypto.derive_shared_key(session.private_key, peer_key)
        if self.registry.set_established(session.id, key):
            logger.info("Shared key established for %s", session.id)

    async def on_set_username(self, session: Session, frame: dict) -> None:
        if session.is_named:
            logger.debug("%s is already named %r; ignoring", session.id, session.username)
            return
        name = m.parse_set_username(frame)
        if self.registry.set_username(session.id, name):
            await self.router.announce_join(session)

    async def on_chat(self, session: Session, frame: dict) -> None:
        if not session.is_keyed:
            raise NotYetKeyed("chat before key agreement")
        plaintext = self.decrypt_chat(session.symmetric_key, m.parse_chat(frame))
        await self.router.relay_chat(session, plaintext)

    async def on_typing(self, session: Session, frame: dict) -> None:
        await self.router.relay_typing(session, m.parse_typing(frame))

    def decrypt_chat(self, key: bytes, fields: dict) -> str:
        """Pick the tag convention for this deployment and open the payload."""
        nonce = crypto.b64_decode(fields["iv"])
        data = crypto.b64_decode(fields["data"])
        mode = self.config.tag_mode
        if mode == "separate" and fields["tag"] is None:
            raise MalformedEnvelope("chat has no 'tag' field")
        if mode == "separate" or (mode == "auto" and fields["tag"] is not None):
            plaintext = crypto.open_detached(key, nonce, data, crypto.b64_decode(fields["tag"]))
        else:
            plaintext = crypto.open_combined(key, nonce, data)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedEnvelope("decrypted chat is not UTF-8") from exc
