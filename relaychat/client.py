import asyncio
import json
import sys
from typing import Any, Dict, Optional

from websockets.asyncio.client import connect

from . import crypto
from . import messages as m
from .framing import decode_envelope, encode_envelope

"""
client.py: the client half of the protocol.

ChatClient is transport-agnostic: it holds the client's P-256 key pair,
turns the server's public key into the shared AES key and builds the
envelopes a real client sends. run_client() wires it to a WebSocket and a
terminal so you can chat against a running relay.
"""


class ChatClient:
    """Client-side key agreement and chat sealing."""
    def __init__(self, appended_tag: bool = False) -> None:
        self.private_key, self.public_key = crypto.generate_local_keypair()
        self.appended_tag = appended_tag
        self.key: Optional[bytes] = None

    def accept_server_key(self, frame: Dict[str, Any]) -> Dict[str, Any]:
        """
        Take a server-public-key record, derive the shared key, and return the
        client-public-key record to send back.
        """
        self.key = crypto.derive_shared_key(self.private_key, frame["key"])
        return self.public_key_envelope()

    def public_key_envelope(self) -> Dict[str, Any]:
        return {"type": m.CLIENT_PUBLIC_KEY, "key": crypto.export_public_key(self.public_key)}

    def username_envelope(self, username: Optional[str]) -> Dict[str, Any]:
        return {"type": m.SET_USERNAME, "username": username}

    def typing_envelope(self, is_typing: bool) -> Dict[str, Any]:
        return {"type": m.TYPING, "isTyping": is_typing}

    def chat_envelope(self, text: str, appended: Optional[bool] = None) -> Dict[str, Any]:
        """
        Encrypt `text` under the shared key with a fresh nonce.

        With appended=True the tag rides at the end of `data`; otherwise it
        goes out in its own `tag` field.
        """
        if self.key is None:
            raise RuntimeError("no shared key yet; call accept_server_key() first")
        appended = self.appended_tag if appended is None else appended
        if appended:
            nonce, blob = crypto.seal_combined(self.key, text.encode("utf-8"))
            return {"type": m.CHAT, "iv": crypto.b64_encode(nonce), "data": crypto.b64_encode(blob)}
        nonce, ct, tag = crypto.seal_detached(self.key, text.encode("utf-8"))
        return {
            "type": m.CHAT,
            "iv": crypto.b64_encode(nonce),
            "data": crypto.b64_encode(ct),
            "tag": crypto.b64_encode(tag),
        }


def describe(frame: Dict[str, Any]) -> str:
    """One-line summary of a server record for the terminal."""
    mt = frame.get("type")
    if mt == m.CHAT_MESSAGE:
        sender = frame.get("sender") or {}
        return f"[{frame.get('timestamp')}] {sender.get('username')}: {frame.get('message')}"
    if mt == m.USER_JOINED:
        return f"* {frame['user'].get('username')} joined"
    if mt == m.USER_LEFT:
        return f"* {frame.get('username')} left"
    if mt == m.USER_TYPING:
        verb = "is typing" if frame.get("isTyping") else "stopped typing"
        return f"* {frame.get('username') or frame.get('userId')} {verb}"
    if mt == m.USER_LIST:
        names = ", ".join(str(u.get("username")) for u in frame.get("users", []))
        return f"* online: {names or '(nobody)'}"
    # For anything we don't special-case, dump the raw JSON.
    return json.dumps(frame)


async def run_client(url: str, username: Optional[str], appended_tag: bool = False) -> None:
    """
    Connect, finish the handshake, then pump stdin lines out as chat and print
    whatever the relay sends us. Ctrl-D quits.
    """
    client = ChatClient(appended_tag=appended_tag)
    loop = asyncio.get_running_loop()
    async with connect(url) as ws:
        hello = decode_envelope(await ws.recv())
        if hello.get("type") != m.SERVER_PUBLIC_KEY:
            raise SystemExit(f"expected {m.SERVER_PUBLIC_KEY}, got {hello.get('type')!r}")
        await ws.send(encode_envelope(client.accept_server_key(hello)))
        await ws.send(encode_envelope(client.username_envelope(username)))
        print(f"Connected to {url}; type a message and press enter.")

        async def printer() -> None:
            async for raw in ws:
                print(describe(decode_envelope(raw)))

        reader = asyncio.create_task(printer())
        try:
            while True:
                line = await loop.run_in_executor(None, sys.stdin.readline)
                if not line:
                    break
                text = line.rstrip("\n")
                if text:
                    await ws.send(encode_envelope(client.chat_envelope(text)))
        finally:
            reader.cancel()
