import asyncio
import json
import struct
from typing import Any, AsyncIterator, Dict, Union

from .errors import MalformedEnvelope

"""
framing.py: envelope text codec plus a length-prefixed TCP channel.

The relay talks to any duplex channel that offers:
- `await send(text)` to push one record to the client,
- `async for raw in channel` to receive records in order,
- `await close()`.

A websockets connection already fits that shape, so it's used as-is.
StreamChannel gives asyncio streams the same shape using simple framing:
- Each message = 4-byte little-endian unsigned length (N) + N bytes of UTF-8 JSON.
- Hard cap (4 MiB by default) so a buggy peer can't make us allocate silly
  amounts of memory.
"""

MAX_FRAME_SIZE = 4 * 1024 * 1024  # 4 MiB hard limit
LENGTH_STRUCT = struct.Struct("<I")  # little-endian unsigned 32-bit length


class FrameTooLarge(ConnectionError):
    """Peer announced a frame over the cap; the stream can't be resynced."""


def encode_envelope(obj: Dict[str, Any]) -> str:
    """Compact JSON; keep non-ASCII as UTF-8 (not \\u escapes)."""
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def decode_envelope(raw: Union[str, bytes]) -> Dict[str, Any]:
    """
    Parse one inbound record (text or binary frame) into a dict.

    Raises:
        MalformedEnvelope: if it isn't UTF-8 JSON or isn't an object.
    """
    try:
        if isinstance(raw, (bytes, bytearray, memoryview)):
            raw = bytes(raw).decode("utf-8")
        obj = json.loads(raw)
    except (UnicodeDecodeError, ValueError, RecursionError) as exc:
        # Keep the message short; no payload echo.
        raise MalformedEnvelope(f"invalid JSON frame: {exc}") from exc
    if not isinstance(obj, dict):
        raise MalformedEnvelope("envelope must be a JSON object")
    return obj


async def read_frame(reader: asyncio.StreamReader, max_size: int = MAX_FRAME_SIZE) -> Union[str, bytes]:
    """
    Read one length-prefixed frame and return its text (or the raw bytes if
    it isn't UTF-8, so decode_envelope can reject it).

    Raises:
        asyncio.IncompleteReadError: if the peer goes away (b'' partial means
            a clean close between frames).
        FrameTooLarge: if the announced length is over `max_size`.
    """
    len_bytes = await reader.readexactly(LENGTH_STRUCT.size)
    (length,) = LENGTH_STRUCT.unpack(len_bytes)

    # Quick sanity check before allocating/reading the body.
    if length > max_size:
        raise FrameTooLarge(f"frame too large: {length} > {max_size}")

    payload = await reader.readexactly(length)
    try:
        return payload.decode("utf-8")
    except UnicodeDecodeError:
        return payload


async def write_frame(writer: asyncio.StreamWriter, text: str, max_size: int = MAX_FRAME_SIZE) -> None:
    """Write one text record with its length prefix."""
    payload = text.encode("utf-8")
    if len(payload) > max_size:
        raise ValueError("Frame exceeds maximum size")
    writer.write(LENGTH_STRUCT.pack(len(payload)))
    writer.write(payload)
    await writer.drain()  # Let the transport flush; important under backpressure.


class StreamChannel:
    """Duplex channel over an asyncio reader/writer pair."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 max_size: int = MAX_FRAME_SIZE) -> None:
        self.reader = reader
        self.writer = writer
        self.max_size = max_size

    @property
    def remote_address(self) -> Any:
        return self.writer.get_extra_info("peername")

    async def send(self, text: str) -> None:
        await write_frame(self.writer, text, self.max_size)

    async def close(self) -> None:
        if self.writer.is_closing():
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    def __aiter__(self) -> AsyncIterator[Union[str, bytes]]:
        return self._frames()

    async def _frames(self) -> AsyncIterator[Union[str, bytes]]:
        while True:
            try:
                frame = await read_frame(self.reader, self.max_size)
            except asyncio.IncompleteReadError as exc:
                if not exc.partial:
                    return  # clean EOF between frames
                raise
            yield frame
