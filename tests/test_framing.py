import asyncio

import pytest

from relaychat.errors import MalformedEnvelope
from relaychat.framing import (
    LENGTH_STRUCT,
    FrameTooLarge,
    StreamChannel,
    decode_envelope,
    encode_envelope,
    read_frame,
)


def _reader(data: bytes, eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


def _frame(text: str) -> bytes:
    payload = text.encode("utf-8")
    return LENGTH_STRUCT.pack(len(payload)) + payload


def test_encode_is_compact_and_keeps_unicode():
    assert encode_envelope({"a": 1, "b": "é"}) == '{"a":1,"b":"é"}'


def test_decode_accepts_text_and_binary():
    assert decode_envelope('{"type":"x"}') == {"type": "x"}
    assert decode_envelope(b'{"type":"x"}') == {"type": "x"}


@pytest.mark.parametrize("raw", ["nope", "[1]", b"\xff", "42"])
def test_decode_rejects_non_objects(raw):
    with pytest.raises(MalformedEnvelope):
        decode_envelope(raw)


@pytest.mark.asyncio
async def test_read_frame_reads_one_record_at_a_time():
    reader = _reader(_frame('{"type":"a"}') + _frame('{"type":"b"}'))
    assert await read_frame(reader) == '{"type":"a"}'
    assert await read_frame(reader) == '{"type":"b"}'
    with pytest.raises(asyncio.IncompleteReadError):
        await read_frame(reader)


@pytest.mark.asyncio
async def test_read_frame_enforces_cap():
    reader = _reader(LENGTH_STRUCT.pack(1000) + b"x" * 1000)
    with pytest.raises(FrameTooLarge):
        await read_frame(reader, max_size=100)


@pytest.mark.asyncio
async def test_stream_channel_over_tcp():
    received = []
    done = asyncio.Event()

    async def on_stream(reader, writer):
        channel = StreamChannel(reader, writer)
        async for text in channel:
            received.append(text)
            await channel.send(text.upper())
        await channel.close()
        done.set()

    server = await asyncio.start_server(on_stream, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    async with server:
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        client = StreamChannel(reader, writer)
        await client.send('{"type":"ping"}')
        assert await read_frame(reader) == '{"TYPE":"PING"}'
        await client.close()
        await asyncio.wait_for(done.wait(), 2)
    assert received == ['{"type":"ping"}']


def test_decode_rejects_absurd_nesting():
    with pytest.raises(MalformedEnvelope):
        decode_envelope("[" * 100000 + "]" * 100000)


@pytest.mark.asyncio
async def test_stream_channel_send_respects_its_own_cap():
    class Writer:
        def __init__(self):
            self.chunks = []

        def write(self, data):
            self.chunks.append(data)

        async def drain(self):
            pass

    writer = Writer()
    channel = StreamChannel(asyncio.StreamReader(), writer, max_size=16)
    await channel.send('{"type":"x"}')
    with pytest.raises(ValueError):
        await channel.send('{"type":"' + "x" * 32 + '"}')
    assert len(writer.chunks) == 2
