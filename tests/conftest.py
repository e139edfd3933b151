import asyncio
import json

import pytest

from relaychat.client import ChatClient
from relaychat.config import RelayConfig
from relaychat.node import RelayServer


class FakeChannel:
    """In-memory duplex channel: push() feeds the server, `sent` records replies."""

    def __init__(self):
        self.sent = []
        self.inbox = asyncio.Queue()
        self.closed = False

    def push(self, frame):
        if not isinstance(frame, (str, bytes)):
            frame = json.dumps(frame)
        self.inbox.put_nowait(frame)

    async def send(self, text):
        if self.closed:
            raise ConnectionError("channel closed")
        self.sent.append(json.loads(text))

    async def close(self):
        if not self.closed:
            self.closed = True
            self.inbox.put_nowait(None)

    def __aiter__(self):
        return self._frames()

    async def _frames(self):
        while True:
            item = await self.inbox.get()
            try:
                if item is None:
                    return
                yield item
            finally:
                # Only reached once the consumer asks for the next frame,
                # i.e. after it finished handling this one.
                self.inbox.task_done()

    def of_type(self, msg_type):
        return [f for f in self.sent if f.get("type") == msg_type]


class Peer:
    """A connected fake client: its channel, handler task and ChatClient."""

    def __init__(self, channel, task):
        self.channel = channel
        self.task = task
        self.client = ChatClient()

    async def settle(self):
        await asyncio.wait_for(self.channel.inbox.join(), 2)

    async def send(self, frame):
        self.channel.push(frame)
        await self.settle()

    async def handshake(self):
        await self.send(self.client.accept_server_key(self.channel.sent[0]))

    async def join(self, name):
        await self.handshake()
        await self.send(self.client.username_envelope(name))

    async def hang_up(self):
        await self.channel.close()
        await asyncio.wait_for(self.task, 2)


@pytest.fixture
def server():
    return RelayServer(RelayConfig())


@pytest.fixture
def connect(server):
    async def _connect(relay=None):
        relay = relay or server
        channel = FakeChannel()
        task = asyncio.create_task(relay.handle_conn(channel))

        async def greeted():
            while len(channel.sent) < 2:
                await asyncio.sleep(0)

        await asyncio.wait_for(greeted(), 2)
        return Peer(channel, task)

    return _connect
