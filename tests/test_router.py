import pytest

from relaychat.registry import SessionRegistry
from relaychat.router import PresenceRouter

from .conftest import FakeChannel


class BrokenChannel(FakeChannel):
    async def send(self, text):
        raise ConnectionError("boom")


def _setup(n):
    reg = SessionRegistry()
    sessions = [reg.create(FakeChannel()) for _ in range(n)]
    return reg, PresenceRouter(reg), sessions


@pytest.mark.asyncio
async def test_broadcast_skips_excluded_and_disconnected():
    reg, router, (a, b, c) = _setup(3)
    reg.mark_disconnected(c.id)
    delivered = await router.broadcast({"type": "x"}, exclude=a.id)
    assert delivered == 1
    assert a.channel.sent == []
    assert b.channel.sent == [{"type": "x"}]
    assert c.channel.sent == []


@pytest.mark.asyncio
async def test_broadcast_survives_a_failing_recipient():
    reg = SessionRegistry()
    router = PresenceRouter(reg)
    bad = reg.create(BrokenChannel())
    good = reg.create(FakeChannel())
    assert await router.broadcast({"type": "x"}) == 1
    assert good.channel.sent == [{"type": "x"}]
    assert not await router.send(bad, {"type": "y"})


@pytest.mark.asyncio
async def test_join_excludes_joiner_and_carries_summary():
    reg, router, (a, b) = _setup(2)
    reg.set_username(a.id, "alice")
    await router.announce_join(a)
    assert a.channel.sent == []
    assert b.channel.sent == [{"type": "user-joined",
                               "user": {"id": a.id, "username": "alice", "color": a.color}}]


@pytest.mark.asyncio
async def test_chat_relay_stamps_time_and_excludes_sender():
    reg, router, (a, b) = _setup(2)
    reg.set_username(a.id, "alice")
    await router.relay_chat(a, "hi")
    assert a.channel.sent == []
    (msg,) = b.channel.sent
    assert msg["type"] == "chat-message"
    assert msg["message"] == "hi"
    assert msg["sender"]["username"] == "alice"
    assert msg["timestamp"].endswith("Z")


@pytest.mark.asyncio
async def test_typing_and_leave_payloads():
    reg, router, (a, b) = _setup(2)
    reg.set_username(a.id, "alice")
    await router.relay_typing(a, True)
    reg.mark_disconnected(a.id)
    await router.announce_leave(a)
    assert b.channel.sent == [
        {"type": "user-typing", "userId": a.id, "username": "alice", "isTyping": True},
        {"type": "user-left", "userId": a.id, "username": "alice"},
    ]


@pytest.mark.asyncio
async def test_greet_sends_key_then_named_users():
    reg, router, (a, b) = _setup(2)
    reg.set_username(a.id, "alice")
    await router.greet(b)
    key, users = b.channel.sent
    assert key == {"type": "server-public-key", "key": b.public_key_b64()}
    assert users == {"type": "user-list", "users": [a.summary()]}
