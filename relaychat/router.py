"""
router.py: presence and chat fan-out.

Turns registry changes and decrypted chat text into notifications for every
other live session. Delivery is best-effort: a session that drops mid fan-out
simply misses that message, and a failed send never stops the loop.
"""

import logging
from typing import Any, Dict, Optional

from . import messages as m
from .framing import encode_envelope
from .registry import Session, SessionRegistry

logger = logging.getLogger(__name__)


class PresenceRouter:
    def __init__(self, registry: SessionRegistry) -> None:
        self.registry = registry

    async def _deliver(self, session: Session, data: str) -> bool:
        try:
            await session.channel.send(data)
            return True
        except Exception as exc:
            logger.debug("Send to %s failed: %s", session.id, exc)
            return False

    async def send(self, session: Session, frame: Dict[str, Any]) -> bool:
        """Push one record to one session. Returns False if the send failed."""
        if not session.connected:
            return False
        async with session.send_lock:
            return await self._deliver(session, encode_envelope(frame))

    async def greet(self, session: Session) -> None:
        """
        Send server-public-key then user-list to a freshly created session.

        Must be awaited right after SessionRegistry.create(): the lock is taken
        and the user list snapshotted before anything else can run, so any
        broadcast aimed at the newcomer queues up behind the greeting and never
        repeats a name already in its user-list.
        """
        async with session.send_lock:
            users = self.registry.named_users()
            await self._deliver(session, encode_envelope(m.server_public_key(session.public_key_b64())))
            await self._deliver(session, encode_envelope(m.user_list(users)))

    async def broadcast(self, frame: Dict[str, Any], exclude: Optional[str] = None) -> int:
        """Write to every live session except `exclude`. Returns how many got it."""
        data = encode_envelope(frame)
        delivered = 0
        for session in self.registry.live_snapshot():
            if session.id == exclude:
                continue
            # Might have gone away while we awaited an earlier recipient.
            if not session.connected:
                continue
            async with session.send_lock:
                if await self._deliver(session, data):
                    delivered += 1
        return delivered

    # -----------------------
    # Presence events
    # -----------------------

    async def announce_join(self, session: Session) -> int:
        logger.info("%s joined as %r", session.id, session.username)
        return await self.broadcast(m.user_joined(session.summary()), exclude=session.id)

    async def announce_leave(self, session: Session) -> int:
        logger.info("%s (%r) left", session.id, session.username)
        return await self.broadcast(m.user_left(session.id, session.username))

    async def relay_typing(self, session: Session, is_typing: bool) -> int:
        frame = m.user_typing(session.id, session.username, is_typing)
        return await self.broadcast(frame, exclude=session.id)

    async def relay_chat(self, session: Session, text: str) -> int:
        return await self.broadcast(m.chat_message(session.summary(), text), exclude=session.id)
