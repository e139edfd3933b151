"""
registry.py: the single source of truth for who is connected.

One Session per connection. Sessions are created on connect and marked
disconnected (not removed) when the transport closes, so a late leave event
can still be correlated. Anything iterating for broadcast goes through
live_snapshot(), which filters on `connected`.

All mutation happens on the event loop thread; handlers never suspend
half-way through an update, so no lock is needed.
"""

import asyncio
import enum
import logging
import os
import time
import uuid
from typing import Any, Dict, List, Optional, Set

from . import crypto

logger = logging.getLogger(__name__)


class KeyState(enum.Enum):
    PENDING = "pending"
    ESTABLISHED = "established"


def random_color() -> str:
    """Presentation-only color, e.g. '#3fa2c1'."""
    return "#" + os.urandom(3).hex()


class Session:
    """Server-side state for one connection, from handshake to disconnect."""

    def __init__(self, session_id: str, channel: Any) -> None:
        self.id = session_id
        self.channel = channel
        self.color = random_color()
        self.username: Optional[str] = None
        self.connected = True
        self.disconnected_at: Optional[float] = None
        self.private_key, self.public_key = crypto.generate_local_keypair()
        self._symmetric_key: Optional[bytes] = None
        # Held while writing to the channel; keeps the greeting ahead of broadcasts.
        self.send_lock = asyncio.Lock()

    @property
    def key_state(self) -> KeyState:
        if self._symmetric_key is None:
            return KeyState.PENDING
        return KeyState.ESTABLISHED

    @property
    def is_keyed(self) -> bool:
        return self._symmetric_key is not None

    @property
    def is_named(self) -> bool:
        return self.username is not None

    @property
    def symmetric_key(self) -> Optional[bytes]:
        return self._symmetric_key

    def public_key_b64(self) -> str:
        return crypto.export_public_key(self.public_key)

    def summary(self) -> Dict[str, Any]:
        """The public face of a session as it appears in presence events."""
        return {"id": self.id, "username": self.username, "color": self.color}

    def __repr__(self) -> str:
        # No key material in here.
        return (f"Session(id={self.id!r}, username={self.username!r}, "
                f"state={self.key_state.value}, connected={self.connected})")


class SessionRegistry:
    """In-memory map: session id -> Session."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._retired: Set[str] = set()  # ids purged by sweep(); never handed out again

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def new_id(self) -> str:
        while True:
            session_id = str(uuid.uuid4())
            if session_id not in self._sessions and session_id not in self._retired:
                return session_id

    def create(self, channel: Any, session_id: Optional[str] = None) -> Session:
        """Register a fresh Pending, unnamed, connected session."""
        if session_id is None:
            session_id = self.new_id()
        elif session_id in self._sessions or session_id in self._retired:
            raise ValueError(f"session id {session_id!r} already used")
        session = Session(session_id, channel)
        self._sessions[session_id] = session
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def set_established(self, session_id: str, key: bytes) -> bool:
        """
        Record the derived key. First agreement wins.

        Returns True if the key was stored, False if the session already had
        one (the new key is discarded) or doesn't exist.
        """
        session = self._sessions.get(session_id)
        if session is None or session.is_keyed:
            return False
        session._symmetric_key = key
        return True

    def set_username(self, session_id: str, name: str) -> bool:
        """Assign a name once. Returns True only on the unset -> set transition."""
        session = self._sessions.get(session_id)
        if session is None or session.is_named:
            return False
        session.username = name
        return True

    def mark_disconnected(self, session_id: str) -> bool:
        """Flip `connected` off. Returns False if it already was (or is unknown)."""
        session = self._sessions.get(session_id)
        if session is None or not session.connected:
            return False
        session.connected = False
        session.disconnected_at = time.monotonic()
        return True

    def live_snapshot(self) -> List[Session]:
        """Connected sessions, copied out so callers can await while iterating."""
        return [s for s in self._sessions.values() if s.connected]

    def named_users(self) -> List[Dict[str, Any]]:
        """Summaries of live sessions that have picked a name."""
        return [s.summary() for s in self.live_snapshot() if s.is_named]

    def sweep(self, older_than: float, now: Optional[float] = None) -> int:
        """Drop sessions disconnected for more than `older_than` seconds."""
        now = time.monotonic() if now is None else now
        stale = [
            sid for sid, s in self._sessions.items()
            if not s.connected and s.disconnected_at is not None
            and now - s.disconnected_at > older_than
        ]
        for sid in stale:
            del self._sessions[sid]
            self._retired.add(sid)
        if stale:
            logger.debug("Swept %d disconnected sessions", len(stale))
        return len(stale)
