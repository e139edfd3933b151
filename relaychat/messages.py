import random
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import MalformedEnvelope

"""
messages.py: the wire envelopes, both directions.

What this module does:
- Names every `type` tag the relay understands or emits.
- Builds the server -> client records as plain dicts (framing.py turns them
  into JSON text).
- Validates the client -> server records and pulls out their fields, raising
  MalformedEnvelope when something required is missing or the wrong type.

Nothing here touches keys or sessions; it's shape checking only.
"""

# -----------------------
# Client -> server tags
# -----------------------
CLIENT_PUBLIC_KEY = "client-public-key"
SET_USERNAME = "set-username"
CHAT = "chat"
TYPING = "typing"

# -----------------------
# Server -> client tags
# -----------------------
SERVER_PUBLIC_KEY = "server-public-key"
USER_LIST = "user-list"
USER_JOINED = "user-joined"
USER_LEFT = "user-left"
USER_TYPING = "user-typing"
CHAT_MESSAGE = "chat-message"

INBOUND_TYPES = (CLIENT_PUBLIC_KEY, SET_USERNAME, CHAT, TYPING)


def now_iso() -> str:
    """UTC timestamp in ISO-8601 with milliseconds and a 'Z' suffix."""
    stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    return stamp.replace("+00:00", "Z")


def default_username() -> str:
    """Fallback name for clients that don't pick one: User0 .. User999."""
    return f"User{random.randint(0, 999)}"


# -----------------------
# Outbound builders
# -----------------------

def server_public_key(key_b64: str) -> Dict[str, Any]:
    return {"type": SERVER_PUBLIC_KEY, "key": key_b64}


def user_list(users: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"type": USER_LIST, "users": users}


def user_joined(user: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": USER_JOINED, "user": user}


def user_left(user_id: str, username: Optional[str]) -> Dict[str, Any]:
    return {"type": USER_LEFT, "userId": user_id, "username": username}


def user_typing(user_id: str, username: Optional[str], is_typing: bool) -> Dict[str, Any]:
    return {"type": USER_TYPING, "userId": user_id, "username": username, "isTyping": is_typing}


def chat_message(sender: Dict[str, Any], text: str, timestamp: Optional[str] = None) -> Dict[str, Any]:
    """Relay record; the timestamp is taken at broadcast time, not send time."""
    return {
        "type": CHAT_MESSAGE,
        "sender": sender,
        "message": text,
        "timestamp": timestamp or now_iso(),
    }


# -----------------------
# Inbound validation
# -----------------------

def envelope_type(frame: Any) -> str:
    """Return the `type` discriminator, or raise if the record has none."""
    if not isinstance(frame, dict):
        raise MalformedEnvelope("envelope must be a JSON object")
    msg_type = frame.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise MalformedEnvelope("envelope has no 'type'")
    return msg_type


def _required_str(frame: Dict[str, Any], field: str) -> str:
    value = frame.get(field)
    if not isinstance(value, str) or not value:
        raise MalformedEnvelope(f"'{field}' must be a non-empty string")
    return value


def parse_client_public_key(frame: Dict[str, Any]) -> str:
    return _required_str(frame, "key")


def parse_set_username(frame: Dict[str, Any]) -> str:
    """
    Pull the requested name out of a set-username record.

    Absent, null, empty or all-whitespace names get a random default. A name
    that is present but isn't a string is malformed.
    """
    name = frame.get("username")
    if name is None:
        return default_username()
    if not isinstance(name, str):
        raise MalformedEnvelope("'username' must be a string")
    name = name.strip()
    return name or default_username()


def parse_typing(frame: Dict[str, Any]) -> bool:
    value = frame.get("isTyping")
    if not isinstance(value, bool):
        raise MalformedEnvelope("'isTyping' must be a boolean")
    return value


def parse_chat(frame: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """
    Return the Base64 fields of a chat record: iv, data and (maybe) tag.

    `tag` is None when the client appended it to `data` instead. With a
    separate tag, an empty message encrypts to an empty `data`, so that is
    allowed; an appended tag never leaves `data` empty.
    """
    fields = {"iv": _required_str(frame, "iv"), "data": None, "tag": None}
    tag = frame.get("tag")
    if tag is None:
        fields["data"] = _required_str(frame, "data")
        return fields
    if not isinstance(tag, str) or not tag:
        raise MalformedEnvelope("'tag' must be a non-empty string when present")
    data = frame.get("data")
    if not isinstance(data, str):
        raise MalformedEnvelope("'data' must be a string")
    fields["data"] = data
    fields["tag"] = tag
    return fields
