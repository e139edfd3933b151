"""
errors.py: the relay's failure taxonomy.

Every failure is local to one message or one session. The connection handler
catches RelayError per frame, logs it and moves on to the next frame.
"""


class RelayError(Exception):
    """Base class for everything the relay raises on purpose."""


class MalformedEnvelope(RelayError):
    """A required field is missing, has the wrong type, or won't decode."""


class KeyAgreementFailure(RelayError):
    """The peer's public key is badly encoded or not a point on P-256."""


class NotYetKeyed(RelayError):
    """A chat arrived before the session finished key agreement."""


class AuthenticationFailure(RelayError):
    """AES-GCM tag check failed (tampered or corrupted ciphertext)."""


class ConfigError(RelayError):
    """Bad deployment setting; raised once at startup."""
