"""
crypto.py: P-256 key agreement and AES-256-GCM helpers.

Why this exists:
- Keep all the elliptic-curve and AEAD bits in one place so the handler can
  call `derive_shared_key` / `open_*` without worrying about encodings.
- Public keys travel as standard Base64 of the uncompressed X9.62 point
  (what browsers and Node's ECDH export). We also accept url-safe Base64 and
  missing padding, because clients are sloppy about it.
- The curve is fixed. Nothing here is negotiated.

Notes:
- Key derivation is a single SHA-256 over the raw ECDH shared secret.
- Nonces are chosen by the sender. We never generate one server-side except
  in `seal_*`, which only the reference client uses.
- Functions return/accept bytes for raw data and str for Base64 strings.
"""

import base64
import binascii
import hashlib
import os
from typing import Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import AuthenticationFailure, KeyAgreementFailure, MalformedEnvelope

CURVE = ec.SECP256R1()
KEY_SIZE = 32    # AES-256
NONCE_SIZE = 12  # 96-bit GCM nonce
TAG_SIZE = 16    # 128-bit GCM tag

# -----------------------------
# Base64 helpers
# -----------------------------

def b64_encode(data: bytes) -> str:
    """Standard Base64 with padding (what the browser side expects)."""
    return base64.b64encode(data).decode("ascii")


def b64_decode(data: str) -> bytes:
    """
    Decode standard or url-safe Base64, with or without '=' padding.

    Raises MalformedEnvelope on anything that isn't Base64 text.
    """
    if not isinstance(data, str):
        raise MalformedEnvelope("expected a Base64 string")
    text = data.strip().replace("-", "+").replace("_", "/")
    # Add the minimal padding back so Python's decoder is happy.
    text += "=" * ((-len(text)) % 4)
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedEnvelope(f"invalid Base64: {exc}") from exc


# -------------
# Key agreement
# -------------

def generate_local_keypair() -> Tuple[ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey]:
    """Fresh ephemeral P-256 key pair; one per connection, never rotated."""
    priv = ec.generate_private_key(CURVE)
    return priv, priv.public_key()


def export_public_key(pub: ec.EllipticCurvePublicKey) -> str:
    """Uncompressed point (0x04 || X || Y), Base64-encoded for the wire."""
    raw = pub.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint,
    )
    return b64_encode(raw)


def import_public_key(data: str) -> ec.EllipticCurvePublicKey:
    """Inverse of export_public_key(). Compressed points are accepted too."""
    try:
        raw = b64_decode(data)
    except MalformedEnvelope as exc:
        raise KeyAgreementFailure(str(exc)) from exc
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, raw)
    except ValueError as exc:
        raise KeyAgreementFailure("public key is not a valid P-256 point") from exc


def derive_shared_key(priv: ec.EllipticCurvePrivateKey, peer_public_b64: str) -> bytes:
    """
    ECDH with the peer's public key, then SHA-256 over the raw secret.

    Returns the 32-byte AES key. The shared secret itself never leaves this
    function.
    """
    peer = import_public_key(peer_public_b64)
    try:
        secret = priv.exchange(ec.ECDH(), peer)
    except ValueError as exc:
        raise KeyAgreementFailure("ECDH exchange failed") from exc
    return hashlib.sha256(secret).digest()


# ---------------------------
# Authenticated encryption API
# ---------------------------

def _check_params(key: Optional[bytes], nonce: bytes) -> None:
    if key is None:
        # The handler checks is_keyed first; this covers direct callers.
        raise AuthenticationFailure("no symmetric key established")
    if len(key) != KEY_SIZE:
        raise AuthenticationFailure("symmetric key must be 32 bytes")
    if len(nonce) != NONCE_SIZE:
        raise MalformedEnvelope(f"nonce must be {NONCE_SIZE} bytes, got {len(nonce)}")


def open_detached(key: bytes, nonce: bytes, ciphertext: bytes, tag: bytes) -> bytes:
    """Decrypt when the tag travels in its own field."""
    if len(tag) != TAG_SIZE:
        raise MalformedEnvelope(f"tag must be {TAG_SIZE} bytes, got {len(tag)}")
    return open_combined(key, nonce, ciphertext + tag)


def open_combined(key: bytes, nonce: bytes, blob: bytes) -> bytes:
    """Decrypt when the last 16 bytes of the blob are the tag."""
    _check_params(key, nonce)
    if len(blob) < TAG_SIZE:
        raise MalformedEnvelope("ciphertext shorter than the GCM tag")
    try:
        return AESGCM(key).decrypt(nonce, blob, None)
    except InvalidTag as exc:
        # InvalidTag carries no message; give the log something to say.
        raise AuthenticationFailure("GCM tag mismatch") from exc


def seal_combined(key: bytes, plaintext: bytes, nonce: Optional[bytes] = None) -> Tuple[bytes, bytes]:
    """Encrypt and return (nonce, ciphertext || tag)."""
    nonce = nonce if nonce is not None else os.urandom(NONCE_SIZE)
    _check_params(key, nonce)
    return nonce, AESGCM(key).encrypt(nonce, plaintext, None)


def seal_detached(key: bytes, plaintext: bytes, nonce: Optional[bytes] = None) -> Tuple[bytes, bytes, bytes]:
    """Encrypt and return (nonce, ciphertext, tag) with the tag split off."""
    nonce, blob = seal_combined(key, plaintext, nonce)
    return nonce, blob[:-TAG_SIZE], blob[-TAG_SIZE:]
