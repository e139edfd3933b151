"""
relaychat: an encrypted chat relay over WebSocket.

Each connection runs its own P-256 ECDH handshake with the relay; the
SHA-256 of the shared secret is the AES-256-GCM key for that connection's
chat traffic. The relay decrypts, then fans the text out to every other
connected user along with join/leave/typing presence events.

Accepts the GCM tag either as its own `tag` field or appended to `data`.
"""
__all__ = ["client", "config", "crypto", "errors", "framing", "messages", "node", "registry", "router", "run_node"]
