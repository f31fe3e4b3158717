"""Exception types for sidechat.

Taxonomy:
    - TransportError: a transport could not connect or deliver. Recoverable
      by retry or by falling back to the other transport.
    - SessionError: terminal for one session attempt (invalid room id, all
      transports exhausted, session already closed).
    - StoreError: the Local Store failed to read or write. Surfaced to the
      caller of the operation, never tears down a session.
    - ValidationError: bad input, rejected before any side effect.
"""

from __future__ import annotations


class SidechatError(Exception):
    """Base class for all sidechat errors."""

    pass


class TransportError(SidechatError):
    """Raised when a transport fails to connect or send."""

    pass


class ConnectionRefused(TransportError):
    """The remote end (peer, signaling service, or relay) refused the connection."""

    pass


class HandshakeTimeout(TransportError):
    """A connection was opened but the handshake did not complete in time."""

    pass


class PeerUnreachable(TransportError):
    """A mesh peer could not be reached after the retry ceiling.

    Non-fatal: the remaining peers of the room stay usable.
    """

    def __init__(self, peer_id: str, attempts: int):
        super().__init__(f"Peer {peer_id} unreachable after {attempts} attempts")
        self.peer_id = peer_id
        self.attempts = attempts


class SignalingError(ConnectionRefused):
    """The discovery/signaling oracle could not be reached or rejected a request."""

    pass


class SessionError(SidechatError):
    """Raised when a session operation cannot complete."""

    pass


class StoreError(SidechatError):
    """Raised when the Local Store fails to read or write."""

    pass


class ValidationError(SidechatError, ValueError):
    """Raised for invalid input. No side effects have happened."""

    pass
