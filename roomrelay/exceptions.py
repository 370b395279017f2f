"""Exception types raised by the signaling server."""
from __future__ import annotations


class SignalingServerError(Exception):
    """Base exception type for exceptions raised by the signaling server."""

    pass


class RoomError(SignalingServerError):
    """Base exception type for room admission errors.

    Room errors are reported back to the requesting client as a
    `room-error` message and never mutate server state.
    """

    pass


class RoomNotFoundError(RoomError):
    """Requested room does not exist in the registry."""

    pass


class RoomFullError(RoomError):
    """Requested room is already at capacity."""

    pass


class TargetUnreachableError(SignalingServerError):
    """Relay target is not currently bound to a connection."""

    pass


class ConnectionClosedError(SignalingServerError):
    """Connection was closed while sending or receiving a message."""

    pass
