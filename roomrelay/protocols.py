"""Transport-agnostic connection protocol."""
from __future__ import annotations

from typing import Any
from typing import Protocol
from typing import runtime_checkable


@runtime_checkable
class Connection(Protocol):
    """Duplex message connection to a single client.

    Implementations wrap a transport (e.g., a websocket) and are used as
    delivery targets by the
    [`SignalingServer`][roomrelay.server.SignalingServer]. Connections
    must be hashable because they are used as mapping keys.
    """

    @property
    def remote_address(self) -> Any:
        """Address of the remote client, used only for logging."""
        ...

    async def close(self, code: int = 1000, reason: str = '') -> None:
        """Close the connection."""
        ...

    async def recv(self) -> str | bytes:
        """Receive the next message from the client.

        Raises:
            ConnectionClosedError: If the connection was closed.
        """
        ...

    async def send(self, message: str) -> None:
        """Send a message to the client.

        Raises:
            ConnectionClosedError: If the connection was closed.
        """
        ...
