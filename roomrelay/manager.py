"""Helper classes for managing clients connected to the signaling server."""
from __future__ import annotations

import dataclasses
import datetime

from roomrelay.protocols import Connection


def _utc_current_time() -> datetime.datetime:
    # dataclasses.field's default_factory requires a zero argument callable
    return datetime.datetime.now(tz=datetime.timezone.utc)


@dataclasses.dataclass(frozen=True, eq=False)
class ClientBinding:
    """Binding of a client identity to its live connection.

    Attributes:
        client_id: Client ID used by peers to address signaling messages.
        connection: Connection to the client.
        room_id: ID of the room the client joined.
        display_name: Display name of the client.
        avatar: Avatar of the client.
        bound: Time the binding was created at.
    """

    client_id: str
    connection: Connection
    room_id: str
    display_name: str | None = None
    avatar: str | None = None
    bound: datetime.datetime = dataclasses.field(
        default_factory=_utc_current_time,
    )

    def __repr__(self) -> str:
        bound = self.bound.strftime('%Y-%m-%d %H:%M:%S %Z')
        address = str(self.connection.remote_address)
        return (
            f'{self.__class__.__name__}(client_id={self.client_id}, '
            f'name={self.display_name}, room={self.room_id}, '
            f'address={address}, bound={bound})'
        )


class ConnectionManager:
    """Maps client identities to their live connections.

    A client ID is bound to at most one connection at a time. Binding a
    client ID again silently supersedes the earlier binding: the old
    connection is neither closed nor notified, but it can no longer be
    resolved by its client ID.

    Warning:
        This class is intended for internal use by the
        [`SignalingServer`][roomrelay.server.SignalingServer].
    """

    def __init__(self) -> None:
        self._bindings_by_client: dict[str, ClientBinding] = {}
        self._bindings_by_connection: dict[Connection, ClientBinding] = {}

    def bind(self, binding: ClientBinding) -> None:
        """Bind a client ID to a connection, replacing any prior binding."""
        self._bindings_by_client[binding.client_id] = binding
        self._bindings_by_connection[binding.connection] = binding

    def resolve(self, client_id: str) -> Connection | None:
        """Get the connection currently bound to a client ID."""
        binding = self._bindings_by_client.get(client_id, None)
        return None if binding is None else binding.connection

    def get_binding(self, client_id: str) -> ClientBinding | None:
        """Get the current binding of a client ID."""
        return self._bindings_by_client.get(client_id, None)

    def get_binding_by_connection(
        self,
        connection: Connection,
    ) -> ClientBinding | None:
        """Get the binding created on a connection."""
        return self._bindings_by_connection.get(connection, None)

    def get_bindings(self) -> list[ClientBinding]:
        """Get a list of all current client bindings."""
        return list(self._bindings_by_client.values())

    def is_current(self, binding: ClientBinding) -> bool:
        """Check if a binding still owns its client ID."""
        return self._bindings_by_client.get(binding.client_id) is binding

    def unbind(self, binding: ClientBinding) -> None:
        """Remove a binding.

        The client ID entry is only removed if it has not been superseded
        by a newer binding. Unbinding twice is a no-op.
        """
        if self.is_current(binding):
            self._bindings_by_client.pop(binding.client_id, None)
        if self._bindings_by_connection.get(binding.connection) is binding:
            self._bindings_by_connection.pop(binding.connection, None)
