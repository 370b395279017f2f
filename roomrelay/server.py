"""Signaling server implementation for facilitating WebRTC peer connections.

The signaling server is a lightweight server accessible by all peers
(e.g., has a public IP address) that groups peers into small rooms and
relays the session descriptions and ICE candidates peers exchange while
establishing direct WebRTC connections with each other. Media never passes
through the server.
"""
from __future__ import annotations

import logging
import sys
from typing import Union

from roomrelay.exceptions import ConnectionClosedError
from roomrelay.exceptions import RoomError
from roomrelay.exceptions import RoomNotFoundError
from roomrelay.exceptions import TargetUnreachableError
from roomrelay.manager import ClientBinding
from roomrelay.manager import ConnectionManager
from roomrelay.messages import Answer
from roomrelay.messages import AnswerRequest
from roomrelay.messages import ClientMessage
from roomrelay.messages import decode_client_message
from roomrelay.messages import encode_message
from roomrelay.messages import IceCandidate
from roomrelay.messages import IceCandidateRequest
from roomrelay.messages import JoinRoomRequest
from roomrelay.messages import LeaveRoomRequest
from roomrelay.messages import MessageDecodeError
from roomrelay.messages import MessageEncodeError
from roomrelay.messages import Offer
from roomrelay.messages import OfferRequest
from roomrelay.messages import Participant
from roomrelay.messages import PingRequest
from roomrelay.messages import Pong
from roomrelay.messages import RoomErrorMessage
from roomrelay.messages import RoomJoined
from roomrelay.messages import ServerMessage
from roomrelay.messages import UserDisconnected
from roomrelay.messages import UserJoined
from roomrelay.messages import UserLeft
from roomrelay.messages import UserStatusChanged
from roomrelay.messages import UserStatusRequest
from roomrelay.protocols import Connection
from roomrelay.registry import RoomRegistry

logger = logging.getLogger(__name__)

RelayRequest = Union[OfferRequest, AnswerRequest, IceCandidateRequest]

DEFAULT_PARTICIPANT_NAME = 'Participant'
DEFAULT_PARTICIPANT_AVATAR = '\U0001f464'


class SignalingServer:
    """WebRTC signaling server.

    The server owns the room registry and the connection manager, and
    drives the lifecycle of every client connection:
    `NotJoined -> Joined -> Left | Disconnected`.

    Every handler runs on a single event loop and all registry and
    connection manager operations are synchronous, so state mutations
    performed between two awaits never interleave with another handler.
    Sends to a connection happen in handler dispatch order.

    Message delivery is best-effort and at-most-once. Messages addressed
    to a client that is not connected are dropped without notifying the
    sender, and nothing is buffered or retried.

    The server is transport-agnostic and is typically served over
    websockets using [`create_app()`][roomrelay.app.create_app].

    Args:
        registry: Room registry. A new empty registry is created if not
            provided.
        max_message_bytes: Optional maximum size of client messages in bytes.
            Clients that send oversized messages will have their connections
            closed. Note that message size is computed using
            [`sys.getsizeof()`][sys.getsizeof] so will also include the
            PyObject overhead.
    """

    def __init__(
        self,
        registry: RoomRegistry | None = None,
        max_message_bytes: int | None = None,
    ) -> None:
        self._registry = RoomRegistry() if registry is None else registry
        self._connection_manager = ConnectionManager()
        self._max_message_bytes = max_message_bytes

    @property
    def registry(self) -> RoomRegistry:
        """Registry of active rooms."""
        return self._registry

    @property
    def connection_manager(self) -> ConnectionManager:
        """Manager of client connections."""
        return self._connection_manager

    async def send(self, connection: Connection, message: ServerMessage) -> bool:
        """Send message on the connection.

        Note:
            Messages are JSON string encoded using
            [`encode_message()`][roomrelay.messages.encode_message].

        Args:
            connection: Connection to send message to.
            message: Message to encode and send.

        Returns:
            If the message was handed to the connection.
        """
        try:
            message_str = encode_message(message)
        except MessageEncodeError as e:
            logger.error(f'Failed to encode message: {e}')
            return False

        try:
            await connection.send(message_str)
        except ConnectionClosedError:
            logger.warning(
                'Connection closed while attempting to send '
                f'{message.event.value} message',
            )
            return False
        return True

    async def broadcast(
        self,
        room_id: str,
        message: ServerMessage,
        exclude: Connection | None = None,
    ) -> int:
        """Send a message to every connected member of a room.

        Args:
            room_id: ID of the room.
            message: Message to send.
            exclude: Optional connection to skip (usually the sender).

        Returns:
            Number of connections the message was sent to.
        """
        room = self.registry.get_room(room_id)
        if room is None:
            return 0

        # Snapshot targets before awaiting any sends
        targets = []
        for client_id in room.participants:
            connection = self.connection_manager.resolve(client_id)
            if connection is not None and connection is not exclude:
                targets.append(connection)

        sent = 0
        for connection in targets:
            sent += await self.send(connection, message)
        return sent

    def _roster(self, room_id: str, joining: ClientBinding) -> list[Participant]:
        room = self.registry.get_room(room_id)
        assert room is not None
        participants = []
        for client_id in room.participants:
            binding = (
                joining
                if client_id == joining.client_id
                else self.connection_manager.get_binding(client_id)
            )
            if binding is None:
                participant = Participant(
                    id=client_id,
                    name=DEFAULT_PARTICIPANT_NAME,
                    avatar=DEFAULT_PARTICIPANT_AVATAR,
                )
            else:
                participant = Participant(
                    id=client_id,
                    name=binding.display_name,
                    avatar=binding.avatar,
                )
            participants.append(participant)
        return participants

    def _unwind(self, binding: ClientBinding) -> int | None:
        # Returns the count remaining in the room or None if the binding
        # no longer owned a room membership.
        current = self.connection_manager.is_current(binding)
        self.connection_manager.unbind(binding)
        if not current:
            logger.info(
                f'Binding of client {binding.client_id} on '
                f'{binding.connection.remote_address} was superseded so '
                'room membership is kept by the newer connection',
            )
            return None
        try:
            return self.registry.remove_participant(
                binding.room_id,
                binding.client_id,
            )
        except RoomNotFoundError:
            return None

    async def join(
        self,
        connection: Connection,
        request: JoinRoomRequest,
    ) -> bool:
        """Admit a client to a room.

        On success, the client is bound to the connection, receives the
        room roster, and all other members are notified. On failure, the
        client receives a `room-error` message and no state changes.

        If the connection was already joined to another room, it leaves
        that room only once the new admission succeeded.

        Args:
            connection: Connection the request was received on.
            request: Join request.

        Returns:
            If the client was admitted.
        """
        try:
            room = self.registry.add_participant(
                request.room_id,
                request.user_id,
            )
        except RoomError as e:
            logger.warning(
                f'Rejected join of client {request.user_id} to room '
                f'{request.room_id}: {e}',
            )
            await self.send(connection, RoomErrorMessage(message=str(e)))
            return False

        # Memberships made stale by this join: an earlier join on this
        # connection, or this client ID joined to another room elsewhere.
        stale = []
        on_connection = self.connection_manager.get_binding_by_connection(
            connection,
        )
        if on_connection is not None and (
            on_connection.room_id != room.id
            or on_connection.client_id != request.user_id
        ):
            stale.append(on_connection)
        elsewhere = self.connection_manager.get_binding(request.user_id)
        if (
            elsewhere is not None
            and elsewhere.connection is not connection
            and elsewhere.room_id != room.id
        ):
            stale.append(elsewhere)
        departed = [(old, self._unwind(old)) for old in stale]

        binding = ClientBinding(
            client_id=request.user_id,
            connection=connection,
            room_id=room.id,
            display_name=request.user_name,
            avatar=request.user_avatar,
        )
        self.connection_manager.bind(binding)
        count = len(room.participants)
        logger.info(
            f'Client {binding.client_id} ({binding.display_name}) joined '
            f'room {room.id} ({count} participants)',
        )

        for old, remaining in departed:
            if remaining is None:
                continue
            await self.broadcast(
                old.room_id,
                UserLeft(
                    user_id=old.client_id,
                    user_name=old.display_name,
                    participants_count=remaining,
                ),
            )

        await self.send(
            connection,
            RoomJoined(
                room_id=room.id,
                type=room.type,
                participants=self._roster(room.id, binding),
                is_creator=room.creator_id == request.user_id,
            ),
        )
        await self.broadcast(
            room.id,
            UserJoined(
                user_id=binding.client_id,
                user_name=binding.display_name,
                user_avatar=binding.avatar,
                participants_count=count,
            ),
            exclude=connection,
        )
        return True

    async def leave(self, connection: Connection) -> None:
        """Remove the client on a connection from its room.

        Remaining members are notified with a `user-left` message and the
        room is deleted if it is now empty. Leaving a connection that has
        not joined a room, or has already left, is a no-op.

        Args:
            connection: Connection the request was received on.
        """
        binding = self.connection_manager.get_binding_by_connection(connection)
        if binding is None:
            return

        remaining = self._unwind(binding)
        if remaining is None:
            return

        logger.info(
            f'Client {binding.client_id} ({binding.display_name}) left room '
            f'{binding.room_id} ({remaining} participants)',
        )
        await self.broadcast(
            binding.room_id,
            UserLeft(
                user_id=binding.client_id,
                user_name=binding.display_name,
                participants_count=remaining,
            ),
        )

    async def disconnect(self, connection: Connection) -> None:
        """Clean up after the transport of a connection was lost.

        Performs the same cleanup as [`leave()`][roomrelay.server.SignalingServer.leave]
        but remaining members are notified with a `user-disconnected`
        message. If the client ID of the connection has since been bound to
        a newer connection, the newer connection keeps the room membership
        and nothing is broadcast.

        Args:
            connection: Connection that was closed.
        """
        binding = self.connection_manager.get_binding_by_connection(connection)
        if binding is None:
            return

        remaining = self._unwind(binding)
        if remaining is None:
            return

        logger.info(
            f'Client {binding.client_id} ({binding.display_name}) '
            f'disconnected from room {binding.room_id} '
            f'({remaining} participants)',
        )
        await self.broadcast(
            binding.room_id,
            UserDisconnected(
                user_id=binding.client_id,
                user_name=binding.display_name,
            ),
        )

    def _resolve_target(self, target_id: str) -> Connection:
        connection = self.connection_manager.resolve(target_id)
        if connection is None:
            raise TargetUnreachableError(
                f'Client {target_id} is not connected.',
            )
        return connection

    async def relay(
        self,
        connection: Connection,
        request: RelayRequest,
    ) -> bool:
        """Forward a signaling message to its target client.

        The payload is passed through unchanged. If the target is not
        connected the message is dropped and the sender is not notified.

        Args:
            connection: Connection of the sending client.
            request: Offer, answer, or ICE candidate to forward.

        Returns:
            If the message was sent to the target.
        """
        sender = self.connection_manager.get_binding_by_connection(connection)
        if sender is None:
            logger.warning(
                f'Client at {connection.remote_address} attempted to send '
                f'{request.event.value} message to {request.target_user_id} '
                'without joining a room',
            )
            return False

        try:
            target = self._resolve_target(request.target_user_id)
        except TargetUnreachableError as e:
            logger.debug(
                f'Dropping {request.event.value} message from '
                f'{sender.client_id}: {e}',
            )
            return False

        message: ServerMessage
        if isinstance(request, OfferRequest):
            message = Offer(
                sender_id=sender.client_id,
                sender_name=sender.display_name,
                sdp=request.sdp,
                type=request.type,
            )
        elif isinstance(request, AnswerRequest):
            message = Answer(sender_id=sender.client_id, sdp=request.sdp)
        elif isinstance(request, IceCandidateRequest):
            message = IceCandidate(
                sender_id=sender.client_id,
                candidate=request.candidate,
            )
        else:
            raise AssertionError('Unreachable.')

        logger.debug(
            f'Transmitting {request.event.value} message from '
            f'{sender.client_id} to {request.target_user_id}',
        )
        return await self.send(target, message)

    async def update_status(
        self,
        connection: Connection,
        request: UserStatusRequest,
    ) -> None:
        """Share a client's mute/video flags with the rest of its room.

        Status flags are ephemeral and are not stored by the server.

        Args:
            connection: Connection of the client.
            request: Status update.
        """
        binding = self.connection_manager.get_binding_by_connection(connection)
        if binding is None:
            return

        await self.broadcast(
            binding.room_id,
            UserStatusChanged(
                user_id=binding.client_id,
                is_muted=request.is_muted,
                is_video_on=request.is_video_on,
            ),
            exclude=connection,
        )

    async def ping(self, connection: Connection) -> None:
        """Reply to a ping with a pong."""
        await self.send(connection, Pong())

    async def _process_message(
        self,
        connection: Connection,
        message: ClientMessage,
    ) -> None:
        # Dispatches the message to the correct method depending on the type
        if isinstance(message, JoinRoomRequest):
            await self.join(connection, message)
        elif isinstance(
            message,
            (OfferRequest, AnswerRequest, IceCandidateRequest),
        ):
            await self.relay(connection, message)
        elif isinstance(message, UserStatusRequest):
            await self.update_status(connection, message)
        elif isinstance(message, LeaveRoomRequest):
            await self.leave(connection)
        elif isinstance(message, PingRequest):
            await self.ping(connection)
        else:
            raise AssertionError('Unreachable.')

    async def handler(self, connection: Connection) -> None:
        """Connection message handler.

        Processes messages received on the connection one at a time in the
        order they were received. When the connection is closed or the
        handler is cancelled, the client is removed from its room as if
        disconnected.

        The handler will close the connection for the following reasons.

        - An undecodable message or unknown message type is received
          (code 4000).
        - The client sends a message larger than the allowed size (code 4003).

        Args:
            connection: Connection to the client.
        """
        try:
            await self._handle_messages(connection)
        finally:
            await self.disconnect(connection)

    async def _handle_messages(self, connection: Connection) -> None:
        while True:
            try:
                message_str = await connection.recv()
            except ConnectionClosedError:
                logger.debug(
                    f'Connection from {connection.remote_address} closed',
                )
                break

            if (
                self._max_message_bytes is not None
                and sys.getsizeof(message_str) > self._max_message_bytes
            ):
                await connection.close(
                    4003,
                    reason='Message length exceeds limit.',
                )
                logger.warning(
                    f'Client at {connection.remote_address} sent message with '
                    f'size {sys.getsizeof(message_str)} bytes which exceeds '
                    f'the max configured size of {self._max_message_bytes} '
                    'bytes. Connection closed with error code 4003',
                )
                break

            try:
                if isinstance(message_str, bytes):
                    raise MessageDecodeError(
                        'Got message as bytes but expected str.',
                    )
                message = decode_client_message(message_str)
            except MessageDecodeError as e:
                logger.error(
                    'Closing connection because deserialization error was '
                    'caught on message received from '
                    f'{connection.remote_address}. {e}',
                )
                await connection.close(4000, reason='Unknown message type.')
                break

            await self._process_message(connection, message)
