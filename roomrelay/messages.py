"""Message types for signaling client and server communication.

Every websocket frame is a JSON object of the form
`#!json {"event": "<name>", "data": {...}}`. Message attributes are
snake case in Python and camel case on the wire. Signaling payloads
(`sdp` and `candidate`) are opaque and passed through unchanged.
"""
from __future__ import annotations

import dataclasses
import datetime
import enum
import json
import re
from typing import Any
from typing import ClassVar
from typing import Dict
from typing import List
from typing import Type
from typing import TypeVar


class EventType(enum.Enum):
    """Websocket event names."""

    join_room = 'join-room'
    """Client request to join a room."""
    leave_room = 'leave-room'
    """Client request to leave its current room."""
    offer = 'offer'
    """SDP offer addressed to a single peer."""
    answer = 'answer'
    """SDP answer addressed to a single peer."""
    ice_candidate = 'ice-candidate'
    """ICE candidate addressed to a single peer."""
    user_status = 'user-status'
    """Client request to broadcast its mute/video flags."""
    ping = 'ping'
    """Client liveness probe."""
    room_joined = 'room-joined'
    """Roster sent to a client that joined a room."""
    room_error = 'room-error'
    """Room admission failure sent to the requesting client."""
    user_joined = 'user-joined'
    """Notification that a peer joined the room."""
    user_left = 'user-left'
    """Notification that a peer left the room."""
    user_disconnected = 'user-disconnected'
    """Notification that a peer lost its connection."""
    user_status_changed = 'user-status-changed'
    """Notification of a peer's mute/video flags."""
    pong = 'pong'
    """Reply to a ping."""


def format_timestamp(timestamp: datetime.datetime) -> str:
    """Format an aware datetime as an ISO 8601 UTC string.

    Example:
        `#!python '2024-01-31T18:04:12.345Z'`
    """
    timestamp = timestamp.astimezone(datetime.timezone.utc)
    return timestamp.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def utc_timestamp() -> str:
    """Current UTC time formatted by `format_timestamp()`."""
    return format_timestamp(datetime.datetime.now(tz=datetime.timezone.utc))


def snake_to_camel(name: str) -> str:
    """Convert a snake case name to camel case."""
    first, *rest = name.split('_')
    return first + ''.join(part.capitalize() for part in rest)


def camel_to_snake(name: str) -> str:
    """Convert a camel case name to snake case."""
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).lower()


def _check_str(message: Any, *names: str) -> None:
    # Identifiers are used as mapping keys so must be strings
    for name in names:
        value = getattr(message, name)
        if not isinstance(value, str):
            raise TypeError(
                f'{name} must be a str but got {type(value).__name__}.',
            )


@dataclasses.dataclass
class Message:
    """Base message."""

    event: ClassVar[EventType]


@dataclasses.dataclass
class ClientMessage(Message):
    """Base message sent from a client to the server."""

    pass


@dataclasses.dataclass
class ServerMessage(Message):
    """Base message sent from the server to one or more clients."""

    pass


@dataclasses.dataclass
class JoinRoomRequest(ClientMessage):
    """Request to join a room.

    Attributes:
        room_id: ID of the room to join.
        user_id: Client identity used to address signaling messages.
        user_name: Display name shown to other participants.
        user_avatar: Avatar shown to other participants.
    """

    event: ClassVar[EventType] = EventType.join_room

    room_id: str
    user_id: str
    user_name: str | None = None
    user_avatar: str | None = None

    def __post_init__(self) -> None:
        _check_str(self, 'room_id', 'user_id')


@dataclasses.dataclass
class LeaveRoomRequest(ClientMessage):
    """Request to leave the current room."""

    event: ClassVar[EventType] = EventType.leave_room


@dataclasses.dataclass
class OfferRequest(ClientMessage):
    """SDP offer to relay to a peer.

    Attributes:
        target_user_id: Client ID of the peer to send the offer to.
        sdp: Opaque session description.
        type: Optional call type (e.g., `#!python 'video'`).
    """

    event: ClassVar[EventType] = EventType.offer

    target_user_id: str
    sdp: Any
    type: str | None = None

    def __post_init__(self) -> None:
        _check_str(self, 'target_user_id')


@dataclasses.dataclass
class AnswerRequest(ClientMessage):
    """SDP answer to relay to a peer."""

    event: ClassVar[EventType] = EventType.answer

    target_user_id: str
    sdp: Any

    def __post_init__(self) -> None:
        _check_str(self, 'target_user_id')


@dataclasses.dataclass
class IceCandidateRequest(ClientMessage):
    """ICE candidate to relay to a peer."""

    event: ClassVar[EventType] = EventType.ice_candidate

    target_user_id: str
    candidate: Any

    def __post_init__(self) -> None:
        _check_str(self, 'target_user_id')


@dataclasses.dataclass
class UserStatusRequest(ClientMessage):
    """Ephemeral status flags to share with the rest of the room."""

    event: ClassVar[EventType] = EventType.user_status

    is_muted: bool | None = None
    is_video_on: bool | None = None


@dataclasses.dataclass
class PingRequest(ClientMessage):
    """Liveness probe answered with a pong."""

    event: ClassVar[EventType] = EventType.ping


@dataclasses.dataclass
class Participant:
    """Roster entry included in a room-joined message.

    Attributes:
        id: Client ID of the participant.
        name: Display name of the participant.
        avatar: Avatar of the participant.
        is_online: Always true for participants in the roster.
    """

    id: str
    name: str | None
    avatar: str | None
    is_online: bool = True


@dataclasses.dataclass
class RoomJoined(ServerMessage):
    """Sent to a client after it is admitted to a room.

    Attributes:
        room_id: ID of the joined room.
        type: Type of the room.
        participants: Current roster, including the joining client.
        is_creator: If the joining client created the room.
    """

    event: ClassVar[EventType] = EventType.room_joined

    room_id: str
    type: str
    participants: List[Participant]  # noqa: UP006
    is_creator: bool

    def __post_init__(self) -> None:
        self.participants = [
            p
            if isinstance(p, Participant)
            else Participant(**{camel_to_snake(k): v for k, v in p.items()})
            for p in self.participants
        ]


@dataclasses.dataclass
class RoomErrorMessage(ServerMessage):
    """Sent to a client whose join request was rejected."""

    event: ClassVar[EventType] = EventType.room_error

    message: str


@dataclasses.dataclass
class UserJoined(ServerMessage):
    """Sent to existing members when a new client joins the room."""

    event: ClassVar[EventType] = EventType.user_joined

    user_id: str
    user_name: str | None
    user_avatar: str | None
    participants_count: int


@dataclasses.dataclass
class UserLeft(ServerMessage):
    """Sent to remaining members when a client leaves the room."""

    event: ClassVar[EventType] = EventType.user_left

    user_id: str
    user_name: str | None
    participants_count: int


@dataclasses.dataclass
class UserDisconnected(ServerMessage):
    """Sent to remaining members when a client's connection is lost."""

    event: ClassVar[EventType] = EventType.user_disconnected

    user_id: str
    user_name: str | None
    reason: str = 'disconnected'


@dataclasses.dataclass
class UserStatusChanged(ServerMessage):
    """Sent to the rest of the room when a client changes its status."""

    event: ClassVar[EventType] = EventType.user_status_changed

    user_id: str
    is_muted: bool | None
    is_video_on: bool | None
    timestamp: str = dataclasses.field(default_factory=utc_timestamp)


@dataclasses.dataclass
class Offer(ServerMessage):
    """SDP offer delivered to its target."""

    event: ClassVar[EventType] = EventType.offer

    sender_id: str
    sender_name: str | None
    sdp: Any
    type: str | None = None
    timestamp: str = dataclasses.field(default_factory=utc_timestamp)


@dataclasses.dataclass
class Answer(ServerMessage):
    """SDP answer delivered to its target."""

    event: ClassVar[EventType] = EventType.answer

    sender_id: str
    sdp: Any
    timestamp: str = dataclasses.field(default_factory=utc_timestamp)


@dataclasses.dataclass
class IceCandidate(ServerMessage):
    """ICE candidate delivered to its target."""

    event: ClassVar[EventType] = EventType.ice_candidate

    sender_id: str
    candidate: Any
    timestamp: str = dataclasses.field(default_factory=utc_timestamp)


@dataclasses.dataclass
class Pong(ServerMessage):
    """Reply to a ping."""

    event: ClassVar[EventType] = EventType.pong

    timestamp: str = dataclasses.field(default_factory=utc_timestamp)


MessageT = TypeVar('MessageT', bound=Message)

_CLIENT_MESSAGES: Dict[EventType, Type[ClientMessage]] = {  # noqa: UP006
    cls.event: cls
    for cls in (
        JoinRoomRequest,
        LeaveRoomRequest,
        OfferRequest,
        AnswerRequest,
        IceCandidateRequest,
        UserStatusRequest,
        PingRequest,
    )
}
_SERVER_MESSAGES: Dict[EventType, Type[ServerMessage]] = {  # noqa: UP006
    cls.event: cls
    for cls in (
        RoomJoined,
        RoomErrorMessage,
        UserJoined,
        UserLeft,
        UserDisconnected,
        UserStatusChanged,
        Offer,
        Answer,
        IceCandidate,
        Pong,
    )
}


class MessageError(Exception):
    """Base exception type for signaling messages."""

    pass


class MessageDecodeError(MessageError):
    """Exception raised when a message cannot be decoded."""

    pass


class MessageEncodeError(MessageError):
    """Exception raised when a message cannot be encoded."""

    pass


def _to_wire(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            snake_to_camel(field.name): _to_wire(getattr(value, field.name))
            for field in dataclasses.fields(value)
        }
    elif isinstance(value, list):
        return [_to_wire(v) for v in value]
    return value


def _decode(
    message: str,
    types: dict[EventType, type[MessageT]],
) -> MessageT:
    try:
        envelope = json.loads(message)
    except json.JSONDecodeError as e:
        raise MessageDecodeError('Failed to load string as JSON.') from e

    if not isinstance(envelope, dict):
        raise MessageDecodeError('Message is not a JSON object.')

    try:
        event_name = envelope['event']
    except KeyError as e:
        raise MessageDecodeError(
            'Message does not contain an event key.',
        ) from e

    try:
        message_type = types[EventType(event_name)]
    except (KeyError, ValueError) as e:
        raise MessageDecodeError(
            f'The message is of an unknown event type: {event_name}.',
        ) from e

    data = envelope.get('data')
    data = {} if data is None else data
    if not isinstance(data, dict):
        raise MessageDecodeError('Message data is not a JSON object.')

    # Unrecognized keys are ignored so clients may send extra context
    field_names = {field.name for field in dataclasses.fields(message_type)}
    kwargs = {
        name: value
        for name, value in (
            (camel_to_snake(key), value) for key, value in data.items()
        )
        if name in field_names
    }
    try:
        return message_type(**kwargs)
    except TypeError as e:
        raise MessageDecodeError(
            f'Failed to convert message to {message_type.__name__}: {e}',
        ) from e


def decode_client_message(message: str) -> ClientMessage:
    """Decode JSON string into the correct client message type.

    Args:
        message: JSON string to decode.

    Returns:
        Parsed message.

    Raises:
        MessageDecodeError: If the message cannot be decoded.
    """
    return _decode(message, _CLIENT_MESSAGES)


def decode_server_message(message: str) -> ServerMessage:
    """Decode JSON string into the correct server message type.

    Args:
        message: JSON string to decode.

    Returns:
        Parsed message.

    Raises:
        MessageDecodeError: If the message cannot be decoded.
    """
    return _decode(message, _SERVER_MESSAGES)


def encode_message(message: Message) -> str:
    """Encode message as JSON string.

    Args:
        message: Message to JSON encode.

    Raises:
        MessageEncodeError: If the message cannot be JSON encoded.
    """
    if not isinstance(message, Message):
        raise MessageEncodeError(
            f'Message is not an instance of {Message.__name__}. '
            f'Got {type(message).__name__}.',
        )

    envelope = {'event': message.event.value, 'data': _to_wire(message)}

    try:
        return json.dumps(envelope, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise MessageEncodeError('Error encoding message.') from e
