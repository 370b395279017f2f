"""In-memory registry of active rooms and their participants."""
from __future__ import annotations

import dataclasses
import datetime
import logging
import uuid

from roomrelay.exceptions import RoomFullError
from roomrelay.exceptions import RoomNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_MAX_PARTICIPANTS = 4
"""Default room capacity. Full-mesh WebRTC calls degrade beyond this size."""
DEFAULT_ROOM_ID_PREFIX = 'assma'
"""Default prefix of generated room IDs."""


def _utc_current_time() -> datetime.datetime:
    # dataclasses.field's default_factory requires a zero argument callable
    return datetime.datetime.now(tz=datetime.timezone.utc)


@dataclasses.dataclass(eq=False)
class Room:
    """Representation of a signaling room.

    Attributes:
        id: Unique room ID.
        type: Type of the room (e.g., `#!python 'video'`).
        creator_id: Client ID of the user that created the room.
        participants: Client IDs of current members in the order they
            joined. Contains no duplicates.
        created: Time the room was created at.
        is_active: Set while the room is registered.
    """

    id: str
    type: str
    creator_id: str
    participants: list[str] = dataclasses.field(default_factory=list)
    created: datetime.datetime = dataclasses.field(
        default_factory=_utc_current_time,
    )
    is_active: bool = True

    def __repr__(self) -> str:
        created = self.created.strftime('%Y-%m-%d %H:%M:%S %Z')
        return (
            f'{self.__class__.__name__}(id={self.id}, type={self.type}, '
            f'creator={self.creator_id}, '
            f'participants={len(self.participants)}, created={created})'
        )


class RoomRegistry:
    """Store of active rooms and their membership.

    All methods are synchronous so any sequence of registry operations
    performed between two awaits on the event loop is atomic.

    Args:
        max_participants: Maximum number of participants in a room.
        id_prefix: Prefix of generated room IDs.
    """

    def __init__(
        self,
        max_participants: int = DEFAULT_MAX_PARTICIPANTS,
        id_prefix: str = DEFAULT_ROOM_ID_PREFIX,
    ) -> None:
        if max_participants < 1:
            raise ValueError('Max participants must be >= 1.')
        self.max_participants = max_participants
        self.id_prefix = id_prefix
        self._rooms: dict[str, Room] = {}

    def __len__(self) -> int:
        return len(self._rooms)

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._rooms

    def _new_room_id(self) -> str:
        while True:
            room_id = f'{self.id_prefix}-{uuid.uuid4().hex[:8]}'
            if room_id not in self._rooms:
                return room_id

    def create_room(
        self,
        creator_id: str,
        type: str = 'video',  # noqa: A002
        now: datetime.datetime | None = None,
    ) -> Room:
        """Create a new empty room.

        Args:
            creator_id: Client ID of the user creating the room.
            type: Type of the room.
            now: Creation time. Defaults to the current UTC time.

        Returns:
            The registered room.
        """
        room = Room(
            id=self._new_room_id(),
            type=type,
            creator_id=creator_id,
            created=_utc_current_time() if now is None else now,
        )
        self._rooms[room.id] = room
        logger.info(f'Created room {room.id} for {creator_id}')
        return room

    def get_room(self, room_id: str) -> Room | None:
        """Get a room by its ID."""
        return self._rooms.get(room_id, None)

    def get_rooms(self) -> list[Room]:
        """Get a list of all rooms."""
        return list(self._rooms.values())

    def add_participant(self, room_id: str, client_id: str) -> Room:
        """Admit a client to a room.

        Admission is all-or-nothing. A client that is already a member is
        admitted again without a capacity check and is not duplicated.

        Args:
            room_id: ID of the room to join.
            client_id: ID of the client joining.

        Returns:
            The room the client was admitted to.

        Raises:
            RoomNotFoundError: If the room does not exist.
            RoomFullError: If the room is at capacity.
        """
        room = self._rooms.get(room_id, None)
        if room is None:
            raise RoomNotFoundError(f'Room {room_id} does not exist.')

        if client_id in room.participants:
            return room

        if len(room.participants) >= self.max_participants:
            raise RoomFullError(
                f'Room {room_id} is full '
                f'({self.max_participants} participants).',
            )

        room.participants.append(client_id)
        return room

    def remove_participant(self, room_id: str, client_id: str) -> int:
        """Remove a client from a room.

        The room is deleted when its last participant is removed.

        Args:
            room_id: ID of the room to leave.
            client_id: ID of the client leaving.

        Returns:
            Number of participants remaining in the room.

        Raises:
            RoomNotFoundError: If the room does not exist.
        """
        room = self._rooms.get(room_id, None)
        if room is None:
            raise RoomNotFoundError(f'Room {room_id} does not exist.')

        if client_id in room.participants:
            room.participants.remove(client_id)

        count = len(room.participants)
        if count == 0:
            self._delete_room(room)
            logger.info(f'Deleted room {room_id} (empty)')
        return count

    def sweep_idle(
        self,
        max_age: datetime.timedelta,
        now: datetime.datetime | None = None,
    ) -> list[str]:
        """Delete empty rooms older than `max_age`.

        Rooms with at least one participant are never deleted regardless
        of their age.

        Args:
            max_age: Retention window of empty rooms.
            now: Current time. Defaults to the current UTC time.

        Returns:
            IDs of the deleted rooms.
        """
        now = _utc_current_time() if now is None else now
        cutoff = now - max_age
        stale = [
            room
            for room in self._rooms.values()
            if len(room.participants) == 0 and room.created < cutoff
        ]
        for room in stale:
            self._delete_room(room)
        return [room.id for room in stale]

    def _delete_room(self, room: Room) -> None:
        room.is_active = False
        self._rooms.pop(room.id, None)
