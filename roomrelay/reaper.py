"""Periodic removal of empty and stale rooms."""
from __future__ import annotations

import asyncio
import datetime
import functools
import logging

from roomrelay.registry import RoomRegistry
from roomrelay.utils.tasks import spawn_periodic_task

logger = logging.getLogger(__name__)

DEFAULT_REAPER_INTERVAL = 3600
"""Default seconds between sweeps of idle rooms."""
DEFAULT_ROOM_RETENTION = 3600
"""Default seconds an empty room is kept after its creation."""


def sweep_idle_rooms(
    registry: RoomRegistry,
    retention: float = DEFAULT_ROOM_RETENTION,
    now: datetime.datetime | None = None,
) -> list[str]:
    """Delete empty rooms created more than `retention` seconds ago.

    Rooms with participants are never deleted, regardless of their age.

    Args:
        registry: Room registry to sweep.
        retention: Seconds an empty room is kept after creation.
        now: Current time. Defaults to the current UTC time.

    Returns:
        IDs of the deleted rooms.
    """
    deleted = registry.sweep_idle(
        datetime.timedelta(seconds=retention),
        now=now,
    )
    if len(deleted) > 0:
        logger.info(f'Deleted {len(deleted)} idle room(s): {deleted}')
    return deleted


def periodic_room_reaper(
    registry: RoomRegistry,
    interval: float = DEFAULT_REAPER_INTERVAL,
    retention: float = DEFAULT_ROOM_RETENTION,
) -> asyncio.Task[None]:
    """Create an asyncio task which periodically sweeps idle rooms.

    Args:
        registry: Room registry to sweep.
        interval: Seconds between sweeps.
        retention: Seconds an empty room is kept after creation.

    Returns:
        Asyncio task.
    """
    return spawn_periodic_task(
        functools.partial(sweep_idle_rooms, registry, retention),
        interval,
        name='room-reaper',
    )
