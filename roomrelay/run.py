"""CLI and serving functions for running a signaling server."""
from __future__ import annotations

import asyncio
import datetime
import logging
import logging.handlers
import os
import pprint
import sys

import click
import uvicorn

from roomrelay.app import create_app
from roomrelay.config import SignalingServingConfig
from roomrelay.reaper import periodic_room_reaper
from roomrelay.registry import RoomRegistry
from roomrelay.server import SignalingServer
from roomrelay.utils.tasks import spawn_periodic_task

logger = logging.getLogger(__name__)


def periodic_room_logger(
    server: SignalingServer,
    interval: float = 60,
    limit: float | None = 32,
    level: int = logging.INFO,
) -> asyncio.Task[None]:
    """Create an asyncio task which logs active rooms.

    Args:
        server: Signaling server instance to log active rooms of.
        interval: Seconds between logging active rooms.
        limit: Only log detailed room list if the number of rooms is
            less than this number. Useful for debugging or avoiding
            clobbering the logs by printing thousands of rooms.
        level: Logging level.

    Returns:
        Asyncio task.
    """

    def _log() -> None:
        rooms = sorted(
            server.registry.get_rooms(),
            key=lambda room: room.created,
        )
        clients = server.connection_manager.get_bindings()
        message = (
            f'Active rooms: {len(rooms)}, connected clients: {len(clients)}'
        )
        if limit is not None and 0 < len(rooms) < limit:
            rooms_repr = '\n'.join(repr(room) for room in rooms)
            message = f'{message}\n{rooms_repr}'
        logger.log(level, message)

    return spawn_periodic_task(_log, interval, name='room-logger')


async def serve(config: SignalingServingConfig) -> None:
    """Run the signaling server.

    Initializes a
    [`SignalingServer`][roomrelay.server.SignalingServer], starts the idle
    room reaper, and serves the Quart app with uvicorn until SIGINT or
    SIGTERM is received.

    Note:
        This function will not configure any logging. Configuring logging
        according to
        [`SignalingServingConfig.logging`][roomrelay.config.SignalingServingConfig]
        is the responsibility of the caller.

    Args:
        config: Serving configuration.

    Raises:
        SystemExit: With status 1 if the server fails to start (e.g., the
            configured address is already in use).
    """
    registry = RoomRegistry(
        max_participants=config.rooms.max_participants,
        id_prefix=config.rooms.id_prefix,
    )
    server = SignalingServer(
        registry,
        max_message_bytes=config.max_message_bytes,
    )
    app = create_app(server, cors_origin=config.cors_origin)

    tasks = [
        periodic_room_reaper(
            registry,
            interval=config.rooms.reaper_interval,
            retention=config.rooms.retention,
        ),
    ]
    if config.logging.current_room_interval is not None:  # pragma: no branch
        level = (
            config.logging.default_level
            if isinstance(config.logging.default_level, int)
            else logging.getLevelName(config.logging.default_level)
        )
        tasks.append(
            periodic_room_logger(
                server,
                config.logging.current_room_interval,
                config.logging.current_room_limit,
                level=level,
            ),
        )

    config_repr = pprint.pformat(config, indent=2)
    logger.info(f'Signaling serving configuration:\n{config_repr}')

    server_config = uvicorn.Config(
        app,
        host=config.host,
        port=config.port,
        ssl_certfile=config.certfile,
        ssl_keyfile=config.keyfile,
        log_config=None,
        access_log=False,
    )
    uvicorn_server = uvicorn.Server(server_config)

    scheme = 'wss' if config.certfile is not None else 'ws'
    logger.info(
        f'Signaling server listening on port {config.port} '
        f'({scheme}://{config.host}:{config.port}/ws)',
    )
    logger.info('Use ctrl-C to stop')

    try:
        await uvicorn_server.serve()
    except SystemExit as e:
        # uvicorn exits with its own status codes on startup failures
        logger.error(
            f'Signaling server failed to start on {config.host}:'
            f'{config.port} (uvicorn exit status {e.code})',
        )
        raise SystemExit(1) from e
    finally:
        for task in tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    logger.info('Signaling server shutdown')


@click.command()
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option('--host', metavar='ADDR', help='Interface to bind to.')
@click.option(
    '--port',
    type=int,
    metavar='PORT',
    envvar='PORT',
    help='Port to bind to.',
)
@click.option('--log-dir', metavar='PATH', help='Logging directory.')
@click.option(
    '--log-level',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
def cli(
    config_path: str | None,
    host: str | None,
    port: int | None,
    log_dir: str | None,
    log_level: str | None,
) -> None:
    """Run a signaling server instance.

    The signaling server is used by clients in the same room to exchange
    the messages needed to establish peer-to-peer WebRTC connections. If no
    configuration file is provided, a default configuration will be created
    from
    [`SignalingServingConfig()`][roomrelay.config.SignalingServingConfig].
    The remaining CLI options will override the options provided in the
    configuration object. The port can also be set with the `PORT`
    environment variable.
    """
    config = (
        SignalingServingConfig()
        if config_path is None
        else SignalingServingConfig.from_toml(config_path)
    )

    # Override config with CLI options if given
    if host is not None:
        config.host = host
    if port is not None:
        config.port = port
    if log_dir is not None:
        config.logging.log_dir = log_dir
    if log_level is not None:
        config.logging.default_level = logging.getLevelName(log_level.upper())

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.logging.log_dir is not None:
        os.makedirs(config.logging.log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                os.path.join(config.logging.log_dir, 'server.log'),
                # Rotate logs Sunday at midnight
                when='W6',
                atTime=datetime.time(hour=0, minute=0, second=0),
            ),
        )

    logging.basicConfig(
        format=(
            '[%(asctime)s.%(msecs)03d] %(levelname)-5s (%(name)s) :: '
            '%(message)s'
        ),
        datefmt='%Y-%m-%d %H:%M:%S',
        level=config.logging.default_level,
        handlers=handlers,
    )

    for name in ('uvicorn', 'websockets'):
        logging.getLogger(name).setLevel(config.logging.server_level)

    asyncio.run(serve(config))
