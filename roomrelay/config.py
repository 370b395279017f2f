"""Signaling server configuration file parsing."""
from __future__ import annotations

import logging
import pathlib
import sys

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    import tomllib
    from typing import Self
else:  # pragma: <3.11 cover
    import tomli as tomllib
    from typing_extensions import Self

import tomli_w
from pydantic import BaseModel
from pydantic import Field
from pydantic import field_validator

from roomrelay.reaper import DEFAULT_REAPER_INTERVAL
from roomrelay.reaper import DEFAULT_ROOM_RETENTION
from roomrelay.registry import DEFAULT_MAX_PARTICIPANTS
from roomrelay.registry import DEFAULT_ROOM_ID_PREFIX

DEFAULT_PORT = 3001


class SignalingRoomsConfig(BaseModel):
    """Room registry configuration.

    Attributes:
        max_participants: Maximum number of participants in a room.
        id_prefix: Prefix of generated room IDs.
        retention: Seconds an empty room is kept after its creation before
            the idle reaper may delete it.
        reaper_interval: Seconds between sweeps of the idle reaper.
    """

    max_participants: int = DEFAULT_MAX_PARTICIPANTS
    id_prefix: str = DEFAULT_ROOM_ID_PREFIX
    retention: int = DEFAULT_ROOM_RETENTION
    reaper_interval: int = DEFAULT_REAPER_INTERVAL

    @field_validator('max_participants', 'reaper_interval')
    @classmethod
    def _positive_validator(cls, v: int) -> int:
        if v < 1:
            raise ValueError('Value must be >= 1.')
        return v


class SignalingLoggingConfig(BaseModel):
    """Signaling server logging configuration.

    Attributes:
        log_dir: Default logging directory.
        default_level: Default logging level for the root logger.
        server_level: Log level for the `uvicorn` and `websockets` loggers.
            These log with much higher frequency so it is suggested to set
            this to `WARNING` or higher.
        current_room_interval: Optional seconds between logging the
            number of active rooms and connected clients.
        current_room_limit: Max threshold for enumerating the detailed
            list of active rooms. If `None`, no detailed list will be logged.
    """

    log_dir: str | None = None
    default_level: int | str = logging.INFO
    server_level: int | str = logging.WARNING
    current_room_interval: int | None = 60
    current_room_limit: int | None = 32


class SignalingServingConfig(BaseModel):
    """Signaling server serving configuration.

    Attributes:
        host: Network interface the server binds to.
        port: Network port the server binds to.
        certfile: Certificate file (PEM format) use to enable TLS.
        keyfile: Private key file. If not specified, the key will be
            taken from the certfile.
        cors_origin: Value of the `Access-Control-Allow-Origin` header on
            HTTP responses. CORS headers are omitted if `None`.
        max_message_bytes: Maximum size in bytes of messages received by
            the signaling server.
        rooms: Room registry configuration.
        logging: Logging configuration.
    """

    host: str = '0.0.0.0'
    port: int = DEFAULT_PORT
    certfile: str | None = None
    keyfile: str | None = None
    cors_origin: str | None = '*'
    max_message_bytes: int | None = None
    rooms: SignalingRoomsConfig = Field(default_factory=SignalingRoomsConfig)
    logging: SignalingLoggingConfig = Field(
        default_factory=SignalingLoggingConfig,
    )

    @field_validator('port')
    @classmethod
    def _port_validator(cls, v: int) -> int:
        if not 0 <= v <= 65535:
            raise ValueError('Port must be in [0, 65535].')
        return v

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse a TOML config file.

        Example:
            Minimal config without SSL.
            ```toml title="signaling.toml"
            port = 3001

            [rooms]
            max_participants = 4
            retention = 3600
            reaper_interval = 3600

            [logging]
            log_dir = "/path/to/log/dir"
            default_level = "INFO"
            server_level = "WARNING"
            current_room_interval = 60
            current_room_limit = 32
            ```

            ```python
            from roomrelay.config import SignalingServingConfig

            config = SignalingServingConfig.from_toml('signaling.toml')
            ```

        Note:
            Omitted values will be set to their defaults.
        """
        with open(filepath, 'rb') as f:
            return cls.model_validate(tomllib.load(f))

    def write_toml(self, filepath: str | pathlib.Path) -> None:
        """Write the configuration to a TOML file.

        Args:
            filepath: Path of the file to write. Parent directories will be
                created if needed.
        """
        filepath = pathlib.Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(filepath, 'wb') as f:
            tomli_w.dump(self.model_dump(exclude_none=True), f)
