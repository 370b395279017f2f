"""Quart application serving the signaling websocket and control routes."""
from __future__ import annotations

import json
import logging
from typing import Any

try:
    import quart
    import websockets.exceptions
    from quart import request
    from quart import Response
    from quart import websocket
except ImportError as e:  # pragma: no cover
    # This file requires quart to be available to register functions to a
    # top-level blueprint.
    raise ImportError(
        f'{e}. To enable serving, install roomrelay with '
        '"pip install roomrelay".',
    ) from e

from roomrelay.exceptions import ConnectionClosedError
from roomrelay.messages import format_timestamp
from roomrelay.messages import utc_timestamp
from roomrelay.server import SignalingServer

logger = logging.getLogger(__name__)

routes_blueprint = quart.Blueprint('routes', __name__)


class QuartWebSocketConnection:
    """[`Connection`][roomrelay.protocols.Connection] over a Quart websocket.

    Args:
        ws: Websocket object of the current request. This must be the
            underlying object and not the context-local proxy because the
            connection is sent to from the handlers of other connections.
    """

    def __init__(self, ws: quart.Websocket) -> None:
        self._websocket = ws

    @property
    def remote_address(self) -> Any:
        """Address of the remote client."""
        return self._websocket.remote_addr

    async def close(self, code: int = 1000, reason: str = '') -> None:
        """Close the websocket."""
        await self._websocket.close(code, reason)

    async def recv(self) -> str | bytes:
        """Receive the next message.

        Note:
            Quart cancels the task of the websocket route when the client
            disconnects so this raises
            [`CancelledError`][asyncio.CancelledError] rather than
            returning.
        """
        return await self._websocket.receive()

    async def send(self, message: str) -> None:
        """Send a message.

        Raises:
            ConnectionClosedError: If the websocket was closed.
        """
        try:
            await self._websocket.send(message)
        except (OSError, websockets.exceptions.ConnectionClosed) as e:
            raise ConnectionClosedError(
                f'Websocket to {self.remote_address} is closed.',
            ) from e


def create_app(
    server: SignalingServer,
    cors_origin: str | None = '*',
) -> quart.Quart:
    """Create quart app for the signaling server and register routes.

    Args:
        server: Signaling server to forward websocket connections and
            room creation requests to.
        cors_origin: Value of the `Access-Control-Allow-Origin` header. CORS
            headers are not added if `None`.

    Returns:
        Quart app.
    """
    app = quart.Quart(__name__)

    app.config['server'] = server
    app.config['CORS_ORIGIN'] = cors_origin

    app.register_blueprint(routes_blueprint, url_prefix='')

    return app


@routes_blueprint.after_app_request
async def _add_cors_headers(response: Response) -> Response:
    origin = quart.current_app.config['CORS_ORIGIN']
    if origin is not None:
        response.headers['Access-Control-Allow-Origin'] = origin
        response.headers['Access-Control-Allow-Methods'] = 'GET, POST'
        response.headers['Access-Control-Allow-Headers'] = 'Content-Type'
    return response


@routes_blueprint.route('/health', methods=['GET'])
async def health_handler() -> Response:
    """Route handler for `GET /health`.

    Responses:

    * `Status Code 200`: JSON containing the key `status` with the value
      `#!python 'ok'` and the current server `timestamp`.
    """
    return Response(
        json.dumps({'status': 'ok', 'timestamp': utc_timestamp()}),
        200,
        content_type='application/json',
    )


@routes_blueprint.route('/create-room', methods=['POST'])
async def create_room_handler() -> Response:
    """Route handler for `POST /create-room`.

    The request body is a JSON object with the ID of the creating user
    (`userId`) and an optional room `type` (defaults to `#!python 'video'`).

    Responses:

    * `Status Code 200`: JSON containing the `roomId`, `type`, and
      `createdAt` of the new room.
    * `Status Code 400`: If the body is not a JSON object, or `userId` or
      `type` are missing or not strings.
    """
    data = await request.get_json(force=True, silent=True)
    if not isinstance(data, dict):
        return Response('request body must be a JSON object', 400)

    user_id = data.get('userId', None)
    if not isinstance(user_id, str):
        return Response('request missing userId', 400)

    room_type = data.get('type', 'video')
    if not isinstance(room_type, str):
        return Response('room type must be a string', 400)

    server = quart.current_app.config['server']
    room = server.registry.create_room(user_id, room_type)
    return Response(
        json.dumps(
            {
                'roomId': room.id,
                'type': room.type,
                'createdAt': format_timestamp(room.created),
            },
        ),
        200,
        content_type='application/json',
    )


@routes_blueprint.websocket('/ws')
async def websocket_handler() -> None:
    """Websocket route handler for `/ws`.

    Each websocket connection is served by
    [`SignalingServer.handler()`][roomrelay.server.SignalingServer.handler]
    until the client disconnects.
    """
    server = quart.current_app.config['server']
    connection = QuartWebSocketConnection(websocket._get_current_object())
    await websocket.accept()
    logger.debug(f'Accepted websocket from {connection.remote_address}')
    await server.handler(connection)
