"""RoomRelay is a WebRTC signaling server for small peer-to-peer rooms."""
from __future__ import annotations

import importlib.metadata as importlib_metadata

__version__ = importlib_metadata.version('roomrelay')
