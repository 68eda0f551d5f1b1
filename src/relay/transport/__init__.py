"""Transport layer for relay client connections.

Provides an abstraction over transport types for broadcaster and
subscriber connections, plus the JSON wire protocol.
"""

from src.relay.transport.base import Connection, Transport
from src.relay.transport.websocket_transport import (
    WebSocketConnection,
    WebSocketTransport,
)

__all__ = [
    "Connection",
    "Transport",
    "WebSocketConnection",
    "WebSocketTransport",
]
