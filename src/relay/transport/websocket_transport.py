"""WebSocket transport implementation.

Provides WebSocket-based client connections for the relay using the
``websockets`` asyncio server. Every message is a JSON text frame.
"""

import asyncio
import json
import logging
import time
import uuid
from collections.abc import AsyncIterator
from typing import Any

import websockets
from websockets.asyncio.server import ServerConnection
from websockets.protocol import State

from src.relay.transport.base import Connection, Transport

logger = logging.getLogger(__name__)

INVALID_FRAME_TYPE = "__invalid__"


class WebSocketConnection(Connection):
    """WebSocket-based client connection.

    Implements the Connection interface for WebSocket clients, handling JSON
    serialization and latency pings via WebSocket ping frames.
    """

    def __init__(self, websocket: ServerConnection, connection_id: str) -> None:
        """Initialize WebSocket connection.

        Args:
            websocket: WebSocket connection
            connection_id: Unique connection identifier
        """
        self._websocket = websocket
        self._connection_id = connection_id
        self._connected = True
        self._closed = asyncio.Event()

        logger.info(
            "WebSocket connection initialized",
            extra={"connection_id": connection_id, "remote": websocket.remote_address},
        )

    @property
    def connection_id(self) -> str:
        return self._connection_id

    @property
    def is_connected(self) -> bool:
        return self._connected and self._websocket.state == State.OPEN

    async def send_message(self, message: dict) -> None:
        """Send one JSON message to the client.

        Raises:
            ConnectionError: If the connection is closed or broken
        """
        if not self.is_connected:
            raise ConnectionError("WebSocket connection is closed")

        try:
            await self._websocket.send(json.dumps(message))
        except websockets.exceptions.ConnectionClosed as e:
            self._connected = False
            raise ConnectionError(f"WebSocket connection closed: {e}") from e

    async def receive_messages(self) -> AsyncIterator[dict]:
        """Receive JSON messages until the client disconnects.

        Yields:
            dict: Decoded message, or an ``__invalid__`` marker for frames
                that are not JSON objects

        Raises:
            ConnectionError: If the connection breaks unexpectedly
        """
        try:
            async for raw_message in self._websocket:
                if not isinstance(raw_message, str):
                    logger.warning(
                        "Received binary WebSocket frame, expected JSON text",
                        extra={"connection_id": self._connection_id},
                    )
                    yield {"type": INVALID_FRAME_TYPE, "error": "Binary frames are not supported"}
                    continue

                try:
                    data = json.loads(raw_message)
                except json.JSONDecodeError as e:
                    logger.warning(
                        "Invalid JSON message",
                        extra={"connection_id": self._connection_id, "error": str(e)},
                    )
                    yield {"type": INVALID_FRAME_TYPE, "error": f"Invalid JSON: {e}"}
                    continue

                if not isinstance(data, dict):
                    yield {"type": INVALID_FRAME_TYPE, "error": "Message must be a JSON object"}
                    continue

                yield data

        except websockets.exceptions.ConnectionClosed:
            logger.info(
                "WebSocket connection closed by client",
                extra={"connection_id": self._connection_id},
            )
        except Exception as e:
            logger.error(
                "Error receiving WebSocket messages",
                extra={"connection_id": self._connection_id, "error": str(e)},
            )
            raise ConnectionError(f"WebSocket receive error: {e}") from e
        finally:
            self._connected = False

    async def ping(self) -> float:
        """Measure round-trip latency with a WebSocket ping frame.

        Returns:
            Latency in milliseconds

        Raises:
            ConnectionError: If the connection is closed
        """
        if not self.is_connected:
            raise ConnectionError("WebSocket connection is closed")

        start = time.monotonic()
        try:
            pong_waiter = await self._websocket.ping()
            await pong_waiter
        except websockets.exceptions.ConnectionClosed as e:
            self._connected = False
            raise ConnectionError(f"WebSocket connection closed: {e}") from e
        return (time.monotonic() - start) * 1000.0

    async def close(self) -> None:
        """Close the WebSocket connection."""
        if not self._connected:
            self._closed.set()
            return

        logger.info("Closing WebSocket connection", extra={"connection_id": self._connection_id})
        try:
            await self._websocket.close()
        except Exception as e:
            logger.warning(
                "Error during connection close",
                extra={"connection_id": self._connection_id, "error": str(e)},
            )
        finally:
            self._connected = False
            self._closed.set()

    def mark_finished(self) -> None:
        """Signal that the relay is done with this connection."""
        self._closed.set()

    async def wait_finished(self) -> None:
        await self._closed.wait()


class WebSocketTransport(Transport):
    """WebSocket transport server.

    Manages the WebSocket server lifecycle and queues a WebSocketConnection
    for every client that connects.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = 8765,
        max_connections: int = 500,
        max_message_bytes: int = 4 * 2**20,
    ) -> None:
        """Initialize WebSocket transport.

        Args:
            host: Bind host address
            port: Bind port (0 picks a free port)
            max_connections: Maximum concurrent connections
            max_message_bytes: Maximum inbound message size
        """
        self._host = host
        self._port = port
        self._max_connections = max_connections
        self._max_message_bytes = max_message_bytes
        self._server: Any = None  # websockets Server
        self._running = False
        self._connection_queue: asyncio.Queue[WebSocketConnection] = asyncio.Queue()
        self._connections: dict[str, WebSocketConnection] = {}

        logger.info(
            "WebSocket transport initialized",
            extra={"host": host, "port": port, "max_connections": max_connections},
        )

    @property
    def transport_type(self) -> str:
        return "websocket"

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    @property
    def bound_port(self) -> int:
        """Port actually bound (differs from the configured one when it was 0)."""
        if self._server is None:
            return self._port
        for sock in self._server.sockets:
            return int(sock.getsockname()[1])
        return self._port

    async def start(self) -> None:
        """Start the WebSocket server.

        Raises:
            RuntimeError: If the transport is already running or fails to start
            OSError: If port binding fails
        """
        if self._running:
            raise RuntimeError("WebSocket transport is already running")

        logger.info("Starting WebSocket server", extra={"host": self._host, "port": self._port})

        try:
            self._server = await websockets.serve(
                self._handle_connection,
                self._host,
                self._port,
                max_size=self._max_message_bytes,
            )
            self._running = True

            logger.info(
                "WebSocket server started",
                extra={"host": self._host, "port": self.bound_port},
            )

        except OSError as e:
            logger.error(
                "Failed to bind WebSocket server",
                extra={"host": self._host, "port": self._port, "error": str(e)},
            )
            raise
        except Exception as e:
            logger.error("Failed to start WebSocket server", extra={"error": str(e)})
            raise RuntimeError(f"Failed to start WebSocket transport: {e}") from e

    async def stop(self) -> None:
        """Stop the WebSocket server, closing all connections."""
        if not self._running:
            return

        logger.info("Stopping WebSocket server")
        self._running = False

        for connection in list(self._connections.values()):
            await connection.close()

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("WebSocket server stopped")

    async def accept_connection(self) -> Connection:
        """Accept the next client connection.

        Raises:
            RuntimeError: If the transport is not running
        """
        if not self._running:
            raise RuntimeError("WebSocket transport is not running")

        return await self._connection_queue.get()

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        """Handle an incoming WebSocket connection.

        The websockets library closes the socket when this handler returns, so
        it waits until the relay has finished with the connection.

        Args:
            websocket: WebSocket connection
        """
        if len(self._connections) >= self._max_connections:
            logger.warning(
                "Connection limit reached, rejecting client",
                extra={"remote": websocket.remote_address, "limit": self._max_connections},
            )
            await websocket.close(code=1013, reason="Server at capacity")
            return

        connection_id = f"conn-{uuid.uuid4().hex[:12]}"
        connection = WebSocketConnection(websocket, connection_id)
        self._connections[connection_id] = connection

        await self._connection_queue.put(connection)

        try:
            await connection.wait_finished()
        finally:
            self._connections.pop(connection_id, None)
            logger.info("WebSocket connection closed", extra={"connection_id": connection_id})
