"""Base transport abstraction for client connections.

Defines the interface that transport implementations must provide so the
relay server can treat every client connection the same way, whether it is
a broadcaster or a subscriber.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator


class Connection(ABC):
    """Base class for transport-specific client connections.

    Messages are JSON-compatible dicts in both directions; the transport
    owns the framing.
    """

    @abstractmethod
    async def send_message(self, message: dict) -> None:
        """Send one message to the client.

        Args:
            message: JSON-serializable message

        Raises:
            ConnectionError: If the connection is closed or broken
        """
        pass

    @abstractmethod
    async def receive_messages(self) -> AsyncIterator[dict]:
        """Receive messages from the client until it disconnects.

        Malformed frames are yielded as ``{"type": "__invalid__", "error": ...}``
        so the caller can answer with a protocol error.

        Yields:
            dict: Decoded client message

        Raises:
            ConnectionError: If the connection breaks unexpectedly
        """
        # Using yield to make this an async generator
        if False:
            yield {}

    @abstractmethod
    async def ping(self) -> float:
        """Measure one round trip to the client.

        Returns:
            Round-trip latency in milliseconds

        Raises:
            ConnectionError: If the connection is closed
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the connection, discarding anything not yet sent."""
        pass

    @property
    @abstractmethod
    def connection_id(self) -> str:
        """Unique connection identifier for logging and routing."""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the connection is still open."""
        pass


class Transport(ABC):
    """Base transport implementation.

    Manages the lifecycle of a transport server and hands out a
    ``Connection`` for every client that connects.
    """

    @abstractmethod
    async def start(self) -> None:
        """Start the transport server.

        Raises:
            RuntimeError: If the transport fails to start
            OSError: If port binding fails (for network transports)
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the transport server and close all connections."""
        pass

    @abstractmethod
    async def accept_connection(self) -> Connection:
        """Accept a new client connection.

        Blocks until a client connects.

        Returns:
            Connection: New client connection

        Raises:
            RuntimeError: If the transport is not running
        """
        pass

    @property
    @abstractmethod
    def transport_type(self) -> str:
        """Transport type identifier (e.g., 'websocket')."""
        pass

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """Check if the transport server is currently running."""
        pass
