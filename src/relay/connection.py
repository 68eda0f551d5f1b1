"""Per-client connection handle with an ordered, bounded outbound queue.

Session actors never await a client's socket. They enqueue events on the
client's ``ConnectionHandle`` and a sender task bound to the connection's
lifetime drains the queue in FIFO order. A slow client therefore only delays
itself, and because events are enqueued in release order each client sees
sequences in increasing order.
"""

import asyncio
import logging
from collections import deque
from typing import Any

from pydantic import BaseModel

from src.relay.metrics import MetricsCollector, get_metrics_collector
from src.relay.transport.base import Connection

logger = logging.getLogger(__name__)


class ConnectionHandle:
    """Explicit handle for one client connection.

    Args:
        connection: Underlying transport connection
        max_pending: Outbound events buffered before the oldest is dropped
        metrics: Metrics collector (global collector when omitted)
    """

    def __init__(
        self,
        connection: Connection,
        max_pending: int = 64,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.connection = connection
        self.max_pending = max_pending
        self._metrics = metrics or get_metrics_collector()

        self._pending: deque[dict[str, Any]] = deque()
        self._wakeup = asyncio.Event()
        self._sender_task: asyncio.Task[None] | None = None
        self._closed = False

        self.sent_count = 0
        self.dropped_count = 0

        # Session membership, maintained by the lifecycle controller
        self.session_id: str | None = None
        self.role: str | None = None
        self.subscriber_id: str | None = None

    @property
    def connection_id(self) -> str:
        return self.connection.connection_id

    @property
    def is_open(self) -> bool:
        return not self._closed and self.connection.is_connected

    @property
    def pending(self) -> int:
        return len(self._pending)

    def start(self) -> None:
        """Start the sender task."""
        if self._sender_task is None and not self._closed:
            self._sender_task = asyncio.create_task(
                self._sender_loop(), name=f"sender-{self.connection_id}"
            )

    def send(self, event: BaseModel | dict[str, Any]) -> bool:
        """Queue an event for delivery without waiting.

        Args:
            event: Pydantic server event or JSON-compatible dict

        Returns:
            False if the handle is closed and the event was discarded
        """
        if self._closed:
            return False

        if isinstance(event, BaseModel):
            to_wire = getattr(event, "to_wire", None)
            message = to_wire() if callable(to_wire) else event.model_dump(mode="json")
        else:
            message = event

        if len(self._pending) >= self.max_pending:
            dropped = self._pending.popleft()
            self.dropped_count += 1
            self._metrics.record_outbound_dropped()
            logger.warning(
                "Outbound queue full, dropping oldest event",
                extra={
                    "connection_id": self.connection_id,
                    "dropped_type": dropped.get("type"),
                    "pending": len(self._pending),
                },
            )

        self._pending.append(message)
        self._wakeup.set()
        return True

    async def flush(self, timeout_s: float = 1.0) -> None:
        """Wait until the outbound queue drains or the timeout expires."""
        deadline = asyncio.get_running_loop().time() + timeout_s
        while self._pending and not self._closed:
            if asyncio.get_running_loop().time() >= deadline:
                break
            await asyncio.sleep(0.01)

    async def ping(self) -> float:
        """Round-trip ping used by the quality monitor.

        Returns:
            Latency in milliseconds

        Raises:
            ConnectionError: If the connection is closed
        """
        if self._closed:
            raise ConnectionError("Connection handle is closed")
        return await self.connection.ping()

    async def close(self, flush_timeout_s: float = 0.0) -> None:
        """Stop delivery and close the connection.

        Args:
            flush_timeout_s: Time allowed for pending events to drain first
        """
        if self._closed:
            return

        if flush_timeout_s > 0:
            await self.flush(flush_timeout_s)

        self._closed = True
        self._pending.clear()
        self._wakeup.set()

        if self._sender_task is not None:
            self._sender_task.cancel()
            try:
                await self._sender_task
            except asyncio.CancelledError:
                pass
            self._sender_task = None

        await self.connection.close()

    async def _sender_loop(self) -> None:
        while not self._closed:
            if not self._pending:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            message = self._pending.popleft()
            try:
                await self.connection.send_message(message)
                self.sent_count += 1
            except ConnectionError as e:
                logger.info(
                    "Connection lost while sending, stopping sender",
                    extra={"connection_id": self.connection_id, "error": str(e)},
                )
                self._pending.clear()
                return
