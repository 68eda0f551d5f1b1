"""Test utilities for relay tests.

Provides:
- An in-memory ``Connection`` that records outbound messages
- Synthetic self-contained audio chunks
- Polling helpers for asynchronous delivery
- ``ActorHarness``, a running ``SessionActor`` with its broadcaster
"""

import asyncio
import base64
from collections.abc import AsyncIterator, Callable
from typing import Any

from src.relay.adapters.audio import tone_wav
from src.relay.codec import AudioChunkCodec
from src.relay.config import PipelineConfig, SessionConfig
from src.relay.connection import ConnectionHandle
from src.relay.metrics import MetricsCollector
from src.relay.models import Session
from src.relay.pipeline import ChunkProcessor
from src.relay.session import SessionActor
from src.relay.transport.base import Connection


class FakeConnection(Connection):
    """In-memory connection recording everything sent to it."""

    def __init__(self, connection_id: str, ping_ms: float = 5.0) -> None:
        self._connection_id = connection_id
        self._connected = True
        self.ping_ms = ping_ms
        self.sent: list[dict[str, Any]] = []
        self.inbound: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self.closed = False

    @property
    def connection_id(self) -> str:
        return self._connection_id

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def send_message(self, message: dict) -> None:
        if not self._connected:
            raise ConnectionError("closed")
        self.sent.append(message)

    async def receive_messages(self) -> AsyncIterator[dict]:
        while True:
            message = await self.inbound.get()
            if message is None:
                return
            yield message

    async def ping(self) -> float:
        if not self._connected:
            raise ConnectionError("closed")
        await asyncio.sleep(self.ping_ms / 1000.0)
        return self.ping_ms

    async def close(self) -> None:
        self._connected = False
        self.closed = True

    def of_type(self, msg_type: str) -> list[dict[str, Any]]:
        return [m for m in self.sent if m.get("type") == msg_type]


def wav_chunk(frequency: float = 440.0, duration_ms: int = 100) -> bytes:
    """A complete WAV file usable as one broadcaster chunk."""
    return tone_wav(frequency, duration_ms)


def wav_chunk_b64(frequency: float = 440.0, duration_ms: int = 100) -> str:
    return base64.b64encode(wav_chunk(frequency, duration_ms)).decode("ascii")


async def drain(*handles: ConnectionHandle) -> None:
    """Let sender tasks deliver everything queued so far."""
    for _ in range(5):
        await asyncio.sleep(0)
    for handle in handles:
        await handle.flush(timeout_s=1.0)


async def wait_for(predicate: Callable[[], bool], timeout_s: float = 2.0) -> None:
    """Poll until ``predicate()`` is true.

    Raises:
        AssertionError: If the condition does not hold before the timeout
    """
    deadline = asyncio.get_running_loop().time() + timeout_s
    while not predicate():
        if asyncio.get_running_loop().time() >= deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


class ActorHarness:
    """A session actor plus its broadcaster connection."""

    def __init__(
        self,
        processor: ChunkProcessor,
        metrics: MetricsCollector,
        session_config: SessionConfig | None = None,
        pipeline_config: PipelineConfig | None = None,
        password_hash: str | None = None,
    ) -> None:
        self.metrics = metrics
        self.broadcaster_conn = FakeConnection("conn-broadcaster")
        self.broadcaster = ConnectionHandle(self.broadcaster_conn, metrics=metrics)
        self.session = Session(
            session_id="ABC234",
            title="Sunday service",
            source_language="en",
            broadcaster_connection_id=self.broadcaster.connection_id,
            password_hash=password_hash,
            reclaim_token="reclaim-secret",
        )
        self.ended: list[SessionActor] = []
        self.actor = SessionActor(
            self.session,
            self.broadcaster,
            processor,
            AudioChunkCodec(),
            session_config=session_config,
            pipeline_config=pipeline_config,
            metrics=metrics,
            on_ended=self.ended.append,
        )
        self.handles: list[ConnectionHandle] = [self.broadcaster]

    def start(self) -> None:
        self.broadcaster.start()
        self.actor.start()

    def subscriber_handle(
        self, name: str, ping_ms: float = 5.0
    ) -> tuple[ConnectionHandle, FakeConnection]:
        conn = FakeConnection(f"conn-{name}", ping_ms=ping_ms)
        handle = ConnectionHandle(conn, metrics=self.metrics)
        handle.start()
        self.handles.append(handle)
        return handle, conn

    async def drain(self) -> None:
        await drain(*self.handles)

    async def close(self) -> None:
        await self.actor.shutdown("test_teardown")
        for handle in self.handles:
            await handle.close()
