"""Fixtures for relay integration tests.

Runs a real relay server (WebSocket transport on an ephemeral port, health
server on a free port) with mock speech adapters.
"""

import asyncio
import json
import socket
from collections.abc import AsyncIterator
from typing import Any

import pytest_asyncio
from websockets.asyncio.client import ClientConnection

from src.relay.config import AdaptersConfig, HealthConfig, PipelineConfig, RelayConfig
from src.relay.metrics import MetricsCollector
from src.relay.server import RelayServer
from src.relay.transport.websocket_transport import WebSocketTransport


def get_free_port() -> int:
    """Get a free TCP port for binding.

    The port is freed immediately after discovery, so there's a small race
    condition window, but this is acceptable for tests.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        s.listen(1)
        port: int = s.getsockname()[1]
    return port


@pytest_asyncio.fixture
async def relay_server() -> AsyncIterator[RelayServer]:
    """Running relay server with mock adapters."""
    config = RelayConfig(
        health=HealthConfig(enabled=True, host="127.0.0.1", port=get_free_port()),
        pipeline=PipelineConfig(
            max_in_flight=2,
            reorder_timeout_s=2.0,
            transcription_timeout_s=1.0,
            translation_timeout_s=0.5,
            synthesis_timeout_s=0.5,
        ),
        adapters=AdaptersConfig(mock_transcript="the service begins", mock_latency_ms=10.0),
    )
    server = RelayServer(
        config,
        transport=WebSocketTransport(host="127.0.0.1", port=0),
        metrics=MetricsCollector(),
    )
    await server.start()
    yield server
    await server.stop()


def ws_url(server: RelayServer) -> str:
    assert isinstance(server.transport, WebSocketTransport)
    return f"ws://127.0.0.1:{server.transport.bound_port}"


async def request(ws: ClientConnection, message: dict[str, Any], timeout_s: float = 5.0) -> dict:
    """Send a command and return the reply carrying its request id.

    Events that arrive first are skipped.
    """
    await ws.send(json.dumps(message))
    while True:
        reply = json.loads(await asyncio.wait_for(ws.recv(), timeout=timeout_s))
        if reply.get("request_id") == message.get("request_id"):
            return reply


async def receive_until(
    ws: ClientConnection, msg_type: str, timeout_s: float = 5.0
) -> tuple[dict, list[dict]]:
    """Receive until an event of ``msg_type`` arrives.

    Returns:
        The matching event and everything received before it
    """
    skipped: list[dict] = []
    while True:
        event = json.loads(await asyncio.wait_for(ws.recv(), timeout=timeout_s))
        if event.get("type") == msg_type:
            return event, skipped
        skipped.append(event)
