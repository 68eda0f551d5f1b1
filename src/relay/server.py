"""Relay server entry point.

Accepts client connections from the WebSocket transport, runs one handler
task per connection that parses commands and routes them to the lifecycle
controller, and serves health and metrics over HTTP.
"""

import argparse
import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from aiohttp.web import Application, AppRunner, TCPSite

from src.relay.adapters.adapter_mock import (
    MockSynthesisAdapter,
    MockTranscriptionAdapter,
    MockTranslationAdapter,
)
from src.relay.adapters.base import SynthesisAdapter, TranscriptionAdapter, TranslationAdapter
from src.relay.config import AdaptersConfig, RelayConfig
from src.relay.connection import ConnectionHandle
from src.relay.errors import InvalidMessage, RelayError
from src.relay.health import setup_health_routes
from src.relay.lifecycle import SessionLifecycleController
from src.relay.metrics import MetricsCollector, get_metrics_collector
from src.relay.transport.base import Connection, Transport
from src.relay.transport.websocket_protocol import (
    AckEvent,
    AudioChunkMessage,
    ChangeLanguageMessage,
    ClientMessage,
    CreateSessionMessage,
    EndSessionMessage,
    ErrorEvent,
    JoinedEvent,
    JoinSessionMessage,
    LeaveSessionMessage,
    PauseBroadcastMessage,
    PingMessage,
    PongEvent,
    QualityReportMessage,
    ReclaimSessionMessage,
    ResumeBroadcastMessage,
    ServerEvent,
    SessionCreatedEvent,
    StartBroadcastMessage,
    TextMessageMessage,
    parse_client_message,
)
from src.relay.transport.websocket_transport import INVALID_FRAME_TYPE, WebSocketTransport

logger = logging.getLogger(__name__)

Route = Callable[[ConnectionHandle, Any], Awaitable[ServerEvent]]


def build_adapters(
    config: AdaptersConfig,
) -> tuple[TranscriptionAdapter, TranslationAdapter, SynthesisAdapter]:
    """Create the configured speech collaborators.

    Args:
        config: Adapter configuration

    Returns:
        Tuple of (transcriber, translator, synthesizer)
    """
    if config.backend == "mock":
        return (
            MockTranscriptionAdapter(
                transcript=config.mock_transcript, latency_ms=config.mock_latency_ms
            ),
            MockTranslationAdapter(latency_ms=config.mock_latency_ms),
            MockSynthesisAdapter(latency_ms=config.mock_latency_ms),
        )
    raise ValueError(f"Unknown adapter backend: {config.backend}")


class RelayServer:
    """Connection handling and command routing for the relay.

    Args:
        config: Relay configuration
        controller: Lifecycle controller (built from mock adapters when omitted)
        transport: Client transport (WebSocket transport from config when omitted)
        metrics: Metrics collector (global collector when omitted)
    """

    def __init__(
        self,
        config: RelayConfig,
        controller: SessionLifecycleController | None = None,
        transport: Transport | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.config = config
        self._metrics = metrics or get_metrics_collector()

        if controller is None:
            transcriber, translator, synthesizer = build_adapters(config.adapters)
            controller = SessionLifecycleController(
                config, transcriber, translator, synthesizer, metrics=self._metrics
            )
        self.controller = controller

        if transport is None:
            ws_config = config.websocket
            transport = WebSocketTransport(
                host=ws_config.host,
                port=ws_config.port,
                max_connections=ws_config.max_connections,
                max_message_bytes=ws_config.max_message_bytes,
            )
        self.transport = transport

        self._runner: AppRunner | None = None
        self._accept_task: asyncio.Task[None] | None = None
        self._connection_tasks: set[asyncio.Task[None]] = set()

        self._routes: dict[type[ClientMessage], Route] = {
            CreateSessionMessage: self._create_session,
            StartBroadcastMessage: self._start_broadcast,
            PauseBroadcastMessage: self._pause_broadcast,
            ResumeBroadcastMessage: self._resume_broadcast,
            EndSessionMessage: self._end_session,
            AudioChunkMessage: self._audio_chunk,
            TextMessageMessage: self._text_message,
            ReclaimSessionMessage: self._reclaim_session,
            JoinSessionMessage: self._join_session,
            LeaveSessionMessage: self._leave_session,
            ChangeLanguageMessage: self._change_language,
            QualityReportMessage: self._quality_report,
            PingMessage: self._ping,
        }

    # === Server lifecycle ===

    async def start(self) -> None:
        """Start the controller, the transport and the health server."""
        await self.controller.start()
        await self.transport.start()

        if self.config.health.enabled:
            health_app = Application()
            setup_health_routes(
                health_app,
                controller=self.controller,
                transport=self.transport,
                metrics=self._metrics,
            )
            self._runner = AppRunner(health_app)
            await self._runner.setup()
            site = TCPSite(self._runner, self.config.health.host, self.config.health.port)
            await site.start()
            logger.info(
                "Health check server started",
                extra={"host": self.config.health.host, "port": self.config.health.port},
            )

        self._accept_task = asyncio.create_task(self._accept_loop(), name="accept-loop")
        logger.info("Relay server ready")

    async def stop(self) -> None:
        """Stop accepting, end all sessions and release resources."""
        logger.info("Shutting down relay server")

        if self._accept_task is not None:
            self._accept_task.cancel()
            try:
                await self._accept_task
            except asyncio.CancelledError:
                pass
            self._accept_task = None

        await self.controller.stop()
        await self.transport.stop()

        if self._connection_tasks:
            logger.info(
                "Waiting for connections to close",
                extra={"count": len(self._connection_tasks)},
            )
            _, pending = await asyncio.wait(
                self._connection_tasks, timeout=self.config.graceful_shutdown_timeout_s
            )
            for task in pending:
                task.cancel()

        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Health check server stopped")

        logger.info("Relay server stopped")

    async def serve_forever(self) -> None:
        if self._accept_task is None:
            raise RuntimeError("Relay server is not started")
        await self._accept_task

    async def _accept_loop(self) -> None:
        while True:
            connection = await self.transport.accept_connection()
            task = asyncio.create_task(
                self.handle_connection(connection), name=f"conn-{connection.connection_id}"
            )
            self._connection_tasks.add(task)
            task.add_done_callback(self._connection_tasks.discard)

    # === Per-connection handling ===

    async def handle_connection(self, connection: Connection) -> None:
        """Serve one client until it disconnects.

        Args:
            connection: Accepted transport connection
        """
        handle = ConnectionHandle(
            connection,
            max_pending=self.config.websocket.outbound_queue_size,
            metrics=self._metrics,
        )
        handle.start()
        self._metrics.record_connection_opened()
        logger.info("Client connected", extra={"connection_id": handle.connection_id})

        try:
            async for data in connection.receive_messages():
                await self.handle_message(handle, data)
        except ConnectionError as e:
            logger.warning(
                "Client connection error",
                extra={"connection_id": handle.connection_id, "error": str(e)},
            )
        finally:
            await self.controller.connection_closed(handle)
            await handle.close(flush_timeout_s=0.5)
            self._metrics.record_connection_closed()
            logger.info("Client disconnected", extra={"connection_id": handle.connection_id})

    async def handle_message(self, handle: ConnectionHandle, data: dict[str, Any]) -> None:
        """Parse, route and answer one client message.

        Session-level errors become ``error`` events; nothing a client sends
        can break the connection handler.
        """
        request_id = data.get("request_id") if isinstance(data.get("request_id"), str) else None
        try:
            if data.get("type") == INVALID_FRAME_TYPE:
                raise InvalidMessage(str(data.get("error", "Invalid message")))

            message = parse_client_message(data)
            route = self._routes[type(message)]
            reply = await route(handle, message)

        except RelayError as e:
            logger.info(
                "Command rejected",
                extra={
                    "connection_id": handle.connection_id,
                    "type": data.get("type"),
                    "code": e.code,
                    "error": e.message,
                },
            )
            handle.send(ErrorEvent(code=e.code, message=e.message, request_id=request_id))
            return
        except Exception as e:
            logger.exception(
                "Unexpected error handling message",
                extra={"connection_id": handle.connection_id, "type": data.get("type")},
            )
            handle.send(ErrorEvent(code="INTERNAL_ERROR", message=str(e), request_id=request_id))
            return

        reply.request_id = message.request_id
        handle.send(reply)

    # === Routes ===

    async def _create_session(
        self, handle: ConnectionHandle, msg: CreateSessionMessage
    ) -> ServerEvent:
        session = await self.controller.create_session(
            handle,
            msg.source_language,
            title=msg.title,
            password=msg.password,
            broadcaster_name=msg.broadcaster_name,
        )
        return SessionCreatedEvent(
            session_id=session.session_id,
            title=session.title,
            source_language=session.source_language,
            status=session.status.value,
            reclaim_token=session.reclaim_token,
        )

    async def _start_broadcast(
        self, handle: ConnectionHandle, msg: StartBroadcastMessage
    ) -> ServerEvent:
        status = await self.controller.start_broadcast(handle, msg.session_id)
        return AckEvent(action=msg.type, session_id=msg.session_id, status=status.value)

    async def _pause_broadcast(
        self, handle: ConnectionHandle, msg: PauseBroadcastMessage
    ) -> ServerEvent:
        status = await self.controller.pause_broadcast(handle, msg.session_id)
        return AckEvent(action=msg.type, session_id=msg.session_id, status=status.value)

    async def _resume_broadcast(
        self, handle: ConnectionHandle, msg: ResumeBroadcastMessage
    ) -> ServerEvent:
        status = await self.controller.resume_broadcast(handle, msg.session_id)
        return AckEvent(action=msg.type, session_id=msg.session_id, status=status.value)

    async def _end_session(self, handle: ConnectionHandle, msg: EndSessionMessage) -> ServerEvent:
        await self.controller.end_session(handle, msg.session_id, msg.reason)
        return AckEvent(action=msg.type, session_id=msg.session_id, status="ended")

    async def _audio_chunk(self, handle: ConnectionHandle, msg: AudioChunkMessage) -> ServerEvent:
        sequence = await self.controller.audio_chunk(handle, msg.session_id, msg.data)
        return AckEvent(action=msg.type, session_id=msg.session_id, sequence=sequence)

    async def _text_message(self, handle: ConnectionHandle, msg: TextMessageMessage) -> ServerEvent:
        sequence = await self.controller.text_message(handle, msg.session_id, msg.text)
        return AckEvent(action=msg.type, session_id=msg.session_id, sequence=sequence)

    async def _reclaim_session(
        self, handle: ConnectionHandle, msg: ReclaimSessionMessage
    ) -> ServerEvent:
        session = await self.controller.reclaim_session(handle, msg.session_id, msg.reclaim_token)
        return AckEvent(action=msg.type, session_id=session.session_id, status=session.status.value)

    async def _join_session(self, handle: ConnectionHandle, msg: JoinSessionMessage) -> ServerEvent:
        session, subscriber = await self.controller.join_session(
            handle,
            msg.session_id,
            msg.target_language,
            display_name=msg.display_name,
            password=msg.password,
        )
        return JoinedEvent(
            session_id=session.session_id,
            subscriber_id=subscriber.subscriber_id,
            title=session.title,
            source_language=session.source_language,
            target_language=subscriber.target_language,
            status=session.status.value,
        )

    async def _leave_session(
        self, handle: ConnectionHandle, msg: LeaveSessionMessage
    ) -> ServerEvent:
        await self.controller.leave_session(handle, msg.session_id)
        return AckEvent(action=msg.type, session_id=msg.session_id)

    async def _change_language(
        self, handle: ConnectionHandle, msg: ChangeLanguageMessage
    ) -> ServerEvent:
        await self.controller.change_language(handle, msg.session_id, msg.target_language)
        return AckEvent(action=msg.type, session_id=msg.session_id)

    async def _quality_report(
        self, handle: ConnectionHandle, msg: QualityReportMessage
    ) -> ServerEvent:
        quality = await self.controller.report_quality(handle, msg.session_id, msg.latency_ms)
        return AckEvent(action=msg.type, session_id=msg.session_id, status=quality.tier.value)

    async def _ping(self, handle: ConnectionHandle, msg: PingMessage) -> ServerEvent:
        return PongEvent(timestamp=msg.timestamp, server_time=time.time())


async def start_server(config_path: Path, server: RelayServer | None = None) -> None:
    """Start the relay server and run until interrupted.

    Args:
        config_path: Path to YAML config file (defaults are used if missing)
        server: Optional pre-created server (for testing)
    """
    config = RelayConfig.from_yaml_with_defaults(config_path)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info("Loaded configuration", extra={"config_path": str(config_path)})

    if server is None:
        server = RelayServer(config)

    await server.start()
    try:
        await server.serve_forever()
    except asyncio.CancelledError:
        logger.info("Server loop cancelled")
    except KeyboardInterrupt:
        logger.info("Received interrupt signal")
    finally:
        await server.stop()


def main() -> None:
    """Entry point for the relay server."""
    parser = argparse.ArgumentParser(description="Live translation relay server")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(__file__).parent.parent.parent / "configs" / "relay.yaml",
        help="Path to relay config YAML file",
    )
    args = parser.parse_args()

    try:
        asyncio.run(start_server(args.config))
    except KeyboardInterrupt:
        logger.info("Relay server interrupted")


if __name__ == "__main__":
    main()
