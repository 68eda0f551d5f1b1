"""WebSocket CLI client for the translation relay.

Two subcommands:

    broadcast  create a session, start it and stream audio files from a
               directory as self-contained chunks
    listen     join a session in a target language, print translations and
               save the synthesized speech
"""

import argparse
import asyncio
import base64
import itertools
import json
import logging
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import websockets
from websockets.asyncio.client import ClientConnection

from src.client.audio_io import (
    AudioCaptureSource,
    AudioSink,
    DirectoryCaptureSource,
    DirectorySink,
)
from src.relay.transport.websocket_protocol import (
    AudioChunkMessage,
    ClientMessage,
    CreateSessionMessage,
    EndSessionMessage,
    JoinSessionMessage,
    LeaveSessionMessage,
    StartBroadcastMessage,
)

logger = logging.getLogger(__name__)

REPLY_TYPES = frozenset({"ack", "session_created", "joined", "error"})


class ServerRejected(Exception):
    """The relay answered a command with an ``error`` event."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message


class RelayClient(ABC):
    """Shared connection handling for broadcaster and listener clients.

    Args:
        server_url: WebSocket server URL (e.g., ws://localhost:8765)
        verbose: Enable verbose logging
    """

    def __init__(self, server_url: str, verbose: bool = False) -> None:
        self.server_url = server_url
        self.verbose = verbose
        self.session_id: str | None = None
        self.ended = asyncio.Event()
        self._request_ids = itertools.count(1)
        self._replies: dict[str, asyncio.Future[dict[str, Any]]] = {}

    @abstractmethod
    async def run(self) -> None:
        """Connect, perform the client's role and return when the session is over."""

    async def send(self, websocket: ClientConnection, message: ClientMessage) -> None:
        await websocket.send(message.model_dump_json(exclude_none=True))

    async def request(
        self, websocket: ClientConnection, message: ClientMessage, timeout_s: float = 10.0
    ) -> dict[str, Any]:
        """Send a command and wait for its direct reply.

        Requires ``receive_loop`` to be running on the same connection.

        Raises:
            ServerRejected: If the relay answered with an error
        """
        request_id = f"req-{next(self._request_ids)}"
        message.request_id = request_id
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._replies[request_id] = future
        try:
            await self.send(websocket, message)
            reply = await asyncio.wait_for(future, timeout=timeout_s)
        finally:
            self._replies.pop(request_id, None)

        if reply.get("type") == "error":
            raise ServerRejected(reply.get("code", "INTERNAL_ERROR"), reply.get("message", ""))
        return reply

    async def receive_loop(self, websocket: ClientConnection) -> None:
        """Route replies to waiting requests and everything else to ``handle_event``."""
        try:
            async for raw in websocket:
                data = json.loads(raw)
                request_id = data.get("request_id")
                future = self._replies.get(request_id) if request_id else None
                if future is not None and data.get("type") in REPLY_TYPES:
                    if not future.done():
                        future.set_result(data)
                    continue
                await self.handle_event(data)
        except websockets.exceptions.ConnectionClosed:
            logger.info("Connection closed by server")
        finally:
            self.ended.set()

    async def handle_event(self, data: dict[str, Any]) -> None:
        msg_type = data.get("type")
        if msg_type == "session_ended":
            print(f"\nSession ended: {data.get('reason')}")
            self.ended.set()
        elif msg_type == "session_status_changed":
            print(f"Session status: {data.get('previous_status')} -> {data.get('status')}")
        elif msg_type == "error":
            print(f"Error [{data.get('code')}]: {data.get('message')}")
        elif msg_type == "broadcaster_disconnected":
            print(f"Broadcaster disconnected, waiting up to {data.get('grace_period_s')}s")
        elif msg_type == "broadcaster_reconnected":
            print("Broadcaster reconnected")
        else:
            logger.debug(f"Unhandled event: {msg_type}")


class BroadcastClient(RelayClient):
    """Creates a session and streams chunks from a capture source."""

    def __init__(
        self,
        server_url: str,
        source: AudioCaptureSource,
        source_language: str,
        title: str = "Live session",
        password: str | None = None,
        linger_s: float = 5.0,
        verbose: bool = False,
    ) -> None:
        super().__init__(server_url, verbose=verbose)
        self.source = source
        self.source_language = source_language
        self.title = title
        self.password = password
        self.linger_s = linger_s
        self.chunks_sent = 0
        self.chunks_processed = 0

    async def handle_event(self, data: dict[str, Any]) -> None:
        msg_type = data.get("type")
        if msg_type == "audio_processed":
            self.chunks_processed += 1
            print(
                f"Chunk {data['sequence']} processed in {data['processing_time_ms']:.0f}ms, "
                f"delivered to {data['broadcasted_to']} listener(s)"
            )
        elif msg_type == "translation_broadcast":
            print(f"[{data['sequence']}] {data['original']['text']}")
        elif msg_type == "subscriber_joined":
            print(
                f"+ {data['display_name']} ({data['target_language']}), "
                f"{data['subscriber_count']} listening"
            )
        elif msg_type == "subscriber_left":
            print(f"- {data['subscriber_id']}, {data['subscriber_count']} listening")
        elif msg_type == "chunk_dropped":
            print(f"Dropped chunks {data['sequences']} ({data['reason']})")
        elif msg_type == "processing_error":
            print(f"Chunk {data.get('sequence')} failed at {data['stage']}: {data['message']}")
        else:
            await super().handle_event(data)

    async def run(self) -> None:
        async with websockets.connect(self.server_url) as websocket:
            logger.info(f"Connected to {self.server_url}")
            receiver = asyncio.create_task(self.receive_loop(websocket))
            try:
                created = await self.request(
                    websocket,
                    CreateSessionMessage(
                        source_language=self.source_language,
                        title=self.title,
                        password=self.password,
                    ),
                )
                self.session_id = created["session_id"]
                print(f"Session code: {self.session_id}")
                print(f"Reclaim token: {created['reclaim_token']}")

                await self.request(websocket, StartBroadcastMessage(session_id=self.session_id))

                async for chunk in self.source.chunks():
                    if self.ended.is_set():
                        break
                    await self.send(
                        websocket,
                        AudioChunkMessage(
                            session_id=self.session_id,
                            data=base64.b64encode(chunk).decode("ascii"),
                        ),
                    )
                    self.chunks_sent += 1

                if not self.ended.is_set():
                    await asyncio.sleep(self.linger_s)
                    await self.request(websocket, EndSessionMessage(session_id=self.session_id))
                    await asyncio.wait_for(self.ended.wait(), timeout=self.linger_s)
            finally:
                receiver.cancel()
                try:
                    await receiver
                except asyncio.CancelledError:
                    pass

        print(f"\nSent {self.chunks_sent} chunk(s), {self.chunks_processed} processed")


class ListenClient(RelayClient):
    """Joins a session and receives personalised translations."""

    def __init__(
        self,
        server_url: str,
        session_id: str,
        target_language: str,
        sink: AudioSink | None = None,
        display_name: str = "Listener",
        password: str | None = None,
        verbose: bool = False,
    ) -> None:
        super().__init__(server_url, verbose=verbose)
        self.session_id = session_id
        self.target_language = target_language
        self.sink = sink
        self.display_name = display_name
        self.password = password
        self.received = 0

    async def handle_event(self, data: dict[str, Any]) -> None:
        msg_type = data.get("type")
        if msg_type == "personal_translation":
            self.received += 1
            marker = f" ({data['degraded']})" if data.get("degraded") else ""
            print(f"[{data['sequence']}] {data['language']}: {data['text']}{marker}")
            if self.verbose:
                print(f"    original ({data['original']['language']}): {data['original']['text']}")
            if self.sink is not None and data.get("audio"):
                await self.sink.write(
                    base64.b64decode(data["audio"]),
                    data.get("audio_format") or "wav",
                    data["sequence"],
                )
        elif msg_type == "translation_broadcast":
            logger.debug(f"Broadcast {data['sequence']}: {list(data['translations'])}")
        else:
            await super().handle_event(data)

    async def run(self) -> None:
        if self.session_id is None:
            raise RuntimeError("ListenClient requires a session code")
        async with websockets.connect(self.server_url) as websocket:
            logger.info(f"Connected to {self.server_url}")
            receiver = asyncio.create_task(self.receive_loop(websocket))
            try:
                joined = await self.request(
                    websocket,
                    JoinSessionMessage(
                        session_id=self.session_id,
                        target_language=self.target_language,
                        display_name=self.display_name,
                        password=self.password,
                    ),
                )
                print(
                    f"Joined '{joined['title']}' ({joined['source_language']} -> "
                    f"{joined['target_language']}) as {joined['subscriber_id']}"
                )
                await self.ended.wait()
            except asyncio.CancelledError:
                await self.send(websocket, LeaveSessionMessage(session_id=self.session_id))
                raise
            finally:
                receiver.cancel()
                try:
                    await receiver
                except asyncio.CancelledError:
                    pass

        print(f"\nReceived {self.received} translation(s)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="CLI client for the live translation relay")
    parser.add_argument(
        "--host",
        type=str,
        default="ws://localhost:8765",
        help="WebSocket server URL (default: ws://localhost:8765)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    broadcast = subparsers.add_parser("broadcast", help="Create a session and stream audio files")
    broadcast.add_argument("directory", type=Path, help="Directory of audio chunk files")
    broadcast.add_argument("--language", default="en", help="Source language (default: en)")
    broadcast.add_argument("--title", default="Live session", help="Session title")
    broadcast.add_argument("--password", default=None, help="Optional join password")
    broadcast.add_argument(
        "--interval", type=float, default=3.0, help="Seconds between chunks (default: 3)"
    )
    broadcast.add_argument("--loop", action="store_true", help="Replay the directory forever")

    listen = subparsers.add_parser("listen", help="Join a session and receive translations")
    listen.add_argument("session_id", help="Session code")
    listen.add_argument("--language", required=True, help="Target language")
    listen.add_argument("--name", default="Listener", help="Display name")
    listen.add_argument("--password", default=None, help="Join password")
    listen.add_argument(
        "--output", type=Path, default=None, help="Directory to save synthesized audio"
    )
    return parser


def main() -> None:
    """Main entry point for CLI client."""
    args = build_parser().parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    client: RelayClient
    if args.command == "broadcast":
        client = BroadcastClient(
            args.host,
            DirectoryCaptureSource(args.directory, chunk_interval_s=args.interval, loop=args.loop),
            source_language=args.language,
            title=args.title,
            password=args.password,
            verbose=args.verbose,
        )
    else:
        client = ListenClient(
            args.host,
            args.session_id,
            args.language,
            sink=DirectorySink(args.output) if args.output else None,
            display_name=args.name,
            password=args.password,
            verbose=args.verbose,
        )

    try:
        asyncio.run(client.run())
    except ServerRejected as e:
        print(f"Rejected: {e}")
        sys.exit(2)
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)
    except OSError as e:
        logger.error(f"Connection failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
