"""Session lifecycle controller.

The protocol-facing facade of the relay. It wires the shared components
(registry, dual output cache, chunk processor, fan-out, quality monitor),
routes every client command to the right session actor, tracks which
session a connection belongs to, and runs the administrative sweeper that
ends idle or overlong sessions and purges ended ones after retention.
"""

import asyncio
import logging
from typing import Any

from src.relay.adapters.base import SynthesisAdapter, TranscriptionAdapter, TranslationAdapter
from src.relay.cache import DualOutputCache
from src.relay.codec import AudioChunkCodec
from src.relay.config import RelayConfig
from src.relay.connection import ConnectionHandle
from src.relay.errors import SessionEnded, SessionNotFound
from src.relay.fanout import FanoutDispatcher
from src.relay.metrics import MetricsCollector, get_metrics_collector
from src.relay.models import ConnectionQuality, Session, SessionStatus, Subscriber
from src.relay.pipeline import ChunkProcessor
from src.relay.quality import ConnectionQualityMonitor, make_sample
from src.relay.registry import SessionRegistry
from src.relay.session import SessionActor

logger = logging.getLogger(__name__)


class SessionLifecycleController:
    """Routes client commands to session actors.

    Args:
        config: Relay configuration
        transcriber: Transcription adapter
        translator: Translation adapter
        synthesizer: Synthesis adapter
        metrics: Metrics collector (global collector when omitted)
    """

    def __init__(
        self,
        config: RelayConfig,
        transcriber: TranscriptionAdapter,
        translator: TranslationAdapter,
        synthesizer: SynthesisAdapter,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.config = config
        self._metrics = metrics or get_metrics_collector()

        self.cache = DualOutputCache(
            translator,
            synthesizer,
            max_entries=config.cache.max_entries,
            translation_timeout_s=config.pipeline.translation_timeout_s,
            synthesis_timeout_s=config.pipeline.synthesis_timeout_s,
            metrics=self._metrics,
        )
        self.processor = ChunkProcessor(
            transcriber,
            self.cache,
            transcription_timeout_s=config.pipeline.transcription_timeout_s,
        )
        self.codec = AudioChunkCodec(
            max_chunk_bytes=config.audio.max_chunk_bytes,
            allowed_containers=config.audio.allowed_containers,
        )
        self.fanout = FanoutDispatcher(metrics=self._metrics)
        self.quality = ConnectionQualityMonitor(
            ping_interval_s=config.quality.ping_interval_s,
            ping_timeout_s=config.quality.ping_timeout_s,
            metrics=self._metrics,
        )
        self.registry = SessionRegistry(config.session, self._build_actor)

        self._sweeper_task: asyncio.Task[None] | None = None

    def _build_actor(self, session: Session, broadcaster: ConnectionHandle | None) -> SessionActor:
        return SessionActor(
            session,
            broadcaster,
            self.processor,
            self.codec,
            session_config=self.config.session,
            pipeline_config=self.config.pipeline,
            fanout=self.fanout,
            metrics=self._metrics,
            on_ended=self._on_session_ended,
        )

    def _on_session_ended(self, actor: SessionActor) -> None:
        for subscriber in actor.subscribers.values():
            self.quality.cancel(subscriber.connection_id)
        self.registry.unbind_session(actor.session_id)

    # === Controller lifecycle ===

    async def start(self) -> None:
        """Start the administrative sweeper."""
        if self._sweeper_task is None:
            self._sweeper_task = asyncio.create_task(self._sweep_loop(), name="session-sweeper")
            logger.info(
                "Lifecycle controller started",
                extra={"sweep_interval_s": self.config.session.sweep_interval_s},
            )

    async def stop(self) -> None:
        """Stop the sweeper, end every live session and stop quality pings."""
        if self._sweeper_task is not None:
            self._sweeper_task.cancel()
            try:
                await self._sweeper_task
            except asyncio.CancelledError:
                pass
            self._sweeper_task = None

        for actor in self.registry.all_sessions():
            await actor.shutdown("server_shutdown")
        await self.quality.close()
        logger.info("Lifecycle controller stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.session.sweep_interval_s)
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Session sweep failed")

    async def sweep(self) -> dict[str, int]:
        """End expired sessions and purge ended ones past retention.

        Returns:
            Counts of ended and purged sessions
        """
        ended = 0
        for actor, reason in self.registry.expired_sessions():
            try:
                await actor.end(None, reason)
                ended += 1
            except SessionEnded:
                continue
            logger.info(
                "Session ended by sweeper",
                extra={"session_id": actor.session_id, "reason": reason},
            )

        purged = 0
        for actor in self.registry.purgeable_sessions():
            await self.registry.remove(actor.session_id)
            purged += 1

        if ended or purged:
            logger.info("Session sweep complete", extra={"ended": ended, "purged": purged})
        return {"ended": ended, "purged": purged}

    # === Broadcaster operations ===

    async def create_session(
        self,
        handle: ConnectionHandle,
        source_language: str,
        title: str = "Live session",
        password: str | None = None,
        broadcaster_name: str = "Broadcaster",
    ) -> Session:
        await self._release_membership(handle)
        actor = await self.registry.create_session(
            handle,
            source_language,
            title=title,
            password=password,
            broadcaster_name=broadcaster_name,
        )
        return actor.session

    async def start_broadcast(self, handle: ConnectionHandle, session_id: str) -> SessionStatus:
        return await self.registry.get(session_id).start_broadcast(handle.connection_id)

    async def pause_broadcast(self, handle: ConnectionHandle, session_id: str) -> SessionStatus:
        return await self.registry.get(session_id).pause_broadcast(handle.connection_id)

    async def resume_broadcast(self, handle: ConnectionHandle, session_id: str) -> SessionStatus:
        return await self.registry.get(session_id).resume_broadcast(handle.connection_id)

    async def end_session(
        self, handle: ConnectionHandle, session_id: str, reason: str = "ended_by_broadcaster"
    ) -> None:
        await self.registry.get(session_id).end(handle.connection_id, reason)

    async def audio_chunk(
        self, handle: ConnectionHandle, session_id: str, data: bytes | str
    ) -> int:
        return await self.registry.get(session_id).submit_audio(handle.connection_id, data)

    async def text_message(self, handle: ConnectionHandle, session_id: str, text: str) -> int:
        return await self.registry.get(session_id).submit_text(handle.connection_id, text)

    async def reclaim_session(
        self, handle: ConnectionHandle, session_id: str, token: str
    ) -> Session:
        actor = self.registry.get(session_id)
        if handle.session_id != actor.session_id:
            await self._release_membership(handle)
        session = await actor.reclaim(handle, token)
        self.registry.bind_connection(handle.connection_id, actor.session_id)
        return session

    # === Subscriber operations ===

    async def join_session(
        self,
        handle: ConnectionHandle,
        session_id: str,
        target_language: str,
        display_name: str = "Guest",
        password: str | None = None,
    ) -> tuple[Session, Subscriber]:
        actor = self.registry.get_live(session_id)

        await self._release_membership(handle)
        subscriber = await actor.join(handle, target_language, display_name, password)
        self.registry.bind_connection(handle.connection_id, actor.session_id)

        if self.config.quality.enabled:
            subscriber_id = subscriber.subscriber_id

            async def on_sample(quality: ConnectionQuality) -> None:
                await actor.record_quality(subscriber_id, quality)

            self.quality.watch(handle.connection_id, handle.ping, on_sample)

        return actor.session, subscriber

    async def leave_session(self, handle: ConnectionHandle, session_id: str) -> bool:
        """Leave a session; a no-op when not a member or the session ended."""
        actor = self.registry.get(session_id)
        subscriber_id = handle.subscriber_id if handle.session_id == actor.session_id else None
        self.quality.cancel(handle.connection_id)
        if subscriber_id is None:
            return False

        left = await actor.leave(subscriber_id)
        self.registry.unbind_connection(handle.connection_id)
        return left

    async def change_language(
        self, handle: ConnectionHandle, session_id: str, target_language: str
    ) -> Subscriber:
        actor = self.registry.get(session_id)
        if handle.session_id != actor.session_id or handle.subscriber_id is None:
            raise SessionNotFound(f"Connection is not subscribed to session {actor.session_id}")
        return await actor.change_language(handle.subscriber_id, target_language)

    async def report_quality(
        self, handle: ConnectionHandle, session_id: str, latency_ms: float
    ) -> ConnectionQuality:
        """Store a client-measured latency sample."""
        actor = self.registry.get(session_id)
        quality = make_sample(latency_ms)
        if handle.session_id == actor.session_id and handle.subscriber_id is not None:
            await actor.record_quality(handle.subscriber_id, quality)
        return quality

    # === Connection lifecycle ===

    async def connection_closed(self, handle: ConnectionHandle) -> None:
        """Clean up after a connection goes away.

        A broadcaster's session enters its grace period; a subscriber leaves.
        """
        self.quality.cancel(handle.connection_id)
        await self._release_membership(handle)

    async def _release_membership(self, handle: ConnectionHandle) -> None:
        actor = self.registry.session_for_connection(handle.connection_id)
        self.registry.unbind_connection(handle.connection_id)
        if actor is None or actor.is_ended:
            return

        try:
            if handle.role == "broadcaster":
                await actor.broadcaster_disconnected(handle.connection_id)
            elif handle.subscriber_id is not None:
                self.quality.cancel(handle.connection_id)
                await actor.leave(handle.subscriber_id)
        except SessionEnded:
            pass
        finally:
            handle.session_id = None
            handle.role = None
            handle.subscriber_id = None

    # === Reporting ===

    async def quality_report(self, session_id: str) -> dict[str, Any]:
        return await self.registry.get(session_id).quality_report()

    async def session_snapshot(self, session_id: str) -> dict[str, Any]:
        return await self.registry.get(session_id).snapshot()

    async def list_sessions(self) -> list[dict[str, Any]]:
        return [await actor.snapshot() for actor in self.registry.all_sessions()]

    def statistics(self) -> dict[str, Any]:
        return {**self.registry.statistics(), "cache": self.cache.stats()}
