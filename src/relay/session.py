"""Single-owner session actor.

Every session is run by exactly one ``SessionActor``. All state of the
session (its record, subscribers, sequencer, diagnostics and pending
processing tasks) is owned by the actor's loop and only mutated there, so no
locks are needed inside a session.

Every inbound operation becomes a typed message on the actor's inbox with a
reply future. Processing tasks and timers never touch state directly; they
post messages (``ChunkCompleted``, ``ReorderTimeout``, ``GraceExpired``)
back into the inbox. Handlers are synchronous: a message is handled
completely before the next one is looked at.

State Transitions:
- SETUP → ACTIVE (start_broadcast)
- ACTIVE → PAUSED (pause_broadcast)
- PAUSED → ACTIVE (start_broadcast or resume_broadcast)
- * → ENDED (end_session, administrative timeout, broadcaster grace expiry)
"""

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from src.relay.auth import verify_password, verify_token
from src.relay.codec import AudioChunkCodec
from src.relay.config import PipelineConfig, SessionConfig
from src.relay.connection import ConnectionHandle
from src.relay.errors import (
    AudioDecodeError,
    AuthenticationFailed,
    CapacityExceeded,
    InvalidMessage,
    InvalidStateTransition,
    NotBroadcaster,
    SessionEnded,
    SessionNotActive,
    SessionNotFound,
)
from src.relay.fanout import FanoutDispatcher
from src.relay.metrics import MetricsCollector, get_metrics_collector
from src.relay.models import (
    JOINABLE_STATES,
    Chunk,
    ConnectionQuality,
    QualityTier,
    Session,
    SessionDiagnostics,
    SessionStatus,
    Subscriber,
    TranslationResult,
)
from src.relay.pipeline import ChunkProcessor
from src.relay.sequencer import ChunkSequencer
from src.relay.transport.websocket_protocol import (
    AudioProcessedEvent,
    BroadcasterDisconnectedEvent,
    BroadcasterReconnectedEvent,
    ChunkDroppedEvent,
    ProcessingErrorEvent,
    SessionEndedEvent,
    SessionStatusChangedEvent,
    SubscriberJoinedEvent,
    SubscriberLeftEvent,
)

logger = logging.getLogger(__name__)

TEXT_CONTAINER = "text"
STAGE_INTERNAL = "internal"


# === Inbox messages ===


@dataclass
class ActorMessage:
    """Base of all inbox messages."""

    reply: "asyncio.Future[Any] | None" = field(default=None, kw_only=True, repr=False)


@dataclass
class StartBroadcast(ActorMessage):
    connection_id: str | None


@dataclass
class PauseBroadcast(ActorMessage):
    connection_id: str | None


@dataclass
class ResumeBroadcast(ActorMessage):
    connection_id: str | None


@dataclass
class EndSession(ActorMessage):
    connection_id: str | None
    reason: str


@dataclass
class SubmitAudio(ActorMessage):
    connection_id: str | None
    data: bytes
    container: str


@dataclass
class RejectAudio(ActorMessage):
    connection_id: str | None
    error: AudioDecodeError


@dataclass
class SubmitText(ActorMessage):
    connection_id: str | None
    text: str


@dataclass
class Join(ActorMessage):
    handle: ConnectionHandle
    target_language: str
    display_name: str
    password: str | None


@dataclass
class Leave(ActorMessage):
    subscriber_id: str


@dataclass
class ChangeLanguage(ActorMessage):
    subscriber_id: str
    target_language: str


@dataclass
class BroadcasterDisconnected(ActorMessage):
    connection_id: str


@dataclass
class Reclaim(ActorMessage):
    handle: ConnectionHandle
    token: str


@dataclass
class RecordQuality(ActorMessage):
    subscriber_id: str
    quality: ConnectionQuality


@dataclass
class QualityReport(ActorMessage):
    pass


@dataclass
class Snapshot(ActorMessage):
    pass


@dataclass
class ChunkCompleted(ActorMessage):
    sequence: int
    result: TranslationResult


@dataclass
class ReorderTimeout(ActorMessage):
    pass


@dataclass
class GraceExpired(ActorMessage):
    epoch: int


# Operations that still answer once the session has ended
_POST_END_MESSAGES = (Leave, QualityReport, Snapshot, RecordQuality)


class SessionActor:
    """Owns one session and serializes every operation on it.

    Args:
        session: Session record (status SETUP)
        broadcaster: Handle of the creating broadcaster connection
        processor: Chunk pipeline
        codec: Inbound chunk decoder
        session_config: Session limits and timeouts
        pipeline_config: Concurrency and reorder settings
        fanout: Result dispatcher
        metrics: Metrics collector (global collector when omitted)
        on_ended: Called once with the actor after the session ends
    """

    def __init__(
        self,
        session: Session,
        broadcaster: ConnectionHandle | None,
        processor: ChunkProcessor,
        codec: AudioChunkCodec,
        session_config: SessionConfig | None = None,
        pipeline_config: PipelineConfig | None = None,
        fanout: FanoutDispatcher | None = None,
        metrics: MetricsCollector | None = None,
        on_ended: Callable[["SessionActor"], None] | None = None,
    ) -> None:
        self.session = session
        self.session_config = session_config or SessionConfig()
        self.pipeline_config = pipeline_config or PipelineConfig()
        self._processor = processor
        self._codec = codec
        self._metrics = metrics or get_metrics_collector()
        self._fanout = fanout or FanoutDispatcher(metrics=self._metrics)
        self._on_ended = on_ended

        self.broadcaster: ConnectionHandle | None = broadcaster
        self.subscribers: dict[str, Subscriber] = {}
        self._handles: dict[str, ConnectionHandle] = {}

        self.sequencer = ChunkSequencer(
            session.session_id,
            max_in_flight=self.pipeline_config.max_in_flight,
            max_queued=self.pipeline_config.max_queued,
            reorder_timeout_s=self.pipeline_config.reorder_timeout_s,
        )
        self.diagnostics = SessionDiagnostics()
        self._tasks: dict[int, asyncio.Task[None]] = {}

        self._inbox: asyncio.Queue[ActorMessage] = asyncio.Queue()
        self._loop_task: asyncio.Task[None] | None = None
        self._stopped = False
        self._ended_event = asyncio.Event()

        self._reorder_timer: asyncio.TimerHandle | None = None
        self._reorder_deadline: float | None = None
        self._grace_timer: asyncio.TimerHandle | None = None
        self._grace_epoch = 0

        self._handlers: dict[type[ActorMessage], Callable[[Any], Any]] = {
            StartBroadcast: self._on_start,
            PauseBroadcast: self._on_pause,
            ResumeBroadcast: self._on_resume,
            EndSession: self._on_end,
            SubmitAudio: self._on_submit_audio,
            RejectAudio: self._on_reject_audio,
            SubmitText: self._on_submit_text,
            Join: self._on_join,
            Leave: self._on_leave,
            ChangeLanguage: self._on_change_language,
            BroadcasterDisconnected: self._on_broadcaster_disconnected,
            Reclaim: self._on_reclaim,
            RecordQuality: self._on_record_quality,
            QualityReport: self._on_quality_report,
            Snapshot: self._on_snapshot,
            ChunkCompleted: self._on_chunk_completed,
            ReorderTimeout: self._on_reorder_timeout,
            GraceExpired: self._on_grace_expired,
        }

    # === Lifecycle of the actor itself ===

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def status(self) -> SessionStatus:
        return self.session.status

    @property
    def is_ended(self) -> bool:
        return self._stopped

    @property
    def active_subscriber_count(self) -> int:
        return sum(1 for s in self.subscribers.values() if s.is_active)

    @property
    def idle_seconds(self) -> float:
        return time.monotonic() - self.diagnostics.last_activity

    @property
    def age_seconds(self) -> float:
        return time.monotonic() - self.diagnostics.created_monotonic

    def start(self) -> None:
        """Start the actor loop."""
        if self._loop_task is None:
            self._metrics.record_session_start()
            self._loop_task = asyncio.create_task(
                self._run(), name=f"session-{self.session_id}"
            )
            logger.info(
                "Session actor started",
                extra={
                    "session_id": self.session_id,
                    "source_language": self.session.source_language,
                },
            )

    async def wait_ended(self) -> None:
        await self._ended_event.wait()

    async def shutdown(self, reason: str = "server_shutdown") -> None:
        """End the session (if still live) and wait for the loop to exit."""
        if not self._stopped:
            try:
                await self.end(None, reason)
            except SessionEnded:
                pass
        if self._loop_task is not None:
            await self._loop_task

    # === Public operations ===

    async def start_broadcast(self, connection_id: str | None) -> SessionStatus:
        return await self._call(StartBroadcast(connection_id))

    async def pause_broadcast(self, connection_id: str | None) -> SessionStatus:
        return await self._call(PauseBroadcast(connection_id))

    async def resume_broadcast(self, connection_id: str | None) -> SessionStatus:
        return await self._call(ResumeBroadcast(connection_id))

    async def end(self, connection_id: str | None, reason: str = "ended_by_broadcaster") -> None:
        """End the session; ``connection_id`` None means an administrative end."""
        await self._call(EndSession(connection_id, reason))

    async def submit_audio(self, connection_id: str | None, payload: bytes | str) -> int:
        """Submit one chunk; returns its sequence number.

        The chunk is decoded in a worker thread before it reaches the inbox,
        so a slow container check never stalls other sessions.

        Raises:
            AudioDecodeError: If the chunk is malformed (after the broadcaster
                has been notified)
        """
        try:
            data, container = await asyncio.to_thread(self._codec.decode, payload)
        except AudioDecodeError as e:
            await self._call(RejectAudio(connection_id, e))
            raise
        return await self._call(SubmitAudio(connection_id, data, container))

    async def submit_text(self, connection_id: str | None, text: str) -> int:
        return await self._call(SubmitText(connection_id, text))

    async def join(
        self,
        handle: ConnectionHandle,
        target_language: str,
        display_name: str = "Guest",
        password: str | None = None,
    ) -> Subscriber:
        return await self._call(Join(handle, target_language, display_name, password))

    async def leave(self, subscriber_id: str) -> bool:
        return await self._call(Leave(subscriber_id))

    async def change_language(self, subscriber_id: str, target_language: str) -> Subscriber:
        return await self._call(ChangeLanguage(subscriber_id, target_language))

    async def broadcaster_disconnected(self, connection_id: str) -> None:
        await self._call(BroadcasterDisconnected(connection_id))

    async def reclaim(self, handle: ConnectionHandle, token: str) -> Session:
        return await self._call(Reclaim(handle, token))

    async def record_quality(self, subscriber_id: str, quality: ConnectionQuality) -> None:
        await self._call(RecordQuality(subscriber_id, quality))

    async def quality_report(self) -> dict[str, Any]:
        return await self._call(QualityReport())

    async def snapshot(self) -> dict[str, Any]:
        return await self._call(Snapshot())

    async def _call(self, message: ActorMessage) -> Any:
        if self._stopped:
            if isinstance(message, _POST_END_MESSAGES):
                return self._handlers[type(message)](message)
            raise SessionEnded(f"Session {self.session_id} has ended")
        if self._loop_task is None:
            raise RuntimeError(f"Session actor {self.session_id} is not running")

        message.reply = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait(message)
        return await message.reply

    def _post(self, message: ActorMessage) -> None:
        if not self._stopped:
            self._inbox.put_nowait(message)

    # === Actor loop ===

    async def _run(self) -> None:
        while not self._stopped:
            message = await self._inbox.get()
            handler = self._handlers[type(message)]
            try:
                outcome = handler(message)
            except Exception as e:
                if message.reply is not None and not message.reply.done():
                    message.reply.set_exception(e)
                else:
                    logger.exception(
                        "Unhandled error in session actor",
                        extra={"session_id": self.session_id, "message": type(message).__name__},
                    )
            else:
                if message.reply is not None and not message.reply.done():
                    message.reply.set_result(outcome)

            if not self._stopped:
                self._schedule_reorder_timer()

        # Fail whatever arrived after the end
        while not self._inbox.empty():
            message = self._inbox.get_nowait()
            if message.reply is not None and not message.reply.done():
                if isinstance(message, _POST_END_MESSAGES):
                    message.reply.set_result(self._handlers[type(message)](message))
                else:
                    message.reply.set_exception(
                        SessionEnded(f"Session {self.session_id} has ended")
                    )

        logger.info("Session actor stopped", extra={"session_id": self.session_id})

    # === Broadcast control ===

    def _require_broadcaster(self, connection_id: str | None) -> None:
        # None is an administrative caller
        if connection_id is not None and connection_id != self.session.broadcaster_connection_id:
            raise NotBroadcaster(f"Connection is not the broadcaster of session {self.session_id}")

    def _transition(self, new_status: SessionStatus) -> None:
        old_status = self.session.status
        if not self.session.can_transition_to(new_status):
            raise InvalidStateTransition(
                f"Cannot move session from {old_status.value} to {new_status.value}"
            )

        self.session.status = new_status
        if new_status is SessionStatus.ACTIVE and self.session.started_at is None:
            self.session.started_at = time.time()

        logger.info(
            "Session status changed",
            extra={
                "session_id": self.session_id,
                "from_status": old_status.value,
                "to_status": new_status.value,
            },
        )
        self._send_all(
            SessionStatusChangedEvent(
                session_id=self.session_id,
                status=new_status.value,
                previous_status=old_status.value,
            )
        )

    def _on_start(self, message: StartBroadcast) -> SessionStatus:
        self._require_broadcaster(message.connection_id)
        self.diagnostics.touch()
        if self.session.status is not SessionStatus.ACTIVE:
            self._transition(SessionStatus.ACTIVE)
        return self.session.status

    def _on_pause(self, message: PauseBroadcast) -> SessionStatus:
        self._require_broadcaster(message.connection_id)
        self.diagnostics.touch()
        if self.session.status is not SessionStatus.PAUSED:
            self._transition(SessionStatus.PAUSED)
        return self.session.status

    def _on_resume(self, message: ResumeBroadcast) -> SessionStatus:
        self._require_broadcaster(message.connection_id)
        self.diagnostics.touch()
        if self.session.status is SessionStatus.SETUP:
            raise InvalidStateTransition("Cannot resume a broadcast that has not started")
        if self.session.status is not SessionStatus.ACTIVE:
            self._transition(SessionStatus.ACTIVE)
        return self.session.status

    def _on_end(self, message: EndSession) -> None:
        self._require_broadcaster(message.connection_id)
        self._end(message.reason)

    def _end(self, reason: str) -> None:
        self._transition(SessionStatus.ENDED)
        self.session.ended_at = time.time()
        self.session.end_reason = reason

        # Stop all in-flight work
        queued = self.sequencer.queued
        running = self.sequencer.cancel_all()
        for task in self._tasks.values():
            task.cancel()
        self._tasks.clear()
        self._processor.cache.release_session(self.session_id)
        self._metrics.record_chunks_cancelled(len(running) + queued)
        self._cancel_reorder_timer()
        if self._grace_timer is not None:
            self._grace_timer.cancel()
            self._grace_timer = None

        summary = self.diagnostics.summary()
        ended = SessionEndedEvent(session_id=self.session_id, reason=reason)
        if self.broadcaster is not None:
            self.broadcaster.send(
                SessionEndedEvent(session_id=self.session_id, reason=reason, summary=summary)
            )
            self._detach(self.broadcaster)

        active = 0
        for subscriber in self.subscribers.values():
            if subscriber.is_active:
                active += 1
                subscriber.is_active = False
        for handle in self._handles.values():
            handle.send(ended)
            self._detach(handle)
        self._handles.clear()
        self._metrics.record_subscriber_left(active)

        self._stopped = True
        self._ended_event.set()
        self._metrics.record_session_end(
            self.age_seconds, self.diagnostics.peak_subscribers
        )
        logger.info(
            "Session ended",
            extra={"session_id": self.session_id, "reason": reason, **summary},
        )

        if self._on_ended is not None:
            try:
                self._on_ended(self)
            except Exception:
                logger.exception(
                    "Session end callback failed", extra={"session_id": self.session_id}
                )

    @staticmethod
    def _detach(handle: ConnectionHandle) -> None:
        handle.session_id = None
        handle.role = None
        handle.subscriber_id = None

    # === Audio and text ===

    def _check_accepting(self, connection_id: str | None) -> None:
        if self.session.status is SessionStatus.ENDED:
            raise SessionEnded(f"Session {self.session_id} has ended")
        self._require_broadcaster(connection_id)
        if self.session.status is not SessionStatus.ACTIVE:
            raise SessionNotActive(
                f"Session {self.session_id} is {self.session.status.value}, not active"
            )

    def _on_submit_audio(self, message: SubmitAudio) -> int:
        self._check_accepting(message.connection_id)
        self.diagnostics.touch()
        return self._admit(message.data, message.container)

    def _on_reject_audio(self, message: RejectAudio) -> None:
        self._check_accepting(message.connection_id)
        self.diagnostics.touch()
        self.diagnostics.decode_errors += 1
        self._metrics.record_decode_error()
        self._send_broadcaster(
            ProcessingErrorEvent(
                session_id=self.session_id, stage="decode", message=message.error.message
            )
        )
        logger.warning(
            "Rejected audio chunk",
            extra={"session_id": self.session_id, "error": message.error.message},
        )

    def _on_submit_text(self, message: SubmitText) -> int:
        self._check_accepting(message.connection_id)
        self.diagnostics.touch()
        text = message.text.strip()
        if not text:
            raise InvalidMessage("Text message is empty")
        return self._admit(text.encode("utf-8"), TEXT_CONTAINER)

    def _admit(self, data: bytes, container: str) -> int:
        admission = self.sequencer.admit(data, container)
        self.diagnostics.chunks_received += 1
        self._metrics.record_chunk_received()

        if admission.dropped:
            sequences = [chunk.sequence for chunk in admission.dropped]
            self.diagnostics.chunks_dropped += len(sequences)
            self._metrics.record_chunks_dropped(len(sequences))
            self._send_broadcaster(
                ChunkDroppedEvent(
                    session_id=self.session_id, sequences=sequences, reason="backpressure"
                )
            )

        self._start_ready()
        return admission.chunk.sequence

    def _target_languages(self) -> list[str]:
        return list(
            dict.fromkeys(s.target_language for s in self.subscribers.values() if s.is_active)
        )

    def _start_ready(self) -> None:
        languages = self._target_languages()
        for chunk in self.sequencer.start_ready():
            self._tasks[chunk.sequence] = asyncio.create_task(
                self._process(chunk, languages),
                name=f"chunk-{self.session_id}-{chunk.sequence}",
            )

    async def _process(self, chunk: Chunk, languages: list[str]) -> None:
        source = self.session.source_language
        try:
            if chunk.container == TEXT_CONTAINER:
                result = await self._processor.process_text(
                    chunk, chunk.payload.decode("utf-8"), source, languages
                )
            else:
                result = await self._processor.process(chunk, source, languages)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Chunk processing crashed",
                extra={"session_id": self.session_id, "sequence": chunk.sequence},
            )
            result = TranslationResult(
                sequence=chunk.sequence, original=None, failed_stage=STAGE_INTERNAL
            )
        self._post(ChunkCompleted(chunk.sequence, result))

    def _on_chunk_completed(self, message: ChunkCompleted) -> None:
        self._tasks.pop(message.sequence, None)
        if not self.sequencer.is_running(message.sequence):
            return

        result = message.result
        self._processor.cache.release_chunk(self.session_id, message.sequence)
        self.diagnostics.record_result(result)
        self._metrics.record_chunk_processed(
            result.processing_time_ms / 1000.0,
            failed_stage=result.failed_stage,
            degraded=[o.degraded for o in result.per_language.values() if o.degraded],
        )

        if not result.is_deliverable:
            self._send_broadcaster(
                ProcessingErrorEvent(
                    session_id=self.session_id,
                    sequence=result.sequence,
                    stage=result.failed_stage or STAGE_INTERNAL,
                    message=f"Chunk {result.sequence} produced no transcription",
                )
            )

        for released in self.sequencer.complete(message.sequence, result):
            self._deliver(released)
        self._start_ready()

    def _on_reorder_timeout(self, message: ReorderTimeout) -> None:
        self._reorder_timer = None
        self._reorder_deadline = None
        released = self.sequencer.expire()

        abandoned = self.sequencer.drain_abandoned()
        for sequence in abandoned:
            task = self._tasks.pop(sequence, None)
            if task is not None:
                task.cancel()
            self._processor.cache.release_chunk(self.session_id, sequence)
        if abandoned:
            self.diagnostics.chunks_dropped += len(abandoned)
            self._metrics.record_chunks_dropped(len(abandoned))
            self._send_broadcaster(
                ChunkDroppedEvent(
                    session_id=self.session_id, sequences=abandoned, reason="reorder_timeout"
                )
            )

        for result in released:
            self._deliver(result)
        self._start_ready()

    def _deliver(self, result: TranslationResult) -> None:
        if not result.is_deliverable:
            return

        report = self._fanout.dispatch(
            self.session_id,
            result,
            list(self.subscribers.values()),
            self._handles,
            self.broadcaster,
        )
        self.diagnostics.results_delivered += 1
        self._send_broadcaster(
            AudioProcessedEvent(
                session_id=self.session_id,
                sequence=result.sequence,
                processing_time_ms=round(result.processing_time_ms, 1),
                broadcasted_to=report.personal_deliveries,
                dropped_chunks=self.sequencer.dropped_count,
            )
        )

    # === Timers ===

    def _schedule_reorder_timer(self) -> None:
        deadline = self.sequencer.next_deadline()
        if deadline == self._reorder_deadline:
            return
        self._cancel_reorder_timer()
        if deadline is None:
            return
        self._reorder_deadline = deadline
        self._reorder_timer = asyncio.get_running_loop().call_later(
            max(0.0, deadline - time.monotonic()), self._post, ReorderTimeout()
        )

    def _cancel_reorder_timer(self) -> None:
        if self._reorder_timer is not None:
            self._reorder_timer.cancel()
        self._reorder_timer = None
        self._reorder_deadline = None

    # === Membership ===

    def _on_join(self, message: Join) -> Subscriber:
        if self.session.status not in JOINABLE_STATES:
            raise SessionEnded(f"Session {self.session_id} has ended")
        if not verify_password(message.password, self.session.password_hash):
            raise AuthenticationFailed("Invalid session password")
        if self.active_subscriber_count >= self.session_config.max_subscribers_per_session:
            raise CapacityExceeded(
                f"Session {self.session_id} is full "
                f"({self.session_config.max_subscribers_per_session} subscribers)"
            )

        subscriber = Subscriber(
            subscriber_id=f"sub-{uuid.uuid4().hex[:12]}",
            connection_id=message.handle.connection_id,
            target_language=message.target_language,
            display_name=message.display_name or "Guest",
            join_sequence=self.sequencer.next_sequence,
        )
        self.subscribers[subscriber.subscriber_id] = subscriber
        self._handles[subscriber.subscriber_id] = message.handle
        message.handle.session_id = self.session_id
        message.handle.role = "subscriber"
        message.handle.subscriber_id = subscriber.subscriber_id

        count = self.active_subscriber_count
        self.diagnostics.total_subscribers_joined += 1
        self.diagnostics.peak_subscribers = max(self.diagnostics.peak_subscribers, count)
        self.diagnostics.touch()
        self._metrics.record_subscriber_joined()

        self._send_broadcaster(
            SubscriberJoinedEvent(
                session_id=self.session_id,
                subscriber_id=subscriber.subscriber_id,
                display_name=subscriber.display_name,
                target_language=subscriber.target_language,
                subscriber_count=count,
            )
        )
        logger.info(
            "Subscriber joined",
            extra={
                "session_id": self.session_id,
                "subscriber_id": subscriber.subscriber_id,
                "target_language": subscriber.target_language,
                "join_sequence": subscriber.join_sequence,
                "subscriber_count": count,
            },
        )
        return subscriber

    def _on_leave(self, message: Leave) -> bool:
        subscriber = self.subscribers.get(message.subscriber_id)
        if subscriber is None or not subscriber.is_active:
            return False

        subscriber.is_active = False
        handle = self._handles.pop(message.subscriber_id, None)
        if handle is not None:
            self._detach(handle)
        self._metrics.record_subscriber_left()

        count = self.active_subscriber_count
        self._send_broadcaster(
            SubscriberLeftEvent(
                session_id=self.session_id,
                subscriber_id=subscriber.subscriber_id,
                subscriber_count=count,
            )
        )
        logger.info(
            "Subscriber left",
            extra={
                "session_id": self.session_id,
                "subscriber_id": subscriber.subscriber_id,
                "subscriber_count": count,
            },
        )
        return True

    def _on_change_language(self, message: ChangeLanguage) -> Subscriber:
        subscriber = self.subscribers.get(message.subscriber_id)
        if subscriber is None or not subscriber.is_active:
            raise SessionNotFound(f"Subscriber {message.subscriber_id} is not in session")

        previous = subscriber.target_language
        subscriber.target_language = message.target_language
        self.diagnostics.touch()
        logger.info(
            "Subscriber changed language",
            extra={
                "session_id": self.session_id,
                "subscriber_id": subscriber.subscriber_id,
                "from_language": previous,
                "to_language": message.target_language,
            },
        )
        return subscriber

    # === Broadcaster presence ===

    def _on_broadcaster_disconnected(self, message: BroadcasterDisconnected) -> None:
        if message.connection_id != self.session.broadcaster_connection_id:
            return

        if self.broadcaster is not None:
            self._detach(self.broadcaster)
        self.broadcaster = None
        self.session.broadcaster_connection_id = None

        grace = self.session_config.broadcaster_grace_s
        logger.warning(
            "Broadcaster disconnected",
            extra={"session_id": self.session_id, "grace_period_s": grace},
        )
        if grace <= 0:
            self._end("broadcaster_disconnected")
            return

        self._grace_epoch += 1
        if self._grace_timer is not None:
            self._grace_timer.cancel()
        self._grace_timer = asyncio.get_running_loop().call_later(
            grace, self._post, GraceExpired(self._grace_epoch)
        )
        self._send_subscribers(
            BroadcasterDisconnectedEvent(session_id=self.session_id, grace_period_s=grace)
        )

    def _on_grace_expired(self, message: GraceExpired) -> None:
        if message.epoch != self._grace_epoch or self.session.broadcaster_connection_id is not None:
            return
        self._grace_timer = None
        self._end("broadcaster_timeout")

    def _on_reclaim(self, message: Reclaim) -> Session:
        if self.session.status is SessionStatus.ENDED:
            raise SessionEnded(f"Session {self.session_id} has ended")
        if not verify_token(message.token, self.session.reclaim_token):
            raise AuthenticationFailed("Invalid reclaim token")

        if self.broadcaster is not None and self.broadcaster is not message.handle:
            self._detach(self.broadcaster)
        if self._grace_timer is not None:
            self._grace_timer.cancel()
            self._grace_timer = None
        self._grace_epoch += 1

        self.broadcaster = message.handle
        self.session.broadcaster_connection_id = message.handle.connection_id
        message.handle.session_id = self.session_id
        message.handle.role = "broadcaster"
        message.handle.subscriber_id = None

        self.diagnostics.reconnections += 1
        self.diagnostics.touch()
        self._metrics.record_reconnection()
        self._send_subscribers(BroadcasterReconnectedEvent(session_id=self.session_id))
        logger.info(
            "Broadcaster reclaimed session",
            extra={"session_id": self.session_id, "connection_id": message.handle.connection_id},
        )
        return self.session

    # === Quality and reporting ===

    def _on_record_quality(self, message: RecordQuality) -> None:
        subscriber = self.subscribers.get(message.subscriber_id)
        if subscriber is not None:
            subscriber.last_quality = message.quality

    def _on_quality_report(self, message: QualityReport) -> dict[str, Any]:
        tiers = {tier.value: 0 for tier in QualityTier}
        entries = []
        for subscriber in self.subscribers.values():
            if not subscriber.is_active:
                continue
            quality = subscriber.last_quality
            tiers[quality.tier.value if quality else QualityTier.UNKNOWN.value] += 1
            entries.append(
                {
                    "subscriber_id": subscriber.subscriber_id,
                    "display_name": subscriber.display_name,
                    "target_language": subscriber.target_language,
                    "quality": quality.to_dict() if quality else None,
                }
            )
        return {"session_id": self.session_id, "tiers": tiers, "subscribers": entries}

    def _on_snapshot(self, message: Snapshot) -> dict[str, Any]:
        active = [s for s in self.subscribers.values() if s.is_active]
        languages: dict[str, int] = {}
        for subscriber in active:
            languages[subscriber.target_language] = languages.get(subscriber.target_language, 0) + 1
        return {
            **self.session.to_dict(),
            "subscriber_count": len(active),
            "languages": languages,
            "subscribers": [s.to_dict() for s in active],
            "diagnostics": self.diagnostics.summary(),
            "sequencer": self.sequencer.stats(),
        }

    # === Sending helpers ===

    def _send_broadcaster(self, event: Any) -> None:
        if self.broadcaster is not None:
            self.broadcaster.send(event)

    def _send_subscribers(self, event: Any) -> None:
        for handle in self._handles.values():
            handle.send(event)

    def _send_all(self, event: Any) -> None:
        self._send_broadcaster(event)
        self._send_subscribers(event)
