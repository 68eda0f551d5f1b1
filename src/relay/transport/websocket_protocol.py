"""WebSocket message protocol definitions.

Defines Pydantic models for every client → server command and every
server → client event. Messages are JSON objects discriminated by their
``type`` field. Any command may carry a ``request_id`` which is echoed on
the direct reply (``ack``, ``session_created``, ``joined``, ``error``,
``pong``).

Audio travels base64-encoded: inbound chunks in ``audio_chunk.data`` and
synthesized speech in ``personal_translation.audio``. ``translation_broadcast``
carries every language's text but only a reference to each audio payload.
"""

import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from src.relay.errors import InvalidMessage

LanguageCode = Annotated[str, Field(min_length=2, max_length=10, description="ISO 639-1 code")]
SessionCode = Annotated[str, Field(min_length=4, max_length=12, description="Shareable code")]


class ClientMessage(BaseModel):
    """Common fields of client → server commands."""

    request_id: str | None = Field(default=None, max_length=64, description="Echoed on reply")


# === Broadcaster commands ===


class CreateSessionMessage(ClientMessage):
    """Client → Server: Create a session and become its broadcaster."""

    type: Literal["create_session"] = "create_session"
    title: str = Field(default="Live session", max_length=200, description="Session title")
    source_language: LanguageCode
    password: str | None = Field(default=None, max_length=128, description="Optional join password")
    broadcaster_name: str = Field(default="Broadcaster", max_length=100)


class StartBroadcastMessage(ClientMessage):
    """Client → Server: Start (or restart from paused) the broadcast."""

    type: Literal["start_broadcast"] = "start_broadcast"
    session_id: SessionCode


class PauseBroadcastMessage(ClientMessage):
    """Client → Server: Pause the broadcast, keeping subscribers."""

    type: Literal["pause_broadcast"] = "pause_broadcast"
    session_id: SessionCode


class ResumeBroadcastMessage(ClientMessage):
    """Client → Server: Resume a paused broadcast."""

    type: Literal["resume_broadcast"] = "resume_broadcast"
    session_id: SessionCode


class EndSessionMessage(ClientMessage):
    """Client → Server: End the session for everyone."""

    type: Literal["end_session"] = "end_session"
    session_id: SessionCode
    reason: str = Field(default="ended_by_broadcaster", max_length=100)


class AudioChunkMessage(ClientMessage):
    """Client → Server: One self-contained audio chunk."""

    type: Literal["audio_chunk"] = "audio_chunk"
    session_id: SessionCode
    data: str = Field(..., min_length=1, description="Base64-encoded audio container")
    mime_type: str | None = Field(default=None, description="Client-declared MIME type")


class TextMessageMessage(ClientMessage):
    """Client → Server: Typed text to translate without transcription."""

    type: Literal["text_message"] = "text_message"
    session_id: SessionCode
    text: str = Field(..., min_length=1, max_length=2000)


class ReclaimSessionMessage(ClientMessage):
    """Client → Server: Reconnecting broadcaster reclaims its session."""

    type: Literal["reclaim_session"] = "reclaim_session"
    session_id: SessionCode
    reclaim_token: str = Field(..., min_length=1)


# === Subscriber commands ===


class JoinSessionMessage(ClientMessage):
    """Client → Server: Join a session as a subscriber."""

    type: Literal["join_session"] = "join_session"
    session_id: SessionCode
    target_language: LanguageCode
    display_name: str = Field(default="Guest", max_length=100)
    password: str | None = Field(default=None, max_length=128)


class LeaveSessionMessage(ClientMessage):
    """Client → Server: Leave a session."""

    type: Literal["leave_session"] = "leave_session"
    session_id: SessionCode
    subscriber_id: str | None = None


class ChangeLanguageMessage(ClientMessage):
    """Client → Server: Switch the subscriber's target language."""

    type: Literal["change_language"] = "change_language"
    session_id: SessionCode
    target_language: LanguageCode


class QualityReportMessage(ClientMessage):
    """Client → Server: Client-measured connection latency."""

    type: Literal["quality_report"] = "quality_report"
    session_id: SessionCode
    latency_ms: float = Field(..., ge=0.0, le=600_000.0)


class PingMessage(ClientMessage):
    """Client → Server: Application-level heartbeat."""

    type: Literal["ping"] = "ping"
    timestamp: float | None = None


AnyClientMessage = Annotated[
    CreateSessionMessage
    | StartBroadcastMessage
    | PauseBroadcastMessage
    | ResumeBroadcastMessage
    | EndSessionMessage
    | AudioChunkMessage
    | TextMessageMessage
    | ReclaimSessionMessage
    | JoinSessionMessage
    | LeaveSessionMessage
    | ChangeLanguageMessage
    | QualityReportMessage
    | PingMessage,
    Field(discriminator="type"),
]

_client_message_adapter: TypeAdapter[AnyClientMessage] = TypeAdapter(AnyClientMessage)


def parse_client_message(raw: str | bytes | dict[str, Any]) -> ClientMessage:
    """Parse and validate one client message.

    Args:
        raw: JSON text or an already-decoded JSON object

    Returns:
        Typed client message

    Raises:
        InvalidMessage: If the message is not valid JSON, has an unknown
            type or fails validation
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidMessage(f"Invalid JSON: {e}") from e

    if not isinstance(raw, dict):
        raise InvalidMessage("Message must be a JSON object")

    try:
        return _client_message_adapter.validate_python(raw)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        detail = first.get("msg", str(e))
        raise InvalidMessage(f"{location}: {detail}" if location else detail) from e


# === Server events ===


class ServerEvent(BaseModel):
    """Common fields of server → client events."""

    request_id: str | None = None

    def to_wire(self) -> dict[str, Any]:
        """JSON-compatible dict, omitting ``request_id`` when unset."""
        data = self.model_dump(mode="json")
        if data.get("request_id") is None:
            data.pop("request_id", None)
        return data


class SessionCreatedEvent(ServerEvent):
    """Server → Broadcaster: Session created."""

    type: Literal["session_created"] = "session_created"
    session_id: str
    title: str
    source_language: str
    status: str
    reclaim_token: str = Field(
        ..., description="Secret for reclaiming the session after a disconnect"
    )


class JoinedEvent(ServerEvent):
    """Server → Subscriber: Join accepted."""

    type: Literal["joined"] = "joined"
    session_id: str
    subscriber_id: str
    title: str
    source_language: str
    target_language: str
    status: str


class AckEvent(ServerEvent):
    """Server → Client: Command accepted."""

    type: Literal["ack"] = "ack"
    action: str
    session_id: str | None = None
    status: str | None = None
    sequence: int | None = None


class ErrorEvent(ServerEvent):
    """Server → Client: Command rejected."""

    type: Literal["error"] = "error"
    code: str = "INTERNAL_ERROR"
    message: str


class OriginalPayload(BaseModel):
    """Transcribed source text."""

    text: str
    language: str


class TranslationEntry(BaseModel):
    """One language's output inside a translation broadcast."""

    text: str
    audio_ref: str | None = None
    has_audio: bool = False
    degraded: str | None = None


class TranslationBroadcastEvent(ServerEvent):
    """Server → All: Original text plus every requested language's text."""

    type: Literal["translation_broadcast"] = "translation_broadcast"
    session_id: str
    sequence: int
    original: OriginalPayload
    translations: dict[str, TranslationEntry]
    processing_time_ms: float


class PersonalTranslationEvent(ServerEvent):
    """Server → Subscriber: Dual output in the subscriber's own language."""

    type: Literal["personal_translation"] = "personal_translation"
    session_id: str
    sequence: int
    original: OriginalPayload
    language: str
    text: str
    audio: str | None = Field(default=None, description="Base64-encoded audio container")
    audio_ref: str | None = None
    audio_format: str | None = None
    degraded: str | None = None


class SessionStatusChangedEvent(ServerEvent):
    """Server → All: Session status transition."""

    type: Literal["session_status_changed"] = "session_status_changed"
    session_id: str
    status: str
    previous_status: str


class SessionEndedEvent(ServerEvent):
    """Server → All: Session ended; no further events follow."""

    type: Literal["session_ended"] = "session_ended"
    session_id: str
    reason: str
    summary: dict[str, Any] | None = None


class BroadcasterDisconnectedEvent(ServerEvent):
    """Server → Subscribers: Broadcaster lost; session ends after the grace period."""

    type: Literal["broadcaster_disconnected"] = "broadcaster_disconnected"
    session_id: str
    grace_period_s: float


class BroadcasterReconnectedEvent(ServerEvent):
    """Server → Subscribers: Broadcaster is back within the grace period."""

    type: Literal["broadcaster_reconnected"] = "broadcaster_reconnected"
    session_id: str


class ProcessingErrorEvent(ServerEvent):
    """Server → Broadcaster: A chunk could not be processed."""

    type: Literal["processing_error"] = "processing_error"
    session_id: str
    sequence: int | None = None
    stage: str
    message: str


class AudioProcessedEvent(ServerEvent):
    """Server → Broadcaster: A chunk was processed and dispatched."""

    type: Literal["audio_processed"] = "audio_processed"
    session_id: str
    sequence: int
    processing_time_ms: float
    broadcasted_to: int
    dropped_chunks: int


class ChunkDroppedEvent(ServerEvent):
    """Server → Broadcaster: Chunks dropped by backpressure or reorder timeout."""

    type: Literal["chunk_dropped"] = "chunk_dropped"
    session_id: str
    sequences: list[int]
    reason: str


class SubscriberJoinedEvent(ServerEvent):
    """Server → Broadcaster: A subscriber joined."""

    type: Literal["subscriber_joined"] = "subscriber_joined"
    session_id: str
    subscriber_id: str
    display_name: str
    target_language: str
    subscriber_count: int


class SubscriberLeftEvent(ServerEvent):
    """Server → Broadcaster: A subscriber left."""

    type: Literal["subscriber_left"] = "subscriber_left"
    session_id: str
    subscriber_id: str
    subscriber_count: int


class PongEvent(ServerEvent):
    """Server → Client: Heartbeat reply."""

    type: Literal["pong"] = "pong"
    timestamp: float | None = None
    server_time: float
