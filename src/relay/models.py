"""Core data model for live translation sessions.

Defines the session state machine, subscriber records, audio chunks and
translation results exchanged between the sequencer, the pipeline and the
fan-out dispatcher.
"""

import time
from dataclasses import dataclass, field
from enum import Enum


class SessionStatus(Enum):
    """Session state machine states.

    State Transitions:
    - SETUP → ACTIVE (on start broadcast)
    - ACTIVE → PAUSED (on pause broadcast)
    - PAUSED → ACTIVE (on start/resume broadcast)
    - * → ENDED (on end command, administrative timeout or broadcaster
      grace period expiry)

    States:
    - SETUP: Created, subscribers may join, no audio accepted yet
    - ACTIVE: Broadcasting, audio chunks accepted
    - PAUSED: Membership kept, audio chunks rejected
    - ENDED: Terminal, every further operation is rejected
    """

    SETUP = "setup"
    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"


VALID_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.SETUP: {SessionStatus.ACTIVE, SessionStatus.ENDED},
    SessionStatus.ACTIVE: {SessionStatus.PAUSED, SessionStatus.ENDED},
    SessionStatus.PAUSED: {SessionStatus.ACTIVE, SessionStatus.ENDED},
    SessionStatus.ENDED: set(),  # Terminal state
}

# States in which subscribers may join
JOINABLE_STATES: frozenset[SessionStatus] = frozenset(
    {SessionStatus.SETUP, SessionStatus.ACTIVE, SessionStatus.PAUSED}
)


class QualityTier(Enum):
    """Connection quality tiers derived from round-trip latency."""

    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ConnectionQuality:
    """Latest latency sample for one connection."""

    latency_ms: float
    tier: QualityTier
    measured_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, float | str]:
        return {
            "latency_ms": round(self.latency_ms, 1),
            "tier": self.tier.value,
            "measured_at": self.measured_at,
        }


@dataclass
class Subscriber:
    """A listener receiving a personalised translation stream.

    The delivery watermark starts just below ``join_sequence`` so a late
    joiner never receives chunks submitted before it joined.
    """

    subscriber_id: str
    connection_id: str
    target_language: str
    display_name: str = "Guest"
    joined_at: float = field(default_factory=time.time)
    is_active: bool = True
    last_quality: ConnectionQuality | None = None
    join_sequence: int = 1
    last_delivered_sequence: int = 0

    def __post_init__(self) -> None:
        if self.last_delivered_sequence < self.join_sequence - 1:
            self.last_delivered_sequence = self.join_sequence - 1

    def accepts(self, sequence: int) -> bool:
        """Whether a result with this sequence may still be delivered."""
        return (
            self.is_active
            and sequence >= self.join_sequence
            and sequence > self.last_delivered_sequence
        )

    def advance_watermark(self, sequence: int) -> None:
        """Advance the per-subscriber delivery watermark.

        Raises:
            ValueError: If the watermark would move backwards
        """
        if sequence < self.last_delivered_sequence:
            raise ValueError(
                f"Watermark for {self.subscriber_id} cannot move backwards: "
                f"{self.last_delivered_sequence} → {sequence}"
            )
        self.last_delivered_sequence = sequence

    def to_dict(self) -> dict[str, object]:
        return {
            "subscriber_id": self.subscriber_id,
            "target_language": self.target_language,
            "display_name": self.display_name,
            "joined_at": self.joined_at,
            "is_active": self.is_active,
            "last_delivered_sequence": self.last_delivered_sequence,
            "quality": self.last_quality.to_dict() if self.last_quality else None,
        }


@dataclass
class Session:
    """One live broadcast instance identified by a short shareable code.

    Only ``to_dict`` output may leave the process; it never includes the
    password hash or the reclaim token.
    """

    session_id: str
    title: str
    source_language: str
    broadcaster_connection_id: str | None
    broadcaster_name: str = "Broadcaster"
    password_hash: str | None = None
    reclaim_token: str = ""
    status: SessionStatus = SessionStatus.SETUP
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    ended_at: float | None = None
    end_reason: str | None = None

    @property
    def requires_password(self) -> bool:
        return self.password_hash is not None

    @property
    def is_ended(self) -> bool:
        return self.status is SessionStatus.ENDED

    def can_transition_to(self, status: SessionStatus) -> bool:
        return status in VALID_TRANSITIONS[self.status]

    def to_dict(self) -> dict[str, object]:
        return {
            "session_id": self.session_id,
            "title": self.title,
            "source_language": self.source_language,
            "broadcaster_name": self.broadcaster_name,
            "status": self.status.value,
            "requires_password": self.requires_password,
            "broadcaster_connected": self.broadcaster_connection_id is not None,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "end_reason": self.end_reason,
        }


@dataclass
class Chunk:
    """One self-contained unit of captured audio owned by the sequencer."""

    session_id: str
    sequence: int
    payload: bytes
    container: str = "unknown"
    received_at: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class OriginalText:
    """Transcribed source text of a chunk."""

    text: str
    language: str

    def to_dict(self) -> dict[str, str]:
        return {"text": self.text, "language": self.language}


@dataclass(frozen=True)
class LanguageOutput:
    """Dual output (text + optional synthesized audio) for one language.

    Attributes:
        language: Target language code
        text: Translated text
        audio: Synthesized audio container bytes, None when synthesis failed
        audio_ref: Content hash of ``audio`` (stable across cache hits)
        audio_format: Container format of ``audio``
        degraded: Reason the entry is incomplete, None when complete
    """

    language: str
    text: str
    audio: bytes | None = None
    audio_ref: str | None = None
    audio_format: str | None = None
    degraded: str | None = None

    @property
    def has_audio(self) -> bool:
        return self.audio is not None


@dataclass
class TranslationResult:
    """Processed output of one chunk.

    ``original`` is None when transcription failed; such a result still
    passes through the reorder buffer but is never delivered.
    """

    sequence: int
    original: OriginalText | None
    per_language: dict[str, LanguageOutput] = field(default_factory=dict)
    processing_time_ms: float = 0.0
    failed_stage: str | None = None

    @property
    def is_deliverable(self) -> bool:
        return self.original is not None


@dataclass
class SessionDiagnostics:
    """Per-session counters reported to the broadcaster and operators."""

    chunks_received: int = 0
    chunks_processed: int = 0
    chunks_dropped: int = 0
    decode_errors: int = 0
    transcription_errors: int = 0
    translation_errors: int = 0
    synthesis_errors: int = 0
    results_delivered: int = 0
    total_subscribers_joined: int = 0
    peak_subscribers: int = 0
    reconnections: int = 0
    processing_times_ms: list[float] = field(default_factory=list)
    last_activity: float = field(default_factory=time.monotonic)
    created_monotonic: float = field(default_factory=time.monotonic)

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    def record_result(self, result: TranslationResult) -> None:
        """Record a processed chunk, counting per-stage failures."""
        self.chunks_processed += 1
        if result.failed_stage == "transcription":
            self.transcription_errors += 1
        for output in result.per_language.values():
            if output.degraded == "translation_failed":
                self.translation_errors += 1
            elif output.degraded == "synthesis_failed":
                self.synthesis_errors += 1
        if result.is_deliverable:
            self.processing_times_ms.append(result.processing_time_ms)
            # Keep a bounded window for the average
            if len(self.processing_times_ms) > 500:
                del self.processing_times_ms[:-500]

    def average_processing_ms(self) -> float | None:
        if not self.processing_times_ms:
            return None
        return sum(self.processing_times_ms) / len(self.processing_times_ms)

    def summary(self) -> dict[str, float | int | None]:
        return {
            "chunks_received": self.chunks_received,
            "chunks_processed": self.chunks_processed,
            "chunks_dropped": self.chunks_dropped,
            "decode_errors": self.decode_errors,
            "transcription_errors": self.transcription_errors,
            "translation_errors": self.translation_errors,
            "synthesis_errors": self.synthesis_errors,
            "results_delivered": self.results_delivered,
            "total_subscribers_joined": self.total_subscribers_joined,
            "peak_subscribers": self.peak_subscribers,
            "reconnections": self.reconnections,
            "average_processing_ms": self.average_processing_ms(),
            "duration_s": time.monotonic() - self.created_monotonic,
        }
