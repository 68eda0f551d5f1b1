"""Fan-out of released translation results to session members.

For every released result the dispatcher sends:

1. ``translation_broadcast`` (original text plus every language's text and
   audio reference) to the broadcaster and to every active subscriber that
   joined at or before the result's sequence;
2. ``personal_translation`` (original plus the subscriber's own language,
   with audio) to every active subscriber whose delivery watermark allows
   it, then advances that watermark.

Dispatch only enqueues on each member's ``ConnectionHandle``; it never waits
on a socket.
"""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from src.relay.codec import encode_audio
from src.relay.connection import ConnectionHandle
from src.relay.metrics import MetricsCollector, get_metrics_collector
from src.relay.models import LanguageOutput, Subscriber, TranslationResult
from src.relay.transport.websocket_protocol import (
    OriginalPayload,
    PersonalTranslationEvent,
    TranslationBroadcastEvent,
    TranslationEntry,
)

logger = logging.getLogger(__name__)

DEGRADED_LANGUAGE_UNAVAILABLE = "language_unavailable"


@dataclass
class DispatchReport:
    """Outcome of dispatching one result."""

    sequence: int
    broadcast_to: int = 0
    personal_deliveries: int = 0


class FanoutDispatcher:
    """Delivers released results to the broadcaster and subscribers.

    Args:
        metrics: Metrics collector (global collector when omitted)
    """

    def __init__(self, metrics: MetricsCollector | None = None) -> None:
        self._metrics = metrics or get_metrics_collector()

    def dispatch(
        self,
        session_id: str,
        result: TranslationResult,
        subscribers: Iterable[Subscriber],
        handles: Mapping[str, ConnectionHandle],
        broadcaster: ConnectionHandle | None = None,
    ) -> DispatchReport:
        """Fan one released result out to the session.

        Args:
            session_id: Session the result belongs to
            result: Released result, in sequence order
            subscribers: Subscriber records (watermarks are advanced in place)
            handles: Connection handles keyed by subscriber_id
            broadcaster: Broadcaster's handle, if connected

        Returns:
            DispatchReport with delivery counts
        """
        report = DispatchReport(sequence=result.sequence)
        if result.original is None:
            return report

        original = OriginalPayload(text=result.original.text, language=result.original.language)
        broadcast = TranslationBroadcastEvent(
            session_id=session_id,
            sequence=result.sequence,
            original=original,
            translations={
                language: TranslationEntry(
                    text=output.text,
                    audio_ref=output.audio_ref,
                    has_audio=output.has_audio,
                    degraded=output.degraded,
                )
                for language, output in result.per_language.items()
            },
            processing_time_ms=round(result.processing_time_ms, 1),
        )

        if broadcaster is not None and broadcaster.send(broadcast):
            report.broadcast_to += 1

        # Base64 once per language, shared by every subscriber of that language
        encoded_audio: dict[str, str | None] = {}

        for subscriber in subscribers:
            if not subscriber.is_active or result.sequence < subscriber.join_sequence:
                continue
            handle = handles.get(subscriber.subscriber_id)
            if handle is None:
                continue

            if handle.send(broadcast):
                report.broadcast_to += 1

            if not subscriber.accepts(result.sequence):
                continue

            output = result.per_language.get(subscriber.target_language)
            if output is None:
                # Language changed after the chunk started processing
                output = LanguageOutput(
                    language=subscriber.target_language,
                    text=result.original.text,
                    degraded=DEGRADED_LANGUAGE_UNAVAILABLE,
                )

            if output.language not in encoded_audio:
                encoded_audio[output.language] = (
                    encode_audio(output.audio) if output.audio is not None else None
                )

            personal = PersonalTranslationEvent(
                session_id=session_id,
                sequence=result.sequence,
                original=original,
                language=output.language,
                text=output.text,
                audio=encoded_audio[output.language],
                audio_ref=output.audio_ref,
                audio_format=output.audio_format,
                degraded=output.degraded,
            )
            if handle.send(personal):
                subscriber.advance_watermark(result.sequence)
                report.personal_deliveries += 1

        self._metrics.record_dispatch(report.personal_deliveries)
        logger.debug(
            "Result dispatched",
            extra={
                "session_id": session_id,
                "sequence": result.sequence,
                "broadcast_to": report.broadcast_to,
                "personal_deliveries": report.personal_deliveries,
            },
        )
        return report
