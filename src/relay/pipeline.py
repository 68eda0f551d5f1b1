"""Chunk processing: transcription followed by per-language dual output.

A ``ChunkProcessor`` turns one chunk into one ``TranslationResult``. It
never raises for adapter problems: a failed or empty transcription yields a
failed result (released in order but not delivered), and a failing target
language only degrades that language's entry.
"""

import asyncio
import logging
import time

from src.relay.adapters.base import STAGE_TRANSCRIPTION, TranscriptionAdapter, invoke_adapter
from src.relay.cache import DualOutputCache
from src.relay.models import Chunk, LanguageOutput, OriginalText, TranslationResult

logger = logging.getLogger(__name__)

FAILED_EMPTY_TRANSCRIPTION = "empty_transcription"


class ChunkProcessor:
    """Runs the transcription → translation → synthesis pipeline for chunks.

    Args:
        transcriber: Transcription adapter
        cache: Dual output cache performing translation and synthesis
        transcription_timeout_s: Transcription call deadline
    """

    def __init__(
        self,
        transcriber: TranscriptionAdapter,
        cache: DualOutputCache,
        transcription_timeout_s: float = 3.0,
    ) -> None:
        self._transcriber = transcriber
        self.cache = cache
        self.transcription_timeout_s = transcription_timeout_s

    async def process(
        self,
        chunk: Chunk,
        source_language: str,
        target_languages: list[str],
    ) -> TranslationResult:
        """Process one audio chunk.

        Args:
            chunk: Admitted chunk
            source_language: Broadcaster's language
            target_languages: Languages requested by subscribers at dispatch time

        Returns:
            TranslationResult (failed when transcription failed or was empty)
        """
        transcription = await invoke_adapter(
            STAGE_TRANSCRIPTION,
            lambda: self._transcriber.transcribe(chunk.payload, source_language),
            self.transcription_timeout_s,
        )

        if not transcription.ok:
            return TranslationResult(
                sequence=chunk.sequence,
                original=None,
                processing_time_ms=_elapsed_ms(chunk.received_at),
                failed_stage=STAGE_TRANSCRIPTION,
            )

        text = (transcription.value or "").strip()
        if not text:
            logger.debug(
                "Empty transcription",
                extra={"session_id": chunk.session_id, "sequence": chunk.sequence},
            )
            return TranslationResult(
                sequence=chunk.sequence,
                original=None,
                processing_time_ms=_elapsed_ms(chunk.received_at),
                failed_stage=FAILED_EMPTY_TRANSCRIPTION,
            )

        return await self._fan_out(chunk, text, source_language, target_languages)

    async def process_text(
        self,
        chunk: Chunk,
        text: str,
        source_language: str,
        target_languages: list[str],
    ) -> TranslationResult:
        """Process a typed text message, skipping transcription.

        Args:
            chunk: Sequenced placeholder chunk (empty payload)
            text: Message text in the source language
            source_language: Broadcaster's language
            target_languages: Languages requested by subscribers

        Returns:
            TranslationResult for the message
        """
        return await self._fan_out(chunk, text.strip(), source_language, target_languages)

    async def _fan_out(
        self,
        chunk: Chunk,
        text: str,
        source_language: str,
        target_languages: list[str],
    ) -> TranslationResult:
        languages = list(dict.fromkeys(target_languages))
        outputs: list[LanguageOutput] = []
        if languages:
            outputs = await asyncio.gather(
                *(
                    self.cache.resolve(
                        chunk.session_id, chunk.sequence, source_language, language, text
                    )
                    for language in languages
                )
            )

        result = TranslationResult(
            sequence=chunk.sequence,
            original=OriginalText(text=text, language=source_language),
            per_language={output.language: output for output in outputs},
            processing_time_ms=_elapsed_ms(chunk.received_at),
        )

        degraded = {lang: o.degraded for lang, o in result.per_language.items() if o.degraded}
        logger.info(
            "Chunk processed",
            extra={
                "session_id": chunk.session_id,
                "sequence": chunk.sequence,
                "languages": languages,
                "degraded": degraded,
                "processing_time_ms": round(result.processing_time_ms, 1),
            },
        )
        return result


def _elapsed_ms(received_at: float) -> float:
    return (time.monotonic() - received_at) * 1000.0
