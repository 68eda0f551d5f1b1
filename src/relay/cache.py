"""Dual output cache: translated text plus synthesized audio per language.

Two layers keep translation and synthesis work to a minimum:

1. A per-chunk memo table keyed ``(session_id, sequence, target_language)``.
   The first caller starts the work as a task; every concurrent caller for
   the same key awaits that task, so each (chunk, language) pair is
   translated and synthesized at most once no matter how many subscribers
   want it.
2. Two bounded LRU tiers shared by all sessions: translations keyed by
   ``(source, target, normalized text)`` and synthesized audio keyed by
   ``(target, normalized translated text)``. Repeated phrases (hymns,
   liturgy, announcements) skip both adapters entirely.

The LRU tiers are guarded by an ``RLock`` so they may be shared across
session actors and threads. Failed adapter calls are never cached.
"""

import asyncio
import logging
import threading
from collections import OrderedDict
from collections.abc import Hashable
from typing import Generic, TypeVar

from src.relay.adapters.base import (
    STAGE_SYNTHESIS,
    STAGE_TRANSLATION,
    SynthesisAdapter,
    TranslationAdapter,
    invoke_adapter,
)
from src.relay.codec import audio_ref, sniff_container
from src.relay.metrics import MetricsCollector, get_metrics_collector
from src.relay.models import LanguageOutput

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

DEGRADED_TRANSLATION = "translation_failed"
DEGRADED_SYNTHESIS = "synthesis_failed"


def normalize_text(text: str) -> str:
    """Collapse whitespace so trivially different phrasings share entries."""
    return " ".join(text.split())


class LRUCache(Generic[K, V]):
    """Bounded thread-safe least-recently-used mapping.

    Args:
        max_entries: Capacity; the least recently used entry is evicted
            when a new key would exceed it
    """

    def __init__(self, max_entries: int) -> None:
        if max_entries < 1:
            raise ValueError(f"max_entries must be positive, got {max_entries}")
        self.max_entries = max_entries
        self._entries: OrderedDict[K, V] = OrderedDict()
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: K) -> V | None:
        with self._lock:
            try:
                value = self._entries[key]
            except KeyError:
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return value

    def put(self, key: K, value: V) -> None:
        with self._lock:
            self._entries[key] = value
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
                self.evictions += 1

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "size": len(self._entries),
                "max_entries": self.max_entries,
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
            }


ChunkKey = tuple[str, int, str]


class DualOutputCache:
    """Resolves the (text, audio) pair of one chunk for one target language.

    Args:
        translator: Translation adapter
        synthesizer: Synthesis adapter
        max_entries: Capacity of each LRU tier
        translation_timeout_s: Translation call deadline
        synthesis_timeout_s: Synthesis call deadline
        metrics: Metrics collector (global collector when omitted)
    """

    def __init__(
        self,
        translator: TranslationAdapter,
        synthesizer: SynthesisAdapter,
        max_entries: int = 256,
        translation_timeout_s: float = 2.0,
        synthesis_timeout_s: float = 2.0,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._translator = translator
        self._synthesizer = synthesizer
        self.translation_timeout_s = translation_timeout_s
        self.synthesis_timeout_s = synthesis_timeout_s
        self._metrics = metrics or get_metrics_collector()

        self.translations: LRUCache[tuple[str, str, str], str] = LRUCache(max_entries)
        self.syntheses: LRUCache[tuple[str, str], bytes] = LRUCache(max_entries)

        # Per-chunk memo; only touched from the event loop
        self._in_flight: dict[ChunkKey, asyncio.Task[LanguageOutput]] = {}

    async def resolve(
        self,
        session_id: str,
        sequence: int,
        source_language: str,
        target_language: str,
        text: str,
    ) -> LanguageOutput:
        """Get the dual output for one (chunk, language), computing it at most once.

        Args:
            session_id: Owning session
            sequence: Chunk sequence number
            source_language: Language of ``text``
            target_language: Requested output language
            text: Transcribed source text

        Returns:
            LanguageOutput, possibly degraded when an adapter failed
        """
        key = (session_id, sequence, target_language)
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.create_task(
                self._compute(source_language, target_language, text),
                name=f"resolve-{session_id}-{sequence}-{target_language}",
            )
            self._in_flight[key] = task
        # Shielded so one cancelled waiter does not cancel the shared work
        return await asyncio.shield(task)

    def release_chunk(self, session_id: str, sequence: int) -> int:
        """Drop the memo entries of one chunk, cancelling unfinished work.

        Returns:
            Number of entries released
        """
        keys = [k for k in self._in_flight if k[0] == session_id and k[1] == sequence]
        for key in keys:
            task = self._in_flight.pop(key)
            if not task.done():
                task.cancel()
        return len(keys)

    def release_session(self, session_id: str) -> int:
        """Drop every memo entry of a session, cancelling unfinished work."""
        keys = [k for k in self._in_flight if k[0] == session_id]
        for key in keys:
            task = self._in_flight.pop(key)
            if not task.done():
                task.cancel()
        return len(keys)

    def in_flight_count(self, session_id: str | None = None) -> int:
        if session_id is None:
            return len(self._in_flight)
        return sum(1 for k in self._in_flight if k[0] == session_id)

    async def _compute(
        self, source_language: str, target_language: str, text: str
    ) -> LanguageOutput:
        translated = await self._translate(source_language, target_language, text)
        if translated is None:
            # Fall back to the source text so the subscriber still gets something
            return LanguageOutput(
                language=target_language,
                text=text,
                degraded=DEGRADED_TRANSLATION,
            )

        if not translated.strip():
            return LanguageOutput(language=target_language, text=translated)

        audio = await self._synthesize(target_language, translated)
        if audio is None:
            return LanguageOutput(
                language=target_language,
                text=translated,
                degraded=DEGRADED_SYNTHESIS,
            )

        return LanguageOutput(
            language=target_language,
            text=translated,
            audio=audio,
            audio_ref=audio_ref(audio),
            audio_format=sniff_container(audio) or "wav",
        )

    async def _translate(self, source_language: str, target_language: str, text: str) -> str | None:
        if source_language == target_language:
            return text

        key = (source_language, target_language, normalize_text(text))
        cached = self.translations.get(key)
        self._metrics.record_cache_lookup("translation", hit=cached is not None)
        if cached is not None:
            return cached

        result = await invoke_adapter(
            STAGE_TRANSLATION,
            lambda: self._translator.translate(text, source_language, target_language),
            self.translation_timeout_s,
        )
        if not result.ok or result.value is None:
            return None

        self.translations.put(key, result.value)
        return result.value

    async def _synthesize(self, language: str, text: str) -> bytes | None:
        key = (language, normalize_text(text))
        cached = self.syntheses.get(key)
        self._metrics.record_cache_lookup("synthesis", hit=cached is not None)
        if cached is not None:
            return cached

        result = await invoke_adapter(
            STAGE_SYNTHESIS,
            lambda: self._synthesizer.synthesize(text, language),
            self.synthesis_timeout_s,
        )
        if not result.ok or not result.value:
            return None

        self.syntheses.put(key, result.value)
        logger.debug(
            "Synthesized audio cached",
            extra={"language": language, "audio_bytes": len(result.value)},
        )
        return result.value

    def stats(self) -> dict[str, object]:
        return {
            "translation": self.translations.stats(),
            "synthesis": self.syntheses.stats(),
            "in_flight": len(self._in_flight),
        }
