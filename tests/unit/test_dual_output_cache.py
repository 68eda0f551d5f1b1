"""Unit tests for the dual output cache.

Covers per-chunk deduplication, the LRU tiers, degraded outputs and the
rule that failures are never cached.
"""

import asyncio

import pytest

from src.relay.adapters.adapter_mock import MockSynthesisAdapter, MockTranslationAdapter
from src.relay.cache import (
    DEGRADED_SYNTHESIS,
    DEGRADED_TRANSLATION,
    DualOutputCache,
    LRUCache,
    normalize_text,
)
from src.relay.metrics import MetricsCollector


class TestLRUCache:
    """Test the bounded LRU mapping."""

    def test_get_put(self) -> None:
        lru: LRUCache[str, int] = LRUCache(2)
        assert lru.get("a") is None
        lru.put("a", 1)
        assert lru.get("a") == 1
        assert lru.stats()["hits"] == 1
        assert lru.stats()["misses"] == 1

    def test_evicts_least_recently_used(self) -> None:
        lru: LRUCache[str, int] = LRUCache(2)
        lru.put("a", 1)
        lru.put("b", 2)
        lru.get("a")
        lru.put("c", 3)

        assert "a" in lru
        assert "b" not in lru
        assert "c" in lru
        assert len(lru) == 2
        assert lru.evictions == 1

    def test_rejects_zero_capacity(self) -> None:
        with pytest.raises(ValueError):
            LRUCache(0)


def test_normalize_text() -> None:
    assert normalize_text("  Amazing   grace\nhow  sweet ") == "Amazing grace how sweet"


class TestDualOutputCache:
    """Test resolution of (text, audio) per chunk and language."""

    @pytest.mark.asyncio
    async def test_resolve_produces_text_and_audio(self, cache: DualOutputCache) -> None:
        output = await cache.resolve("S1", 1, "en", "es", "hello")
        assert output.language == "es"
        assert output.text == "[es] hello"
        assert output.has_audio
        assert output.audio_format == "wav"
        assert output.audio_ref is not None
        assert output.degraded is None

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_work(
        self,
        cache: DualOutputCache,
        translator: MockTranslationAdapter,
        synthesizer: MockSynthesisAdapter,
    ) -> None:
        """Many subscribers of one language trigger one translation and one synthesis."""
        translator.latency_ms = 20
        outputs = await asyncio.gather(
            *(cache.resolve("S1", 1, "en", "es", "hello") for _ in range(10))
        )
        assert len(translator.calls) == 1
        assert synthesizer.calls_for("es") == 1
        assert len({o.audio_ref for o in outputs}) == 1

    @pytest.mark.asyncio
    async def test_repeated_phrase_hits_lru(
        self,
        cache: DualOutputCache,
        translator: MockTranslationAdapter,
        synthesizer: MockSynthesisAdapter,
        metrics: MetricsCollector,
    ) -> None:
        first = await cache.resolve("S1", 1, "en", "fr", "Amazing grace")
        second = await cache.resolve("S1", 2, "en", "fr", "Amazing  grace ")
        assert second.audio == first.audio
        assert len(translator.calls) == 1
        assert synthesizer.calls_for("fr") == 1
        summary = metrics.get_summary()
        assert summary["translation_cache_hit_rate"] == 0.5
        assert summary["synthesis_cache_hit_rate"] == 0.5

    @pytest.mark.asyncio
    async def test_same_language_skips_translation(
        self, cache: DualOutputCache, translator: MockTranslationAdapter
    ) -> None:
        output = await cache.resolve("S1", 1, "en", "en", "hello")
        assert output.text == "hello"
        assert output.has_audio
        assert translator.calls == []

    @pytest.mark.asyncio
    async def test_translation_failure_falls_back_to_source(
        self, metrics: MetricsCollector
    ) -> None:
        translator = MockTranslationAdapter(fail_languages={"de"})
        synthesizer = MockSynthesisAdapter()
        cache = DualOutputCache(translator, synthesizer, metrics=metrics)

        output = await cache.resolve("S1", 1, "en", "de", "hello")
        assert output.text == "hello"
        assert output.degraded == DEGRADED_TRANSLATION
        assert not output.has_audio
        assert synthesizer.calls == []

        # Failures are not cached: the next chunk retries
        await cache.resolve("S1", 2, "en", "de", "hello")
        assert len(translator.calls) == 2
        assert len(cache.translations) == 0

    @pytest.mark.asyncio
    async def test_synthesis_failure_keeps_text(self, metrics: MetricsCollector) -> None:
        cache = DualOutputCache(
            MockTranslationAdapter(), MockSynthesisAdapter(fail_languages={"es"}), metrics=metrics
        )
        output = await cache.resolve("S1", 1, "en", "es", "hello")
        assert output.text == "[es] hello"
        assert output.degraded == DEGRADED_SYNTHESIS
        assert output.audio is None
        assert len(cache.syntheses) == 0

    @pytest.mark.asyncio
    async def test_translation_timeout(self, metrics: MetricsCollector) -> None:
        cache = DualOutputCache(
            MockTranslationAdapter(latency_ms=200),
            MockSynthesisAdapter(),
            translation_timeout_s=0.02,
            metrics=metrics,
        )
        output = await cache.resolve("S1", 1, "en", "es", "hello")
        assert output.degraded == DEGRADED_TRANSLATION

    @pytest.mark.asyncio
    async def test_release_chunk_and_session(self, cache: DualOutputCache) -> None:
        await cache.resolve("S1", 1, "en", "es", "a")
        await cache.resolve("S1", 1, "en", "fr", "a")
        await cache.resolve("S1", 2, "en", "es", "b")
        await cache.resolve("S2", 1, "en", "es", "c")

        assert cache.in_flight_count("S1") == 3
        assert cache.release_chunk("S1", 1) == 2
        assert cache.in_flight_count("S1") == 1
        assert cache.release_session("S1") == 1
        assert cache.in_flight_count() == 1

    @pytest.mark.asyncio
    async def test_release_cancels_unfinished_work(self, metrics: MetricsCollector) -> None:
        translator = MockTranslationAdapter(latency_ms=500)
        cache = DualOutputCache(translator, MockSynthesisAdapter(), metrics=metrics)

        waiter = asyncio.create_task(cache.resolve("S1", 1, "en", "es", "hello"))
        await asyncio.sleep(0.01)
        cache.release_session("S1")

        with pytest.raises(asyncio.CancelledError):
            await waiter
