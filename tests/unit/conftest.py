"""Shared fixtures for relay unit tests."""

from collections.abc import AsyncIterator

import pytest
import pytest_asyncio

from src.relay.adapters.adapter_mock import (
    MockSynthesisAdapter,
    MockTranscriptionAdapter,
    MockTranslationAdapter,
)
from src.relay.cache import DualOutputCache
from src.relay.metrics import MetricsCollector
from src.relay.pipeline import ChunkProcessor
from tests.helpers.relay_test_utils import ActorHarness


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def transcriber() -> MockTranscriptionAdapter:
    return MockTranscriptionAdapter(transcript="good morning")


@pytest.fixture
def translator() -> MockTranslationAdapter:
    return MockTranslationAdapter()


@pytest.fixture
def synthesizer() -> MockSynthesisAdapter:
    return MockSynthesisAdapter()


@pytest.fixture
def cache(
    translator: MockTranslationAdapter,
    synthesizer: MockSynthesisAdapter,
    metrics: MetricsCollector,
) -> DualOutputCache:
    return DualOutputCache(translator, synthesizer, max_entries=32, metrics=metrics)


@pytest.fixture
def processor(transcriber: MockTranscriptionAdapter, cache: DualOutputCache) -> ChunkProcessor:
    return ChunkProcessor(transcriber, cache, transcription_timeout_s=1.0)


@pytest_asyncio.fixture
async def harness(
    processor: ChunkProcessor, metrics: MetricsCollector
) -> AsyncIterator[ActorHarness]:
    h = ActorHarness(processor, metrics)
    h.start()
    yield h
    await h.close()
