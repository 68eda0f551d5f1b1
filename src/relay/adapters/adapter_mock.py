"""Mock speech collaborators for local runs and tests.

These adapters follow the transcription, translation and synthesis
protocols with deterministic output, configurable latency, failure
injection and call recording. Synthesis renders a short sine tone whose
pitch and length are derived from the text, so identical input always yields
bit-identical audio.
"""

import asyncio
import hashlib
import logging
from typing import Final

from src.relay.adapters.audio import tone_wav

# Constants
BASE_FREQUENCY_HZ: Final[int] = 220
FREQUENCY_SPAN_HZ: Final[int] = 660
MS_PER_CHARACTER: Final[int] = 40
MIN_TONE_MS: Final[int] = 120
MAX_TONE_MS: Final[int] = 2000

logger = logging.getLogger(__name__)


def _digest(data: bytes) -> str:
    return hashlib.sha1(data, usedforsecurity=False).hexdigest()


class MockTranscriptionAdapter:
    """Transcriber returning a fixed or audio-derived transcript.

    Attributes:
        calls: Recorded (audio size, language) of every call
    """

    def __init__(
        self,
        transcript: str = "",
        latency_ms: float = 0.0,
        fail: bool = False,
    ) -> None:
        self.transcript = transcript
        self.latency_ms = latency_ms
        self.fail = fail
        self.calls: list[tuple[int, str]] = []

    async def transcribe(self, audio: bytes, language: str) -> str:
        self.calls.append((len(audio), language))
        if self.latency_ms:
            await asyncio.sleep(self.latency_ms / 1000.0)
        if self.fail:
            raise RuntimeError("mock transcription failure")
        if self.transcript:
            return self.transcript
        return f"utterance {_digest(audio)[:8]}"


class MockTranslationAdapter:
    """Translator that tags text with the target language.

    Attributes:
        calls: Recorded (text, from_lang, to_lang) of every call
        fail_languages: Target languages for which translation raises
    """

    def __init__(self, latency_ms: float = 0.0, fail_languages: set[str] | None = None) -> None:
        self.latency_ms = latency_ms
        self.fail_languages = set(fail_languages or ())
        self.calls: list[tuple[str, str, str]] = []

    async def translate(self, text: str, from_lang: str, to_lang: str) -> str:
        self.calls.append((text, from_lang, to_lang))
        if self.latency_ms:
            await asyncio.sleep(self.latency_ms / 1000.0)
        if to_lang in self.fail_languages:
            raise RuntimeError(f"mock translation failure for {to_lang}")
        return f"[{to_lang}] {text}"


class MockSynthesisAdapter:
    """Synthesizer rendering deterministic WAV tones.

    Attributes:
        calls: Recorded (text, lang) of every call
        fail_languages: Languages for which synthesis raises
    """

    def __init__(self, latency_ms: float = 0.0, fail_languages: set[str] | None = None) -> None:
        self.latency_ms = latency_ms
        self.fail_languages = set(fail_languages or ())
        self.calls: list[tuple[str, str]] = []

    def calls_for(self, lang: str) -> int:
        """Number of synthesis calls made for one language."""
        return sum(1 for _, call_lang in self.calls if call_lang == lang)

    async def synthesize(self, text: str, lang: str) -> bytes:
        self.calls.append((text, lang))
        if self.latency_ms:
            await asyncio.sleep(self.latency_ms / 1000.0)
        if lang in self.fail_languages:
            raise RuntimeError(f"mock synthesis failure for {lang}")

        seed = int(_digest(f"{lang}:{text}".encode())[:8], 16)
        frequency = BASE_FREQUENCY_HZ + seed % FREQUENCY_SPAN_HZ
        duration_ms = max(MIN_TONE_MS, min(MAX_TONE_MS, len(text) * MS_PER_CHARACTER))

        logger.debug(
            "Mock synthesis",
            extra={"lang": lang, "text_length": len(text), "frequency": frequency},
        )
        return tone_wav(frequency, duration_ms)
