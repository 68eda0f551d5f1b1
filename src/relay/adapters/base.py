"""Interfaces for the external speech collaborators.

Transcription, translation and synthesis are treated as pluggable black
boxes with a uniform async contract. Pipeline code never calls an adapter
directly; it goes through ``invoke_adapter`` which applies the per-call
deadline and turns exceptions and timeouts into explicit ``AdapterResult``
values, so one failing language degrades gracefully instead of unwinding the
whole chunk.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, Protocol, TypeVar

from src.relay.errors import AdapterFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")

STAGE_TRANSCRIPTION = "transcription"
STAGE_TRANSLATION = "translation"
STAGE_SYNTHESIS = "synthesis"


class TranscriptionAdapter(Protocol):
    """Speech-to-text collaborator."""

    async def transcribe(self, audio: bytes, language: str) -> str:
        """Transcribe one self-contained audio chunk.

        Args:
            audio: Audio container bytes
            language: Source language code (ISO 639-1)

        Returns:
            Transcribed text (may be empty for silence)
        """
        ...


class TranslationAdapter(Protocol):
    """Machine translation collaborator."""

    async def translate(self, text: str, from_lang: str, to_lang: str) -> str:
        """Translate text between two languages."""
        ...


class SynthesisAdapter(Protocol):
    """Text-to-speech collaborator."""

    async def synthesize(self, text: str, lang: str) -> bytes:
        """Synthesize speech into a self-contained audio container."""
        ...


@dataclass(frozen=True)
class AdapterResult(Generic[T]):
    """Outcome of one adapter call: either a value or a failure.

    Attributes:
        value: Adapter output when the call succeeded
        failure: Failure description when it did not
        elapsed_ms: Wall time of the call
    """

    value: T | None = None
    failure: AdapterFailure | None = None
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.failure is None


async def invoke_adapter(
    stage: str,
    call: Callable[[], Awaitable[T]],
    timeout_s: float,
) -> AdapterResult[T]:
    """Run one adapter call under a deadline.

    Args:
        stage: Pipeline stage name used for failure reporting
        call: Zero-argument coroutine factory performing the call
        timeout_s: Per-call deadline in seconds

    Returns:
        AdapterResult with the value, or with an AdapterFailure

    Raises:
        asyncio.CancelledError: Cancellation is never converted into a failure
    """
    start = time.monotonic()
    try:
        value = await asyncio.wait_for(call(), timeout=timeout_s)
    except TimeoutError:
        elapsed_ms = (time.monotonic() - start) * 1000.0
        logger.warning(
            "Adapter call timed out",
            extra={"stage": stage, "timeout_s": timeout_s},
        )
        return AdapterResult(
            failure=AdapterFailure(stage, f"{stage} timed out after {timeout_s}s", timed_out=True),
            elapsed_ms=elapsed_ms,
        )
    except asyncio.CancelledError:
        raise
    except Exception as e:
        elapsed_ms = (time.monotonic() - start) * 1000.0
        logger.warning(
            "Adapter call failed",
            extra={"stage": stage, "error": str(e)},
        )
        return AdapterResult(failure=AdapterFailure(stage, str(e)), elapsed_ms=elapsed_ms)

    return AdapterResult(value=value, elapsed_ms=(time.monotonic() - start) * 1000.0)
