"""External speech collaborator interfaces and mock implementations.

The relay core treats transcription, translation and synthesis as pure
async functions behind these protocols.
"""

from src.relay.adapters.adapter_mock import (
    MockSynthesisAdapter,
    MockTranscriptionAdapter,
    MockTranslationAdapter,
)
from src.relay.adapters.base import (
    STAGE_SYNTHESIS,
    STAGE_TRANSCRIPTION,
    STAGE_TRANSLATION,
    AdapterResult,
    SynthesisAdapter,
    TranscriptionAdapter,
    TranslationAdapter,
    invoke_adapter,
)

__all__ = [
    "AdapterResult",
    "MockSynthesisAdapter",
    "MockTranscriptionAdapter",
    "MockTranslationAdapter",
    "STAGE_SYNTHESIS",
    "STAGE_TRANSCRIPTION",
    "STAGE_TRANSLATION",
    "SynthesisAdapter",
    "TranscriptionAdapter",
    "TranslationAdapter",
    "invoke_adapter",
]
