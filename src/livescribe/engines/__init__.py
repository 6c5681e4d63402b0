"""
livescribe transcription engines

- Whisper (faster-whisper): local batch engine, primary backend
- SpeechRecognition: streaming web recognizer, first fallback
"""

from .base import (
    EngineNotAvailableError,
    ModelInfo,
    StreamingEvent,
    StreamingRecognizer,
    TranscriptionEngine,
    TranscriptionResult,
    TranscriptionSegment,
)
from .factory import (
    create_engine,
    create_recognizer,
    get_all_engines,
    get_all_recognizers,
    is_engine_available,
    is_recognizer_available,
    register_engine,
    register_recognizer,
)

__all__ = [
    # Base classes
    "TranscriptionEngine",
    "StreamingRecognizer",
    "TranscriptionResult",
    "TranscriptionSegment",
    "StreamingEvent",
    "ModelInfo",
    "EngineNotAvailableError",
    # Factory functions
    "create_engine",
    "create_recognizer",
    "is_engine_available",
    "is_recognizer_available",
    "get_all_engines",
    "get_all_recognizers",
    "register_engine",
    "register_recognizer",
]
