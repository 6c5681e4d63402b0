"""
Engine registries.

Engine modules register their classes with the decorators below when they are
imported; an engine whose dependencies are missing stays registered but
reports itself unavailable.
"""

from typing import Dict, Type

from ..logger import get_logger
from .base import EngineNotAvailableError, StreamingRecognizer, TranscriptionEngine

logger = get_logger(__name__)

_engine_registry: Dict[str, Type[TranscriptionEngine]] = {}
_recognizer_registry: Dict[str, Type[StreamingRecognizer]] = {}


def register_engine(engine_class: Type[TranscriptionEngine]) -> Type[TranscriptionEngine]:
    """Class decorator; keys the registry by ENGINE_ID."""
    _engine_registry[engine_class.ENGINE_ID] = engine_class
    return engine_class


def register_recognizer(recognizer_class: Type[StreamingRecognizer]) -> Type[StreamingRecognizer]:
    """Class decorator; keys the registry by RECOGNIZER_ID."""
    _recognizer_registry[recognizer_class.RECOGNIZER_ID] = recognizer_class
    return recognizer_class


def _resolve(registry, kind, backend_id):
    backend_class = registry.get(backend_id)
    if backend_class is None:
        raise EngineNotAvailableError(backend_id, f"Unknown {kind}. Registered: {sorted(registry)}")
    if not backend_class.is_available():
        raise EngineNotAvailableError(backend_id, backend_class.get_install_hint())
    return backend_class


def is_engine_available(engine_id: str) -> bool:
    engine_class = _engine_registry.get(engine_id)
    return engine_class is not None and engine_class.is_available()


def is_recognizer_available(recognizer_id: str) -> bool:
    recognizer_class = _recognizer_registry.get(recognizer_id)
    return recognizer_class is not None and recognizer_class.is_available()


def create_engine(engine_id: str) -> TranscriptionEngine:
    """Instantiate a registered engine. Raises EngineNotAvailableError."""
    engine = _resolve(_engine_registry, "engine", engine_id)()
    logger.debug(f"Created engine '{engine_id}'")
    return engine


def create_recognizer(recognizer_id: str, **options) -> StreamingRecognizer:
    """Instantiate a registered recognizer with constructor options. Raises EngineNotAvailableError."""
    recognizer = _resolve(_recognizer_registry, "recognizer", recognizer_id)(**options)
    logger.debug(f"Created recognizer '{recognizer_id}'")
    return recognizer


def get_all_engines() -> Dict[str, Type[TranscriptionEngine]]:
    """All registered engines, available or not."""
    return dict(_engine_registry)


def get_all_recognizers() -> Dict[str, Type[StreamingRecognizer]]:
    return dict(_recognizer_registry)


def _register_engines():
    from . import speech_recognition_engine  # noqa: F401
    from . import whisper_engine  # noqa: F401


_register_engines()
