"""
Engine interfaces.

- TranscriptionEngine: batch; one 16 kHz window in, one TranscriptionResult out
  (used by the local backend)
- StreamingRecognizer: fed audio continuously; results, errors and the end of
  the recognition session come back through callbacks
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import numpy as np

from ..errors import BackendInitError


@dataclass
class TranscriptionSegment:
    text: str
    start: float  # seconds from window start
    end: float


@dataclass
class TranscriptionResult:
    """Outcome of one batch transcription. `error` is set when the engine failed."""
    text: str
    segments: List[TranscriptionSegment] = field(default_factory=list)
    duration_seconds: float = 0.0
    confidence: float = 1.0
    is_final: bool = True
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()

    @classmethod
    def failure(cls, message: str) -> "TranscriptionResult":
        return cls(text="", confidence=0.0, error=message)


@dataclass
class StreamingEvent:
    """Incremental streaming result. Only `final` text is ever committed."""
    interim: str = ""
    final: str = ""
    confidence: float = 1.0


@dataclass(frozen=True)
class ModelInfo:
    """A model an engine can load, as listed by `livescribe engines`."""
    id: str
    name: str
    engine: str
    size_mb: int
    description: str
    multilingual: bool = False


class EngineNotAvailableError(BackendInitError):
    """Unknown engine id, or the engine's dependencies are not installed."""

    def __init__(self, engine_id: str, install_hint: str):
        self.engine_id = engine_id
        self.install_hint = install_hint
        super().__init__(f"Engine '{engine_id}' not available. {install_hint}", kind="unavailable")


class TranscriptionEngine(ABC):
    """
    Batch speech-to-text engine.

    The local backend loads the engine once per session, then calls
    transcribe() from the worker thread with float32 windows in [-1, 1].
    """

    ENGINE_ID: str = "base"
    ENGINE_NAME: str = "Base Engine"

    def __init__(self):
        self._model = None
        self._model_name: Optional[str] = None
        self._device: Optional[str] = None
        self._loaded = False

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    @abstractmethod
    def load(self, model_name: str, device: str = "auto", compute_type: str = "int8") -> bool:
        """Load `model_name` on device ("auto", "cuda", "cpu"). False when loading failed."""

    @abstractmethod
    def transcribe(
        self,
        audio: np.ndarray,
        sample_rate: int = 16000,
        language: Optional[str] = None,
        initial_prompt: Optional[str] = None,
        vad_filter: bool = True,
        **kwargs
    ) -> TranscriptionResult:
        """
        Transcribe one window.

        language is a code such as "en" (None auto-detects); initial_prompt
        conditions the model; vad_filter skips non-speech. Engine-specific
        options arrive in kwargs.
        """

    def get_supported_models(self) -> List[ModelInfo]:
        return []

    def unload(self) -> None:
        self._model = None
        self._model_name = None
        self._device = None
        self._loaded = False

    @classmethod
    def is_available(cls) -> bool:
        """Subclasses check that their dependencies import."""
        return True

    @classmethod
    def get_install_hint(cls) -> str:
        return "Install required dependencies."


ResultCallback = Callable[[StreamingEvent], None]
ErrorCallback = Callable[[str, str], None]
EndCallback = Callable[[], None]


class StreamingRecognizer(ABC):
    """
    Continuous recognizer.

    Audio is pushed with feed(); results, errors and the end of the
    recognition session are reported through the callbacks, possibly from a
    recognizer thread. Error kinds: no-speech, audio-capture, network,
    service-not-allowed, not-allowed.
    """

    RECOGNIZER_ID: str = "base"
    RECOGNIZER_NAME: str = "Base Recognizer"

    def __init__(self):
        self.on_result: Optional[ResultCallback] = None
        self.on_error: Optional[ErrorCallback] = None
        self.on_end: Optional[EndCallback] = None

    def bind(self, on_result: ResultCallback, on_error: ErrorCallback, on_end: EndCallback) -> None:
        self.on_result = on_result
        self.on_error = on_error
        self.on_end = on_end

    @property
    @abstractmethod
    def is_running(self) -> bool:
        pass

    @abstractmethod
    def start(self) -> None:
        """Begin recognizing. Raises StreamAlreadyRunningError if already running."""

    @abstractmethod
    def stop(self) -> None:
        """Stop recognizing. Safe to call when not running."""

    @abstractmethod
    def feed(self, samples: np.ndarray, sample_rate: int) -> None:
        """Push mono float32 audio."""

    def _emit_result(self, event: StreamingEvent):
        if self.on_result is not None:
            self.on_result(event)

    def _emit_error(self, kind: str, message: str = ""):
        if self.on_error is not None:
            self.on_error(kind, message)

    def _emit_end(self):
        if self.on_end is not None:
            self.on_end()

    @classmethod
    def is_available(cls) -> bool:
        return True

    @classmethod
    def get_install_hint(cls) -> str:
        return "Install required dependencies."
