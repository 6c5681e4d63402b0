"""
Transcription backends and their lifecycle state.

Three variants share one interface:
- LocalBackend: batch; windows are transcribed by a local engine (faster-whisper)
- StreamingBackend: fed captured audio; results arrive through recognizer callbacks
- ManualBackend: no recognition; lines are added by hand
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Optional

from ..engines import create_engine, create_recognizer, is_engine_available, is_recognizer_available
from ..engines.base import TranscriptionEngine, TranscriptionResult
from ..errors import BackendError, BackendInitError, StreamAlreadyRunningError
from ..logger import get_logger
from ..settings import BackendOptions, LocalEngineOptions, StreamingEngineOptions
from .buffer import AudioChunk, SampleWindow

logger = get_logger(__name__)


class BackendKind(str, Enum):
    LOCAL = "local"
    STREAMING = "streaming"
    MANUAL = "manual"


class BackendStatus(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    DEGRADED = "degraded"
    FAILED = "failed"


_TRANSITIONS = {
    BackendStatus.IDLE: {BackendStatus.STARTING},
    BackendStatus.STARTING: {BackendStatus.ACTIVE, BackendStatus.FAILED, BackendStatus.IDLE},
    BackendStatus.ACTIVE: {BackendStatus.DEGRADED, BackendStatus.FAILED, BackendStatus.IDLE},
    BackendStatus.DEGRADED: {BackendStatus.ACTIVE, BackendStatus.FAILED, BackendStatus.IDLE},
    BackendStatus.FAILED: {BackendStatus.IDLE},
}


class BackendState:
    """Status plus consecutive-error counter for one backend."""

    def __init__(self, kind: BackendKind, retry_budget: int = 2):
        self.kind = kind
        self.status = BackendStatus.IDLE
        self.error_count = 0
        self.retry_budget = retry_budget

    @property
    def is_live(self) -> bool:
        """ACTIVE or DEGRADED: the backend currently holds the active slot."""
        return self.status in (BackendStatus.ACTIVE, BackendStatus.DEGRADED)

    @property
    def budget_exceeded(self) -> bool:
        return self.error_count > self.retry_budget

    def transition(self, status: BackendStatus) -> None:
        if status == self.status:
            return
        if status not in _TRANSITIONS[self.status]:
            raise ValueError(f"{self.kind.value}: illegal transition {self.status.value} -> {status.value}")
        logger.debug(f"{self.kind.value}: {self.status.value} -> {status.value}")
        self.status = status

    def record_error(self) -> int:
        self.error_count += 1
        return self.error_count

    def reset_errors(self) -> None:
        self.error_count = 0

    def __repr__(self):
        return f"<BackendState {self.kind.value} {self.status.value} errors={self.error_count}/{self.retry_budget}>"


class TranscriptionBackend(ABC):
    """Common backend interface used by the BackendManager."""

    kind: BackendKind
    consumes_windows = False
    consumes_audio = False

    def __init__(self, retry_budget: int = 2):
        self.state = BackendState(self.kind, retry_budget)

    def is_available(self) -> bool:
        return True

    @abstractmethod
    def start(self) -> None:
        """Bring the backend up. Raises BackendInitError when it cannot start."""

    @abstractmethod
    def stop(self) -> None:
        """Release backend resources. Safe to call more than once."""

    def transcribe(self, window: SampleWindow) -> TranscriptionResult:
        raise NotImplementedError(f"{self.kind.value} backend does not transcribe windows")

    def feed(self, chunk: AudioChunk) -> None:
        raise NotImplementedError(f"{self.kind.value} backend does not consume audio")

    def __repr__(self):
        return f"<{type(self).__name__} {self.state.status.value}>"


EngineFactory = Callable[[str], TranscriptionEngine]


class LocalBackend(TranscriptionBackend):
    """Batch transcription of windows with a locally loaded model."""

    kind = BackendKind.LOCAL
    consumes_windows = True

    def __init__(self, options: LocalEngineOptions, retry_budget: int = 2,
                 engine_factory: EngineFactory = create_engine):
        super().__init__(retry_budget)
        self.options = options
        self._engine_factory = engine_factory
        self.engine: Optional[TranscriptionEngine] = None

    def is_available(self) -> bool:
        if self._engine_factory is not create_engine:
            return True
        return is_engine_available(self.options.engine)

    def start(self):
        engine = self._engine_factory(self.options.engine)
        if not engine.load(self.options.model, device=self.options.device, compute_type=self.options.compute_type):
            raise BackendInitError(f"Local model '{self.options.model}' failed to load", kind="load-failed")
        self.engine = engine

    def transcribe(self, window: SampleWindow) -> TranscriptionResult:
        """Runs on the worker thread. Engine exceptions become BackendError."""
        engine = self.engine
        if engine is None:
            raise BackendError("Local backend is not started", kind="not-started")
        try:
            return engine.transcribe(
                window.samples,
                sample_rate=window.sample_rate,
                language=self.options.language,
                initial_prompt=self.options.initial_prompt,
                vad_filter=self.options.vad_filter,
            )
        except Exception as e:
            raise BackendError(f"Local transcription of window {window.index} failed: {e}") from e

    def stop(self):
        engine, self.engine = self.engine, None
        if engine is not None:
            engine.unload()


class StreamingBackend(TranscriptionBackend):
    """
    Wraps a StreamingRecognizer.

    Callbacks must be bound with bind() before start(); the manager binds them
    to handlers that post back onto the scheduler.
    """

    kind = BackendKind.STREAMING
    consumes_audio = True

    def __init__(self, options: StreamingEngineOptions, retry_budget: int = 2,
                 recognizer_factory: Callable = create_recognizer):
        super().__init__(retry_budget)
        self.options = options
        self._recognizer_factory = recognizer_factory
        self.recognizer = None
        self._callbacks = None

    def is_available(self) -> bool:
        if self._recognizer_factory is not create_recognizer:
            return True
        return is_recognizer_available(self.options.engine)

    def bind(self, on_result, on_error, on_end) -> None:
        self._callbacks = (on_result, on_error, on_end)

    def start(self):
        if self.recognizer is None:
            try:
                self.recognizer = self._recognizer_factory(
                    self.options.engine,
                    api=self.options.api,
                    language=self.options.language,
                    phrase_seconds=self.options.phrase_seconds,
                )
            except BackendInitError:
                raise
            except Exception as e:
                raise BackendInitError(f"Streaming recognizer unavailable: {e}", kind="unavailable") from e
            if self._callbacks is not None:
                self.recognizer.bind(*self._callbacks)
        try:
            self.recognizer.start()
        except StreamAlreadyRunningError:
            logger.info("Streaming recognizer already running; treating it as active")
        except BackendError:
            raise
        except Exception as e:
            raise BackendInitError(f"Streaming recognizer failed to start: {e}", kind="start-failed") from e

    def restart(self):
        if self.recognizer is not None and self.recognizer.is_running:
            self.recognizer.stop()
        self.start()

    def feed(self, chunk: AudioChunk):
        if self.recognizer is not None:
            self.recognizer.feed(chunk.samples, chunk.sample_rate)

    def stop(self):
        if self.recognizer is not None:
            self.recognizer.stop()


class ManualBackend(TranscriptionBackend):
    """Terminal fallback: no recognition. Lines come from add_manual_line()."""

    kind = BackendKind.MANUAL

    def start(self):
        logger.info("Manual transcription mode: lines must be added by hand")

    def stop(self):
        pass


BackendFactory = Callable[[BackendKind, BackendOptions], TranscriptionBackend]


def default_backend_factory(kind: BackendKind, options: BackendOptions) -> TranscriptionBackend:
    if kind == BackendKind.LOCAL:
        return LocalBackend(options.local, options.retry_budget)
    if kind == BackendKind.STREAMING:
        return StreamingBackend(options.streaming, options.retry_budget)
    return ManualBackend(options.retry_budget)
