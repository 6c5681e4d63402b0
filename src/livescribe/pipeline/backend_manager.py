"""
Backend selection, error classification and failover.

The manager owns the single active backend slot for a session. Backends are
tried in priority order at start; a backend that fails is replaced by the next
one in the list and never re-tried in the same session. Everything here runs
on the scheduler thread. Recognizer callbacks and worker completions are
posted back to it and carry a generation number so results from a stopped
backend or session are ignored.
"""

from functools import partial
from typing import Callable, List, Optional

from ..engines.base import StreamingEvent, TranscriptionResult
from ..errors import (
    BackendError,
    ServiceError,
    TranscriptionPermissionError,
    TransientRecognitionError,
)
from ..logger import get_logger, log_exception
from ..scheduler import Scheduler
from ..settings import BackendOptions
from ..utils import TextProcessor
from .backends import (
    BackendFactory,
    BackendKind,
    BackendStatus,
    StreamingBackend,
    TranscriptionBackend,
    default_backend_factory,
)
from .buffer import AudioChunk, SampleWindow

logger = get_logger(__name__)

RETRYABLE_KINDS = ("no-speech", "audio-capture")
FAILOVER_KINDS = ("network", "service-not-allowed")
FATAL_KINDS = ("not-allowed",)


def classify_error(kind: str, message: str = "") -> BackendError:
    """
    Map a streaming error kind onto the error taxonomy.

    no-speech, audio-capture: TransientRecognitionError (retry within budget)
    network, service-not-allowed: ServiceError (immediate failover)
    not-allowed: TranscriptionPermissionError (transcription stops)
    Unknown kinds are treated as retryable.
    """
    text = message or kind
    if kind in FATAL_KINDS:
        return TranscriptionPermissionError(text, kind=kind)
    if kind in FAILOVER_KINDS:
        return ServiceError(text, kind=kind)
    if kind not in RETRYABLE_KINDS:
        logger.warning(f"Unknown recognizer error kind '{kind}', treating as retryable")
    return TransientRecognitionError(text, kind=kind)


ResultHandler = Callable[[TranscriptionResult, BackendKind, Optional[SampleWindow]], None]


class BackendManager:
    """
    Owns the active transcription backend for one session.

    Args:
        options: Priority list, retry policy and engine options
        scheduler: Scheduler all callbacks are marshalled onto
        on_result: Called with (result, backend kind, window or None) for
            every result that should reach the line assembler. Streaming
            interim results arrive here with is_final=False.
        on_fatal: Called once with the TranscriptionPermissionError that
            stopped transcription
        backend_factory: Builds a backend for a kind (tests inject fakes)
    """

    def __init__(
        self,
        options: BackendOptions,
        scheduler: Scheduler,
        on_result: ResultHandler,
        on_fatal: Optional[Callable[[BackendError], None]] = None,
        backend_factory: BackendFactory = default_backend_factory,
    ):
        self.options = options
        self.scheduler = scheduler
        self.on_result = on_result
        self.on_fatal = on_fatal
        self.backend_factory = backend_factory

        self.priority: List[BackendKind] = [BackendKind(name) for name in options.priority]
        self.active: Optional[TranscriptionBackend] = None
        self.backends: List[TranscriptionBackend] = []
        self.history: List[dict] = []
        self.fatal_error: Optional[BackendError] = None

        self._generation = 0
        self._running = False
        self._finishing = False
        self._restart_task = None
        self.submitted_windows = 0
        self.skipped_windows = 0

    # --- lifecycle ---

    @property
    def active_kind(self) -> Optional[BackendKind]:
        return self.active.kind if self.active is not None else None

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> Optional[BackendKind]:
        """Select the first backend in priority order that starts. None means audio-only."""
        if self._running:
            return self.active_kind
        self._running = True
        self._generation += 1
        self._activate_from(0)
        return self.active_kind

    def _activate_from(self, index: int):
        self.active = None
        for kind in self.priority[index:]:
            backend = self.backend_factory(kind, self.options)
            self.backends.append(backend)
            if self._try_start(backend):
                self.active = backend
                logger.info(f"Active transcription backend: {kind.value}")
                return
        logger.warning("No transcription backend available; continuing audio-only")

    def _try_start(self, backend: TranscriptionBackend) -> bool:
        self._set_status(backend, BackendStatus.STARTING)
        try:
            if not backend.is_available():
                raise BackendError(f"{backend.kind.value} backend is not available", kind="unavailable")
            if isinstance(backend, StreamingBackend):
                generation = self._generation
                backend.bind(
                    partial(self._post_stream_result, generation, backend),
                    partial(self._post_stream_error, generation, backend),
                    partial(self._post_stream_end, generation, backend),
                )
            backend.start()
        except Exception as e:
            # BackendInitError and anything unexpected: move on to the next backend
            logger.warning(f"{backend.kind.value} backend failed to start: {e}")
            self._set_status(backend, BackendStatus.FAILED, str(e))
            return False
        self._set_status(backend, BackendStatus.ACTIVE)
        return True

    def _set_status(self, backend: TranscriptionBackend, status: BackendStatus, detail: str = ""):
        backend.state.transition(status)
        entry = {"at": self.scheduler.now(), "backend": backend.kind.value, "status": status.value}
        if detail:
            entry["detail"] = detail
        self.history.append(entry)

    def _failover(self, backend: TranscriptionBackend, reason: str):
        """Mark backend FAILED, stop it and activate the next one in priority order."""
        self._cancel_restart()
        if backend.state.status != BackendStatus.FAILED:
            self._set_status(backend, BackendStatus.FAILED, reason)
        self._stop_backend(backend)
        index = self.priority.index(backend.kind) + 1
        logger.warning(f"{backend.kind.value} backend failed ({reason}); failing over")
        self._activate_from(index)

    def _stop_backend(self, backend: TranscriptionBackend):
        try:
            backend.stop()
        except Exception as e:
            log_exception(e, f"stopping {backend.kind.value} backend")

    def _is_current(self, generation: int, backend: TranscriptionBackend) -> bool:
        return self._running and generation == self._generation and backend is self.active

    # --- local (batch) path ---

    def submit(self, window: SampleWindow) -> bool:
        """
        Queue a window for the active batch backend.

        Returns False when the window was not submitted (no batch backend is
        active). Completion is posted back to the scheduler in submission order.
        """
        backend = self.active
        if not self._running or backend is None or not backend.consumes_windows:
            self.skipped_windows += 1
            return False

        if self.options.mark_silence and not window.has_audio:
            job = partial(TranscriptionResult, text=TextProcessor.SILENCE_MARKER, confidence=1.0)
        else:
            job = partial(backend.transcribe, window)

        self.submitted_windows += 1
        self.scheduler.run_in_worker(job, partial(self._on_window_done, self._generation, backend, window))
        return True

    def _on_window_done(self, generation, backend, window, result, error):
        if not self._is_current(generation, backend):
            logger.debug(f"Ignoring stale result for window {window.index} from {backend.kind.value}")
            return
        self._handle_window_result(backend, window, result, error)

    def _handle_window_result(self, backend, window: SampleWindow, result: Optional[TranscriptionResult], error):
        if error is not None:
            result = TranscriptionResult.failure(str(error))

        failed = result.failed or (result.is_empty and window.has_audio)
        if failed:
            count = backend.state.record_error()
            logger.warning(
                f"{backend.kind.value}: window {window.index} "
                f"{'failed: ' + result.error if result.failed else 'returned no text'} "
                f"({count}/{self.options.local_max_errors})"
            )
            if count >= self.options.local_max_errors and not self._finishing:
                self._failover(backend, f"{count} consecutive failed windows")
            elif backend.state.status == BackendStatus.ACTIVE:
                self._set_status(backend, BackendStatus.DEGRADED)
            return

        if result.is_empty:
            # Empty result for a silent window: neither success nor failure
            return

        backend.state.reset_errors()
        if backend.state.status == BackendStatus.DEGRADED:
            self._set_status(backend, BackendStatus.ACTIVE)
        self.on_result(result, backend.kind, window)

    # --- streaming path ---

    def feed(self, chunk: AudioChunk) -> None:
        """Forward captured audio to an active streaming backend."""
        backend = self.active
        if not self._running or backend is None or not backend.consumes_audio:
            return
        try:
            backend.feed(chunk)
        except Exception as e:
            log_exception(e, f"feeding audio to {backend.kind.value} backend")

    # Recognizer callbacks arrive on recognizer threads
    def _post_stream_result(self, generation, backend, event: StreamingEvent):
        self.scheduler.post(self._on_stream_result, generation, backend, event)

    def _post_stream_error(self, generation, backend, kind: str, message: str = ""):
        self.scheduler.post(self._on_stream_error, generation, backend, kind, message)

    def _post_stream_end(self, generation, backend):
        self.scheduler.post(self._on_stream_end, generation, backend)

    def _on_stream_result(self, generation, backend, event: StreamingEvent):
        if not self._is_current(generation, backend):
            return
        if event.final.strip():
            backend.state.reset_errors()
            if backend.state.status == BackendStatus.DEGRADED:
                self._set_status(backend, BackendStatus.ACTIVE)
            result = TranscriptionResult(text=event.final, confidence=event.confidence, is_final=True)
            self.on_result(result, backend.kind, None)
        elif event.interim.strip():
            result = TranscriptionResult(text=event.interim, confidence=event.confidence, is_final=False)
            self.on_result(result, backend.kind, None)

    def _on_stream_error(self, generation, backend, kind: str, message: str = ""):
        if not self._is_current(generation, backend):
            return
        self.handle_backend_error(backend, classify_error(kind, message))

    def handle_backend_error(self, backend: TranscriptionBackend, error: BackendError):
        """Apply the retry / failover / fatal policy for a classified error."""
        if isinstance(error, TranscriptionPermissionError):
            logger.error(f"{backend.kind.value}: permission denied ({error}); transcription stopped")
            self._cancel_restart()
            self._set_status(backend, BackendStatus.FAILED, error.kind or "not-allowed")
            self._stop_backend(backend)
            self.active = None
            self.fatal_error = error
            if self.on_fatal is not None:
                self.on_fatal(error)
            return

        if isinstance(error, ServiceError):
            self._failover(backend, error.kind or str(error))
            return

        count = backend.state.record_error()
        if backend.state.budget_exceeded:
            self._failover(backend, f"retry budget exhausted after {count} errors ({error.kind})")
            return

        logger.info(f"{backend.kind.value}: retryable error '{error.kind}' ({count}/{backend.state.retry_budget}), "
                    f"restarting in {self.options.retry_delay}s")
        if backend.state.status == BackendStatus.ACTIVE:
            self._set_status(backend, BackendStatus.DEGRADED, error.kind or "")
        self._schedule_restart(backend)

    def _on_stream_end(self, generation, backend):
        if not self._is_current(generation, backend):
            return
        # DEGRADED already has a restart pending
        if backend.state.status == BackendStatus.ACTIVE:
            logger.info(f"{backend.kind.value}: recognizer ended while active, restarting")
            self._restart(self._generation, backend)

    def _schedule_restart(self, backend):
        self._cancel_restart()
        self._restart_task = self.scheduler.call_later(
            self.options.retry_delay, self._restart, self._generation, backend
        )

    def _cancel_restart(self):
        if self._restart_task is not None:
            self._restart_task.cancel()
            self._restart_task = None

    def _restart(self, generation, backend):
        self._restart_task = None
        if not self._is_current(generation, backend) or not backend.state.is_live:
            logger.debug(f"Skipping restart of {backend.kind.value}: no longer active")
            return
        try:
            backend.restart()
        except Exception as e:
            logger.warning(f"{backend.kind.value}: restart failed: {e}")
            self.handle_backend_error(backend, TransientRecognitionError(str(e), kind="restart-failed"))
            return
        if backend.state.status == BackendStatus.DEGRADED:
            self._set_status(backend, BackendStatus.ACTIVE)

    # --- shutdown ---

    def finish(self, windows: List[SampleWindow], timeout: Optional[float] = None) -> None:
        """
        Deliver everything still in flight, then transcribe the final windows.

        Used by session stop: pending worker results are collected first, then
        each final window goes through the active batch backend once, in order.
        No failover happens while finishing.
        """
        if not self._running:
            return
        self._finishing = True
        try:
            if not self.scheduler.wait_for_jobs(timeout):
                logger.warning("Timed out waiting for in-flight transcriptions")
            self.scheduler.drain_events()

            backend = self.active
            if backend is None or not backend.consumes_windows:
                return
            for window in windows:
                if self.options.mark_silence and not window.has_audio:
                    result, error = TranscriptionResult(text=TextProcessor.SILENCE_MARKER), None
                else:
                    result, error = None, None
                    try:
                        result = backend.transcribe(window)
                    except Exception as e:
                        error = e
                self._handle_window_result(backend, window, result, error)
        finally:
            self._finishing = False

    def stop(self) -> None:
        """Stop every backend started this session. Idempotent."""
        if not self._running:
            return
        self._running = False
        self._generation += 1
        self._cancel_restart()
        for backend in self.backends:
            if backend.state.status != BackendStatus.IDLE:
                self._set_status(backend, BackendStatus.IDLE)
            self._stop_backend(backend)
        self.active = None
