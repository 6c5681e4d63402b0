"""
Session lifecycle: start and stop the capture → buffer → backend → transcript
pipeline in a fixed order.

All session state lives on a SessionContext built at start and discarded at
stop. Public methods are marshalled onto the scheduler thread, so capture
callbacks, flush timers and backend results never race with start/stop.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Callable, Dict, Optional

from ..errors import BackendError, ProcessingError
from ..logger import get_logger, log_exception
from ..scheduler import ScheduledTask, Scheduler
from ..settings import PipelineSettings, SettingsProvider, load_settings
from .backend_manager import BackendManager
from .backends import BackendFactory, default_backend_factory
from .buffer import ORIGIN_INGEST, AudioChunk, SampleWindow, WindowBuffer
from .capture import MediaDevices, SampleSource, SourceSpec
from .decoder import DecodedAudio, decode_audio
from .recording import SessionRecording
from .transcript import LineAssembler, TranscriptLine, TranscriptSink

logger = get_logger(__name__)

INGEST_BUFFER = "ingest"


def make_session_id(timestamp: float) -> str:
    """ISO-8601 UTC timestamp with ':' and '.' replaced, e.g. 2024-01-15T14-30-25-123Z."""
    moment = datetime.fromtimestamp(timestamp, timezone.utc)
    return moment.strftime("%Y-%m-%dT%H-%M-%S-") + f"{moment.microsecond // 1000:03d}Z"


@dataclass
class SessionContext:
    """Everything owned by one running session."""
    session_id: str
    context: str
    settings: PipelineSettings
    started_at: float                  # wall clock
    source: SampleSource
    primary_source: str
    assembler: LineAssembler
    buffers: Dict[str, WindowBuffer] = field(default_factory=dict)
    last_flush: Dict[str, float] = field(default_factory=dict)
    manager: Optional[BackendManager] = None
    recording: Optional[SessionRecording] = None
    primary_timer: Optional[ScheduledTask] = None
    backup_timer: Optional[ScheduledTask] = None
    last_direct_audio: Optional[float] = None
    transcription_error: Optional[BackendError] = None
    stopping: bool = False
    dropped_windows: int = 0
    demoted_windows: int = 0
    dropped_chunks: int = 0

    @property
    def transcribing(self) -> bool:
        return self.manager is not None


@dataclass(frozen=True)
class SessionSummary:
    session_id: str
    duration_ms: int
    line_count: int
    word_count: int = 0
    backend: Optional[str] = None
    transcription_error: Optional[str] = None
    recording_dir: Optional[str] = None
    dropped_windows: int = 0

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "duration_ms": self.duration_ms,
            "line_count": self.line_count,
            "word_count": self.word_count,
            "backend": self.backend,
            "transcription_error": self.transcription_error,
            "recording_dir": self.recording_dir,
            "dropped_windows": self.dropped_windows,
        }


class TranscriptionPipeline:
    """
    Runs one transcription session at a time.

    Args:
        sink: Receives committed transcript lines
        settings_provider: Returns PipelineSettings; read once per session start
        media: Media capability used to acquire inputs (sounddevice by default)
        scheduler: Scheduler to run on; a private one is created if omitted
        backend_factory: Builds transcription backends (tests inject fakes)
        wall_clock: Time source for timestamps and the session id
        decoder: Decode capability for ingest_audio_chunk()
    """

    def __init__(
        self,
        sink: TranscriptSink,
        settings_provider: SettingsProvider = load_settings,
        media: Optional[MediaDevices] = None,
        scheduler: Optional[Scheduler] = None,
        backend_factory: BackendFactory = default_backend_factory,
        wall_clock: Callable[[], float] = time.time,
        decoder: Callable[[bytes], DecodedAudio] = decode_audio,
    ):
        self.sink = sink
        self.settings_provider = settings_provider
        self.media = media
        self.scheduler = scheduler or Scheduler()
        self.backend_factory = backend_factory
        self.wall_clock = wall_clock
        self.decoder = decoder
        self.session: Optional[SessionContext] = None
        # Built but not yet live while the backend starts
        self._starting: Optional[SessionContext] = None

    @property
    def is_active(self) -> bool:
        return self.session is not None

    # --- public operations ---

    def start_session(self, context: str = "") -> str:
        """
        Start capturing and transcribing. Returns the session id.

        Loading the local model can take minutes (first-run download, large
        models on CPU), so backend start runs on the calling thread between
        two scheduler steps; the scheduler keeps running meanwhile.

        Raises:
            DeviceError: No capture possible; nothing is left running
            ValueError: Invalid settings
        """
        running_id, ctx = self.scheduler.invoke(self._begin_start, context, timeout=None)
        if running_id is not None:
            return running_id
        try:
            if ctx.manager is not None:
                ctx.manager.start()
        except BaseException:
            self.scheduler.invoke(self._abort_start, ctx, ctx.source, timeout=None)
            raise
        return self.scheduler.invoke(self._finish_start, ctx, timeout=None)

    def stop_session(self) -> Optional[SessionSummary]:
        """Stop the running session. Returns None when no session is active."""
        return self.scheduler.invoke(self._stop, timeout=None)

    def ingest_audio_chunk(self, raw: bytes) -> bool:
        """
        Feed an externally captured block of encoded audio.

        Returns True if the chunk was decoded into the ingest buffer.
        """
        return self.scheduler.invoke(self._ingest, raw)

    def add_manual_line(self, text: str, speaker: Optional[str] = None) -> Optional[TranscriptLine]:
        return self.scheduler.invoke(self._add_manual_line, text, speaker)

    # --- start ---

    def _begin_start(self, context: str):
        """Validate settings, acquire inputs and build the session state. Returns (running_id, ctx)."""
        current = self.session or self._starting
        if current is not None:
            logger.warning(f"Session {current.session_id} already running; start ignored")
            return current.session_id, None

        settings = self.settings_provider().validate()
        options = settings.pipeline

        source = SampleSource(
            media=self.media,
            strategy=options.capture_strategy,
            block_size=options.block_size,
            chunk_seconds=options.chunk_seconds,
            presence_threshold=options.presence_threshold,
            clock=self.wall_clock,
        )
        # DeviceError propagates from here with nothing else created
        streams = source.acquire(SourceSpec.from_settings(settings.audio))

        try:
            started_at = self.wall_clock()
            session_id = make_session_id(started_at)
            ctx = SessionContext(
                session_id=session_id,
                context=context,
                settings=settings,
                started_at=started_at,
                source=source,
                primary_source=streams[0].source,
                assembler=LineAssembler(settings.transcript, self.sink, clock=self.wall_clock),
            )
            ctx.assembler.on_commit = partial(self._on_line_committed, ctx)

            if settings.audio.auto_transcribe:
                for stream in streams:
                    ctx.buffers[stream.source] = self._make_buffer(settings, stream.source)
                ctx.buffers[INGEST_BUFFER] = self._make_buffer(settings, ctx.primary_source, ORIGIN_INGEST)
                ctx.manager = BackendManager(
                    settings.backends,
                    self.scheduler,
                    on_result=partial(self._on_backend_result, ctx),
                    on_fatal=partial(self._on_transcription_fatal, ctx),
                    backend_factory=self.backend_factory,
                )
        except Exception:
            source.stop()
            raise

        self._starting = ctx
        return None, ctx

    def _finish_start(self, ctx: SessionContext) -> str:
        """Open the recording, arm the flush timers and start capture."""
        settings = ctx.settings
        options = settings.pipeline
        source = ctx.source
        try:
            streams = source.streams
            ctx.recording = SessionRecording.create(
                settings.data_dir, ctx.session_id, ctx.context, settings, ctx.started_at
            )
            ctx.recording.open({stream.source: stream.sample_rate for stream in streams})

            self._starting = None
            self.session = ctx
            if ctx.transcribing:
                now = self.scheduler.now()
                ctx.last_flush = {key: now for key in ctx.buffers}
                ctx.primary_timer = self.scheduler.call_later(options.flush_interval, self._primary_flush, ctx)
                ctx.backup_timer = self.scheduler.call_every(options.backup_poll_interval, self._backup_poll, ctx)

            source.start_capture(partial(self._on_captured_chunk, ctx))
        except Exception:
            self.session = None
            self._abort_start(ctx, source)
            raise

        logger.info(
            f"Session {ctx.session_id} started: sources={list(settings.audio.audio_sources)} "
            f"quality={settings.audio.audio_quality} backend="
            f"{ctx.manager.active_kind.value if ctx.manager and ctx.manager.active_kind else 'none'}"
        )
        return ctx.session_id

    @staticmethod
    def _make_buffer(settings: PipelineSettings, source: str, origin: str = "direct") -> WindowBuffer:
        options = settings.pipeline
        return WindowBuffer(
            source,
            capacity=options.ring_capacity,
            target_rate=options.target_rate,
            flush_threshold=options.flush_interval,
            min_window_samples=options.min_window_samples,
            origin=origin,
        )

    def _abort_start(self, ctx: Optional[SessionContext], source: SampleSource):
        """Undo a partially completed start."""
        self._starting = None
        if ctx is not None:
            self._cancel_timers(ctx)
            if ctx.manager is not None:
                ctx.manager.stop()
            if ctx.recording is not None:
                try:
                    ctx.recording.close(self.wall_clock(), {"aborted": True})
                except Exception as e:
                    log_exception(e, "closing recording after failed start")
        source.stop()

    # --- capture and flushing (scheduler thread) ---

    def _on_captured_chunk(self, ctx: SessionContext, chunk: AudioChunk):
        # Audio thread
        self.scheduler.post(self._handle_chunk, ctx, chunk)

    def _handle_chunk(self, ctx: SessionContext, chunk: AudioChunk):
        if self.session is not ctx or ctx.stopping:
            return
        self._accept_chunk(ctx, chunk)

    def _accept_chunk(self, ctx: SessionContext, chunk: AudioChunk):
        if ctx.recording is not None:
            ctx.recording.write_audio(chunk)
        if chunk.has_audio:
            ctx.last_direct_audio = self.scheduler.now()
        if not ctx.transcribing:
            return
        if chunk.source == ctx.primary_source:
            ctx.manager.feed(chunk)
        ctx.buffers[chunk.source].push(chunk)

    def _primary_flush(self, ctx: SessionContext):
        if self.session is not ctx or ctx.stopping:
            return
        self._flush_due(ctx)
        ctx.primary_timer = self.scheduler.call_later(
            ctx.settings.pipeline.flush_interval, self._primary_flush, ctx
        )

    def _backup_poll(self, ctx: SessionContext):
        if self.session is not ctx or ctx.stopping:
            return
        self._flush_due(ctx)

    def _flush_due(self, ctx: SessionContext):
        now = self.scheduler.now()
        for key, buffer in ctx.buffers.items():
            had_audio = not buffer.is_empty()
            try:
                window = buffer.try_flush(now - ctx.last_flush[key])
            except ProcessingError as e:
                ctx.dropped_windows += 1
                logger.warning(f"Dropped {key} window: {e}")
                window = None
            if had_audio and buffer.is_empty():
                ctx.last_flush[key] = now
            if window is not None:
                self._dispatch_window(ctx, window)

    def _is_demoted(self, ctx: SessionContext, window: SampleWindow) -> bool:
        """Ingest windows are skipped while direct capture is producing audio."""
        if window.origin != ORIGIN_INGEST or ctx.last_direct_audio is None:
            return False
        return self.scheduler.now() - ctx.last_direct_audio < ctx.settings.pipeline.direct_activity_window

    def _dispatch_window(self, ctx: SessionContext, window: SampleWindow):
        if self._is_demoted(ctx, window):
            ctx.demoted_windows += 1
            logger.debug(f"Skipping ingest window {window.index}: direct capture is active")
            return
        ctx.manager.submit(window)

    # --- results ---

    def _on_backend_result(self, ctx: SessionContext, result, backend_kind, window: Optional[SampleWindow]):
        if self.session is not ctx:
            return
        source = window.source if window is not None else ctx.primary_source
        speaker = ctx.settings.transcript.speaker_for(source)
        ctx.assembler.assemble(result, backend_kind, speaker=speaker)

    def _on_transcription_fatal(self, ctx: SessionContext, error: BackendError):
        ctx.transcription_error = error
        logger.error(f"Transcription stopped for session {ctx.session_id}: {error}. Recording continues.")

    def _on_line_committed(self, ctx: SessionContext, line: TranscriptLine):
        if ctx.recording is not None:
            ctx.recording.append_line(line)

    # --- ingest and manual lines ---

    def _ingest(self, raw: bytes) -> bool:
        ctx = self.session
        if ctx is None or ctx.stopping:
            logger.warning("Ignoring ingested audio: no active session")
            return False

        received_at = self.wall_clock()
        if ctx.recording is not None:
            ctx.recording.append_ingest(raw, received_at)
        if not ctx.transcribing:
            return False

        try:
            decoded = self.decoder(raw)
        except ProcessingError as e:
            ctx.dropped_chunks += 1
            logger.warning(f"Dropped ingested chunk: {e}")
            return False

        chunk = AudioChunk.create(
            decoded.samples,
            decoded.sample_rate,
            captured_at=received_at,
            source=ctx.primary_source,
            presence_threshold=ctx.settings.pipeline.presence_threshold,
            origin=ORIGIN_INGEST,
        )
        ctx.buffers[INGEST_BUFFER].push(chunk)
        return True

    def _add_manual_line(self, text: str, speaker: Optional[str]) -> Optional[TranscriptLine]:
        ctx = self.session
        if ctx is None:
            logger.warning("Ignoring manual line: no active session")
            return None
        return ctx.assembler.add_manual(text, speaker)

    # --- stop ---

    def _cancel_timers(self, ctx: SessionContext):
        for task in (ctx.primary_timer, ctx.backup_timer):
            if task is not None:
                task.cancel()
        ctx.primary_timer = ctx.backup_timer = None

    def _final_flush(self, ctx: SessionContext):
        # Chunks already posted by capture threads go in before the buffers are drained
        self.scheduler.drain_events()
        ctx.stopping = True
        for chunk in ctx.source.flush_pending():
            self._accept_chunk(ctx, chunk)

        if not ctx.transcribing:
            return
        windows = []
        for key, buffer in ctx.buffers.items():
            try:
                window = buffer.drain()
            except ProcessingError as e:
                ctx.dropped_windows += 1
                logger.warning(f"Dropped final {key} window: {e}")
                continue
            if window is None:
                continue
            if self._is_demoted(ctx, window):
                ctx.demoted_windows += 1
                continue
            windows.append(window)
        ctx.manager.finish(windows)

    @staticmethod
    def _run_step(description: str, step: Callable, *args):
        try:
            step(*args)
        except Exception as e:
            log_exception(e, f"while {description}")

    def _stop(self) -> Optional[SessionSummary]:
        ctx = self.session
        if ctx is None:
            return None
        logger.info(f"Stopping session {ctx.session_id}")

        # Every step runs even if an earlier one failed
        self._run_step("stopping timers", self._cancel_timers, ctx)
        self._run_step("flushing buffered audio", self._final_flush, ctx)
        backend = None
        if ctx.manager is not None:
            if ctx.manager.active_kind is not None:
                backend = ctx.manager.active_kind.value
            self._run_step("stopping backends", ctx.manager.stop)
        self._run_step("disconnecting capture", ctx.source.disconnect)
        self._run_step("releasing streams", ctx.source.release)
        ctx.stopping = True
        self.session = None

        ended_at = self.wall_clock()
        summary = SessionSummary(
            session_id=ctx.session_id,
            duration_ms=int(round((ended_at - ctx.started_at) * 1000)),
            line_count=len(ctx.assembler.lines),
            word_count=ctx.assembler.word_count,
            backend=backend,
            transcription_error=str(ctx.transcription_error) if ctx.transcription_error else None,
            recording_dir=str(ctx.recording.directory) if ctx.recording is not None else None,
            dropped_windows=ctx.dropped_windows,
        )

        if ctx.recording is not None:
            self._run_step("closing session recording", ctx.recording.close, ended_at, {
                "line_count": summary.line_count,
                "word_count": summary.word_count,
                "backend": summary.backend,
                "transcription_error": summary.transcription_error,
                "backend_history": ctx.manager.history if ctx.manager is not None else [],
            })

        logger.info(
            f"Session {ctx.session_id} stopped: {summary.line_count} lines, "
            f"{summary.word_count} words, {summary.duration_ms} ms"
        )
        return summary
