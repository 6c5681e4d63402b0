"""
Tests for backend selection, error classification and failover.
"""

import pytest

from conftest import FakeEngine, FakeRecognizer, make_window
from livescribe.engines.base import TranscriptionResult
from livescribe.errors import (
    ServiceError,
    TranscriptionPermissionError,
    TransientRecognitionError,
)
from livescribe.pipeline.backend_manager import BackendManager, classify_error
from livescribe.pipeline.backends import (
    BackendKind,
    BackendState,
    BackendStatus,
    LocalBackend,
    ManualBackend,
    StreamingBackend,
)
from livescribe.settings import BackendOptions


class Collector:
    def __init__(self):
        self.results = []
        self.fatal = []

    def on_result(self, result, kind, window):
        self.results.append((result, kind, window))

    def on_fatal(self, error):
        self.fatal.append(error)

    @property
    def texts(self):
        return [r.text for r, _, _ in self.results]


@pytest.fixture
def collector():
    return Collector()


@pytest.fixture
def make_manager(scheduler, collector, backend_factory):
    def make(**options):
        return BackendManager(
            BackendOptions(**options),
            scheduler,
            on_result=collector.on_result,
            on_fatal=collector.on_fatal,
            backend_factory=backend_factory,
        )
    return make


def backend_of(manager, kind):
    return next(b for b in manager.backends if b.kind == kind)


class TestClassifyError:
    """Tests for classify_error()."""

    @pytest.mark.parametrize("kind,expected", [
        ("no-speech", TransientRecognitionError),
        ("audio-capture", TransientRecognitionError),
        ("network", ServiceError),
        ("service-not-allowed", ServiceError),
        ("not-allowed", TranscriptionPermissionError),
        ("something-new", TransientRecognitionError),
    ])
    def test_kinds(self, kind, expected):
        error = classify_error(kind)
        assert type(error) is expected
        assert error.kind == kind


class TestBackendState:
    """Tests for the per-backend state machine."""

    def test_legal_path(self):
        state = BackendState(BackendKind.STREAMING)
        for status in (BackendStatus.STARTING, BackendStatus.ACTIVE, BackendStatus.DEGRADED,
                       BackendStatus.ACTIVE, BackendStatus.FAILED, BackendStatus.IDLE):
            state.transition(status)
        assert state.status == BackendStatus.IDLE

    def test_illegal_transition(self):
        state = BackendState(BackendKind.LOCAL)
        with pytest.raises(ValueError):
            state.transition(BackendStatus.ACTIVE)

    def test_budget(self):
        state = BackendState(BackendKind.STREAMING, retry_budget=2)
        state.record_error()
        state.record_error()
        assert not state.budget_exceeded
        state.record_error()
        assert state.budget_exceeded


class TestSelection:
    """Backend selection at start."""

    def test_local_preferred(self, make_manager, engine):
        manager = make_manager()
        assert manager.start() == BackendKind.LOCAL
        assert engine.load_calls == 1
        assert backend_of(manager, BackendKind.LOCAL).state.status == BackendStatus.ACTIVE

    def test_local_load_failure_falls_through_to_streaming(self, make_manager, engine, recognizer):
        engine.load_ok = False
        manager = make_manager()
        assert manager.start() == BackendKind.STREAMING
        assert backend_of(manager, BackendKind.LOCAL).state.status == BackendStatus.FAILED
        assert recognizer.is_running

    def test_streaming_unavailable_falls_through_to_manual(self, make_manager, engine, recognizer):
        engine.load_ok = False
        recognizer.fail_start = True
        manager = make_manager()
        assert manager.start() == BackendKind.MANUAL

    def test_already_running_recognizer_counts_as_active(self, scheduler, collector, engine):
        recognizer = FakeRecognizer(running=True)

        def factory(kind, options):
            return StreamingBackend(options.streaming, recognizer_factory=lambda rid, **kw: recognizer)

        manager = BackendManager(BackendOptions(priority=("streaming",)), scheduler,
                                 on_result=collector.on_result, backend_factory=factory)
        assert manager.start() == BackendKind.STREAMING
        assert manager.active.state.status == BackendStatus.ACTIVE

    def test_exhausted_priority_is_audio_only(self, make_manager, engine):
        engine.load_ok = False
        manager = make_manager(priority=("local",))
        assert manager.start() is None
        assert manager.submit(make_window()) is False


class TestLocalFailover:
    """Local backend failure counting."""

    def test_failover_after_second_consecutive_failure(self, make_manager, scheduler, engine, recognizer):
        """Three failing windows with local_max_errors=2: Streaming takes over after the second."""
        engine.script = [TranscriptionResult.failure("decode error")] * 3
        manager = make_manager(local_max_errors=2)
        manager.start()
        local = manager.active

        assert manager.submit(make_window(0))
        scheduler.run_pending()
        assert manager.active_kind == BackendKind.LOCAL
        assert local.state.status == BackendStatus.DEGRADED

        assert manager.submit(make_window(1))
        scheduler.run_pending()
        assert local.state.status == BackendStatus.FAILED
        assert manager.active_kind == BackendKind.STREAMING
        assert recognizer.start_calls == 1

        # The next window is not sent to the failed local model
        assert manager.submit(make_window(2)) is False
        assert len(engine.windows) == 2

    def test_empty_result_for_audible_window_counts_as_failure(self, make_manager, scheduler, engine):
        engine.script = [TranscriptionResult(text=""), TranscriptionResult(text="   ")]
        manager = make_manager()
        manager.start()
        manager.submit(make_window(0, has_audio=True))
        manager.submit(make_window(1, has_audio=True))
        scheduler.run_pending()
        assert manager.active_kind == BackendKind.STREAMING

    def test_empty_result_for_silent_window_is_ignored(self, make_manager, scheduler, engine):
        engine.script = [TranscriptionResult(text="")] * 3
        manager = make_manager()
        manager.start()
        for i in range(3):
            manager.submit(make_window(i, has_audio=False))
        scheduler.run_pending()
        assert manager.active_kind == BackendKind.LOCAL
        assert manager.active.state.error_count == 0

    def test_success_resets_counter(self, make_manager, scheduler, engine, collector):
        engine.script = [RuntimeError("cuda oom"), TranscriptionResult(text="back again"), RuntimeError("oom")]
        manager = make_manager()
        manager.start()
        for i in range(3):
            manager.submit(make_window(i))
            scheduler.run_pending()
        assert manager.active_kind == BackendKind.LOCAL
        assert manager.active.state.error_count == 1
        assert collector.texts == ["back again"]

    def test_results_delivered_in_window_order(self, make_manager, scheduler, engine, collector):
        engine.script = [TranscriptionResult(text=f"line {i}") for i in range(4)]
        manager = make_manager()
        manager.start()
        for i in range(4):
            manager.submit(make_window(i))
        scheduler.run_pending()
        assert collector.texts == ["line 0", "line 1", "line 2", "line 3"]
        assert [w.index for _, _, w in collector.results] == [0, 1, 2, 3]

    def test_silence_marker_without_model_call(self, make_manager, scheduler, engine, collector):
        manager = make_manager(mark_silence=True)
        manager.start()
        manager.submit(make_window(0, has_audio=False))
        scheduler.run_pending()
        assert collector.texts == ["[silence]"]
        assert engine.windows == []


class TestStreamingErrors:
    """Streaming backend error handling."""

    @pytest.fixture
    def manager(self, make_manager):
        manager = make_manager(priority=("streaming", "manual"), retry_budget=2, retry_delay=1.0)
        assert manager.start() == BackendKind.STREAMING
        return manager

    def test_network_error_fails_over_immediately(self, manager, scheduler, recognizer):
        recognizer.error("network")
        scheduler.run_pending()
        streaming = backend_of(manager, BackendKind.STREAMING)
        assert manager.active_kind == BackendKind.MANUAL
        assert streaming.state.status == BackendStatus.FAILED
        assert streaming.state.error_count == 0

    def test_service_not_allowed_fails_over(self, manager, scheduler, recognizer):
        recognizer.error("service-not-allowed")
        scheduler.run_pending()
        assert manager.active_kind == BackendKind.MANUAL

    def test_retryable_error_restarts_after_delay(self, manager, scheduler, recognizer):
        recognizer.error("no-speech")
        scheduler.run_pending()
        assert manager.active.state.status == BackendStatus.DEGRADED
        assert recognizer.start_calls == 1

        scheduler.advance(0.5)
        assert recognizer.start_calls == 1
        scheduler.advance(0.5)
        assert recognizer.start_calls == 2
        assert manager.active.state.status == BackendStatus.ACTIVE
        assert manager.active.state.error_count == 1

    def test_retry_budget_exhausted_fails_over(self, manager, scheduler, recognizer):
        for _ in range(2):
            recognizer.error("audio-capture")
            scheduler.advance(1.0)
            assert manager.active_kind == BackendKind.STREAMING
        recognizer.error("audio-capture")
        scheduler.run_pending()
        assert manager.active_kind == BackendKind.MANUAL

    def test_final_result_resets_errors(self, manager, scheduler, recognizer, collector):
        recognizer.error("no-speech")
        scheduler.advance(1.0)
        recognizer.final("hello there")
        scheduler.run_pending()
        assert manager.active.state.error_count == 0
        assert collector.texts == ["hello there"]
        assert collector.results[0][1] == BackendKind.STREAMING

    def test_interim_results_are_not_final(self, manager, scheduler, recognizer, collector):
        recognizer.interim("hel")
        scheduler.run_pending()
        result = collector.results[0][0]
        assert not result.is_final

    def test_permission_error_is_fatal(self, manager, scheduler, recognizer, collector):
        recognizer.error("not-allowed")
        scheduler.run_pending()
        assert manager.active is None
        assert isinstance(manager.fatal_error, TranscriptionPermissionError)
        assert collector.fatal == [manager.fatal_error]
        # No further backend was attempted
        assert [b.kind for b in manager.backends] == [BackendKind.STREAMING]

    def test_end_while_active_restarts(self, manager, scheduler, recognizer):
        recognizer.end()
        scheduler.run_pending()
        assert recognizer.start_calls == 2
        assert recognizer.is_running

    def test_restart_skipped_after_stop(self, manager, scheduler, recognizer):
        recognizer.error("no-speech")
        scheduler.run_pending()
        manager.stop()
        scheduler.advance(5.0)
        assert recognizer.start_calls == 1

    def test_feed_forwards_audio(self, manager, recognizer):
        from conftest import START_TIME
        from livescribe.pipeline.buffer import AudioChunk
        import numpy as np

        manager.feed(AudioChunk.create(np.zeros(160, dtype=np.float32), 16000, captured_at=START_TIME))
        assert len(recognizer.fed) == 1


class TestShutdown:
    """finish() and stop()."""

    def test_stale_results_ignored_after_stop(self, make_manager, scheduler, collector):
        manager = make_manager()
        manager.start()
        manager.submit(make_window(0))
        manager.stop()
        scheduler.run_pending()
        assert collector.results == []

    def test_finish_transcribes_final_windows(self, make_manager, scheduler, engine, collector):
        engine.script = [TranscriptionResult(text="pending"), TranscriptionResult(text="final")]
        manager = make_manager()
        manager.start()
        manager.submit(make_window(0))
        manager.finish([make_window(1)])
        assert collector.texts == ["pending", "final"]

    def test_finish_never_fails_over(self, make_manager, engine):
        engine.script = [RuntimeError("boom")] * 3
        manager = make_manager(local_max_errors=1)
        manager.start()
        manager.finish([make_window(0), make_window(1)])
        assert manager.active_kind == BackendKind.LOCAL

    def test_stop_is_idempotent(self, make_manager, engine):
        manager = make_manager()
        manager.start()
        manager.stop()
        manager.stop()
        assert engine.unload_calls == 1
        assert manager.active is None
        assert all(b.state.status == BackendStatus.IDLE for b in manager.backends)

    def test_history_records_transitions(self, make_manager, engine):
        engine.load_ok = False
        manager = make_manager()
        manager.start()
        statuses = [(h["backend"], h["status"]) for h in manager.history]
        assert statuses[:4] == [
            ("local", "starting"), ("local", "failed"),
            ("streaming", "starting"), ("streaming", "active"),
        ]


class TestBackendVariants:
    """Direct tests of the backend classes."""

    def test_local_backend_wraps_engine_errors(self):
        from livescribe.errors import BackendError
        from livescribe.settings import LocalEngineOptions

        engine = FakeEngine(script=[RuntimeError("bad")])
        backend = LocalBackend(LocalEngineOptions(), engine_factory=lambda engine_id: engine)
        backend.start()
        with pytest.raises(BackendError):
            backend.transcribe(make_window())

    def test_manual_backend_consumes_nothing(self):
        backend = ManualBackend()
        assert not backend.consumes_windows
        assert not backend.consumes_audio
