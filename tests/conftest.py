"""
Pytest fixtures for livescribe tests.

Nothing here touches a real audio device, model or network service: media,
engines and recognizers are replaced by scripted fakes.
"""

import os
import queue
import sys
import tempfile
from pathlib import Path

import numpy as np
import pytest

# Keep test runs out of the real logs directory
os.environ.setdefault("LIVESCRIBE_LOG_DIR", tempfile.mkdtemp(prefix="livescribe-logs-"))

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from livescribe.engines.base import (  # noqa: E402
    StreamingEvent,
    StreamingRecognizer,
    TranscriptionEngine,
    TranscriptionResult,
)
from livescribe.errors import DeviceError, StreamAlreadyRunningError  # noqa: E402
from livescribe.pipeline.backends import (  # noqa: E402
    BackendKind,
    LocalBackend,
    ManualBackend,
    StreamingBackend,
)
from livescribe.pipeline.buffer import SampleWindow  # noqa: E402
from livescribe.pipeline.capture import CaptureNode, MediaDevices, MediaStream  # noqa: E402
from livescribe.pipeline.transcript import TranscriptSink  # noqa: E402
from livescribe.scheduler import ManualClock, Scheduler  # noqa: E402

START_TIME = 1_700_000_000.0


# --- media fakes ---

class FakeNode(CaptureNode):
    def __init__(self, stream, blocking=False):
        self.stream = stream
        self.blocking = blocking
        self.started = False
        self.stop_calls = 0
        self.close_calls = 0

    def start(self):
        self.started = True

    def stop(self):
        self.stop_calls += 1
        self.started = False

    def close(self):
        self.close_calls += 1

    def read(self, frames):
        try:
            return self.stream.blocks.get(timeout=0.05)
        except queue.Empty:
            return np.zeros((0, self.stream.channels), dtype=np.float32)


class FakeStream(MediaStream):
    """Acquired input; tests push audio with emit()."""

    def __init__(self, constraints, fail_callback=False):
        super().__init__(constraints, constraints.sample_rate, constraints.channels)
        self.fail_callback = fail_callback
        self.on_block = None
        self.nodes = []
        self.blocks = queue.Queue()
        self.release_calls = 0

    def open_callback(self, on_block, blocksize=0):
        if self.fail_callback:
            raise RuntimeError("callback streams unsupported")
        self.on_block = on_block
        node = FakeNode(self)
        self.nodes.append(node)
        return node

    def open_blocking(self, blocksize):
        node = FakeNode(self, blocking=True)
        self.nodes.append(node)
        return node

    def emit(self, block):
        self.on_block(block)

    def release(self):
        self.release_calls += 1


class FakeMedia(MediaDevices):
    def __init__(self, fail_on=(), reason="not-allowed", fail_callback=False):
        self.fail_on = set(fail_on)
        self.reason = reason
        self.fail_callback = fail_callback
        self.streams = []
        self.requests = []

    def acquire(self, constraints):
        self.requests.append(constraints)
        if constraints.source in self.fail_on:
            raise DeviceError(self.reason, f"{constraints.source} rejected")
        stream = FakeStream(constraints, fail_callback=self.fail_callback)
        self.streams.append(stream)
        return stream

    def stream(self, source="microphone"):
        return next(s for s in self.streams if s.source == source)


# --- engine fakes ---

class FakeEngine(TranscriptionEngine):
    """Returns scripted results (or raises scripted exceptions), then `default`."""

    ENGINE_ID = "fake"

    def __init__(self, script=None, default="hello world", load_ok=True):
        super().__init__()
        self.script = list(script or [])
        self.default = default
        self.load_ok = load_ok
        self.load_calls = 0
        self.windows = []
        self.unload_calls = 0

    def load(self, model_name, device="auto", compute_type="int8"):
        self.load_calls += 1
        self._loaded = self.load_ok
        return self.load_ok

    def transcribe(self, audio, sample_rate=16000, language=None, initial_prompt=None, vad_filter=True, **kwargs):
        self.windows.append(np.asarray(audio))
        item = self.script.pop(0) if self.script else TranscriptionResult(text=self.default, confidence=0.9)
        if isinstance(item, Exception):
            raise item
        return item

    def unload(self):
        self.unload_calls += 1
        super().unload()


class FakeRecognizer(StreamingRecognizer):
    """Streaming recognizer driven by the test: final(), error(), end()."""

    RECOGNIZER_ID = "fake"

    def __init__(self, running=False, fail_start=False):
        super().__init__()
        self._running = running
        self.fail_start = fail_start
        self.start_calls = 0
        self.stop_calls = 0
        self.fed = []

    @property
    def is_running(self):
        return self._running

    def start(self):
        self.start_calls += 1
        if self.fail_start:
            raise RuntimeError("recognizer unavailable")
        if self._running:
            raise StreamAlreadyRunningError("already started", kind="already-running")
        self._running = True

    def stop(self):
        self.stop_calls += 1
        self._running = False

    def feed(self, samples, sample_rate):
        self.fed.append((samples, sample_rate))

    def final(self, text, confidence=0.8):
        self._emit_result(StreamingEvent(final=text, confidence=confidence))

    def interim(self, text):
        self._emit_result(StreamingEvent(interim=text))

    def error(self, kind):
        # A recognition error also ends the recognizer session
        self._running = False
        self._emit_error(kind, f"{kind} error")
        self._emit_end()

    def end(self):
        self._running = False
        self._emit_end()


class CollectingSink(TranscriptSink):
    def __init__(self):
        self.lines = []
        self.deliveries = []
        self.previews = []

    def deliver(self, lines, cumulative_word_count, cumulative_position):
        self.lines.extend(lines)
        self.deliveries.append((list(lines), cumulative_word_count, cumulative_position))

    def preview(self, text, speaker):
        self.previews.append((speaker, text))


def make_window(index=0, has_audio=True, source="microphone", seconds=1.0, origin="direct"):
    samples = np.full(int(16000 * seconds), 0.1 if has_audio else 0.0, dtype=np.float32)
    return SampleWindow(
        index=index,
        source=source,
        samples=samples,
        sample_rate=16000,
        start_time=START_TIME,
        has_audio=has_audio,
        origin=origin,
        chunk_count=1,
    )


# --- fixtures ---

@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock():
    return ManualClock(START_TIME)


@pytest.fixture
def scheduler(clock):
    """Scheduler on a manual clock; worker jobs run inline."""
    sched = Scheduler(clock=clock, inline_jobs=True)
    yield sched
    sched.stop()


@pytest.fixture
def sink():
    return CollectingSink()


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def recognizer():
    return FakeRecognizer()


@pytest.fixture
def media():
    return FakeMedia()


@pytest.fixture
def backend_factory(engine, recognizer):
    """Backend factory wired to the fake engine and recognizer."""
    def factory(kind, options):
        if kind == BackendKind.LOCAL:
            return LocalBackend(options.local, options.retry_budget, engine_factory=lambda engine_id: engine)
        if kind == BackendKind.STREAMING:
            return StreamingBackend(
                options.streaming, options.retry_budget,
                recognizer_factory=lambda recognizer_id, **kwargs: recognizer,
            )
        return ManualBackend(options.retry_budget)
    return factory
