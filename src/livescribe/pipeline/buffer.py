"""
Window buffering: captured chunks go into a fixed-capacity ring buffer and
come out as 16 kHz windows ready for transcription.

One WindowBuffer exists per capture source. It is written by capture events
and read by the flush timers, both on the scheduler thread.
"""

from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from ..audio import peak_amplitude, resample_linear, to_mono
from ..errors import ProcessingError
from ..logger import get_logger

logger = get_logger(__name__)

# Where a chunk came from: live capture or externally ingested bytes
ORIGIN_DIRECT = "direct"
ORIGIN_INGEST = "ingest"

DEFAULT_PRESENCE_THRESHOLD = 0.001


@dataclass(frozen=True)
class AudioChunk:
    """A block of captured audio at its native sample rate."""
    samples: np.ndarray      # mono float32, read-only
    sample_rate: int
    captured_at: float       # wall clock seconds when the chunk started
    source: str = "microphone"
    peak: float = 0.0
    has_audio: bool = False  # peak >= presence threshold; diagnostics only
    origin: str = ORIGIN_DIRECT

    @classmethod
    def create(
        cls,
        samples: np.ndarray,
        sample_rate: int,
        captured_at: float,
        source: str = "microphone",
        presence_threshold: float = DEFAULT_PRESENCE_THRESHOLD,
        origin: str = ORIGIN_DIRECT,
    ) -> "AudioChunk":
        mono = np.array(to_mono(samples), dtype=np.float32)
        mono.setflags(write=False)
        peak = peak_amplitude(mono)
        return cls(
            samples=mono,
            sample_rate=int(sample_rate),
            captured_at=captured_at,
            source=source,
            peak=peak,
            has_audio=peak >= presence_threshold,
            origin=origin,
        )

    @property
    def duration(self) -> float:
        return len(self.samples) / self.sample_rate if self.sample_rate else 0.0


@dataclass(frozen=True)
class SampleWindow:
    """Resampled audio handed to a backend exactly once."""
    index: int
    source: str
    samples: np.ndarray
    sample_rate: int
    start_time: float
    has_audio: bool
    origin: str = ORIGIN_DIRECT
    chunk_count: int = 0

    @property
    def duration(self) -> float:
        return len(self.samples) / self.sample_rate if self.sample_rate else 0.0


class RingBuffer:
    """Fixed-capacity FIFO; pushing into a full buffer evicts the oldest item."""

    def __init__(self, capacity: int = 3):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._items: list = [None] * capacity
        self._head = 0   # index of the oldest item
        self._tail = 0   # index the next push writes to
        self._size = 0

    @property
    def capacity(self) -> int:
        return len(self._items)

    def __len__(self) -> int:
        return self._size

    def is_empty(self) -> bool:
        return self._size == 0

    def push(self, item):
        """Append item. Returns the evicted item when the buffer was full, else None."""
        evicted = None
        if self._size == self.capacity:
            evicted = self._items[self._head]
            self._head = (self._head + 1) % self.capacity
            self._size -= 1
        self._items[self._tail] = item
        self._tail = (self._tail + 1) % self.capacity
        self._size += 1
        return evicted

    def items(self) -> list:
        """Items oldest-first without removing them."""
        return [self._items[(self._head + i) % self.capacity] for i in range(self._size)]

    def pop_all(self) -> list:
        """Remove and return every item, oldest first."""
        items = self.items()
        self._items = [None] * self.capacity
        self._head = self._tail = self._size = 0
        return items


def resample_chunks(chunks: List[AudioChunk], target_rate: int) -> np.ndarray:
    """
    Concatenate chunks and resample to target_rate.

    Consecutive chunks sharing a rate are concatenated before resampling so the
    output length follows the total input length, not each chunk's.
    """
    parts = []
    group: List[np.ndarray] = []
    group_rate = None
    for chunk in chunks:
        if group and chunk.sample_rate != group_rate:
            parts.append(resample_linear(np.concatenate(group), group_rate, target_rate))
            group = []
        group_rate = chunk.sample_rate
        group.append(chunk.samples)
    if group:
        parts.append(resample_linear(np.concatenate(group), group_rate, target_rate))
    if not parts:
        return np.zeros(0, dtype=np.float32)
    return np.concatenate(parts).astype(np.float32, copy=False)


class WindowBuffer:
    """
    Ring buffer of chunks for one source, flushed into SampleWindows.

    A flush fires when the elapsed time since the last flush reaches the
    threshold and the buffer holds at least one chunk.
    """

    def __init__(
        self,
        source: str,
        capacity: int = 3,
        target_rate: int = 16000,
        flush_threshold: float = 8.0,
        min_window_samples: int = 8000,
        origin: str = ORIGIN_DIRECT,
    ):
        self.source = source
        self.target_rate = target_rate
        self.flush_threshold = flush_threshold
        self.min_window_samples = min_window_samples
        self.origin = origin

        self._ring = RingBuffer(capacity)
        self._next_index = 0
        self.evicted_chunks = 0
        self.discarded_windows = 0

    def __len__(self) -> int:
        return len(self._ring)

    def is_empty(self) -> bool:
        return self._ring.is_empty()

    @property
    def capacity(self) -> int:
        return self._ring.capacity

    def push(self, chunk: AudioChunk) -> Optional[AudioChunk]:
        """Append a chunk; returns the evicted oldest chunk if the buffer was full."""
        evicted = self._ring.push(chunk)
        if evicted is not None:
            self.evicted_chunks += 1
            logger.debug(f"{self.source}: ring buffer full, evicted chunk from {evicted.captured_at:.3f}")
        return evicted

    def try_flush(self, elapsed_since_last_flush: float) -> Optional[SampleWindow]:
        """Build a window if the flush interval has elapsed and audio is buffered."""
        if elapsed_since_last_flush < self.flush_threshold or self._ring.is_empty():
            return None
        return self._build_window()

    def drain(self) -> Optional[SampleWindow]:
        """Flush whatever is buffered regardless of timing (used on stop)."""
        if self._ring.is_empty():
            return None
        return self._build_window()

    def _build_window(self) -> Optional[SampleWindow]:
        chunks = self._ring.pop_all()
        try:
            samples = resample_chunks(chunks, self.target_rate)
        except (ValueError, FloatingPointError, MemoryError) as e:
            raise ProcessingError(f"Resampling {len(chunks)} chunk(s) from {self.source} failed: {e}") from e

        if len(samples) < self.min_window_samples:
            self.discarded_windows += 1
            logger.debug(
                f"{self.source}: discarding short window ({len(samples)} samples < {self.min_window_samples})"
            )
            return None

        window = SampleWindow(
            index=self._next_index,
            source=self.source,
            samples=samples,
            sample_rate=self.target_rate,
            start_time=chunks[0].captured_at,
            has_audio=any(c.has_audio for c in chunks),
            origin=self.origin,
            chunk_count=len(chunks),
        )
        self._next_index += 1
        return window
