"""
Line assembly: backend results become ordered, deduplicated transcript lines.

Every committed line gets word_index = cumulative word count of the lines
committed before it, so word ranges never overlap. A line whose fingerprint
(timestamp | speaker | first 50 characters) was already committed is dropped.
"""

import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from ..engines.base import TranscriptionResult
from ..logger import get_logger
from ..settings import TranscriptOptions
from ..utils import TextProcessor
from .backends import BackendKind

logger = get_logger(__name__)


def line_fingerprint(timestamp: str, speaker: str, content: str, chars: int = 50) -> str:
    return f"{timestamp}|{speaker}|{content[:chars]}"


@dataclass(frozen=True)
class TranscriptLine:
    """A committed line of the transcript."""
    timestamp: str          # wall clock, e.g. "14:30:25"
    speaker: str
    content: str
    word_index: int         # index of the first word in the cumulative transcript
    word_count: int
    confidence: float = 1.0
    backend: str = "local"

    @property
    def fingerprint(self) -> str:
        return line_fingerprint(self.timestamp, self.speaker, self.content)

    @property
    def end_index(self) -> int:
        return self.word_index + self.word_count

    def format(self) -> str:
        return f"[{self.timestamp}] {self.speaker}: {self.content}"

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "timestamp": self.timestamp,
            "speaker": self.speaker,
            "content": self.content,
            "word_index": self.word_index,
            "word_count": self.word_count,
            "confidence": self.confidence,
            "backend": self.backend,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TranscriptLine":
        content = data["content"]
        return cls(
            timestamp=data["timestamp"],
            speaker=data["speaker"],
            content=content,
            word_index=int(data.get("word_index", 0)),
            word_count=int(data.get("word_count", TextProcessor.count_words(content))),
            confidence=float(data.get("confidence", 1.0)),
            backend=data.get("backend", "local"),
        )


class TranscriptSink(ABC):
    """Receives committed lines. The only way transcript text leaves the pipeline."""

    @abstractmethod
    def deliver(self, lines: List[TranscriptLine], cumulative_word_count: int, cumulative_position: int) -> None:
        pass

    def preview(self, text: str, speaker: str) -> None:
        """Interim streaming text for live display. Never committed."""


class LineAssembler:
    """
    Builds TranscriptLines for one session and delivers them to the sink.

    Args:
        options: Speaker labels, timestamp format and dedup settings
        sink: Where committed lines go
        clock: Wall clock used to timestamp lines
        on_commit: Extra callback per committed line (session recording)
    """

    def __init__(
        self,
        options: TranscriptOptions,
        sink: TranscriptSink,
        clock: Callable[[], float] = time.time,
        on_commit: Optional[Callable[[TranscriptLine], None]] = None,
    ):
        self.options = options
        self.sink = sink
        self.clock = clock
        self.on_commit = on_commit

        self.lines: List[TranscriptLine] = []
        self.word_count = 0
        self.position = 0
        self.duplicates_dropped = 0
        self.filtered = 0
        self._recent: "OrderedDict[str, None]" = OrderedDict()

    def timestamp(self) -> str:
        return datetime.fromtimestamp(self.clock()).strftime(self.options.timestamp_format)

    def assemble(self, result: TranscriptionResult, backend_kind, speaker: Optional[str] = None) -> Optional[TranscriptLine]:
        """
        Turn one backend result into a committed line.

        Interim streaming results go to the sink's preview only. Returns the
        committed line, or None when nothing was committed.
        """
        speaker = speaker or self.options.microphone_speaker
        backend = getattr(backend_kind, "value", backend_kind)

        if not result.is_final:
            interim = TextProcessor.normalize(result.text)
            if interim:
                self.sink.preview(interim, speaker)
            return None

        content = TextProcessor.normalize(result.text)
        if not content:
            return None
        # Filler filtering applies to batch output; streaming finals are committed as recognized
        if backend == BackendKind.LOCAL.value and TextProcessor.is_acknowledgement(content):
            self.filtered += 1
            logger.debug(f"Filtered acknowledgement '{content}' from {backend}")
            return None

        return self.commit(content, speaker, confidence=result.confidence, backend=backend)

    def add_manual(self, text: str, speaker: Optional[str] = None) -> Optional[TranscriptLine]:
        content = TextProcessor.normalize(text)
        if not content:
            return None
        return self.commit(content, speaker or self.options.manual_speaker, confidence=1.0, backend="manual")

    def commit(self, content: str, speaker: str, confidence: float = 1.0, backend: str = "local",
               timestamp: Optional[str] = None) -> Optional[TranscriptLine]:
        timestamp = timestamp or self.timestamp()
        fingerprint = line_fingerprint(timestamp, speaker, content, self.options.fingerprint_chars)
        if fingerprint in self._recent:
            self.duplicates_dropped += 1
            logger.debug(f"Dropped duplicate line: {fingerprint}")
            return None

        word_count = TextProcessor.count_words(content)
        line = TranscriptLine(
            timestamp=timestamp,
            speaker=speaker,
            content=content,
            word_index=self.word_count,
            word_count=word_count,
            confidence=max(0.0, min(1.0, float(confidence))),
            backend=backend,
        )

        self._remember(fingerprint)
        self.lines.append(line)
        self.word_count += word_count
        self.position += word_count

        self.sink.deliver([line], self.word_count, self.position)
        if self.on_commit is not None:
            self.on_commit(line)
        return line

    def _remember(self, fingerprint: str):
        self._recent[fingerprint] = None
        while len(self._recent) > self.options.recent_fingerprints:
            self._recent.popitem(last=False)
