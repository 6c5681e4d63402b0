"""
On-disk session recording.

Each session gets a directory <data_dir>/recordings/<session_id>/ holding:
- metadata.json: session info, ingested chunk log, backend history, summary
- transcript.txt: one "[HH:MM:SS] Speaker: text" line per committed line
- <source>.wav: captured audio per source (only when recording is enabled)
- ingest.bin: raw bytes passed to ingest_audio_chunk()

Includes crash recovery: committed lines are also appended to
.transcript_recovery.jsonl, which is removed on a clean close. A directory
that still has one was not closed cleanly and can be recovered.
"""

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import soundfile as sf

from ..logger import get_logger
from ..settings import PipelineSettings
from .buffer import AudioChunk
from .transcript import TranscriptLine

logger = get_logger(__name__)

DEFAULT_DATA_DIR = Path(__file__).parent.parent.parent.parent / "data"

RECORDINGS_DIR = "recordings"
METADATA_FILE = "metadata.json"
TRANSCRIPT_FILE = "transcript.txt"
INGEST_FILE = "ingest.bin"
RECOVERY_FILE = ".transcript_recovery.jsonl"


def recordings_root(data_dir: Optional[str] = None) -> Path:
    return Path(data_dir or DEFAULT_DATA_DIR) / RECORDINGS_DIR


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, timezone.utc).isoformat().replace("+00:00", "Z")


def _write_json_atomic(path: Path, data: dict):
    temp_path = path.with_suffix(".tmp")
    with open(temp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
        f.flush()
        os.fsync(f.fileno())
    temp_path.replace(path)


class SessionRecording:
    """Files written for one session. Not thread-safe: used from the scheduler thread."""

    def __init__(self, directory: Path, session_id: str, context: str,
                 settings: PipelineSettings, started_at: float):
        self.directory = Path(directory)
        self.session_id = session_id
        self.settings = settings
        self.started_at = started_at
        self.metadata = {
            "session_id": session_id,
            "start_time": _iso(started_at),
            "context": context,
            "audio_sources": list(settings.audio.audio_sources),
            "audio_quality": settings.audio.audio_quality,
            "recording_enabled": settings.audio.recording_enabled,
            "auto_transcribe": settings.audio.auto_transcribe,
            "audio_files": {},
            "chunks": [],
        }
        self._writers: Dict[str, sf.SoundFile] = {}
        self._closed = False

    @classmethod
    def create(cls, data_dir: Optional[str], session_id: str, context: str,
               settings: PipelineSettings, started_at: float) -> "SessionRecording":
        directory = recordings_root(data_dir) / session_id
        directory.mkdir(parents=True, exist_ok=True)
        return cls(directory, session_id, context, settings, started_at)

    @property
    def recovery_path(self) -> Path:
        return self.directory / RECOVERY_FILE

    @property
    def transcript_path(self) -> Path:
        return self.directory / TRANSCRIPT_FILE

    def open(self, source_rates: Dict[str, int]) -> None:
        """Write initial metadata and the recovery header; open WAV writers."""
        if self.settings.audio.recording_enabled:
            for source, rate in source_rates.items():
                path = self.directory / f"{source}.wav"
                self._writers[source] = sf.SoundFile(
                    str(path), mode="w", samplerate=int(rate), channels=1, subtype="PCM_16"
                )
                self.metadata["audio_files"][source] = {"file": path.name, "sample_rate": int(rate)}

        header = {"_type": "header", "session_id": self.session_id, "start_time": self.metadata["start_time"]}
        self.recovery_path.write_text(json.dumps(header) + "\n", encoding="utf-8")
        self.transcript_path.touch()
        _write_json_atomic(self.directory / METADATA_FILE, self.metadata)
        logger.info(f"Recording session to {self.directory}")

    def write_audio(self, chunk: AudioChunk) -> None:
        writer = self._writers.get(chunk.source)
        if writer is not None and not self._closed:
            writer.write(chunk.samples)

    def append_ingest(self, raw: bytes, received_at: float) -> None:
        if self._closed:
            return
        with open(self.directory / INGEST_FILE, "ab") as f:
            f.write(raw)
        self.metadata["chunks"].append({"timestamp": _iso(received_at), "size": len(raw)})

    def append_line(self, line: TranscriptLine) -> None:
        """Append a committed line to transcript.txt and the recovery file."""
        if self._closed:
            return
        with open(self.transcript_path, "a", encoding="utf-8") as f:
            f.write(line.format() + "\n")
        try:
            with open(self.recovery_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(line.to_dict()) + "\n")
        except OSError as e:
            logger.warning(f"Failed to append to recovery file: {e}")

    def close(self, ended_at: float, summary: Optional[dict] = None) -> None:
        """Finalize metadata and drop the recovery file. Idempotent."""
        if self._closed:
            return
        self._closed = True

        writers, self._writers = self._writers, {}
        for source, writer in writers.items():
            try:
                writer.close()
            except Exception as e:
                logger.warning(f"Failed to close {source} audio file: {e}")

        self.metadata["end_time"] = _iso(ended_at)
        self.metadata["duration"] = int(round((ended_at - self.started_at) * 1000))
        if summary:
            self.metadata.update(summary)
        _write_json_atomic(self.directory / METADATA_FILE, self.metadata)
        self.recovery_path.unlink(missing_ok=True)
        logger.info(f"Session recording closed: {self.directory}")


def has_recovery(directory: Path) -> bool:
    """True if the directory holds a recovery file with at least one line."""
    path = Path(directory) / RECOVERY_FILE
    if not path.exists():
        return False
    lines = path.read_text(encoding="utf-8").strip().split("\n")
    return len(lines) > 1  # More than just the header


def find_recoverable(data_dir: Optional[str] = None) -> List[Path]:
    """Session directories whose unclean stop left committed lines in a recovery file."""
    root = recordings_root(data_dir)
    if not root.exists():
        return []
    return sorted(d for d in root.iterdir() if d.is_dir() and has_recovery(d))


def recover(directory: Path) -> List[TranscriptLine]:
    """
    Rebuild transcript.txt and metadata from a crash recovery file.

    Malformed entries are skipped. The recovery file is removed afterwards.
    """
    directory = Path(directory)
    path = directory / RECOVERY_FILE
    if not path.exists():
        return []

    lines: List[TranscriptLine] = []
    for raw in path.read_text(encoding="utf-8").splitlines()[1:]:
        try:
            lines.append(TranscriptLine.from_dict(json.loads(raw)))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Skipping malformed recovery entry: {e}")

    (directory / TRANSCRIPT_FILE).write_text(
        "".join(line.format() + "\n" for line in lines), encoding="utf-8"
    )

    metadata_path = directory / METADATA_FILE
    metadata = {}
    if metadata_path.exists():
        try:
            metadata = json.loads(metadata_path.read_text(encoding="utf-8"))
        except ValueError:
            logger.warning(f"Unreadable metadata in {directory}, rewriting it")
    metadata["recovered"] = True
    metadata["line_count"] = len(lines)
    metadata["word_count"] = sum(line.word_count for line in lines)
    _write_json_atomic(metadata_path, metadata)

    path.unlink()
    logger.info(f"Recovered {len(lines)} lines in {directory}")
    return lines
