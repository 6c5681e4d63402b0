"""
Tests for session recording files and crash recovery.
"""

import json

import numpy as np
import soundfile as sf

from conftest import START_TIME
from livescribe.pipeline.buffer import AudioChunk
from livescribe.pipeline.recording import (
    INGEST_FILE,
    METADATA_FILE,
    RECOVERY_FILE,
    TRANSCRIPT_FILE,
    SessionRecording,
    find_recoverable,
    has_recovery,
    recover,
    recordings_root,
)
from livescribe.pipeline.transcript import TranscriptLine
from livescribe.settings import AudioSettings, PipelineSettings


def make_recording(temp_dir, session_id="2024-01-15T14-30-25-123Z", recording_enabled=True):
    settings = PipelineSettings(audio=AudioSettings(recording_enabled=recording_enabled, audio_quality="low"))
    return SessionRecording.create(str(temp_dir), session_id, "standup", settings, START_TIME)


def line(content, index=0):
    return TranscriptLine("10:00:00", "Live Audio", content, index, len(content.split()), 0.9, "local")


class TestSessionRecording:
    """Tests for SessionRecording."""

    def test_create_makes_session_directory(self, temp_dir):
        recording = make_recording(temp_dir)
        assert recording.directory == recordings_root(str(temp_dir)) / "2024-01-15T14-30-25-123Z"
        assert recording.directory.is_dir()

    def test_open_writes_metadata_and_recovery_header(self, temp_dir):
        recording = make_recording(temp_dir)
        recording.open({"microphone": 16000})

        metadata = json.loads((recording.directory / METADATA_FILE).read_text())
        assert metadata["session_id"] == "2024-01-15T14-30-25-123Z"
        assert metadata["context"] == "standup"
        assert metadata["audio_sources"] == ["microphone"]
        assert metadata["audio_files"] == {"microphone": {"file": "microphone.wav", "sample_rate": 16000}}
        assert metadata["start_time"].endswith("Z")

        header = json.loads(recording.recovery_path.read_text().splitlines()[0])
        assert header["_type"] == "header"
        assert (recording.directory / TRANSCRIPT_FILE).exists()
        recording.close(START_TIME + 1)

    def test_audio_written_to_wav(self, temp_dir):
        recording = make_recording(temp_dir)
        recording.open({"microphone": 16000})
        chunk = AudioChunk.create(np.full(16000, 0.25, dtype=np.float32), 16000, captured_at=START_TIME)
        recording.write_audio(chunk)
        recording.write_audio(chunk)
        recording.close(START_TIME + 2)

        data, rate = sf.read(str(recording.directory / "microphone.wav"))
        assert rate == 16000
        assert len(data) == 32000
        assert abs(data[0] - 0.25) < 1e-3

    def test_recording_disabled_writes_no_audio(self, temp_dir):
        recording = make_recording(temp_dir, recording_enabled=False)
        recording.open({"microphone": 16000})
        recording.write_audio(AudioChunk.create(np.ones(100, dtype=np.float32), 16000, captured_at=0.0))
        recording.close(START_TIME + 1)

        assert not (recording.directory / "microphone.wav").exists()
        metadata = json.loads((recording.directory / METADATA_FILE).read_text())
        assert metadata["audio_files"] == {}

    def test_lines_appended_to_transcript(self, temp_dir):
        recording = make_recording(temp_dir)
        recording.open({})
        recording.append_line(line("hello there"))
        recording.append_line(line("second line", 2))

        text = (recording.directory / TRANSCRIPT_FILE).read_text()
        assert text == "[10:00:00] Live Audio: hello there\n[10:00:00] Live Audio: second line\n"
        assert has_recovery(recording.directory)

    def test_ingest_bytes_logged(self, temp_dir):
        recording = make_recording(temp_dir)
        recording.open({})
        recording.append_ingest(b"abc", START_TIME)
        recording.append_ingest(b"defg", START_TIME + 1)
        recording.close(START_TIME + 2)

        assert (recording.directory / INGEST_FILE).read_bytes() == b"abcdefg"
        metadata = json.loads((recording.directory / METADATA_FILE).read_text())
        assert [c["size"] for c in metadata["chunks"]] == [3, 4]

    def test_close_finalizes_and_removes_recovery(self, temp_dir):
        recording = make_recording(temp_dir)
        recording.open({"microphone": 16000})
        recording.append_line(line("hello"))
        recording.close(START_TIME + 90.5, {"line_count": 1, "word_count": 1})
        recording.close(START_TIME + 200)

        metadata = json.loads((recording.directory / METADATA_FILE).read_text())
        assert metadata["duration"] == 90500
        assert metadata["line_count"] == 1
        assert not recording.recovery_path.exists()
        assert find_recoverable(str(temp_dir)) == []

    def test_writes_after_close_ignored(self, temp_dir):
        recording = make_recording(temp_dir)
        recording.open({})
        recording.close(START_TIME + 1)
        recording.append_line(line("late"))
        assert (recording.directory / TRANSCRIPT_FILE).read_text() == ""


class TestRecovery:
    """Tests for crash recovery."""

    def test_header_only_is_not_recoverable(self, temp_dir):
        recording = make_recording(temp_dir)
        recording.open({})
        assert not has_recovery(recording.directory)
        assert find_recoverable(str(temp_dir)) == []

    def test_session_with_lines_is_recoverable(self, temp_dir):
        empty = make_recording(temp_dir, session_id="2024-01-15T14-00-00-000Z")
        empty.open({})
        crashed = make_recording(temp_dir)
        crashed.open({})
        crashed.append_line(line("left behind"))
        assert find_recoverable(str(temp_dir)) == [crashed.directory]

    def test_no_recordings_dir(self, temp_dir):
        assert find_recoverable(str(temp_dir / "nowhere")) == []
        assert not has_recovery(temp_dir)

    def test_recover_rebuilds_transcript(self, temp_dir):
        recording = make_recording(temp_dir)
        recording.open({})
        recording.append_line(line("one two", 0))
        recording.append_line(line("three", 2))
        (recording.directory / TRANSCRIPT_FILE).unlink()

        lines = recover(recording.directory)

        assert [l.content for l in lines] == ["one two", "three"]
        assert (recording.directory / TRANSCRIPT_FILE).read_text().count("\n") == 2
        metadata = json.loads((recording.directory / METADATA_FILE).read_text())
        assert metadata["recovered"] is True
        assert metadata["word_count"] == 3
        assert not (recording.directory / RECOVERY_FILE).exists()

    def test_recover_skips_malformed_entries(self, temp_dir):
        recording = make_recording(temp_dir)
        recording.open({})
        recording.append_line(line("good"))
        with open(recording.recovery_path, "a", encoding="utf-8") as f:
            f.write("{not json\n")
            f.write(json.dumps({"speaker": "Live Audio"}) + "\n")

        lines = recover(recording.directory)
        assert [l.content for l in lines] == ["good"]

    def test_recover_without_file(self, temp_dir):
        assert recover(temp_dir) == []
