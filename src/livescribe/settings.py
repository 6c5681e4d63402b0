"""
Immutable settings objects built from the configuration.

Each session reads its settings once at start; a running session never sees
later changes.
"""

from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple

from .utils import ConfigManager

# quality -> (sample_rate, channels)
QUALITY_PROFILES = {
    "low": (16000, 1),
    "standard": (44100, 1),
    "high": (48000, 2),
}

SOURCE_MICROPHONE = "microphone"
SOURCE_LOOPBACK = "loopback"
VALID_SOURCES = (SOURCE_MICROPHONE, SOURCE_LOOPBACK)

VALID_BACKENDS = ("local", "streaming", "manual")


def _as_tuple(value, default):
    if value is None:
        return tuple(default)
    if isinstance(value, str):
        return (value,)
    return tuple(value)


@dataclass(frozen=True)
class AudioSettings:
    """What to capture and whether to transcribe it."""
    recording_enabled: bool = True
    audio_sources: Tuple[str, ...] = (SOURCE_MICROPHONE,)
    audio_quality: str = "standard"
    auto_transcribe: bool = True
    selected_device: Optional[str] = None

    @property
    def sample_rate(self) -> int:
        return QUALITY_PROFILES[self.audio_quality][0]

    @property
    def channels(self) -> int:
        return QUALITY_PROFILES[self.audio_quality][1]

    def validate(self) -> "AudioSettings":
        """Raise ValueError for settings no session can start with."""
        if self.audio_quality not in QUALITY_PROFILES:
            raise ValueError(
                f"Unknown audio quality '{self.audio_quality}'. "
                f"Expected one of {sorted(QUALITY_PROFILES)}"
            )
        if not self.audio_sources:
            raise ValueError("At least one audio source is required")
        for source in self.audio_sources:
            if source not in VALID_SOURCES:
                raise ValueError(f"Unknown audio source '{source}'. Expected one of {list(VALID_SOURCES)}")
        if len(set(self.audio_sources)) != len(self.audio_sources):
            raise ValueError(f"Duplicate audio sources: {list(self.audio_sources)}")
        return self

    @classmethod
    def from_dict(cls, data: dict) -> "AudioSettings":
        defaults = cls()
        device = data.get("selected_device")
        return cls(
            recording_enabled=bool(data.get("recording_enabled", defaults.recording_enabled)),
            audio_sources=_as_tuple(data.get("audio_sources"), defaults.audio_sources),
            audio_quality=data.get("audio_quality") or defaults.audio_quality,
            auto_transcribe=bool(data.get("auto_transcribe", defaults.auto_transcribe)),
            selected_device=str(device) if device not in (None, "", "default") else None,
        )


@dataclass(frozen=True)
class PipelineOptions:
    """Capture, buffering and flush timing."""
    capture_strategy: str = "auto"
    block_size: int = 4096
    chunk_seconds: float = 3.0
    ring_capacity: int = 3
    flush_interval: float = 8.0
    backup_poll_interval: float = 3.0
    target_rate: int = 16000
    min_window_seconds: float = 0.5
    presence_threshold: float = 0.001
    direct_activity_window: float = 4.0

    @property
    def min_window_samples(self) -> int:
        return int(self.target_rate * self.min_window_seconds)

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineOptions":
        defaults = cls()
        values = {}
        for name in cls.__dataclass_fields__:
            raw = data.get(name)
            values[name] = type(getattr(defaults, name))(raw) if raw is not None else getattr(defaults, name)
        if values["ring_capacity"] < 1:
            raise ValueError("ring_capacity must be at least 1")
        return cls(**values)


@dataclass(frozen=True)
class LocalEngineOptions:
    engine: str = "whisper"
    model: str = "base"
    device: str = "auto"
    compute_type: str = "int8"
    language: Optional[str] = "en"
    initial_prompt: Optional[str] = None
    vad_filter: bool = True


@dataclass(frozen=True)
class StreamingEngineOptions:
    engine: str = "speech_recognition"
    api: str = "google"
    language: str = "en-US"
    phrase_seconds: float = 4.0


@dataclass(frozen=True)
class BackendOptions:
    """Backend priority, retry policy and engine options."""
    priority: Tuple[str, ...] = ("local", "streaming", "manual")
    retry_budget: int = 2
    local_max_errors: int = 2
    retry_delay: float = 1.0
    mark_silence: bool = False
    local: LocalEngineOptions = field(default_factory=LocalEngineOptions)
    streaming: StreamingEngineOptions = field(default_factory=StreamingEngineOptions)

    @classmethod
    def from_dict(cls, data: dict) -> "BackendOptions":
        defaults = cls()
        priority = _as_tuple(data.get("priority"), defaults.priority)
        for name in priority:
            if name not in VALID_BACKENDS:
                raise ValueError(f"Unknown backend '{name}' in priority. Expected {list(VALID_BACKENDS)}")
        local = {k: v for k, v in (data.get("local") or {}).items() if k in LocalEngineOptions.__dataclass_fields__}
        streaming = {
            k: v for k, v in (data.get("streaming") or {}).items()
            if k in StreamingEngineOptions.__dataclass_fields__ and v is not None
        }
        return cls(
            priority=priority,
            retry_budget=int(data.get("retry_budget", defaults.retry_budget)),
            local_max_errors=int(data.get("local_max_errors", defaults.local_max_errors)),
            retry_delay=float(data.get("retry_delay", defaults.retry_delay)),
            mark_silence=bool(data.get("mark_silence", defaults.mark_silence)),
            local=LocalEngineOptions(**local),
            streaming=StreamingEngineOptions(**streaming),
        )


@dataclass(frozen=True)
class TranscriptOptions:
    microphone_speaker: str = "Live Audio"
    loopback_speaker: str = "System Audio"
    manual_speaker: str = "Note"
    timestamp_format: str = "%H:%M:%S"
    fingerprint_chars: int = 50
    recent_fingerprints: int = 500

    def speaker_for(self, source: str) -> str:
        if source == SOURCE_LOOPBACK:
            return self.loopback_speaker
        return self.microphone_speaker

    @classmethod
    def from_dict(cls, data: dict) -> "TranscriptOptions":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__ and v is not None})


@dataclass(frozen=True)
class PipelineSettings:
    """Everything a session needs, resolved once at start."""
    audio: AudioSettings = field(default_factory=AudioSettings)
    pipeline: PipelineOptions = field(default_factory=PipelineOptions)
    backends: BackendOptions = field(default_factory=BackendOptions)
    transcript: TranscriptOptions = field(default_factory=TranscriptOptions)
    data_dir: Optional[str] = None

    def validate(self) -> "PipelineSettings":
        self.audio.validate()
        return self


SettingsProvider = Callable[[], PipelineSettings]


def load_settings() -> PipelineSettings:
    """Build PipelineSettings from the ConfigManager (the default settings provider)."""
    return PipelineSettings(
        audio=AudioSettings.from_dict(ConfigManager.get_config_section('audio_options')),
        pipeline=PipelineOptions.from_dict(ConfigManager.get_config_section('pipeline_options')),
        backends=BackendOptions.from_dict(ConfigManager.get_config_section('backend_options')),
        transcript=TranscriptOptions.from_dict(ConfigManager.get_config_section('transcript_options')),
        data_dir=ConfigManager.get_config_value('misc', 'data_dir'),
    )
