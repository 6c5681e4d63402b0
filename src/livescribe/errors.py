"""
Error taxonomy for the transcription pipeline.

Only DeviceError and TranscriptionPermissionError ever leave the pipeline;
every backend error is handled inside the backend manager.
"""

from typing import Optional


class LivescribeError(Exception):
    """Base class for all livescribe errors."""


class DeviceError(LivescribeError):
    """No capture is possible (permission denied, device missing). Fatal for the session."""

    def __init__(self, reason: str, detail: Optional[str] = None):
        self.reason = reason
        self.detail = detail
        message = f"Audio device error: {reason}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class ProcessingError(LivescribeError):
    """Resample or decode failure. The affected window is dropped."""


class BackendError(LivescribeError):
    """Base class for errors raised by a transcription backend."""

    def __init__(self, message: str, kind: Optional[str] = None):
        self.kind = kind
        super().__init__(message)


class BackendInitError(BackendError):
    """A backend could not be initialized. Triggers failover to the next backend."""


class TransientRecognitionError(BackendError):
    """Retryable recognizer error (no-speech, audio-capture)."""


class ServiceError(BackendError):
    """Service-level error (network, service-not-allowed). Immediate failover."""


class TranscriptionPermissionError(BackendError):
    """Recognizer permission denied. Transcription stops; recording continues."""


class StreamAlreadyRunningError(BackendError):
    """Raised by a streaming recognizer when start() is called while running."""
