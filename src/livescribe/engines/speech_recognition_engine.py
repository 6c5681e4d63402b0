"""
Streaming recognizer built on the SpeechRecognition library.

Fed audio is collected into phrases of a few seconds, each phrase is sent to
the configured web recognizer (Google by default) on a recognizer thread, and
the recognized text is reported as a final result. Library exceptions are
mapped onto streaming error kinds; any error ends the recognition session, and
the backend manager decides whether to restart it.
"""

import queue
import threading
from typing import Optional

import numpy as np

from ..audio import float_to_pcm16, resample_linear, to_mono
from ..errors import StreamAlreadyRunningError
from ..logger import get_logger
from .base import StreamingEvent, StreamingRecognizer
from .factory import register_recognizer

logger = get_logger(__name__)

RECOGNIZER_RATE = 16000

# RequestError messages that mean the service refused us rather than being unreachable
_SERVICE_REFUSED_HINTS = ("403", "forbidden", "api key", "quota", "not allowed", "unauthorized")


def classify_request_error(message: str) -> str:
    lowered = message.lower()
    if any(hint in lowered for hint in _SERVICE_REFUSED_HINTS):
        return "service-not-allowed"
    return "network"


@register_recognizer
class SpeechRecognitionStreamer(StreamingRecognizer):
    """
    Phrase-at-a-time recognizer using speech_recognition's web APIs.

    Args:
        api: Recognizer suffix, e.g. "google" calls Recognizer.recognize_google
        language: Language tag passed to the API
        phrase_seconds: Audio collected before each recognition request
    """

    RECOGNIZER_ID = "speech_recognition"
    RECOGNIZER_NAME = "SpeechRecognition (web API)"

    def __init__(self, api: str = "google", language: str = "en-US", phrase_seconds: float = 4.0):
        super().__init__()
        self.api = api
        self.language = language
        self.phrase_samples = max(1, int(RECOGNIZER_RATE * phrase_seconds))

        self._audio: queue.Queue = queue.Queue()
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._recognizer = None

    @classmethod
    def is_available(cls) -> bool:
        try:
            import speech_recognition  # noqa: F401
            return True
        except ImportError:
            return False

    @classmethod
    def get_install_hint(cls) -> str:
        return "pip install SpeechRecognition"

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self):
        if self._running:
            raise StreamAlreadyRunningError("Recognizer is already running", kind="already-running")

        import speech_recognition as sr

        self._recognizer = sr.Recognizer()
        if not hasattr(self._recognizer, f"recognize_{self.api}"):
            raise ValueError(f"SpeechRecognition has no '{self.api}' recognizer")

        self._audio = queue.Queue()
        self._running = True
        self._thread = threading.Thread(target=self._loop, name="speech-recognizer", daemon=True)
        self._thread.start()
        logger.info(f"Streaming recognizer started ({self.api}, {self.language})")

    def stop(self):
        if not self._running:
            return
        self._running = False
        self._audio.put(None)
        if self._thread is not None and threading.current_thread() is not self._thread:
            self._thread.join(timeout=5.0)
        self._thread = None

    def feed(self, samples: np.ndarray, sample_rate: int):
        if not self._running:
            return
        mono = to_mono(samples)
        if sample_rate != RECOGNIZER_RATE:
            mono = resample_linear(mono, sample_rate, RECOGNIZER_RATE)
        self._audio.put(mono)

    def _next_phrase(self) -> Optional[np.ndarray]:
        """Block until a full phrase is collected. None once stopped."""
        parts = []
        collected = 0
        while collected < self.phrase_samples:
            block = self._audio.get()
            if block is None:
                return None
            parts.append(block)
            collected += len(block)
        return np.concatenate(parts)

    def _loop(self):
        import speech_recognition as sr

        recognize = getattr(self._recognizer, f"recognize_{self.api}")
        try:
            while self._running:
                phrase = self._next_phrase()
                if phrase is None:
                    break
                audio = sr.AudioData(float_to_pcm16(phrase).tobytes(), RECOGNIZER_RATE, 2)
                try:
                    event = self._recognize(recognize, audio)
                except sr.UnknownValueError:
                    self._fail("no-speech", "No speech recognized in phrase")
                    break
                except sr.RequestError as e:
                    self._fail(classify_request_error(str(e)), str(e))
                    break
                except PermissionError as e:
                    self._fail("not-allowed", str(e))
                    break
                except Exception as e:
                    self._fail("audio-capture", str(e))
                    break
                if event is not None and self._running:
                    self._emit_result(event)
        finally:
            was_running = self._running
            self._running = False
            if was_running:
                self._emit_end()

    def _recognize(self, recognize, audio) -> Optional[StreamingEvent]:
        if self.api == "google":
            # show_all returns alternatives with a confidence, or [] for no speech
            response = recognize(audio, language=self.language, show_all=True)
            alternatives = response.get("alternative", []) if isinstance(response, dict) else []
            if not alternatives:
                raise _unknown_value()
            best = alternatives[0]
            return StreamingEvent(final=best.get("transcript", ""), confidence=float(best.get("confidence", 1.0)))

        text = recognize(audio, language=self.language)
        return StreamingEvent(final=text, confidence=1.0)

    def _fail(self, kind: str, message: str):
        logger.warning(f"Streaming recognizer error: {kind} ({message})")
        self._emit_error(kind, message)


def _unknown_value():
    import speech_recognition as sr
    return sr.UnknownValueError()
