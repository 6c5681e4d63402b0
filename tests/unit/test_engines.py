"""
Tests for the engine registry and the bundled engines.
"""

import math
from types import SimpleNamespace

import numpy as np
import pytest

from livescribe.engines import factory
from livescribe.engines.base import EngineNotAvailableError, StreamingEvent, TranscriptionEngine
from livescribe.engines.speech_recognition_engine import SpeechRecognitionStreamer, classify_request_error
from livescribe.engines.whisper_engine import WhisperEngine
from livescribe.errors import BackendInitError


class _MissingEngine(TranscriptionEngine):
    ENGINE_ID = "missing"

    @classmethod
    def is_available(cls):
        return False

    @classmethod
    def get_install_hint(cls):
        return "pip install missing-engine"

    def load(self, model_name, device="auto", compute_type="int8"):
        return False

    def transcribe(self, audio, sample_rate=16000, language=None, initial_prompt=None, vad_filter=True, **kwargs):
        raise NotImplementedError


class TestFactory:
    """Tests for the engine and recognizer registries."""

    def test_bundled_engines_registered(self):
        assert "whisper" in factory.get_all_engines()
        assert "speech_recognition" in factory.get_all_recognizers()
        assert factory.get_all_engines()["whisper"] is WhisperEngine

    def test_unknown_engine(self):
        with pytest.raises(EngineNotAvailableError) as exc_info:
            factory.create_engine("nope")
        assert exc_info.value.kind == "unavailable"
        assert isinstance(exc_info.value, BackendInitError)
        assert not factory.is_engine_available("nope")

    def test_unknown_recognizer(self):
        with pytest.raises(EngineNotAvailableError):
            factory.create_recognizer("nope")
        assert not factory.is_recognizer_available("nope")

    def test_unavailable_engine_reports_install_hint(self, monkeypatch):
        monkeypatch.setitem(factory._engine_registry, "missing", _MissingEngine)
        assert not factory.is_engine_available("missing")
        with pytest.raises(EngineNotAvailableError) as exc_info:
            factory.create_engine("missing")
        assert "pip install missing-engine" in str(exc_info.value)

    def test_recognizer_options_passed_to_constructor(self, monkeypatch):
        monkeypatch.setattr(SpeechRecognitionStreamer, "is_available", classmethod(lambda cls: True))
        recognizer = factory.create_recognizer("speech_recognition", language="fr-FR", phrase_seconds=2.0)
        assert recognizer.language == "fr-FR"
        assert recognizer.phrase_samples == 32000


class TestWhisperEngine:
    """Tests for WhisperEngine with a stand-in model."""

    @staticmethod
    def loaded_engine(segments):
        class Model:
            def __init__(self):
                self.calls = []

            def transcribe(self, **kwargs):
                self.calls.append(kwargs)
                return iter(segments), None

        engine = WhisperEngine()
        engine._model = Model()
        engine._loaded = True
        return engine

    def test_transcribe_joins_segments(self):
        segments = [
            SimpleNamespace(text=" Hello", start=0.0, end=1.0, avg_logprob=-0.1),
            SimpleNamespace(text=" world", start=1.0, end=2.0, avg_logprob=-0.3),
        ]
        engine = self.loaded_engine(segments)
        result = engine.transcribe(np.zeros(32000, dtype=np.float32), language="en")

        assert result.text == "Hello world"
        assert len(result.segments) == 2
        assert result.duration_seconds == pytest.approx(2.0)
        assert result.confidence == pytest.approx(math.exp(-0.2))
        assert engine._model.calls[0]["condition_on_previous_text"] is False

    def test_no_segments_means_zero_confidence(self):
        result = self.loaded_engine([]).transcribe(np.zeros(16000, dtype=np.float32))
        assert result.is_empty
        assert result.confidence == 0.0

    def test_requires_16khz(self):
        with pytest.raises(ValueError):
            self.loaded_engine([]).transcribe(np.zeros(100, dtype=np.float32), sample_rate=44100)

    def test_requires_loaded_model(self):
        with pytest.raises(RuntimeError):
            WhisperEngine().transcribe(np.zeros(100, dtype=np.float32))

    def test_supported_models(self):
        ids = [m.id for m in WhisperEngine().get_supported_models()]
        assert "base" in ids
        assert all(m.engine == "whisper" for m in WhisperEngine().get_supported_models())


class TestClassifyRequestError:
    """RequestError messages map to failover kinds."""

    @pytest.mark.parametrize("message", [
        "recognition request failed: Forbidden",
        "HTTP Error 403",
        "invalid API key",
        "Quota exceeded",
    ])
    def test_service_refused(self, message):
        assert classify_request_error(message) == "service-not-allowed"

    def test_unreachable_is_network(self):
        assert classify_request_error("recognition connection failed: [Errno -2] Name not known") == "network"


class TestSpeechRecognitionStreamer:
    """Recognition loop driven synchronously with a stand-in recognizer."""

    @pytest.fixture
    def sr(self):
        return pytest.importorskip("speech_recognition")

    @staticmethod
    def run_loop(recognize, phrases=1):
        streamer = SpeechRecognitionStreamer(phrase_seconds=0.1)
        events = []
        streamer.bind(
            lambda event: events.append(("result", event)),
            lambda kind, message: events.append(("error", kind)),
            lambda: events.append(("end", None)),
        )
        streamer._recognizer = SimpleNamespace(recognize_google=recognize)
        streamer._running = True
        for _ in range(phrases):
            streamer.feed(np.zeros(1600, dtype=np.float32), 16000)
        streamer._audio.put(None)
        streamer._loop()
        return streamer, events

    def test_final_result_with_confidence(self, sr):
        def recognize(audio, language, show_all):
            assert isinstance(audio, sr.AudioData)
            return {"alternative": [{"transcript": "hello there", "confidence": 0.7}]}

        streamer, events = self.run_loop(recognize)
        assert events[0] == ("result", StreamingEvent(final="hello there", confidence=0.7))
        assert events[-1] == ("end", None)
        assert not streamer.is_running

    def test_empty_response_is_no_speech(self, sr):
        _, events = self.run_loop(lambda audio, language, show_all: [])
        assert events == [("error", "no-speech"), ("end", None)]

    def test_request_error_classified(self, sr):
        def recognize(audio, language, show_all):
            raise sr.RequestError("recognition connection failed: timed out")

        _, events = self.run_loop(recognize, phrases=2)
        assert events == [("error", "network"), ("end", None)]

    def test_permission_error_is_not_allowed(self, sr):
        def recognize(audio, language, show_all):
            raise PermissionError("microphone access denied")

        _, events = self.run_loop(recognize)
        assert events[0] == ("error", "not-allowed")

    def test_feed_resamples_to_16khz(self):
        streamer = SpeechRecognitionStreamer()
        streamer._running = True
        streamer.feed(np.zeros(44100, dtype=np.float32), 44100)
        assert len(streamer._audio.get_nowait()) == 16000

    def test_feed_ignored_when_stopped(self):
        streamer = SpeechRecognitionStreamer()
        streamer.feed(np.zeros(100, dtype=np.float32), 16000)
        assert streamer._audio.empty()
