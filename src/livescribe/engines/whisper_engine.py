"""
Local transcription engine using faster-whisper.

This is the primary engine: it runs fully offline on the CPU or a GPU.
"""

import math
from typing import List, Optional

import numpy as np

from ..audio import to_float32
from ..logger import get_logger
from .base import ModelInfo, TranscriptionEngine, TranscriptionResult, TranscriptionSegment
from .factory import register_engine

logger = get_logger(__name__)


# Models offered for the local backend; sizes are approximate downloads
WHISPER_MODELS = [
    ModelInfo("tiny.en", "Whisper Tiny (English)", "whisper", 75,
              "Fastest; fine for live captions on slow CPUs."),
    ModelInfo("base", "Whisper Base", "whisper", 150,
              "Default. Good balance of speed and accuracy for live use.", True),
    ModelInfo("base.en", "Whisper Base (English)", "whisper", 150,
              "English-only variant of Base."),
    ModelInfo("small", "Whisper Small", "whisper", 500,
              "Better accuracy; keeps up in real time on most CPUs.", True),
    ModelInfo("medium", "Whisper Medium", "whisper", 1500,
              "High accuracy; a GPU is recommended for live sessions.", True),
    ModelInfo("large-v3", "Whisper Large v3", "whisper", 3000,
              "Best accuracy; GPU only for live sessions.", True),
]


@register_engine
class WhisperEngine(TranscriptionEngine):
    """Batch engine over faster-whisper (CTranslate2). Each window is transcribed independently."""

    ENGINE_ID = "whisper"
    ENGINE_NAME = "Whisper (faster-whisper)"

    def __init__(self):
        super().__init__()
        self._compute_type = None

    @classmethod
    def is_available(cls) -> bool:
        try:
            import faster_whisper  # noqa: F401
            return True
        except ImportError:
            return False

    @classmethod
    def get_install_hint(cls) -> str:
        return "pip install faster-whisper"

    def load(self, model_name: str, device: str = "auto", compute_type: str = "int8") -> bool:
        """Load a Whisper model; a failed GPU load falls back to the CPU."""
        try:
            from faster_whisper import WhisperModel

            logger.info(f"Loading whisper model '{model_name}' on {device} ({compute_type})...")

            try:
                # CTranslate2 resolves "auto" to cuda when available
                self._model = WhisperModel(model_name, device=device, compute_type=compute_type)
                self._device = device
            except Exception as e:
                if device == "cpu":
                    raise
                logger.warning(f"GPU load failed ({e}), falling back to CPU...")
                self._model = WhisperModel(model_name, device="cpu", compute_type="int8")
                self._device = "cpu"

            self._model_name = model_name
            self._compute_type = compute_type
            self._loaded = True

            logger.info(f"Whisper model loaded on {self._device}")
            return True

        except Exception as e:
            logger.error(f"Failed to load whisper model '{model_name}': {e}")
            self._loaded = False
            return False

    def transcribe(
        self,
        audio: np.ndarray,
        sample_rate: int = 16000,
        language: Optional[str] = None,
        initial_prompt: Optional[str] = None,
        vad_filter: bool = True,
        **kwargs
    ) -> TranscriptionResult:
        """Transcribe a window with Whisper."""
        if not self._loaded or self._model is None:
            raise RuntimeError("Model not loaded. Call load() first.")
        if sample_rate != 16000:
            raise ValueError(f"Whisper expects 16 kHz audio, got {sample_rate} Hz")

        audio = to_float32(audio)
        duration = len(audio) / sample_rate

        segments_iter, _info = self._model.transcribe(
            audio=audio,
            language=language,
            initial_prompt=initial_prompt,
            vad_filter=vad_filter,
            # Live windows are independent; conditioning on them repeats text
            condition_on_previous_text=kwargs.get("condition_on_previous_text", False),
            hallucination_silence_threshold=kwargs.get("hallucination_silence_threshold", 0.5),
        )

        segments = []
        log_probs = []
        for segment in segments_iter:
            segments.append(TranscriptionSegment(text=segment.text, start=segment.start, end=segment.end))
            log_probs.append(segment.avg_logprob)

        text = "".join(s.text for s in segments).strip()
        # Mean per-token probability across segments
        confidence = math.exp(sum(log_probs) / len(log_probs)) if log_probs else 0.0

        return TranscriptionResult(
            text=text,
            segments=segments,
            duration_seconds=duration,
            confidence=max(0.0, min(1.0, confidence)),
        )

    def get_supported_models(self) -> List[ModelInfo]:
        return WHISPER_MODELS.copy()

    def unload(self) -> None:
        super().unload()
        self._compute_type = None
