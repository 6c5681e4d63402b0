"""
Decode capability for externally ingested audio bytes.

Uses soundfile (libsndfile), which reads WAV, FLAC and OGG/Vorbis containers.
Anything it cannot parse raises ProcessingError and the chunk is dropped.
"""

import io
from dataclasses import dataclass

import numpy as np
import soundfile as sf

from ..audio import to_mono
from ..errors import ProcessingError


@dataclass(frozen=True)
class DecodedAudio:
    samples: np.ndarray   # mono float32
    sample_rate: int


def decode_audio(raw: bytes) -> DecodedAudio:
    """
    Decode a container of audio bytes to mono float32 samples.

    Raises:
        ProcessingError: empty input or an unreadable container
    """
    if not raw:
        raise ProcessingError("Cannot decode empty audio chunk")
    try:
        data, sample_rate = sf.read(io.BytesIO(raw), dtype='float32', always_2d=True)
    except (RuntimeError, TypeError, ValueError) as e:
        # soundfile.LibsndfileError subclasses RuntimeError
        raise ProcessingError(f"Could not decode {len(raw)} bytes of audio: {e}") from e
    if len(data) == 0:
        raise ProcessingError("Decoded audio chunk contains no samples")
    return DecodedAudio(samples=to_mono(data), sample_rate=int(sample_rate))
