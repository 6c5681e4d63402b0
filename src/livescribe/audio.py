"""
Sample-level helpers shared by capture, buffering and the engines.

All pipeline audio is mono float32 in [-1, 1].
"""

import numpy as np


def to_float32(samples: np.ndarray) -> np.ndarray:
    """Convert int16 PCM (or any numeric array) to float32 in [-1, 1]."""
    samples = np.asarray(samples)
    if samples.dtype == np.int16:
        return samples.astype(np.float32) / 32768.0
    return samples.astype(np.float32, copy=False)


def to_mono(samples: np.ndarray) -> np.ndarray:
    """Down-mix (frames, channels) audio to a 1-D float32 array."""
    audio = to_float32(samples)
    if audio.ndim == 1:
        return audio
    if audio.shape[1] == 1:
        return audio[:, 0]
    return audio.mean(axis=1).astype(np.float32)


def peak_amplitude(samples: np.ndarray) -> float:
    """Maximum absolute sample value (0.0 for empty input)."""
    if samples is None or len(samples) == 0:
        return 0.0
    return float(np.max(np.abs(samples)))


def resampled_length(input_length: int, source_rate: int, target_rate: int) -> int:
    """Output length for a linear resample: round(input_length / (source_rate / target_rate))."""
    if source_rate == target_rate:
        return input_length
    ratio = source_rate / target_rate
    # Round half up
    return int(np.floor(input_length / ratio + 0.5))


def resample_linear(samples: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """
    Resample mono audio by linear interpolation.

    Output sample i sits at source position i * (source_rate / target_rate) and
    interpolates between the floor and ceil input samples, clamped to the input
    bounds. Audio already at target_rate is returned unchanged.

    Args:
        samples: 1-D audio
        source_rate: Native sample rate of samples
        target_rate: Desired sample rate

    Returns:
        float32 audio at target_rate
    """
    if source_rate <= 0 or target_rate <= 0:
        raise ValueError(f"Sample rates must be positive (got {source_rate} -> {target_rate})")

    audio = to_float32(samples)
    if audio.ndim != 1:
        raise ValueError(f"Expected mono audio, got shape {audio.shape}")
    if source_rate == target_rate:
        return audio

    original_length = len(audio)
    target_length = resampled_length(original_length, source_rate, target_rate)
    if original_length == 0 or target_length == 0:
        return np.zeros(0, dtype=np.float32)

    ratio = source_rate / target_rate
    positions = np.arange(target_length, dtype=np.float64) * ratio
    # np.interp clamps positions past the last sample to the edge value
    resampled = np.interp(positions, np.arange(original_length), audio)
    return resampled.astype(np.float32)


def float_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """Convert float audio in [-1, 1] to int16 PCM."""
    audio = np.clip(to_float32(samples), -1.0, 1.0)
    return (audio * 32767).astype(np.int16)
