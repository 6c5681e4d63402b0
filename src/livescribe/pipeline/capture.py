"""
Audio capture for live transcription.

Captures the microphone and, optionally, system audio (loopback):
- sounddevice for microphones everywhere and loopback on macOS/Linux
  (BlackHole or a PulseAudio/PipeWire monitor source)
- PyAudioWPatch for WASAPI loopback on Windows

Two capture strategies feed the same chunk callback: a low-latency callback
stream (preferred) and a block reader that pulls fixed-size blocks on its own
thread. If the low-latency stream cannot be opened the block reader is used.
"""

import sys
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import numpy as np

from ..audio import to_mono
from ..errors import DeviceError
from ..logger import get_logger
from ..settings import QUALITY_PROFILES, SOURCE_LOOPBACK, SOURCE_MICROPHONE, AudioSettings
from .buffer import DEFAULT_PRESENCE_THRESHOLD, AudioChunk

logger = get_logger(__name__)

STRATEGY_LOW_LATENCY = "low_latency"
STRATEGY_BLOCK = "block"
STRATEGY_AUTO = "auto"

# Device name fragments that identify a loopback-capable input
LOOPBACK_NAME_HINTS = ("blackhole", "loopback", "monitor", "stereo mix", "soundflower")


@dataclass(frozen=True)
class SourceSpec:
    """Requested inputs plus the quality profile they are opened with."""
    sources: tuple = (SOURCE_MICROPHONE,)
    quality: str = "standard"
    device: Optional[str] = None

    @property
    def sample_rate(self) -> int:
        return QUALITY_PROFILES[self.quality][0]

    @property
    def channels(self) -> int:
        return QUALITY_PROFILES[self.quality][1]

    @classmethod
    def from_settings(cls, settings: AudioSettings) -> "SourceSpec":
        return cls(
            sources=tuple(settings.audio_sources),
            quality=settings.audio_quality,
            device=settings.selected_device,
        )

    def constraints(self) -> List["StreamConstraints"]:
        return [
            StreamConstraints(
                source=source,
                sample_rate=self.sample_rate,
                channels=self.channels,
                device=self.device if source == SOURCE_MICROPHONE else None,
            )
            for source in self.sources
        ]


@dataclass(frozen=True)
class StreamConstraints:
    source: str
    sample_rate: int
    channels: int
    device: Optional[str] = None


class CaptureNode(ABC):
    """An open input stream delivering audio blocks."""

    @abstractmethod
    def start(self) -> None:
        pass

    @abstractmethod
    def stop(self) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def read(self, frames: int) -> np.ndarray:
        """Blocking read of `frames` frames (block strategy only)."""
        raise NotImplementedError


class MediaStream(ABC):
    """A granted input device. Capture nodes are opened on it by the strategies."""

    def __init__(self, constraints: StreamConstraints, sample_rate: int, channels: int):
        self.constraints = constraints
        self.source = constraints.source
        self.sample_rate = sample_rate
        self.channels = channels

    @abstractmethod
    def open_callback(self, on_block: Callable[[np.ndarray], None], blocksize: int = 0) -> CaptureNode:
        """Open a callback-driven node; on_block receives (frames, channels) float32 arrays."""

    @abstractmethod
    def open_blocking(self, blocksize: int) -> CaptureNode:
        """Open a node read with CaptureNode.read()."""

    @abstractmethod
    def release(self) -> None:
        """Give the device back. The stream is unusable afterwards."""


class MediaDevices(ABC):
    """Media capability: acquire(constraints) -> MediaStream, raising DeviceError."""

    @abstractmethod
    def acquire(self, constraints: StreamConstraints) -> MediaStream:
        pass


# --- sounddevice implementation ---

class _SoundDeviceNode(CaptureNode):

    def __init__(self, stream):
        self._stream = stream

    def start(self):
        self._stream.start()

    def stop(self):
        self._stream.stop()

    def close(self):
        self._stream.close()

    def read(self, frames: int) -> np.ndarray:
        data, overflowed = self._stream.read(frames)
        if overflowed:
            logger.debug("Input overflow while reading block")
        return np.array(data, dtype=np.float32)


class SoundDeviceStream(MediaStream):
    """Input device opened through sounddevice (PortAudio)."""

    def __init__(self, sd, device, constraints: StreamConstraints, sample_rate: int, channels: int):
        super().__init__(constraints, sample_rate, channels)
        self._sd = sd
        self._device = device
        self._released = False

    def _check(self):
        if self._released:
            raise DeviceError("released", f"{self.source} stream was already released")

    def open_callback(self, on_block, blocksize=0) -> CaptureNode:
        self._check()

        def callback(indata, frames, time_info, status):
            if status:
                logger.debug(f"{self.source} callback status: {status}")
            on_block(indata.copy())

        stream = self._sd.InputStream(
            device=self._device,
            samplerate=self.sample_rate,
            channels=self.channels,
            dtype='float32',
            blocksize=blocksize,
            callback=callback,
        )
        return _SoundDeviceNode(stream)

    def open_blocking(self, blocksize) -> CaptureNode:
        self._check()
        stream = self._sd.InputStream(
            device=self._device,
            samplerate=self.sample_rate,
            channels=self.channels,
            dtype='float32',
            blocksize=blocksize,
        )
        return _SoundDeviceNode(stream)

    def release(self):
        self._released = True


# --- PyAudioWPatch implementation (Windows loopback) ---

class _PyAudioNode(CaptureNode):

    def __init__(self, stream, channels: int):
        self._stream = stream
        self._channels = channels

    def start(self):
        self._stream.start_stream()

    def stop(self):
        self._stream.stop_stream()

    def close(self):
        self._stream.close()

    def read(self, frames: int) -> np.ndarray:
        data = self._stream.read(frames, exception_on_overflow=False)
        return np.frombuffer(data, dtype=np.float32).reshape(-1, self._channels)


class WasapiLoopbackStream(MediaStream):
    """Default output's WASAPI loopback, opened with PyAudioWPatch."""

    def __init__(self, pyaudio_module, p, device: dict, constraints: StreamConstraints):
        super().__init__(
            constraints,
            sample_rate=int(device['defaultSampleRate']),
            # Some WASAPI devices require opening with all channels
            channels=int(device['maxInputChannels']),
        )
        self._pyaudio = pyaudio_module
        self._p = p
        self._device = device

    def _open(self, blocksize, callback=None):
        if self._p is None:
            raise DeviceError("released", "loopback stream was already released")
        kwargs = dict(
            format=self._pyaudio.paFloat32,
            channels=self.channels,
            rate=self.sample_rate,
            input=True,
            input_device_index=int(self._device['index']),
            frames_per_buffer=blocksize or 1024,
            start=False,
        )
        if callback is not None:
            kwargs['stream_callback'] = callback
        return self._p.open(**kwargs)

    def open_callback(self, on_block, blocksize=0) -> CaptureNode:
        channels = self.channels
        pa_continue = self._pyaudio.paContinue

        def callback(in_data, frame_count, time_info, status):
            on_block(np.frombuffer(in_data, dtype=np.float32).reshape(-1, channels).copy())
            return (None, pa_continue)

        return _PyAudioNode(self._open(blocksize, callback), channels)

    def open_blocking(self, blocksize) -> CaptureNode:
        return _PyAudioNode(self._open(blocksize), self.channels)

    def release(self):
        if self._p is not None:
            self._p.terminate()
            self._p = None


class SoundDeviceMedia(MediaDevices):
    """Default media capability backed by sounddevice / PyAudioWPatch."""

    def __init__(self):
        self._is_windows = sys.platform == 'win32'

    @staticmethod
    def _import_sounddevice():
        try:
            import sounddevice as sd
            return sd
        except (ImportError, OSError) as e:
            # OSError: PortAudio library missing
            raise DeviceError("no-audio-backend", f"sounddevice unavailable: {e}") from e

    def acquire(self, constraints: StreamConstraints) -> MediaStream:
        if constraints.source == SOURCE_LOOPBACK and self._is_windows:
            return self._acquire_wasapi_loopback(constraints)

        sd = self._import_sounddevice()
        if constraints.source == SOURCE_LOOPBACK:
            device = self._find_loopback_device(sd)
        else:
            device = self._find_microphone(sd, constraints.device)

        # Loopback devices are opened at their native format
        if constraints.source == SOURCE_LOOPBACK:
            sample_rate = int(device['default_samplerate'])
            channels = int(device['max_input_channels'])
        else:
            sample_rate = constraints.sample_rate
            channels = max(1, min(constraints.channels, int(device['max_input_channels'])))

        try:
            sd.check_input_settings(
                device=device['index'], samplerate=sample_rate, channels=channels, dtype='float32'
            )
        except Exception as e:
            raise DeviceError(_classify_device_failure(e), f"{constraints.source}: {e}") from e

        logger.info(f"Acquired {constraints.source}: {device['name']} ({sample_rate}Hz, {channels}ch)")
        return SoundDeviceStream(sd, device['index'], constraints, sample_rate, channels)

    def _find_microphone(self, sd, requested: Optional[str]) -> dict:
        try:
            if requested is not None:
                query = int(requested) if str(requested).isdigit() else requested
                info = sd.query_devices(query, kind='input')
            else:
                info = sd.query_devices(kind='input')
        except Exception as e:
            raise DeviceError(_classify_device_failure(e), f"microphone: {e}") from e

        info = dict(info)
        if 'index' not in info or info['index'] is None:
            info['index'] = sd.default.device[0]
        if int(info.get('max_input_channels', 0)) < 1:
            raise DeviceError("no-device", f"{info.get('name')} has no input channels")
        return info

    def _find_loopback_device(self, sd) -> dict:
        """Find a loopback input (BlackHole on macOS, monitor source on Linux)."""
        try:
            devices = sd.query_devices()
        except Exception as e:
            raise DeviceError(_classify_device_failure(e), f"loopback: {e}") from e

        for i, dev in enumerate(devices):
            name = dev['name'].lower()
            if dev['max_input_channels'] > 0 and any(hint in name for hint in LOOPBACK_NAME_HINTS):
                dev_copy = dict(dev)
                dev_copy['index'] = i
                logger.info(f"Found loopback device: {dev['name']}")
                return dev_copy

        hint = "brew install blackhole-2ch" if sys.platform == 'darwin' else "enable a monitor source"
        raise DeviceError("no-device", f"No loopback device found ({hint})")

    def _acquire_wasapi_loopback(self, constraints: StreamConstraints) -> MediaStream:
        try:
            import pyaudiowpatch as pyaudio
        except ImportError as e:
            raise DeviceError("no-audio-backend", f"PyAudioWPatch unavailable: {e}") from e

        p = pyaudio.PyAudio()
        try:
            device = p.get_default_wasapi_loopback()
        except Exception as e:
            p.terminate()
            raise DeviceError("no-device", f"No WASAPI loopback device: {e}") from e
        if not device:
            p.terminate()
            raise DeviceError("no-device", "No WASAPI loopback device")

        logger.info(f"Using default loopback: {device['name']} "
                    f"({device['defaultSampleRate']}Hz, {device['maxInputChannels']}ch)")
        return WasapiLoopbackStream(pyaudio, p, device, constraints)


def _classify_device_failure(error: Exception) -> str:
    message = str(error).lower()
    if "permission" in message or "not permitted" in message or "denied" in message:
        return "not-allowed"
    return "no-device"


# --- capture strategies ---

class CaptureStrategy(ABC):
    """Turns an acquired MediaStream into a sequence of audio blocks."""

    name = "base"

    def __init__(self, stream: MediaStream, on_block: Callable[[np.ndarray], None], block_size: int):
        self.stream = stream
        self.on_block = on_block
        self.block_size = block_size
        self._node: Optional[CaptureNode] = None

    @abstractmethod
    def start(self) -> None:
        pass

    def stop(self) -> None:
        """Disconnect the capture node. Safe to call more than once."""
        node, self._node = self._node, None
        if node is None:
            return
        try:
            node.stop()
        finally:
            node.close()


class LowLatencyStrategy(CaptureStrategy):
    """Callback stream: blocks are delivered from the audio thread as they arrive."""

    name = STRATEGY_LOW_LATENCY

    def start(self):
        node = self.stream.open_callback(self.on_block, blocksize=0)
        try:
            node.start()
        except Exception:
            node.close()
            raise
        self._node = node


class BlockStrategy(CaptureStrategy):
    """Blocking reads of fixed-size blocks on a dedicated reader thread."""

    name = STRATEGY_BLOCK

    def __init__(self, stream, on_block, block_size=4096):
        super().__init__(stream, on_block, block_size)
        self._running = False
        self._thread: Optional[threading.Thread] = None

    def start(self):
        node = self.stream.open_blocking(self.block_size)
        try:
            node.start()
        except Exception:
            node.close()
            raise
        self._node = node
        self._running = True
        self._thread = threading.Thread(
            target=self._read_loop, args=(node,), name=f"capture-{self.stream.source}", daemon=True
        )
        self._thread.start()

    def _read_loop(self, node: CaptureNode):
        while self._running:
            try:
                block = node.read(self.block_size)
            except Exception as e:
                if self._running:
                    logger.warning(f"{self.stream.source}: block read failed: {e}")
                break
            if self._running and block is not None and len(block):
                self.on_block(block)

    def stop(self):
        self._running = False
        super().stop()
        if self._thread is not None and threading.current_thread() is not self._thread:
            self._thread.join(timeout=2.0)
        self._thread = None


STRATEGIES = {
    STRATEGY_LOW_LATENCY: LowLatencyStrategy,
    STRATEGY_BLOCK: BlockStrategy,
}


class _ChunkCoalescer:
    """Collects blocks from one source into AudioChunks of a fixed duration."""

    def __init__(self, source: str, sample_rate: int, chunk_samples: int,
                 presence_threshold: float, emit: Callable[[AudioChunk], None],
                 clock: Callable[[], float]):
        self.source = source
        self.sample_rate = sample_rate
        self.chunk_samples = max(1, chunk_samples)
        self.presence_threshold = presence_threshold
        self._emit = emit
        self._clock = clock
        self._lock = threading.Lock()
        self._pending: List[np.ndarray] = []
        self._pending_len = 0
        self._started_at = 0.0

    def add(self, block: np.ndarray):
        mono = to_mono(block)
        chunk = None
        with self._lock:
            if not self._pending:
                self._started_at = self._clock()
            self._pending.append(mono)
            self._pending_len += len(mono)
            if self._pending_len >= self.chunk_samples:
                chunk = self._take_locked()
        if chunk is not None:
            self._emit(chunk)

    def take_pending(self) -> Optional[AudioChunk]:
        with self._lock:
            return self._take_locked()

    def _take_locked(self) -> Optional[AudioChunk]:
        if not self._pending:
            return None
        samples = np.concatenate(self._pending)
        self._pending = []
        self._pending_len = 0
        return AudioChunk.create(
            samples,
            self.sample_rate,
            captured_at=self._started_at,
            source=self.source,
            presence_threshold=self.presence_threshold,
        )


class SampleSource:
    """
    Owns the capture streams and nodes for one session.

    acquire() either grants every requested input or raises DeviceError with
    nothing left open. Chunks are delivered to on_chunk from audio threads.
    """

    def __init__(
        self,
        media: Optional[MediaDevices] = None,
        strategy: str = STRATEGY_AUTO,
        block_size: int = 4096,
        chunk_seconds: float = 3.0,
        presence_threshold: float = DEFAULT_PRESENCE_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ):
        if strategy not in (STRATEGY_AUTO, *STRATEGIES):
            raise ValueError(f"Unknown capture strategy '{strategy}'")
        self.media = media or SoundDeviceMedia()
        self.strategy = strategy
        self.block_size = block_size
        self.chunk_seconds = chunk_seconds
        self.presence_threshold = presence_threshold
        self._clock = clock

        self._streams: List[MediaStream] = []
        self._strategies: Dict[str, CaptureStrategy] = {}
        self._coalescers: Dict[str, _ChunkCoalescer] = {}
        self._capturing = False

    @property
    def streams(self) -> List[MediaStream]:
        return list(self._streams)

    @property
    def active_strategies(self) -> Dict[str, str]:
        """source -> strategy name for every connected source."""
        return {source: strategy.name for source, strategy in self._strategies.items()}

    def is_capturing(self) -> bool:
        return self._capturing

    def acquire(self, spec: SourceSpec) -> List[MediaStream]:
        """Acquire every requested input, all or nothing."""
        if self._streams:
            raise RuntimeError("SampleSource already holds streams")

        acquired: List[MediaStream] = []
        try:
            for constraints in spec.constraints():
                acquired.append(self.media.acquire(constraints))
        except DeviceError:
            self._release_streams(acquired)
            raise
        except Exception as e:
            self._release_streams(acquired)
            raise DeviceError("no-device", str(e)) from e

        self._streams = acquired
        return list(acquired)

    def start_capture(self, on_chunk: Callable[[AudioChunk], None], strategy: Optional[str] = None) -> None:
        """
        Connect a capture node to every acquired stream.

        The preferred strategy falls back to the other one if it fails to
        start. DeviceError is raised only if no strategy works for a stream.
        """
        if not self._streams:
            raise RuntimeError("acquire() must succeed before start_capture()")
        if self._capturing:
            return

        preferred = strategy or self.strategy
        order = [STRATEGY_LOW_LATENCY, STRATEGY_BLOCK] if preferred == STRATEGY_AUTO else (
            [preferred] + [name for name in STRATEGIES if name != preferred]
        )

        try:
            for stream in self._streams:
                coalescer = _ChunkCoalescer(
                    stream.source,
                    stream.sample_rate,
                    int(stream.sample_rate * self.chunk_seconds),
                    self.presence_threshold,
                    on_chunk,
                    self._clock,
                )
                self._coalescers[stream.source] = coalescer
                self._strategies[stream.source] = self._start_strategy(stream, coalescer.add, order)
        except DeviceError:
            self.disconnect()
            raise

        self._capturing = True

    def _start_strategy(self, stream: MediaStream, on_block, order) -> CaptureStrategy:
        last_error = None
        for name in order:
            candidate = STRATEGIES[name](stream, on_block, self.block_size)
            try:
                candidate.start()
                logger.info(f"{stream.source}: capturing with {name} strategy ({stream.sample_rate}Hz)")
                return candidate
            except Exception as e:
                last_error = e
                logger.warning(f"{stream.source}: {name} strategy failed to start ({e}), trying next")
        raise DeviceError("capture-init-failed", f"{stream.source}: {last_error}")

    def flush_pending(self) -> List[AudioChunk]:
        """Take any partially-filled chunks (used when the session stops)."""
        chunks = []
        for coalescer in self._coalescers.values():
            chunk = coalescer.take_pending()
            if chunk is not None:
                chunks.append(chunk)
        return chunks

    def disconnect(self) -> None:
        """Stop and close every capture node. Idempotent."""
        strategies, self._strategies = self._strategies, {}
        for source, strategy in strategies.items():
            try:
                strategy.stop()
                logger.info(f"{source}: capture node disconnected")
            except Exception as e:
                logger.warning(f"{source}: error disconnecting capture node: {e}")
        self._coalescers = {}
        self._capturing = False

    def release(self) -> None:
        """Release every acquired stream. Idempotent."""
        streams, self._streams = self._streams, []
        self._release_streams(streams)

    def stop(self) -> None:
        self.disconnect()
        self.release()

    @staticmethod
    def _release_streams(streams: List[MediaStream]):
        for stream in streams:
            try:
                stream.release()
                logger.info(f"{stream.source}: stream released")
            except Exception as e:
                logger.warning(f"{stream.source}: error releasing stream: {e}")
