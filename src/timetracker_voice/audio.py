"""Full-duplex microphone capture and speaker playback."""
from __future__ import annotations

import asyncio
import threading
from collections import deque
from typing import Any, Callable, Deque, Optional

import numpy as np
import structlog

from .config import AudioSettings
from .metrics import PLAYBACK_FLUSHES
from .observable import Observable

try:  # pragma: no cover - platform specific
    import sounddevice as sd
except (ImportError, OSError):  # pragma: no cover - PortAudio missing
    sd = None

logger = structlog.get_logger(__name__)

ChunkCallback = Callable[[bytes], None]
StreamFactory = Callable[..., Any]


class AudioEngineError(RuntimeError):
    """Raised when the audio hardware cannot be configured."""


def float_to_pcm16(samples: np.ndarray) -> bytes:
    # Scale by 2**15 so pcm16_to_float(float_to_pcm16(x)) is exact for decoded input
    scaled = np.rint(np.asarray(samples, dtype=np.float32) * 32768.0)
    return np.clip(scaled, -32768, 32767).astype("<i2").tobytes()


def pcm16_to_float(data: bytes) -> np.ndarray:
    usable = len(data) - (len(data) % 2)
    ints = np.frombuffer(data[:usable], dtype="<i2")
    return ints.astype(np.float32) / 32768.0


def resample_mono(samples: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    """Linear-interpolation resample of a 1-D float signal."""
    if src_rate == dst_rate or samples.size == 0:
        return samples
    dst_length = int(round(samples.shape[0] * float(dst_rate) / float(src_rate)))
    src_indices = np.arange(samples.shape[0], dtype=np.float64)
    dst_indices = np.linspace(0, max(samples.shape[0] - 1, 1), dst_length, dtype=np.float64)
    return np.interp(dst_indices, src_indices, samples).astype(np.float32)


def amplitude_level(samples: np.ndarray, gain: float) -> float:
    """Mean absolute amplitude scaled by ``gain`` and clamped to [0, 1]."""
    if samples.size == 0:
        return 0.0
    return min(float(np.mean(np.abs(samples))) * gain, 1.0)


class AudioEngine:
    """Owns the input and output streams.

    Capture runs on the PortAudio thread and hops each converted block onto
    the asyncio loop that called :meth:`start_capture`. Playback is a queue of
    float32 blocks drained by the output stream callback; the queue is
    guarded by a lock shared with :meth:`flush_playback`.
    """

    def __init__(
        self,
        settings: Optional[AudioSettings] = None,
        *,
        input_stream_factory: Optional[StreamFactory] = None,
        output_stream_factory: Optional[StreamFactory] = None,
    ) -> None:
        self._settings = settings or AudioSettings()
        self._input_factory = input_stream_factory
        self._output_factory = output_stream_factory
        self.level: Observable[float] = Observable(0.0)

        self._input_stream: Any = None
        self._output_stream: Any = None
        self._output_failed = False
        self._capture_rate = self._settings.sample_rate
        self._on_chunk: Optional[ChunkCallback] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._paused = threading.Event()

        self._play_lock = threading.Lock()
        self._playback: Deque[np.ndarray] = deque()
        self._play_offset = 0

    @property
    def sample_rate(self) -> int:
        return self._settings.sample_rate

    @property
    def is_capturing(self) -> bool:
        return self._input_stream is not None

    @property
    def capture_paused(self) -> bool:
        return self._paused.is_set()

    # Capture -----------------------------------------------------------------

    def start_capture(self, on_chunk: ChunkCallback) -> None:
        """Begin delivering wire-format chunks to ``on_chunk`` on the running loop."""
        if self._input_stream is not None:
            return
        loop = asyncio.get_running_loop()
        factory = self._input_factory or _default_factory("InputStream")
        try:
            stream = factory(
                samplerate=self._settings.sample_rate,
                blocksize=self._settings.block_size,
                channels=1,
                dtype="float32",
                device=self._settings.input_device,
                callback=self._input_callback,
            )
            stream.start()
        except Exception as exc:
            logger.error("audio.capture_failed", error=str(exc))
            raise AudioEngineError(f"Unable to start microphone capture: {exc}") from exc
        self._loop = loop
        self._on_chunk = on_chunk
        self._capture_rate = int(getattr(stream, "samplerate", None) or self._settings.sample_rate)
        self._paused.clear()
        self._input_stream = stream
        logger.info("audio.capture_started", rate=self._capture_rate, wire_rate=self.sample_rate)

    def stop_capture(self) -> None:
        stream, self._input_stream = self._input_stream, None
        self._on_chunk = None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as exc:  # pragma: no cover - driver specific
            logger.warning("audio.capture_close_failed", error=str(exc))
        self.level.set(0.0)
        logger.info("audio.capture_stopped")

    def pause_capture(self) -> None:
        """Drop microphone blocks until :meth:`resume_capture`."""
        if not self._paused.is_set():
            self._paused.set()
            self.level.set(0.0)
            logger.debug("audio.capture_paused")

    def resume_capture(self) -> None:
        if self._paused.is_set():
            self._paused.clear()
            logger.debug("audio.capture_resumed")

    def _input_callback(self, indata: np.ndarray, frames: int, time_info: Any, status: Any) -> None:
        if status:
            logger.warning("audio.input_status", status=str(status))
        if self._paused.is_set() or self._on_chunk is None or self._loop is None:
            return
        block = np.asarray(indata, dtype=np.float32)
        mono = block.mean(axis=1) if block.ndim > 1 else block
        level = amplitude_level(mono, self._settings.level_gain)
        mono = resample_mono(mono, self._capture_rate, self.sample_rate)
        chunk = float_to_pcm16(mono)
        try:
            self._loop.call_soon_threadsafe(self._deliver, chunk, level)
        except RuntimeError:
            # loop already closed during shutdown
            return

    def _deliver(self, chunk: bytes, level: float) -> None:
        on_chunk = self._on_chunk
        if on_chunk is None or self._paused.is_set():
            return
        self.level.set(level)
        on_chunk(chunk)

    # Playback ----------------------------------------------------------------

    def enqueue_playback(self, data: bytes) -> None:
        """Queue wire PCM for playback; dropped once the speaker has failed to open."""
        if self._output_failed:
            return
        samples = pcm16_to_float(data)
        if samples.size == 0:
            return
        try:
            self._ensure_output()
        except AudioEngineError:
            self._output_failed = True
            return
        with self._play_lock:
            self._playback.append(samples)

    def flush_playback(self) -> None:
        with self._play_lock:
            dropped = sum(block.shape[0] for block in self._playback) - self._play_offset
            self._playback.clear()
            self._play_offset = 0
        PLAYBACK_FLUSHES.inc()
        if dropped > 0:
            logger.info("audio.playback_flushed", dropped_samples=dropped)

    def playback_drained(self) -> bool:
        with self._play_lock:
            return not self._playback

    def queued_samples(self) -> int:
        with self._play_lock:
            return sum(block.shape[0] for block in self._playback) - self._play_offset

    def _ensure_output(self) -> None:
        if self._output_stream is not None:
            return
        factory = self._output_factory or _default_factory("OutputStream")
        try:
            stream = factory(
                samplerate=self._settings.sample_rate,
                blocksize=self._settings.block_size,
                channels=1,
                dtype="float32",
                device=self._settings.output_device,
                callback=self._output_callback,
            )
            stream.start()
        except Exception as exc:
            logger.error("audio.playback_failed", error=str(exc))
            raise AudioEngineError(f"Unable to start speaker playback: {exc}") from exc
        self._output_stream = stream
        logger.info("audio.playback_started")

    def _output_callback(self, outdata: np.ndarray, frames: int, time_info: Any, status: Any) -> None:
        if status:
            logger.warning("audio.output_status", status=str(status))
        written = 0
        with self._play_lock:
            while written < frames and self._playback:
                head = self._playback[0]
                take = min(frames - written, head.shape[0] - self._play_offset)
                outdata[written : written + take] = head[self._play_offset : self._play_offset + take, None]
                written += take
                self._play_offset += take
                if self._play_offset >= head.shape[0]:
                    self._playback.popleft()
                    self._play_offset = 0
        if written < frames:
            outdata[written:] = 0

    def close(self) -> None:
        self.stop_capture()
        self.flush_playback()
        self._output_failed = False
        stream, self._output_stream = self._output_stream, None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception as exc:  # pragma: no cover - driver specific
                logger.warning("audio.playback_close_failed", error=str(exc))


def _default_factory(name: str) -> StreamFactory:
    if sd is None:
        raise AudioEngineError("sounddevice is not available; install PortAudio and sounddevice")
    return getattr(sd, name)


__all__ = [
    "AudioEngine",
    "AudioEngineError",
    "amplitude_level",
    "float_to_pcm16",
    "pcm16_to_float",
    "resample_mono",
]
