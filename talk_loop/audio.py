"""
Microphone capture into a rolling buffer.

The sounddevice callback runs on PortAudio's thread and writes into a ring
buffer; the controller reads snapshots with get(ms). The lock is the only
state shared across that boundary.
"""
from __future__ import annotations

import threading
from typing import Optional, Protocol

import numpy as np

try:  # PortAudio may be missing on headless hosts
    import sounddevice as sd
except Exception:  # pragma: no cover - depends on host audio stack
    sd = None

from logging_setup import get_logger, Component
from .errors import EngineInitError

logger = get_logger(Component.AUDIO)


class AudioSource(Protocol):
    """What the turn controller needs from audio capture."""

    def get(self, ms: int) -> np.ndarray: ...

    def clear(self) -> None: ...

    def close(self) -> None: ...


class RingBuffer:
    """Fixed-capacity float32 ring buffer of mono samples."""

    def __init__(self, capacity: int):
        self._data = np.zeros(capacity, dtype=np.float32)
        self._capacity = capacity
        self._pos = 0
        self._len = 0
        self._lock = threading.Lock()

    def write(self, samples: np.ndarray) -> None:
        samples = np.asarray(samples, dtype=np.float32).reshape(-1)
        if samples.size >= self._capacity:
            samples = samples[-self._capacity:]
        n = samples.size
        with self._lock:
            end = self._pos + n
            if end <= self._capacity:
                self._data[self._pos:end] = samples
            else:
                first = self._capacity - self._pos
                self._data[self._pos:] = samples[:first]
                self._data[:n - first] = samples[first:]
            self._pos = end % self._capacity
            self._len = min(self._len + n, self._capacity)

    def read_last(self, n: int) -> np.ndarray:
        """Most recent n samples (fewer if not yet filled), oldest first."""
        with self._lock:
            n = min(n, self._len)
            start = (self._pos - n) % self._capacity
            if start + n <= self._capacity:
                return self._data[start:start + n].copy()
            first = self._capacity - start
            return np.concatenate((self._data[start:], self._data[:n - first]))

    def clear(self) -> None:
        with self._lock:
            self._pos = 0
            self._len = 0

    def __len__(self) -> int:
        return self._len


class SoundDeviceCapture:
    """
    Mono float32 microphone capture.

    Usage:
        with SoundDeviceCapture(sample_rate=16000, buffer_ms=30000) as audio:
            snapshot = audio.get(1500)
    """

    def __init__(self, sample_rate: int = 16000, buffer_ms: int = 30000, device: Optional[int] = None):
        self.sample_rate = sample_rate
        self.device = device
        self._ring = RingBuffer(sample_rate * buffer_ms // 1000)
        self._stream = None
        self._running = False

    def _callback(self, indata, frames, time_info, status):  # sounddevice callback signature
        if status:
            logger.debug("Capture status", status=str(status))
        if self._running:
            self._ring.write(indata[:, 0])

    def start(self) -> "SoundDeviceCapture":
        if sd is None:
            raise EngineInitError("sounddevice/PortAudio is not available", path="audio-device")
        try:
            self._stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="float32",
                device=self.device,
                callback=self._callback,
            )
            self._stream.start()
        except Exception as e:
            raise EngineInitError(f"Failed to open capture device: {e}", path=str(self.device))
        self._running = True
        logger.info("Capture started", sample_rate=self.sample_rate, device=self.device)
        return self

    def resume(self) -> None:
        self._running = True

    def pause(self) -> None:
        self._running = False

    def get(self, ms: int) -> np.ndarray:
        return self._ring.read_last(self.sample_rate * ms // 1000)

    def clear(self) -> None:
        self._ring.clear()

    def close(self) -> None:
        self._running = False
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            finally:
                self._stream = None
                logger.info("Capture stopped")

    def __enter__(self) -> "SoundDeviceCapture":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.close()
