"""
voicepipe.audio.energy — Short-window signal energy used as the VAD loudness proxy.
"""

from __future__ import annotations

import numpy as np


class EnergyDetector:
    """Stateless RMS energy over float samples in [-1, 1]."""

    @staticmethod
    def rms(frame) -> float:
        """Return sqrt(mean(frame ** 2)); an empty frame has zero energy."""
        arr = np.asarray(frame, dtype=np.float64)
        if arr.size == 0:
            return 0.0
        return float(np.sqrt(np.mean(arr * arr)))

    @staticmethod
    def peak(frame) -> float:
        arr = np.asarray(frame, dtype=np.float64)
        if arr.size == 0:
            return 0.0
        return float(np.max(np.abs(arr)))


class AnalysisWindow:
    """Fixed-size window holding the most recent samples.

    The capture session pushes every block it receives; the VAD tick reads
    the RMS of whatever the window holds at that moment.
    """

    def __init__(self, size: int = 1024):
        if size <= 0:
            raise ValueError("window size must be positive")
        self.size = size
        self._buf = np.zeros(size, dtype=np.float32)
        self._filled = 0

    def push(self, samples: np.ndarray):
        samples = np.asarray(samples, dtype=np.float32).reshape(-1)
        n = len(samples)
        if n == 0:
            return
        if n >= self.size:
            self._buf[:] = samples[-self.size :]
            self._filled = self.size
            return
        self._buf = np.roll(self._buf, -n)
        self._buf[-n:] = samples
        self._filled = min(self.size, self._filled + n)

    def samples(self) -> np.ndarray:
        return self._buf[self.size - self._filled :].copy()

    def rms(self) -> float:
        return EnergyDetector.rms(self._buf[self.size - self._filled :])

    def clear(self):
        self._buf[:] = 0.0
        self._filled = 0

    def __len__(self) -> int:
        return self._filled
