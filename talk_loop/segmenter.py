"""
Energy-based voice activity decision over a rolling audio snapshot.

The segmenter is stateless: each call looks at one snapshot of the capture
buffer and answers whether it holds a speech candidate. Debouncing is left to
the caller, which simply polls again.

Rule: high-pass the snapshot, then compare the mean absolute energy of the
trailing analysis window with the mean over the whole snapshot. When the
tail has dropped to at most `energy_threshold` times the overall level, the
speaker has just trailed off and the snapshot is handed to transcription.
"""
from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np
from scipy import signal

from logging_setup import get_logger, Component

logger = get_logger(Component.VAD)


@dataclass(frozen=True)
class VadDecision:
    speech: bool
    energy_all: float = 0.0
    energy_last: float = 0.0


def high_pass_filter(samples: np.ndarray, cutoff_hz: float, sample_rate: int) -> np.ndarray:
    """
    Single-pole RC high-pass filter.

    y[0] = x[0]; y[i] = a * (y[i-1] + x[i] - x[i-1]) with a = dt / (rc + dt).
    Returns a new array; the input is left untouched.
    """
    x = np.asarray(samples, dtype=np.float32)
    if x.size < 2:
        return x.copy()

    rc = 1.0 / (2.0 * math.pi * cutoff_hz)
    dt = 1.0 / sample_rate
    alpha = dt / (rc + dt)

    diff = np.diff(x)
    tail, _ = signal.lfilter([alpha], [1.0, -alpha], diff, zi=[alpha * x[0]])
    out = np.empty_like(x)
    out[0] = x[0]
    out[1:] = tail
    return out


class AudioSegmenter:
    """Stateless speech-candidate classifier."""

    def __init__(
        self,
        sample_rate: int = 16000,
        energy_threshold: float = 0.4,
        high_pass_cutoff_hz: float = 100.0,
        analysis_window_ms: int = 1000,
        verbose: bool = False,
    ):
        self.sample_rate = sample_rate
        self.energy_threshold = energy_threshold
        self.high_pass_cutoff_hz = high_pass_cutoff_hz
        self.analysis_window_ms = analysis_window_ms
        self.verbose = verbose

    def classify(self, snapshot: np.ndarray) -> VadDecision:
        samples = np.asarray(snapshot, dtype=np.float32).reshape(-1)
        n_samples = samples.size
        n_last = (self.sample_rate * self.analysis_window_ms) // 1000

        if n_last >= n_samples:
            # Not enough audio yet
            return VadDecision(speech=False)

        if self.high_pass_cutoff_hz > 0.0:
            samples = high_pass_filter(samples, self.high_pass_cutoff_hz, self.sample_rate)

        magnitude = np.abs(samples)
        energy_all = float(magnitude.mean())
        energy_last = float(magnitude[-n_last:].mean())

        if self.verbose:
            logger.debug(
                "Energy",
                energy_all=round(energy_all, 6),
                energy_last=round(energy_last, 6),
                threshold=self.energy_threshold,
            )

        # Digital silence has no trailing-off to detect
        speech = energy_all > 0.0 and energy_last <= self.energy_threshold * energy_all
        return VadDecision(speech=speech, energy_all=energy_all, energy_last=energy_last)
