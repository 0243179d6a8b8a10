# resonance/pipeline/analyser.py
"""
Waveform -> SpectralSnapshot, modelled on a browser AnalyserNode:
rolling buffer, Blackman window, magnitude / N, temporal smoothing, dB.
Feeds the CLI and end-to-end tests; live capture supplies snapshots itself.
"""
from __future__ import annotations

from typing import Optional

import numpy as np
import scipy.fft
from scipy.signal import get_window

from .config import AnalyserConfig, SpectrumConfig
from .models import SpectralSnapshot


class SpectrumAnalyser:
    def __init__(
        self,
        config: Optional[AnalyserConfig] = None,
        sample_rate: int = 44100,
        spectrum: Optional[SpectrumConfig] = None,
    ):
        self.config = config or AnalyserConfig()
        self.spectrum = spectrum or SpectrumConfig()
        n = int(self.config.fft_size)
        if n < 32 or n & (n - 1):
            raise ValueError(f"fft_size must be a power of two >= 32, got {n}")
        if sample_rate <= 0:
            raise ValueError(f"sample_rate must be positive, got {sample_rate}")
        if not 0.0 <= self.config.smoothing_time_constant < 1.0:
            raise ValueError("smoothing_time_constant must be in [0, 1)")
        self.sample_rate = int(sample_rate)
        self.fft_size = n
        self._window = get_window("blackman", n)
        self.reset()

    @property
    def bin_count(self) -> int:
        return self.fft_size // 2

    def reset(self) -> None:
        self._buffer = np.zeros((self.fft_size,), dtype=np.float64)
        self._smoothed = np.zeros((self.bin_count,), dtype=np.float64)

    def push(self, samples: np.ndarray) -> None:
        """Append mono samples to the rolling buffer (oldest samples drop out)."""
        x = np.asarray(samples, dtype=np.float64).reshape(-1)
        if x.size == 0:
            return
        x = np.where(np.isfinite(x), x, 0.0)
        if x.size >= self.fft_size:
            self._buffer = x[-self.fft_size:].copy()
        else:
            self._buffer = np.concatenate([self._buffer[x.size:], x])

    def snapshot(self) -> SpectralSnapshot:
        n = self.fft_size
        spec = scipy.fft.rfft(self._buffer * self._window)[: self.bin_count]
        mag = np.abs(spec) / n
        tau = self.config.smoothing_time_constant
        self._smoothed = tau * self._smoothed + (1.0 - tau) * mag

        floor_db = self.spectrum.min_db - 30.0
        with np.errstate(divide="ignore"):
            db = 20.0 * np.log10(self._smoothed)
        db = np.clip(np.nan_to_num(db, nan=floor_db, neginf=floor_db), floor_db, 0.0)
        return SpectralSnapshot(
            magnitudes_db=db,
            waveform=self._buffer.copy(),
            sample_rate=self.sample_rate,
            fft_size=n,
        )

    def process(self, samples: np.ndarray) -> SpectralSnapshot:
        self.push(samples)
        return self.snapshot()
