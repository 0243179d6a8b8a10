# resonance/pipeline/spectral.py
"""
Spectral front end: peak picking and activity level for one snapshot.
"""
from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional

import numpy as np

from .config import SpectrumConfig
from .models import FrontEndOutput, Peak, SpectralSnapshot

logger = logging.getLogger(__name__)


def normalize_db(db: float, min_db: float, max_db: float) -> float:
    """Map a dB value linearly onto 0..1 (clamped)."""
    span = max_db - min_db
    if span <= 0.0:
        return 0.0
    return float(min(max((db - min_db) / span, 0.0), 1.0))


def parabolic_offset(alpha: float, beta: float, gamma: float) -> float:
    """Sub-bin offset of a peak from its two neighbours; 0 when the fit is flat."""
    denom = alpha - 2.0 * beta + gamma
    if not math.isfinite(denom) or abs(denom) < 1e-12:
        return 0.0
    p = 0.5 * (alpha - gamma) / denom
    if not math.isfinite(p):
        return 0.0
    return float(min(max(p, -0.5), 0.5))


def compute_rms(waveform: Optional[np.ndarray]) -> float:
    if waveform is None:
        return 0.0
    x = np.asarray(waveform, dtype=np.float64).reshape(-1)
    if x.size == 0:
        return 0.0
    x = np.where(np.isfinite(x), x, 0.0)
    return float(np.sqrt(np.mean(x * x)))


class SpectralFrontEnd:
    """Extracts sorted, interpolated peaks and an RMS level from a snapshot."""

    def __init__(self, config: Optional[SpectrumConfig] = None):
        self.config = config or SpectrumConfig()

    def apply_config(self, config: SpectrumConfig) -> None:
        self.config = config

    def _prepare(self, snapshot: SpectralSnapshot) -> np.ndarray:
        cfg = self.config
        mags = np.asarray(snapshot.magnitudes_db, dtype=np.float64).reshape(-1)
        mags = np.where(np.isfinite(mags), mags, cfg.min_db)
        if cfg.gain > 0.0 and cfg.gain != 1.0:
            mags = mags + 20.0 * math.log10(cfg.gain)
        return mags

    def _scaled_waveform(self, snapshot: SpectralSnapshot) -> np.ndarray:
        if snapshot.waveform is None:
            return np.zeros((0,), dtype=np.float64)
        y = np.asarray(snapshot.waveform, dtype=np.float64).reshape(-1)
        y = np.where(np.isfinite(y), y, 0.0)
        return y * float(self.config.gain)

    def find_peaks(self, mags: np.ndarray, bin_hz: float) -> List[Peak]:
        cfg = self.config
        n = int(mags.shape[0])
        if n == 0 or bin_hz <= 0.0:
            return []

        edge = int(cfg.edge_bins)
        min_bin = int(math.floor(cfg.min_frequency / bin_hz))
        max_bin = min(int(math.ceil(cfg.max_frequency / bin_hz)), n - 2)
        lo = max(min_bin + edge, edge)
        hi = max_bin - edge
        if hi <= lo:
            return []

        # Vectorized local-maximum test against +-edge neighbours
        idx = np.arange(lo, hi)
        center = mags[idx]
        is_peak = center > cfg.noise_floor_db
        for k in range(1, edge + 1):
            is_peak &= center > mags[idx - k]
            is_peak &= center > mags[idx + k]

        peaks: List[Peak] = []
        for i in idx[is_peak]:
            i = int(i)
            alpha, beta, gamma = float(mags[i - 1]), float(mags[i]), float(mags[i + 1])
            p = parabolic_offset(alpha, beta, gamma)
            peaks.append(Peak(
                frequency=(i + p) * bin_hz,
                amplitude=normalize_db(beta, cfg.noise_floor_db, cfg.max_db),
                raw_level=beta,
                bin_index=i,
            ))

        peaks.sort(key=lambda pk: pk.amplitude, reverse=True)
        return peaks[: max(0, int(cfg.max_peaks))]

    def process(self, snapshot: Optional[SpectralSnapshot]) -> FrontEndOutput:
        cfg = self.config
        if snapshot is None:
            return FrontEndOutput(level_db=cfg.min_db)

        bin_hz = snapshot.bin_hz
        mags = self._prepare(snapshot)
        peaks = self.find_peaks(mags, bin_hz)
        rms = compute_rms(self._scaled_waveform(snapshot))

        dominant = peaks[0] if peaks else None
        level_db = dominant.raw_level if dominant is not None else cfg.min_db
        return FrontEndOutput(
            peaks=peaks,
            rms=rms,
            level_db=level_db,
            bin_hz=bin_hz,
            is_active=dominant is not None and dominant.raw_level > cfg.noise_floor_db,
        )

    def frequency_range(self, snapshot: SpectralSnapshot, min_freq: float, max_freq: float) -> List[Dict[str, float]]:
        """Per-bin rows between two frequencies, for spectrum displays."""
        cfg = self.config
        bin_hz = snapshot.bin_hz
        if bin_hz <= 0.0:
            return []
        mags = self._prepare(snapshot)
        lo = max(0, int(math.floor(min_freq / bin_hz)))
        hi = min(int(math.ceil(max_freq / bin_hz)), mags.shape[0] - 1)
        rows = []
        for i in range(lo, hi + 1):
            db = float(mags[i])
            rows.append({
                "frequency": i * bin_hz,
                "amplitude": normalize_db(db, cfg.noise_floor_db, cfg.max_db),
                "db": db,
            })
        return rows
