# resonance/pipeline/detectors.py
from __future__ import annotations

import math
from typing import List, Optional, Sequence, Tuple

import numpy as np
import scipy.fft
from scipy.ndimage import maximum_filter1d

from .config import FundamentalConfig
from .models import F0Candidate, FrontEndOutput, Peak, SpectralSnapshot
from .spectral import parabolic_offset

_FFT_LIB = scipy.fft

NO_PITCH = "none"


# --------------------------------------------------------------------------------------
# Utility
# --------------------------------------------------------------------------------------
def hz_to_midi(hz: float) -> float:
    if hz <= 0.0:
        return 0.0
    return 69.0 + 12.0 * float(np.log2(hz / 440.0))


def nearest_harmonic(ratio: float) -> Tuple[int, float]:
    """Closest integer to ``ratio`` and the relative error to it."""
    k = int(round(ratio))
    if k < 1:
        return 0, float("inf")
    return k, abs(ratio - k) / k


def _silent(method: str = NO_PITCH) -> F0Candidate:
    return F0Candidate(frequency=0.0, confidence=0.0, method=method)


def _autocorr_pitch_single(
    frame: np.ndarray,
    sr: int,
    fmin: float,
    fmax: float,
    threshold: float = 0.3,
) -> Tuple[float, float]:
    """
    ACF pitch for one frame: mean removal, FFT autocorrelation normalized by
    lag-0 energy, strict neighbour peak check, parabolic lag refinement.
    Returns (f0, conf); (0, 0) when no peak clears the threshold.
    """
    x = np.asarray(frame, dtype=np.float64).reshape(-1)
    x = np.where(np.isfinite(x), x, 0.0)
    n = int(x.shape[0])
    if n < 8 or sr <= 0:
        return 0.0, 0.0

    lag_min = max(1, int(sr / max(fmax, 1e-6)))
    # lag_max + 1 must stay inside the frame for the neighbour check
    lag_max = min(int(sr / max(fmin, 1e-6)), n - 3)
    if lag_min >= lag_max:
        return 0.0, 0.0

    x = x - np.mean(x)

    # Pad to >= 2*L - 1 for a linear (not circular) autocorrelation
    n_fft = 2 ** int(np.ceil(np.log2(2 * n - 1)))
    fft_len = _FFT_LIB.next_fast_len(n_fft)
    X = _FFT_LIB.rfft(x, n=fft_len)
    ac = _FFT_LIB.irfft(X * np.conj(X), n=fft_len)[:n]

    c0 = float(ac[0])
    if c0 <= 1e-12:
        return 0.0, 0.0
    norm_corr = ac / c0

    center = norm_corr[lag_min: lag_max + 1]
    left = norm_corr[lag_min - 1: lag_max]
    right = norm_corr[lag_min + 1: lag_max + 2]
    is_peak = (center > threshold) & (center > left) & (center > right)
    if not np.any(is_peak):
        return 0.0, 0.0

    masked = np.where(is_peak, center, -1.0)
    k = int(np.argmax(masked)) + lag_min
    p = parabolic_offset(float(norm_corr[k - 1]), float(norm_corr[k]), float(norm_corr[k + 1]))
    lag = k + p
    if lag <= 0.0:
        return 0.0, 0.0
    return float(sr) / lag, float(np.clip(norm_corr[k], 0.0, 1.0))


# --------------------------------------------------------------------------------------
# Estimators
# --------------------------------------------------------------------------------------
class BaseF0Estimator:
    """
    Base class used by FundamentalEstimator.
    Must implement: estimate(front, snapshot) -> F0Candidate
    """

    name = NO_PITCH

    def __init__(self, config: Optional[FundamentalConfig] = None):
        self.config = config or FundamentalConfig()

    def in_range(self, f0: float) -> bool:
        return self.config.min_frequency <= f0 <= self.config.max_frequency

    def estimate(self, front: FrontEndOutput, snapshot: Optional[SpectralSnapshot] = None) -> F0Candidate:
        raise NotImplementedError


class HPSEstimator(BaseF0Estimator):
    """
    Harmonic product spectrum over a sparse pseudo-spectrum built from peaks.
    Downsampled copies are max-pooled over the decimation window so that
    harmonics rounding to a neighbouring bin still line up.
    """

    name = "hps"

    def pseudo_spectrum(self, peaks: Sequence[Peak], bin_hz: float, n_bins: int) -> np.ndarray:
        spec = np.zeros((n_bins,), dtype=np.float64)
        for p in peaks:
            b = int(round(p.frequency / bin_hz))
            if 0 <= b < n_bins:
                spec[b] = max(spec[b], p.amplitude)
        return spec

    def estimate(self, front: FrontEndOutput, snapshot: Optional[SpectralSnapshot] = None) -> F0Candidate:
        cfg = self.config
        bin_hz = front.bin_hz
        if not front.peaks or bin_hz <= 0.0:
            return _silent(self.name)

        if snapshot is not None and np.size(snapshot.magnitudes_db) > 0:
            n_bins = int(np.size(snapshot.magnitudes_db))
        else:
            n_bins = int(max(p.bin_index for p in front.peaks) + 2) * cfg.hps_harmonics

        harmonics = max(1, int(cfg.hps_harmonics))
        spec = self.pseudo_spectrum(front.peaks, bin_hz, n_bins)
        length = n_bins // harmonics
        k_min = int(math.ceil(cfg.min_frequency / bin_hz))
        if length <= k_min + 1:
            return _silent(self.name)

        acc = spec[:length].copy()
        for h in range(2, harmonics + 1):
            pooled = maximum_filter1d(spec, size=2 * (h // 2) + 1, mode="constant", cval=0.0)
            acc *= pooled[::h][:length]
        acc[:k_min] = 0.0

        idx = int(np.argmax(acc))
        peak_val = float(acc[idx])
        if peak_val <= 0.0:
            return _silent(self.name)

        mean_val = float(np.mean(acc[k_min:])) + 1e-12
        conf = float(np.clip((peak_val / mean_val - 1.0) / cfg.hps_confidence_scale, 0.0, 1.0))

        # Refine the bin centre with the interpolated frequency of the peak that landed there
        f0 = idx * bin_hz
        near = [p for p in front.peaks if abs(p.frequency / bin_hz - idx) <= 1.0]
        if near:
            f0 = max(near, key=lambda p: p.amplitude).frequency

        if not self.in_range(f0):
            return _silent(self.name)
        return F0Candidate(frequency=float(f0), confidence=conf, method=self.name)


class HarmonicPeakEstimator(BaseF0Estimator):
    """Scores sub-multiples of the strongest peaks by how many peaks they explain."""

    name = "harmonic_peaks"

    def _low_bias(self, f0: float) -> float:
        cfg = self.config
        span = math.log2(cfg.max_frequency / cfg.min_frequency)
        if span <= 0.0:
            return 1.0
        position = min(max(math.log2(f0 / cfg.min_frequency) / span, 0.0), 1.0)
        return 1.0 + cfg.low_frequency_bias * (1.0 - position)

    def score(self, f0: float, peaks: Sequence[Peak]) -> Tuple[float, int]:
        cfg = self.config
        score = 0.0
        found = 0
        for p in peaks:
            k, err = nearest_harmonic(p.frequency / f0)
            if k < 1 or k > cfg.max_harmonic:
                continue
            if err < cfg.harmonic_tolerance:
                score += p.amplitude / math.sqrt(k)
                found += 1
        if found >= 2:
            score *= 1.0 + cfg.harmonic_boost * found
        return score * self._low_bias(f0), found

    def candidates(self, peaks: Sequence[Peak]) -> List[float]:
        cfg = self.config
        out: List[float] = []
        for p in peaks[: cfg.top_peaks]:
            for d in cfg.candidate_divisors:
                f0 = p.frequency / float(d)
                if self.in_range(f0):
                    out.append(f0)
        return out

    def estimate(self, front: FrontEndOutput, snapshot: Optional[SpectralSnapshot] = None) -> F0Candidate:
        peaks = front.peaks
        if not peaks:
            return _silent(self.name)

        best_f0 = 0.0
        best_score = 0.0
        for f0 in self.candidates(peaks):
            s, _ = self.score(f0, peaks)
            if s > best_score:
                best_score = s
                best_f0 = f0

        if best_f0 <= 0.0:
            return _silent(self.name)
        conf = min(1.0, best_score / (len(peaks) * 0.5))
        return F0Candidate(frequency=float(best_f0), confidence=float(conf), method=self.name)


class AutocorrelationEstimator(BaseF0Estimator):
    """Time-domain ACF on the raw waveform; only consulted for low-register content."""

    name = "autocorrelation"

    def applies(self, front: FrontEndOutput, snapshot: Optional[SpectralSnapshot]) -> bool:
        if snapshot is None or snapshot.waveform is None or np.size(snapshot.waveform) == 0:
            return False
        if not front.peaks:
            return False
        lowest = min(p.frequency for p in front.peaks)
        return lowest < self.config.autocorr_trigger_hz

    def estimate(self, front: FrontEndOutput, snapshot: Optional[SpectralSnapshot] = None) -> F0Candidate:
        cfg = self.config
        if not self.applies(front, snapshot):
            return _silent(self.name)

        fmax = min(cfg.max_frequency, cfg.autocorr_max_frequency)
        f0, conf = _autocorr_pitch_single(
            snapshot.waveform,
            sr=int(snapshot.sample_rate),
            fmin=cfg.min_frequency,
            fmax=fmax,
            threshold=cfg.autocorr_min_correlation,
        )
        if f0 <= 0.0 or not self.in_range(f0):
            return _silent(self.name)
        return F0Candidate(frequency=f0, confidence=conf, method=self.name)
