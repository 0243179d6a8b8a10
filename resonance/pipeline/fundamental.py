# resonance/pipeline/fundamental.py
"""
Fundamental frequency tracking.

Three independent estimators (harmonic product spectrum, harmonic-peak
scoring, low-register autocorrelation) vote every tick. The strongest
candidate is combined with its runner-up when the two agree harmonically,
then folded into a smoothed track that resists octave jumps and snaps to
a new pitch on onsets.
"""
from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from .config import FundamentalConfig
from .detectors import (
    NO_PITCH,
    AutocorrelationEstimator,
    BaseF0Estimator,
    HarmonicPeakEstimator,
    HPSEstimator,
    nearest_harmonic,
)
from .models import (
    F0Candidate,
    FrontEndOutput,
    FundamentalEstimate,
    HarmonicProfileEntry,
    Peak,
    SpectralSnapshot,
)
from .tuner import describe_pitch

logger = logging.getLogger(__name__)

__all__ = ["FundamentalEstimator", "combine_candidates", "harmonic_profile"]


def combine_candidates(candidates: Sequence[F0Candidate], config: FundamentalConfig) -> Optional[F0Candidate]:
    """
    Pick one estimate from the per-method candidates.

    When the two most confident candidates are harmonically related they
    corroborate each other: the lower one wins (if it is not far less
    confident) and the confidence gets a small boost.
    """
    pool = [c for c in candidates if c.voiced and c.confidence > config.candidate_floor]
    if not pool:
        return None
    pool.sort(key=lambda c: c.confidence, reverse=True)
    top = pool[0]
    if len(pool) < 2:
        return top

    second = pool[1]
    lower, higher = sorted((top, second), key=lambda c: c.frequency)
    k, err = nearest_harmonic(higher.frequency / lower.frequency)
    if k < 1 or err >= config.agreement_tolerance:
        return top

    confidence = min(1.0, top.confidence * (1.0 + config.agreement_boost))
    if lower is top or lower.confidence * config.lower_preference_ratio >= top.confidence:
        chosen = lower
    else:
        chosen = top
    return F0Candidate(
        frequency=chosen.frequency,
        confidence=confidence,
        method=f"{top.method}+{second.method}",
    )


def harmonic_profile(fundamental: float, peaks: Sequence[Peak], n_harmonics: int = 12, tolerance: float = 0.04) -> List[HarmonicProfileEntry]:
    entries: List[HarmonicProfileEntry] = []
    for h in range(1, n_harmonics + 1):
        if fundamental <= 0.0:
            entries.append(HarmonicProfileEntry(harmonic_number=h, frequency=0.0, present=False, amplitude=0.0))
            continue
        fh = h * fundamental
        matches = [p.amplitude for p in peaks if abs(p.frequency - fh) / fh < tolerance]
        entries.append(HarmonicProfileEntry(
            harmonic_number=h,
            frequency=fh,
            present=bool(matches),
            amplitude=max(matches) if matches else 0.0,
        ))
    return entries


class FundamentalEstimator:
    """Owns the fundamental track (frequency, confidence, previous RMS)."""

    def __init__(
        self,
        config: Optional[FundamentalConfig] = None,
        estimators: Optional[List[BaseF0Estimator]] = None,
    ):
        self.config = config or FundamentalConfig()
        self.estimators: List[BaseF0Estimator] = estimators or [
            HPSEstimator(self.config),
            HarmonicPeakEstimator(self.config),
            AutocorrelationEstimator(self.config),
        ]
        self.tracked_frequency = 0.0
        self.confidence = 0.0
        self.previous_rms = 0.0
        self.method = NO_PITCH

    def apply_config(self, config: FundamentalConfig) -> None:
        self.config = config
        for est in self.estimators:
            est.config = config

    def reset(self) -> None:
        self.tracked_frequency = 0.0
        self.confidence = 0.0
        self.previous_rms = 0.0
        self.method = NO_PITCH

    def detect_onset(self, rms: float) -> bool:
        cfg = self.config
        if rms < cfg.min_onset_rms:
            return False
        if self.previous_rms < cfg.min_onset_rms:
            # rising out of silence
            return True
        return rms / self.previous_rms > cfg.onset_ratio

    def _decay(self) -> None:
        self.confidence *= self.config.confidence_retention
        if self.confidence < self.config.track_floor:
            self.tracked_frequency = 0.0
            self.confidence = 0.0
            self.method = NO_PITCH

    def _is_octave_jump(self, estimate: F0Candidate) -> bool:
        cfg = self.config
        if self.tracked_frequency <= 0.0:
            return False
        k, err = nearest_harmonic(estimate.frequency / self.tracked_frequency)
        if k < 2 or err >= cfg.octave_tolerance:
            return False
        return estimate.confidence < cfg.octave_override_ratio * self.confidence

    def track(self, estimate: Optional[F0Candidate]) -> None:
        cfg = self.config
        if estimate is None or self._is_octave_jump(estimate):
            self._decay()
            return

        if self.tracked_frequency > 0.0:
            alpha = cfg.base_alpha + cfg.alpha_confidence_gain * estimate.confidence
            self.tracked_frequency = self.tracked_frequency * (1.0 - alpha) + estimate.frequency * alpha
        else:
            self.tracked_frequency = estimate.frequency

        keep = cfg.confidence_retention
        self.confidence = keep * self.confidence + (1.0 - keep) * estimate.confidence
        self.method = estimate.method

    def update(self, front: FrontEndOutput, snapshot: Optional[SpectralSnapshot] = None) -> FundamentalEstimate:
        cfg = self.config
        onset = self.detect_onset(front.rms)
        self.previous_rms = front.rms
        if onset:
            logger.debug("onset at rms=%.5f; fundamental track cleared", front.rms)
            self.tracked_frequency = 0.0
            self.confidence = 0.0

        candidates = [est.estimate(front, snapshot) for est in self.estimators]
        self.track(combine_candidates(candidates, cfg))

        f0 = self.tracked_frequency
        return FundamentalEstimate(
            frequency=f0,
            confidence=self.confidence,
            harmonic_profile=harmonic_profile(f0, front.peaks, cfg.profile_harmonics, cfg.profile_tolerance),
            onset=onset,
            method=self.method,
            note=describe_pitch(f0),
        )
