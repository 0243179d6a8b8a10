# resonance/pipeline/noise_gate.py
"""
Two-state noise gate over a smoothed input level, with an adaptive noise
floor estimate and threshold calibration.
"""
from __future__ import annotations

import dataclasses
import logging
import math
from collections import deque
from typing import Deque, List, Optional

import numpy as np

from .calibration import CalibrationRun, CancellationToken, compute_stats
from .config import GateConfig
from .models import CalibrationResult, CalibrationStatus, GateResult
from .utils_config import clamp, clamp_section

logger = logging.getLogger(__name__)

_FLOOR_DB = -120.0
_CALIBRATION_SIGMAS = 2.0


def clamp_gate_config(config: GateConfig) -> GateConfig:
    """Clamp the runtime-tunable gate fields into their safe ranges."""
    return clamp_section(config, "gate")


class MovingAverage:
    def __init__(self, size: int = 5):
        self.values: Deque[float] = deque(maxlen=max(1, int(size)))

    def push(self, value: float) -> float:
        self.values.append(float(value))
        return self.average

    @property
    def average(self) -> float:
        if not self.values:
            return 0.0
        return float(sum(self.values) / len(self.values))

    def reset(self) -> None:
        self.values.clear()


class PeakHold:
    """Follows rises instantly, falls back toward the level geometrically."""

    def __init__(self, decay: float = 0.95):
        self.decay = decay
        self.peak: Optional[float] = None

    def update(self, value: float) -> float:
        if self.peak is None or value > self.peak:
            self.peak = value
        else:
            self.peak = value + (self.peak - value) * self.decay
        return self.peak

    def reset(self) -> None:
        self.peak = None


class NoiseFloorBuffer:
    """Fixed-capacity ring of quiet-level samples with a write cursor."""

    def __init__(self, capacity: int = 100):
        self._data = np.zeros((max(1, int(capacity)),), dtype=np.float64)
        self._cursor = 0
        self._count = 0

    def __len__(self) -> int:
        return self._count

    @property
    def capacity(self) -> int:
        return int(self._data.shape[0])

    def push(self, value: float) -> None:
        self._data[self._cursor] = value
        self._cursor = (self._cursor + 1) % self.capacity
        self._count = min(self._count + 1, self.capacity)

    def median(self) -> float:
        if self._count == 0:
            return float("nan")
        s = np.sort(self._data[: self._count])
        return float(s[self._count // 2])

    def clear(self) -> None:
        self._data[:] = 0.0
        self._cursor = 0
        self._count = 0


class NoiseGate:
    """
    CLOSED -> OPEN once the smoothed level has been above the threshold for
    the attack time (and at least that long after the last close).
    OPEN -> CLOSED once it has been below threshold - hysteresis for the
    release time, never sooner than the hold time after opening.
    """

    def __init__(self, config: Optional[GateConfig] = None):
        self.config = clamp_gate_config(config or GateConfig())
        cfg = self.config
        self._smoother = MovingAverage(cfg.smoothing_window)
        self._peak = PeakHold(cfg.peak_decay)
        self._noise = NoiseFloorBuffer(cfg.noise_window)
        self.noise_floor = cfg.threshold_db
        self.is_open = False
        self._opened_at = 0.0
        self._last_above_at = 0.0
        self._last_close_at: Optional[float] = None
        self._above_since: Optional[float] = None
        self._calibration: Optional[CalibrationRun] = None

    # ------------------------------------------------------------------
    # Parameters
    # ------------------------------------------------------------------
    @property
    def threshold(self) -> float:
        return self.config.threshold_db

    @property
    def close_threshold(self) -> float:
        return self.config.threshold_db - self.config.hysteresis_db

    @property
    def peak(self) -> float:
        return self._peak.peak if self._peak.peak is not None else _FLOOR_DB

    def apply_config(self, config: GateConfig) -> None:
        self.config = clamp_gate_config(config)
        self._peak.decay = self.config.peak_decay

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------
    def process(self, level_db: float, now_ms: float) -> GateResult:
        cfg = self.config
        level = float(level_db) if math.isfinite(level_db) else _FLOOR_DB
        smoothed = self._smoother.push(level)
        self._peak.update(smoothed)

        if smoothed < cfg.threshold_db - cfg.noise_margin_db:
            self._update_noise_floor(smoothed)

        if self._calibration is not None and not self._calibration.done:
            self._calibration.add_sample(smoothed, now_ms)

        # Re-read: calibration may have moved the threshold
        cfg = self.config
        if smoothed > cfg.threshold_db:
            if self._above_since is None:
                self._above_since = now_ms
        else:
            self._above_since = None

        if not self.is_open:
            self._maybe_open(now_ms)
        elif smoothed < self.close_threshold:
            self._maybe_close(now_ms)
        else:
            self._last_above_at = now_ms

        output = smoothed if self.is_open else min(smoothed, cfg.threshold_db - cfg.closed_attenuation_db)
        return GateResult(
            is_open=self.is_open,
            input_level=level,
            smoothed_level=smoothed,
            output_level=output,
            noise_floor=self.noise_floor,
            peak=self.peak,
        )

    def _maybe_open(self, now_ms: float) -> None:
        attack = self.config.attack_ms
        if self._above_since is None or now_ms - self._above_since < attack:
            return
        if self._last_close_at is not None and now_ms - self._last_close_at < attack:
            return
        self.is_open = True
        self._opened_at = now_ms
        self._last_above_at = now_ms
        logger.debug("gate open at %.1f ms", now_ms)

    def _maybe_close(self, now_ms: float) -> None:
        cfg = self.config
        if now_ms - self._opened_at < cfg.hold_ms:
            return
        if now_ms - self._last_above_at < cfg.release_ms:
            return
        self.is_open = False
        self._last_close_at = now_ms
        logger.debug("gate closed at %.1f ms", now_ms)

    def _update_noise_floor(self, level: float) -> None:
        cfg = self.config
        self._noise.push(level)
        if len(self._noise) >= cfg.noise_min_samples:
            blend = cfg.noise_blend
            self.noise_floor = self.noise_floor * (1.0 - blend) + self._noise.median() * blend

    # ------------------------------------------------------------------
    # Calibration
    # ------------------------------------------------------------------
    @property
    def calibration(self) -> Optional[CalibrationRun]:
        return self._calibration

    @property
    def is_calibrating(self) -> bool:
        return self._calibration is not None and not self._calibration.done

    def start_calibration(
        self,
        now_ms: float,
        duration_ms: Optional[float] = None,
        token: Optional[CancellationToken] = None,
    ) -> CalibrationRun:
        self.cancel_calibration()
        cfg = self.config
        self._calibration = CalibrationRun(
            start_ms=now_ms,
            duration_ms=duration_ms if duration_ms is not None else cfg.calibration_ms,
            finisher=self._finish_calibration,
            grace_ms=cfg.calibration_grace_ms,
            min_samples=cfg.calibration_min_samples,
            token=token,
            label="gate calibration",
        )
        return self._calibration

    def poll_calibration(self, now_ms: float) -> Optional[CalibrationResult]:
        if self._calibration is None:
            return None
        return self._calibration.poll(now_ms)

    def cancel_calibration(self) -> None:
        if self._calibration is not None and not self._calibration.done:
            self._calibration.cancel()

    def _finish_calibration(self, samples: List[float]) -> CalibrationResult:
        cfg = self.config
        stats = compute_stats(samples)
        suggested = stats.median + max(_CALIBRATION_SIGMAS * stats.std_dev, cfg.calibration_min_margin_db)
        threshold = clamp(suggested, *cfg.threshold_range)
        self.config = dataclasses.replace(cfg, threshold_db=threshold)
        self.noise_floor = stats.median
        logger.info(
            "gate calibration: noise floor %.1f dB, threshold %.1f dB", stats.median, threshold
        )
        return CalibrationResult(
            status=CalibrationStatus.COMPLETE,
            success=True,
            noise_floor=stats.median,
            threshold=threshold,
            stats=stats,
        )

    # ------------------------------------------------------------------
    def reset(self) -> None:
        self.cancel_calibration()
        self._calibration = None
        self._smoother.reset()
        self._peak.reset()
        self._noise.clear()
        self.noise_floor = self.config.threshold_db
        self.is_open = False
        self._opened_at = 0.0
        self._last_above_at = 0.0
        self._last_close_at = None
        self._above_since = None
