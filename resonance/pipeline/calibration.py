# resonance/pipeline/calibration.py
"""
Ambient calibration.

A calibration is a ``CalibrationRun``: an explicit state machine fed by the
tick loop (``add_sample`` / ``poll``) that resolves exactly once as
COMPLETE, FAILED, CANCELLED or TIMED_OUT. The deadline is part of the run,
so a stalled loop still resolves it; ``wait()`` is the asyncio-facing,
time-bounded view of the same state.
"""
from __future__ import annotations

import asyncio
import logging
import math
from collections import deque
from typing import Callable, Deque, List, Optional, Sequence, Tuple

import numpy as np

from .config import CalibrationConfig
from .models import CalibrationResult, CalibrationStats, CalibrationStatus
from .utils_config import clamp

logger = logging.getLogger(__name__)

Finisher = Callable[[List[float]], CalibrationResult]


class CancellationToken:
    """One-shot cancellation flag with callbacks."""

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def add_callback(self, fn: Callable[[], None]) -> None:
        if self._cancelled:
            fn()
        else:
            self._callbacks.append(fn)

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for fn in callbacks:
            fn()


class CalibrationRun:
    """
    Sampling window of ``duration_ms`` starting at ``start_ms``.

    States: IDLE (before the first sample or poll), SAMPLING, then exactly
    one terminal state. Samples arriving after the window closes are
    ignored; a poll past the window finishes the run, a poll past
    ``start + duration + grace`` times it out instead.
    """

    def __init__(
        self,
        start_ms: float,
        duration_ms: float,
        finisher: Finisher,
        grace_ms: float = 1000.0,
        min_samples: int = 10,
        token: Optional[CancellationToken] = None,
        label: str = "calibration",
    ):
        if duration_ms <= 0:
            raise ValueError(f"duration_ms must be positive, got {duration_ms}")
        self.start_ms = float(start_ms)
        self.duration_ms = float(duration_ms)
        self.grace_ms = float(grace_ms)
        self.min_samples = int(min_samples)
        self.label = label
        self.samples: List[float] = []
        self.status = CalibrationStatus.IDLE
        self._finisher = finisher
        self._result: Optional[CalibrationResult] = None
        self._last_ms = self.start_ms
        self._future: Optional[asyncio.Future] = None
        self._done_callbacks: List[Callable[[CalibrationResult], None]] = []
        self.token = token or CancellationToken()
        self.token.add_callback(self._on_cancel)

    @property
    def end_ms(self) -> float:
        return self.start_ms + self.duration_ms

    @property
    def deadline_ms(self) -> float:
        return self.end_ms + self.grace_ms

    @property
    def done(self) -> bool:
        return self._result is not None

    @property
    def result(self) -> Optional[CalibrationResult]:
        return self._result

    @property
    def progress(self) -> float:
        if self.done and self.status == CalibrationStatus.COMPLETE:
            return 1.0
        return float(min(max((self._last_ms - self.start_ms) / self.duration_ms, 0.0), 1.0))

    def add_done_callback(self, fn: Callable[[CalibrationResult], None]) -> None:
        if self._result is not None:
            fn(self._result)
        else:
            self._done_callbacks.append(fn)

    def add_sample(self, level_db: float, now_ms: float) -> Optional[CalibrationResult]:
        if self.done:
            return self._result
        if now_ms < self.end_ms and math.isfinite(level_db):
            self.status = CalibrationStatus.SAMPLING
            self.samples.append(float(level_db))
        return self.poll(now_ms)

    def poll(self, now_ms: float) -> Optional[CalibrationResult]:
        if self.done:
            return self._result
        self._last_ms = max(self._last_ms, float(now_ms))
        if self.status == CalibrationStatus.IDLE:
            self.status = CalibrationStatus.SAMPLING

        if now_ms >= self.deadline_ms:
            self._resolve(CalibrationResult(status=CalibrationStatus.TIMED_OUT))
        elif now_ms >= self.end_ms:
            self._finish()
        return self._result

    def cancel(self) -> None:
        self.token.cancel()

    def _on_cancel(self) -> None:
        self._resolve(CalibrationResult(status=CalibrationStatus.CANCELLED))

    def _finish(self) -> None:
        if len(self.samples) < self.min_samples:
            logger.warning(
                "%s: only %d samples (need %d); no recommendation",
                self.label, len(self.samples), self.min_samples,
            )
            self._resolve(CalibrationResult(status=CalibrationStatus.FAILED))
            return
        self._resolve(self._finisher(list(self.samples)))

    def _resolve(self, result: CalibrationResult) -> bool:
        if self._result is not None:
            return False
        self._result = result
        self.status = result.status
        logger.info("%s resolved: %s", self.label, result.status.value)
        if self._future is not None and not self._future.done():
            self._future.set_result(result)
        callbacks, self._done_callbacks = self._done_callbacks, []
        for fn in callbacks:
            fn(result)
        return True

    async def wait(self, timeout_s: Optional[float] = None) -> CalibrationResult:
        """
        Wait for the run to resolve. The wait is bounded by ``timeout_s`` or,
        when omitted, by the time left until the deadline as of the last
        observed tick. Expiry resolves the run as TIMED_OUT.
        """
        if self._result is not None:
            return self._result
        if self._future is None:
            self._future = asyncio.get_running_loop().create_future()
        if timeout_s is None:
            timeout_s = (self.deadline_ms - self._last_ms) / 1000.0
        try:
            return await asyncio.wait_for(asyncio.shield(self._future), timeout=max(0.0, timeout_s))
        except asyncio.TimeoutError:
            self._resolve(CalibrationResult(status=CalibrationStatus.TIMED_OUT))
            return self._result


# --------------------------------------------------------------------------------------
# Statistics and recommendations
# --------------------------------------------------------------------------------------
def compute_stats(samples: Sequence[float]) -> CalibrationStats:
    arr = np.asarray(samples, dtype=np.float64).reshape(-1)
    arr = arr[np.isfinite(arr)]
    n = int(arr.size)
    if n == 0:
        raise ValueError("compute_stats needs at least one finite sample")
    s = np.sort(arr)
    return CalibrationStats(
        median=float(s[n // 2]),
        mean=float(np.mean(s)),
        std_dev=float(np.std(s)),
        p25=float(s[int(math.floor(0.25 * n))]),
        p75=float(s[min(n - 1, int(math.floor(0.75 * n)))]),
        minimum=float(s[0]),
        maximum=float(s[-1]),
        sample_count=n,
    )


def _round_half_up(x: float) -> float:
    return float(math.floor(x + 0.5))


def recommend_noise_floor(stats: CalibrationStats, config: Optional[CalibrationConfig] = None) -> float:
    cfg = config or CalibrationConfig()
    candidate = max(
        stats.median + cfg.stddev_factor * stats.std_dev,
        stats.median + cfg.iqr_factor * stats.iqr,
        stats.median + cfg.min_margin_db,
    )
    lo, hi = cfg.noise_floor_range
    return clamp(_round_half_up(candidate), lo, hi)


def recommend_gain(stats: CalibrationStats, gain: float, config: Optional[CalibrationConfig] = None) -> float:
    """Boost in very quiet rooms, cut in loud ones, otherwise keep ``gain``."""
    cfg = config or CalibrationConfig()
    if stats.maximum < cfg.quiet_level_db:
        return clamp(gain * cfg.quiet_boost, *cfg.quiet_gain_range)
    if stats.maximum > cfg.loud_level_db:
        return clamp(gain * cfg.loud_cut, *cfg.loud_gain_range)
    return gain


class Calibration:
    """Session-level ambient calibration producing noise floor and gain suggestions."""

    def __init__(self, config: Optional[CalibrationConfig] = None):
        self.config = config or CalibrationConfig()
        self.gain = self.config.default_gain
        self.run: Optional[CalibrationRun] = None

    @property
    def is_calibrating(self) -> bool:
        return self.run is not None and not self.run.done

    def start_calibration(
        self,
        now_ms: float,
        duration_ms: Optional[float] = None,
        token: Optional[CancellationToken] = None,
    ) -> CalibrationRun:
        # A new run preempts the outstanding one
        self.cancel()
        cfg = self.config
        self.run = CalibrationRun(
            start_ms=now_ms,
            duration_ms=duration_ms if duration_ms is not None else cfg.duration_ms,
            finisher=self._finish,
            grace_ms=cfg.grace_ms,
            min_samples=cfg.min_samples,
            token=token,
            label="ambient calibration",
        )
        return self.run

    def process_sample(self, level_db: float, now_ms: float) -> Optional[CalibrationResult]:
        if self.run is None:
            return None
        return self.run.add_sample(level_db, now_ms)

    def poll(self, now_ms: float) -> Optional[CalibrationResult]:
        if self.run is None:
            return None
        return self.run.poll(now_ms)

    def cancel(self) -> None:
        if self.run is not None and not self.run.done:
            self.run.cancel()

    def reset(self) -> None:
        self.cancel()
        self.run = None
        self.gain = self.config.default_gain

    def _finish(self, samples: List[float]) -> CalibrationResult:
        stats = compute_stats(samples)
        noise_floor = recommend_noise_floor(stats, self.config)
        self.gain = recommend_gain(stats, self.gain, self.config)
        logger.info(
            "ambient calibration: median %.1f dB, sd %.1f dB -> noise floor %.0f dB, gain %.2f",
            stats.median, stats.std_dev, noise_floor, self.gain,
        )
        return CalibrationResult(
            status=CalibrationStatus.COMPLETE,
            success=True,
            noise_floor=noise_floor,
            gain=self.gain,
            stats=stats,
        )


class LevelMeter:
    """Input-level display: moving average plus a falling peak marker."""

    def __init__(self, config: Optional[CalibrationConfig] = None):
        self.config = config or CalibrationConfig()
        self._window: Deque[float] = deque(maxlen=max(1, int(self.config.meter_window)))
        self.peak = self.config.meter_floor_db
        self._last_ms: Optional[float] = None

    def update(self, level_db: float, now_ms: float) -> Tuple[float, float]:
        cfg = self.config
        level = float(level_db) if math.isfinite(level_db) else cfg.meter_floor_db
        level = max(level, cfg.meter_floor_db)
        self._window.append(level)
        average = float(np.mean(self._window))

        if self._last_ms is not None:
            fall = cfg.meter_peak_fall_db_per_ms * max(0.0, now_ms - self._last_ms)
            self.peak = max(cfg.meter_floor_db, self.peak - fall)
        self._last_ms = float(now_ms)
        self.peak = max(self.peak, level)
        return average, self.peak

    def reset(self) -> None:
        self._window.clear()
        self.peak = self.config.meter_floor_db
        self._last_ms = None
