# resonance/pipeline/session.py
"""
One analysis session: owns every component and runs them in a fixed order
per tick (front end -> fundamental -> gate -> regions).
"""
from __future__ import annotations

import dataclasses
import logging
import math
import time
from typing import Any, Dict, Mapping, Optional

from .calibration import Calibration, CalibrationRun, CancellationToken, LevelMeter
from .config import PipelineConfig
from .fundamental import FundamentalEstimator, harmonic_profile
from .instrumentation import SessionLogger
from .models import CalibrationResult, SpectralSnapshot, TickResult
from .noise_gate import NoiseGate
from .regions import RegionMapper
from .spectral import SpectralFrontEnd
from .utils_config import apply_dotted_overrides

logger = logging.getLogger(__name__)


class ResonanceSession:
    """
    Tick-driven analysis core.

    The session clock is the sum of the ``dt_ms`` values passed to ``tick``;
    nothing reads the wall clock except optional timing instrumentation.
    """

    def __init__(self, config: Optional[PipelineConfig] = None, session_logger: Optional[SessionLogger] = None):
        self.config = config or PipelineConfig()
        self.session_logger = session_logger
        cfg = self.config

        self.front_end = SpectralFrontEnd(cfg.spectrum)
        self.estimator = FundamentalEstimator(cfg.fundamental)
        self.gate = NoiseGate(cfg.gate)
        self.mapper = RegionMapper(cfg.regions)
        self.calibration = Calibration(cfg.calibration)
        self.meter = LevelMeter(cfg.calibration)

        self.now_ms = 0.0
        self._gate_was_open = False
        self._last_dominant: Optional[str] = None

        if self.session_logger:
            self.session_logger.emit_config("session", self.config)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------
    def _silent_result(self) -> TickResult:
        return TickResult(
            time_ms=self.now_ms,
            intensities={z.name: 0.0 for z in self.mapper.zones},
            harmonic_profile=harmonic_profile(0.0, [], self.config.fundamental.profile_harmonics),
            level_db=self.config.spectrum.min_db,
        )

    def tick(self, snapshot: Optional[SpectralSnapshot], dt_ms: float) -> TickResult:
        dt = float(dt_ms) if dt_ms is not None and math.isfinite(dt_ms) and dt_ms > 0 else 0.0
        self.now_ms += dt
        now = self.now_ms

        if snapshot is None:
            # Nothing acquired this tick; only calibration deadlines advance
            self._poll_calibrations(now)
            return self._silent_result()

        t0 = time.perf_counter()
        front = self.front_end.process(snapshot)
        estimate = self.estimator.update(front, snapshot)
        gate = self.gate.process(front.level_db, now)
        regions = self.mapper.update(front.peaks if front.is_active else [], gate.is_open, dt, now)

        self.calibration.process_sample(front.level_db, now)
        meter_level, meter_peak = self.meter.update(front.level_db, now)

        result = TickResult(
            time_ms=now,
            intensities=regions.intensities,
            dominant=regions.dominant,
            frequency=estimate.frequency,
            confidence=estimate.confidence,
            harmonic_profile=estimate.harmonic_profile,
            gate_open=gate.is_open,
            onset=estimate.onset,
            note=estimate.note,
            level_db=front.level_db,
            peaks=front.peaks,
            contributions=regions.contributions,
            meter_level=meter_level,
            meter_peak=meter_peak,
        )
        self._log_transitions(result, gate.smoothed_level)
        if self.session_logger:
            self.session_logger.record_timing("tick", time.perf_counter() - t0)
        return result

    def _poll_calibrations(self, now_ms: float) -> None:
        self.calibration.poll(now_ms)
        self.gate.poll_calibration(now_ms)

    def _log_transitions(self, result: TickResult, smoothed_level: float) -> None:
        sl = self.session_logger
        if result.gate_open != self._gate_was_open:
            self._gate_was_open = result.gate_open
            if sl:
                sl.log_event("gate", "gate_open" if result.gate_open else "gate_close",
                             {"time_ms": result.time_ms, "level_db": smoothed_level})

        name = result.dominant.name if result.dominant is not None else None
        if name is not None and name != self._last_dominant:
            if sl:
                sl.log_event("regions", "dominant_switch",
                             {"time_ms": result.time_ms, "from": self._last_dominant, "to": name})
            self._last_dominant = name

        if result.onset and sl:
            sl.log_event("fundamental", "onset", {"time_ms": result.time_ms})

    # ------------------------------------------------------------------
    # Calibration
    # ------------------------------------------------------------------
    def start_calibration(
        self,
        duration_ms: Optional[float] = None,
        token: Optional[CancellationToken] = None,
    ) -> CalibrationRun:
        """Ambient calibration; on success the noise floor and gain are applied."""
        # Gain recommendations start from the gain currently in use
        self.calibration.gain = self.config.spectrum.gain
        run = self.calibration.start_calibration(self.now_ms, duration_ms, token)
        run.add_done_callback(self._on_ambient_calibration)
        return run

    def start_gate_calibration(
        self,
        duration_ms: Optional[float] = None,
        token: Optional[CancellationToken] = None,
    ) -> CalibrationRun:
        run = self.gate.start_calibration(self.now_ms, duration_ms, token)
        run.add_done_callback(self._on_gate_calibration)
        return run

    def cancel_calibration(self) -> None:
        self.calibration.cancel()
        self.gate.cancel_calibration()

    def _on_ambient_calibration(self, result: CalibrationResult) -> None:
        self._log_calibration("ambient", result)
        if result.success:
            self.tune_dotted({
                "spectrum.noise_floor_db": result.noise_floor,
                "gate.threshold_db": result.noise_floor,
                "spectrum.gain": result.gain,
            })

    def _on_gate_calibration(self, result: CalibrationResult) -> None:
        self._log_calibration("gate", result)
        if result.success:
            # The gate already moved its threshold; keep the session config in step
            self.config = dataclasses.replace(self.config, gate=self.gate.config)

    def _log_calibration(self, kind: str, result: CalibrationResult) -> None:
        if self.session_logger:
            self.session_logger.log_event("calibration", "calibration_resolved", {
                "kind": kind,
                "status": result.status.value,
                "noise_floor": result.noise_floor,
                "threshold": result.threshold,
                "gain": result.gain,
            })

    # ------------------------------------------------------------------
    # Runtime tuning
    # ------------------------------------------------------------------
    def tune(self, **overrides: Any) -> PipelineConfig:
        """Short-name tuning, e.g. ``tune(gain=1.5, gate_hold=80)``."""
        return self.tune_dotted(overrides)

    def tune_dotted(self, overrides: Mapping[str, Any]) -> PipelineConfig:
        new = apply_dotted_overrides(self.config, overrides)
        self._push_config(new)
        if self.session_logger:
            self.session_logger.log_event("session", "config", {"overrides": dict(overrides)})
        return self.config

    def _push_config(self, new: PipelineConfig) -> None:
        old = self.config
        self.config = new
        if new.spectrum != old.spectrum:
            self.front_end.apply_config(new.spectrum)
        if new.fundamental != old.fundamental:
            self.estimator.apply_config(new.fundamental)
        if new.gate != old.gate:
            self.gate.apply_config(new.gate)
        if new.regions != old.regions:
            self.mapper.apply_config(new.regions)

    @property
    def parameters(self) -> Dict[str, Any]:
        return dataclasses.asdict(self.config)

    # ------------------------------------------------------------------
    def reset(self) -> None:
        """Clear every component's state and cancel outstanding calibrations."""
        self.cancel_calibration()
        self.estimator.reset()
        self.gate.reset()
        self.mapper.reset()
        self.calibration.reset()
        self.meter.reset()
        self.now_ms = 0.0
        self._gate_was_open = False
        self._last_dominant = None
        logger.debug("session reset")
