"""Pipeline package initializer.

Re-exports the tick-driven analysis core so callers can write
``from resonance.pipeline import ResonanceSession, PipelineConfig``.
"""

from __future__ import annotations

from .analyser import SpectrumAnalyser
from .calibration import Calibration, CalibrationRun, CancellationToken, LevelMeter
from .config import (
    ZONES,
    ZONE_NAMES,
    AnalyserConfig,
    CalibrationConfig,
    FundamentalConfig,
    GateConfig,
    PipelineConfig,
    RegionConfig,
    SpectrumConfig,
)
from .fundamental import FundamentalEstimator
from .models import (
    CalibrationResult,
    CalibrationStatus,
    Peak,
    SpectralSnapshot,
    TickResult,
)
from .noise_gate import NoiseGate
from .regions import RegionMapper
from .session import ResonanceSession
from .spectral import SpectralFrontEnd

__all__ = [
    "ZONES",
    "ZONE_NAMES",
    "AnalyserConfig",
    "Calibration",
    "CalibrationConfig",
    "CalibrationResult",
    "CalibrationRun",
    "CalibrationStatus",
    "CancellationToken",
    "FundamentalConfig",
    "FundamentalEstimator",
    "GateConfig",
    "LevelMeter",
    "NoiseGate",
    "Peak",
    "PipelineConfig",
    "RegionConfig",
    "RegionMapper",
    "ResonanceSession",
    "SpectralFrontEnd",
    "SpectralSnapshot",
    "SpectrumAnalyser",
    "SpectrumConfig",
    "TickResult",
]
