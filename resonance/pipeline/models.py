# resonance/pipeline/models.py
"""Dataclasses and enums shared by the tick pipeline.

Ephemeral values (peaks, candidates, profiles, per-tick results) are
recreated every tick. Persistent state lives on the owning component
and is never stored here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import numpy as np


@dataclass(frozen=True)
class Peak:
    frequency: float      # Hz, parabolic-interpolated
    amplitude: float      # 0..1, normalized from [noise floor, max dB]
    raw_level: float      # dB
    bin_index: int


@dataclass(eq=False)
class SpectralSnapshot:
    """One tick of input: log-magnitude per bin plus the matching waveform."""
    magnitudes_db: np.ndarray
    waveform: np.ndarray
    sample_rate: int
    fft_size: int

    @property
    def bin_hz(self) -> float:
        if self.fft_size <= 0:
            return 0.0
        return float(self.sample_rate) / float(self.fft_size)


@dataclass
class FrontEndOutput:
    peaks: List[Peak] = field(default_factory=list)
    rms: float = 0.0
    level_db: float = -70.0
    bin_hz: float = 0.0
    is_active: bool = False


@dataclass(frozen=True)
class F0Candidate:
    frequency: float
    confidence: float
    method: str

    @property
    def voiced(self) -> bool:
        return self.frequency > 0.0 and self.confidence > 0.0


@dataclass(frozen=True)
class HarmonicProfileEntry:
    harmonic_number: int
    frequency: float
    present: bool
    amplitude: float


@dataclass(frozen=True)
class PitchName:
    name: str             # e.g. "A4", "C#3"
    midi: int
    cents: float          # offset from the named note, -50..+50


@dataclass
class FundamentalEstimate:
    frequency: float = 0.0
    confidence: float = 0.0
    harmonic_profile: List[HarmonicProfileEntry] = field(default_factory=list)
    onset: bool = False
    method: str = "none"
    note: Optional[PitchName] = None


class GateState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class GateResult:
    is_open: bool
    input_level: float
    smoothed_level: float
    output_level: float
    noise_floor: float
    peak: float

    @property
    def state(self) -> GateState:
        return GateState.OPEN if self.is_open else GateState.CLOSED


@dataclass(frozen=True)
class Zone:
    name: str
    label: str
    min_hz: float
    max_hz: float

    @property
    def center_hz(self) -> float:
        return 0.5 * (self.min_hz + self.max_hz)

    @property
    def width(self) -> float:
        return self.max_hz - self.min_hz

    def contains(self, frequency: float) -> bool:
        return self.min_hz <= frequency < self.max_hz


@dataclass(frozen=True)
class DominantZone:
    name: str
    intensity: float


@dataclass(frozen=True)
class HarmonicContribution:
    source_zone: Optional[str]
    target_zone: str
    ratio: float
    strength: float


@dataclass
class RegionUpdate:
    intensities: Dict[str, float]
    dominant: Optional[DominantZone] = None
    contributions: List[HarmonicContribution] = field(default_factory=list)


@dataclass(frozen=True)
class CalibrationStats:
    median: float
    mean: float
    std_dev: float
    p25: float
    p75: float
    minimum: float
    maximum: float
    sample_count: int

    @property
    def iqr(self) -> float:
        return self.p75 - self.p25


class CalibrationStatus(str, Enum):
    IDLE = "idle"
    SAMPLING = "sampling"
    COMPLETE = "complete"
    FAILED = "failed"              # too few samples when the window closed
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class CalibrationResult:
    status: CalibrationStatus
    success: bool = False
    noise_floor: Optional[float] = None
    gain: Optional[float] = None
    threshold: Optional[float] = None
    stats: Optional[CalibrationStats] = None

    @property
    def cancelled(self) -> bool:
        return self.status == CalibrationStatus.CANCELLED

    @property
    def timed_out(self) -> bool:
        return self.status == CalibrationStatus.TIMED_OUT


@dataclass
class TickResult:
    """Everything renderers consume for one tick."""
    time_ms: float
    intensities: Dict[str, float]
    dominant: Optional[DominantZone] = None
    frequency: float = 0.0
    confidence: float = 0.0
    harmonic_profile: List[HarmonicProfileEntry] = field(default_factory=list)
    gate_open: bool = False
    onset: bool = False
    note: Optional[PitchName] = None
    level_db: float = -70.0
    peaks: List[Peak] = field(default_factory=list)
    contributions: List[HarmonicContribution] = field(default_factory=list)
    meter_level: float = -100.0     # input meter average, dB
    meter_peak: float = -100.0

    def as_dict(self) -> Dict[str, object]:
        return {
            "time_ms": round(self.time_ms, 3),
            "intensities": {k: round(v, 4) for k, v in self.intensities.items()},
            "dominant": None if self.dominant is None else {
                "name": self.dominant.name,
                "intensity": round(self.dominant.intensity, 4),
            },
            "frequency": round(self.frequency, 3),
            "confidence": round(self.confidence, 4),
            "note": None if self.note is None else {"name": self.note.name, "cents": round(self.note.cents, 1)},
            "harmonics": [h.harmonic_number for h in self.harmonic_profile if h.present],
            "gate_open": self.gate_open,
            "onset": self.onset,
            "level_db": round(self.level_db, 2),
            "n_peaks": len(self.peaks),
            "contributions": [
                {"from": c.source_zone, "to": c.target_zone, "ratio": c.ratio, "strength": round(c.strength, 4)}
                for c in self.contributions
            ],
            "meter": {"level": round(self.meter_level, 2), "peak": round(self.meter_peak, 2)},
        }
