from typing import Dict, Tuple
from dataclasses import dataclass, field

from .models import Zone


# ------------------------------------------------------------
# Zone table (30 Hz .. 2 kHz, half-open, low -> high)
# ------------------------------------------------------------

ZONES: Tuple[Zone, ...] = (
    Zone(name="root", label="Root", min_hz=30.0, max_hz=120.0),
    Zone(name="sacral", label="Sacral", min_hz=120.0, max_hz=220.0),
    Zone(name="solar", label="Solar Plexus", min_hz=220.0, max_hz=330.0),
    Zone(name="heart", label="Heart", min_hz=330.0, max_hz=440.0),
    Zone(name="throat", label="Throat", min_hz=440.0, max_hz=550.0),
    Zone(name="thirdEye", label="Third Eye", min_hz=550.0, max_hz=880.0),
    Zone(name="crown", label="Crown", min_hz=880.0, max_hz=2000.0),
)

ZONE_NAMES: Tuple[str, ...] = tuple(z.name for z in ZONES)


# ------------------------------------------------------------
# Spectral front end (peak picking)
# ------------------------------------------------------------

@dataclass(frozen=True)
class SpectrumConfig:
    min_db: float = -70.0
    max_db: float = -10.0
    noise_floor_db: float = -55.0

    # Analysis band; 2 bins at each edge are never peaks
    min_frequency: float = 20.0
    max_frequency: float = 2100.0
    edge_bins: int = 2

    max_peaks: int = 24

    # Input sensitivity, applied before peak picking
    gain: float = 1.0


# ------------------------------------------------------------
# Fundamental estimation (HPS + harmonic peaks + ACF, tracking)
# ------------------------------------------------------------

@dataclass(frozen=True)
class FundamentalConfig:
    min_frequency: float = 25.0
    max_frequency: float = 2100.0

    # Harmonic product spectrum
    hps_harmonics: int = 5
    hps_confidence_scale: float = 5.0

    # Peak-harmonic scoring
    top_peaks: int = 6
    candidate_divisors: Tuple[int, ...] = (1, 2, 3, 4)
    harmonic_tolerance: float = 0.03
    max_harmonic: int = 12
    harmonic_boost: float = 0.1
    low_frequency_bias: float = 0.1

    # Autocorrelation (low register only)
    autocorr_trigger_hz: float = 200.0
    autocorr_max_frequency: float = 500.0
    autocorr_min_correlation: float = 0.3

    # Onset
    onset_ratio: float = 3.0
    min_onset_rms: float = 1e-4

    # Cross-method combination (tuned on bowls / voice / monochord)
    candidate_floor: float = 0.05
    agreement_tolerance: float = 0.08
    agreement_boost: float = 0.1
    lower_preference_ratio: float = 1.2

    # Temporal tracking
    octave_tolerance: float = 0.05
    octave_override_ratio: float = 1.5
    base_alpha: float = 0.3
    alpha_confidence_gain: float = 0.4
    confidence_retention: float = 0.7
    track_floor: float = 0.1

    # Harmonic presence profile
    profile_harmonics: int = 12
    profile_tolerance: float = 0.04


# ------------------------------------------------------------
# Noise gate
# ------------------------------------------------------------

@dataclass(frozen=True)
class GateConfig:
    threshold_db: float = -55.0
    hysteresis_db: float = 5.0       # wide enough to avoid chatter in reverberant rooms
    attack_ms: float = 10.0
    release_ms: float = 100.0
    hold_ms: float = 50.0

    smoothing_window: int = 5
    peak_decay: float = 0.95
    closed_attenuation_db: float = 20.0

    # Adaptive noise floor
    noise_window: int = 100
    noise_min_samples: int = 10
    noise_margin_db: float = 10.0
    noise_blend: float = 0.05

    # Threshold calibration
    calibration_ms: float = 2000.0
    calibration_grace_ms: float = 1000.0
    calibration_min_samples: int = 10
    calibration_min_margin_db: float = 5.0
    threshold_range: Tuple[float, float] = (-70.0, -30.0)


# ------------------------------------------------------------
# Region mapper
# ------------------------------------------------------------

@dataclass(frozen=True)
class RegionConfig:
    zones: Tuple[Zone, ...] = ZONES

    intensity_multiplier: float = 1.0
    edge_falloff: float = 0.3
    blend_fraction: float = 0.18

    # Harmonic bleed into related zones
    bleed_ratios: Tuple[float, ...] = (0.5, 2.0, 3.0, 4.0, 5.0, 6.0)
    bleed_min_amplitude: float = 0.3
    bleed_gain: float = 0.3
    bleed_floor: float = 0.1

    # Envelope time constants (ms)
    attack_ms: float = 100.0
    decay_ms: float = 300.0
    min_intensity: float = 0.0
    max_intensity: float = 0.95

    # Dominant zone hysteresis
    peak_threshold: float = 0.3
    switch_margin: float = 0.18
    switch_hold_ms: float = 450.0


# ------------------------------------------------------------
# Ambient calibration
# ------------------------------------------------------------

@dataclass(frozen=True)
class CalibrationConfig:
    duration_ms: float = 3000.0
    grace_ms: float = 1000.0
    min_samples: int = 10

    stddev_factor: float = 2.0
    iqr_factor: float = 1.5
    min_margin_db: float = 5.0
    noise_floor_range: Tuple[float, float] = (-70.0, -30.0)

    default_gain: float = 1.0
    quiet_level_db: float = -50.0
    quiet_boost: float = 1.5
    quiet_gain_range: Tuple[float, float] = (1.0, 2.5)
    loud_level_db: float = -20.0
    loud_cut: float = 0.7
    loud_gain_range: Tuple[float, float] = (0.5, 1.5)

    # Level meter
    meter_window: int = 30
    meter_peak_fall_db_per_ms: float = 0.05
    meter_floor_db: float = -100.0


# ------------------------------------------------------------
# Waveform -> snapshot analyser (used by the CLI and tests)
# ------------------------------------------------------------

@dataclass(frozen=True)
class AnalyserConfig:
    fft_size: int = 8192
    smoothing_time_constant: float = 0.8


@dataclass(frozen=True)
class PipelineConfig:
    spectrum: SpectrumConfig = field(default_factory=SpectrumConfig)
    fundamental: FundamentalConfig = field(default_factory=FundamentalConfig)
    gate: GateConfig = field(default_factory=GateConfig)
    regions: RegionConfig = field(default_factory=RegionConfig)
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)
    analyser: AnalyserConfig = field(default_factory=AnalyserConfig)


# Runtime-tunable parameters and their clamp ranges (dotted paths into PipelineConfig)
PARAMETER_RANGES: Dict[str, Tuple[float, float]] = {
    "spectrum.gain": (0.1, 3.0),
    "spectrum.noise_floor_db": (-80.0, -20.0),
    "gate.threshold_db": (-80.0, -20.0),
    "gate.hysteresis_db": (1.0, 10.0),
    "gate.attack_ms": (1.0, 100.0),
    "gate.release_ms": (10.0, 500.0),
    "gate.hold_ms": (0.0, 200.0),
    "regions.attack_ms": (10.0, 1000.0),
    "regions.decay_ms": (20.0, 3000.0),
    "regions.switch_margin": (0.0, 1.0),
    "regions.switch_hold_ms": (0.0, 2000.0),
    "regions.intensity_multiplier": (0.1, 3.0),
}

# Short names accepted by ResonanceSession.tune()
PARAMETER_ALIASES: Dict[str, str] = {
    "gain": "spectrum.gain",
    "noise_floor": "spectrum.noise_floor_db",
    "threshold": "gate.threshold_db",
    "hysteresis": "gate.hysteresis_db",
    "gate_attack": "gate.attack_ms",
    "gate_release": "gate.release_ms",
    "gate_hold": "gate.hold_ms",
    "zone_attack": "regions.attack_ms",
    "zone_decay": "regions.decay_ms",
    "switch_margin": "regions.switch_margin",
    "switch_hold": "regions.switch_hold_ms",
    "intensity": "regions.intensity_multiplier",
}
