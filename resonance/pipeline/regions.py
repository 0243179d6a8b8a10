# resonance/pipeline/regions.py
"""
Maps spectral peaks onto the seven frequency zones.

Each tick builds a per-zone target from the peaks (primary zone with edge
falloff, boundary blending into the neighbouring zone, harmonic bleed into
related zones), eases the zone intensities toward it with separate attack
and decay time constants, then picks a dominant zone with hysteresis.
"""
from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional, Sequence, Tuple

from .config import RegionConfig
from .models import DominantZone, HarmonicContribution, Peak, RegionUpdate, Zone
from .utils_config import clamp, clamp_section

logger = logging.getLogger(__name__)


def smoothstep(edge0: float, edge1: float, x: float) -> float:
    if edge1 <= edge0:
        return 1.0 if x >= edge1 else 0.0
    t = min(max((x - edge0) / (edge1 - edge0), 0.0), 1.0)
    return t * t * (3.0 - 2.0 * t)


class RegionMapper:
    def __init__(self, config: Optional[RegionConfig] = None):
        self.config = clamp_section(config or RegionConfig(), "regions")
        self.zones: Tuple[Zone, ...] = tuple(self.config.zones)
        self.intensities: Dict[str, float] = {}
        self.targets: Dict[str, float] = {}
        self.dominant_name: Optional[str] = None
        self._last_switch_ms = 0.0
        self.reset()

    def apply_config(self, config: RegionConfig) -> None:
        self.config = clamp_section(config, "regions")
        if tuple(self.config.zones) != self.zones:
            self.zones = tuple(self.config.zones)
            self.reset()

    def reset(self) -> None:
        self.intensities = {z.name: 0.0 for z in self.zones}
        self.targets = {z.name: 0.0 for z in self.zones}
        self.dominant_name = None
        self._last_switch_ms = 0.0

    # ------------------------------------------------------------------
    # Frequency -> zone
    # ------------------------------------------------------------------
    def zone_index(self, frequency: float) -> Optional[int]:
        for i, zone in enumerate(self.zones):
            if zone.contains(frequency):
                return i
        return None

    def zone_for_frequency(self, frequency: float) -> Optional[Zone]:
        i = self.zone_index(frequency)
        return None if i is None else self.zones[i]

    def zone_weights(self, frequency: float) -> Dict[str, float]:
        """
        Split of a peak's contribution between its primary zone and the
        nearest neighbouring zone. Exactly on a boundary both get 0.5; the
        neighbour's share fades out over ``blend_fraction`` of the primary
        zone's width.
        """
        i = self.zone_index(frequency)
        if i is None:
            return {}
        zone = self.zones[i]

        edges: List[Tuple[float, int]] = []
        if i > 0 and self.zones[i - 1].max_hz == zone.min_hz:
            edges.append((frequency - zone.min_hz, i - 1))
        if i + 1 < len(self.zones) and self.zones[i + 1].min_hz == zone.max_hz:
            edges.append((zone.max_hz - frequency, i + 1))
        if not edges:
            return {zone.name: 1.0}

        distance, j = min(edges)
        t = 0.5 * (1.0 - smoothstep(0.0, self.config.blend_fraction * zone.width, distance))
        if t <= 0.0:
            return {zone.name: 1.0}
        return {zone.name: 1.0 - t, self.zones[j].name: t}

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------
    def _contribute(self, peak: Peak, targets: Dict[str, float], contributions: List[HarmonicContribution]) -> None:
        cfg = self.config
        f, amp = peak.frequency, peak.amplitude
        zone = self.zone_for_frequency(f)

        if zone is not None:
            distance = abs(f - zone.center_hz) / (zone.width / 2.0)
            value = amp * (1.0 - cfg.edge_falloff * distance) * cfg.intensity_multiplier
            for name, weight in self.zone_weights(f).items():
                targets[name] = max(targets[name], value * weight)

        if amp <= cfg.bleed_min_amplitude:
            return
        for ratio in cfg.bleed_ratios:
            related = self.zone_for_frequency(f * ratio)
            if related is None:
                continue
            strength = amp * cfg.bleed_gain / ratio
            if strength <= cfg.bleed_floor:
                continue
            targets[related.name] = max(targets[related.name], strength)
            contributions.append(HarmonicContribution(
                source_zone=zone.name if zone is not None else None,
                target_zone=related.name,
                ratio=float(ratio),
                strength=strength,
            ))

    def _ease(self, dt_ms: float) -> None:
        cfg = self.config
        dt = max(0.0, float(dt_ms)) if math.isfinite(dt_ms) else 0.0
        for name, current in self.intensities.items():
            target = self.targets[name]
            tau = cfg.attack_ms if target > current else cfg.decay_ms
            coef = 1.0 - math.exp(-dt / tau) if tau > 0.0 else 1.0
            current += (target - current) * coef
            self.intensities[name] = clamp(current, cfg.min_intensity, cfg.max_intensity)

    def update(self, peaks: Sequence[Peak], gate_open: bool, dt_ms: float, now_ms: float) -> RegionUpdate:
        targets = {z.name: 0.0 for z in self.zones}
        contributions: List[HarmonicContribution] = []
        if gate_open:
            for peak in peaks:
                self._contribute(peak, targets, contributions)
        self.targets = targets
        self._ease(dt_ms)
        return RegionUpdate(
            intensities=dict(self.intensities),
            dominant=self.select_dominant(now_ms),
            contributions=contributions,
        )

    # ------------------------------------------------------------------
    # Dominant zone
    # ------------------------------------------------------------------
    def select_dominant(self, now_ms: float) -> Optional[DominantZone]:
        """
        Strongest zone above ``peak_threshold``. A challenger replaces the
        incumbent only after ``switch_hold_ms`` since the last switch and
        when it is at least ``switch_margin`` stronger. Below the threshold
        nothing is reported but the incumbent is remembered.
        """
        cfg = self.config
        best = max(self.zones, key=lambda z: self.intensities.get(z.name, 0.0)).name
        best_value = self.intensities.get(best, 0.0)
        if best_value < cfg.peak_threshold:
            return None

        if self.dominant_name is None:
            self.dominant_name = best
            self._last_switch_ms = now_ms
        elif best != self.dominant_name:
            incumbent = self.intensities.get(self.dominant_name, 0.0)
            held = now_ms - self._last_switch_ms >= cfg.switch_hold_ms
            if held and best_value >= incumbent * (1.0 + cfg.switch_margin):
                logger.debug("dominant zone %s -> %s at %.0f ms", self.dominant_name, best, now_ms)
                self.dominant_name = best
                self._last_switch_ms = now_ms

        return DominantZone(name=self.dominant_name, intensity=self.intensities.get(self.dominant_name, 0.0))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def active_zones(self, threshold: float = 0.1) -> List[DominantZone]:
        active = [DominantZone(name=n, intensity=v) for n, v in self.intensities.items() if v > threshold]
        active.sort(key=lambda d: d.intensity, reverse=True)
        return active

    def is_any_active(self, threshold: float = 0.1) -> bool:
        return any(v > threshold for v in self.intensities.values())

    def total_energy(self) -> float:
        return float(sum(self.intensities.values()))
