import math

import numpy as np
import pytest

from resonance.pipeline.config import ZONE_NAMES, ZONES, RegionConfig
from resonance.pipeline.models import Peak
from resonance.pipeline.regions import RegionMapper, smoothstep


def peak(freq, amp=0.8):
    return Peak(frequency=freq, amplitude=amp, raw_level=-20.0, bin_index=int(freq / 5.383))


class TestZones:
    def test_zones_partition_range(self):
        mapper = RegionMapper()
        for f in np.linspace(30.0, 1999.999, 5000):
            hits = [z for z in ZONES if z.contains(f)]
            assert len(hits) == 1
            assert mapper.zone_for_frequency(f) is hits[0]

    def test_zones_are_contiguous_and_ordered(self):
        assert ZONES[0].min_hz == 30.0
        assert ZONES[-1].max_hz == 2000.0
        for lo, hi in zip(ZONES, ZONES[1:]):
            assert lo.max_hz == hi.min_hz

    def test_outside_range(self):
        mapper = RegionMapper()
        assert mapper.zone_for_frequency(29.9) is None
        assert mapper.zone_for_frequency(2000.0) is None
        assert mapper.zone_weights(2500.0) == {}

    def test_boundary_belongs_to_upper_zone(self):
        mapper = RegionMapper()
        assert mapper.zone_for_frequency(120.0).name == "sacral"
        assert mapper.zone_for_frequency(119.999).name == "root"


class TestBlending:
    @pytest.mark.parametrize("boundary", [z.min_hz for z in ZONES[1:]])
    def test_weights_on_boundary_sum_to_one(self, boundary):
        weights = RegionMapper().zone_weights(boundary)
        assert len(weights) == 2
        assert sum(weights.values()) == pytest.approx(1.0, abs=1e-6)
        for w in weights.values():
            assert w == pytest.approx(0.5, abs=1e-6)

    def test_weights_always_sum_to_one(self):
        mapper = RegionMapper()
        for f in np.linspace(30.0, 1999.0, 2000):
            assert sum(mapper.zone_weights(f).values()) == pytest.approx(1.0, abs=1e-6)

    def test_centre_is_unblended(self):
        assert RegionMapper().zone_weights(385.0) == {"heart": 1.0}

    def test_neighbour_share_fades_with_distance(self):
        mapper = RegionMapper()
        near = mapper.zone_weights(332.0)["solar"]
        far = mapper.zone_weights(345.0)["solar"]
        assert 0.0 < far < near < 0.5

    def test_outer_edges_do_not_blend(self):
        mapper = RegionMapper()
        assert mapper.zone_weights(30.0) == {"root": 1.0}
        assert mapper.zone_weights(1999.0) == {"crown": 1.0}

    def test_smoothstep(self):
        assert smoothstep(0.0, 1.0, -1.0) == 0.0
        assert smoothstep(0.0, 1.0, 0.5) == pytest.approx(0.5)
        assert smoothstep(0.0, 1.0, 2.0) == 1.0


class TestRegionMapper:
    def test_primary_target_uses_edge_falloff(self):
        mapper = RegionMapper()
        mapper.update([peak(385.0, 0.8)], gate_open=True, dt_ms=16.0, now_ms=16.0)
        assert mapper.targets["heart"] == pytest.approx(0.8)
        mapper.update([peak(400.0, 0.8)], gate_open=True, dt_ms=16.0, now_ms=32.0)
        assert mapper.targets["heart"] == pytest.approx(0.8 * (1.0 - 0.3 * 15.0 / 55.0))

    def test_gate_closed_contributes_nothing(self):
        mapper = RegionMapper()
        update = mapper.update([peak(385.0)], gate_open=False, dt_ms=16.0, now_ms=16.0)
        assert all(v == 0.0 for v in update.intensities.values())
        assert update.dominant is None

    def test_harmonic_bleed(self):
        mapper = RegionMapper()
        update = mapper.update([peak(150.0, 0.9)], gate_open=True, dt_ms=16.0, now_ms=16.0)
        # 2x -> 300 Hz (solar), 3x -> 450 Hz (throat), 0.5x -> 75 Hz (root)
        assert mapper.targets["solar"] == pytest.approx(0.9 * 0.3 / 2.0)
        assert mapper.targets["root"] == pytest.approx(0.9 * 0.3 / 0.5)
        assert mapper.targets["throat"] == 0.0  # 0.09 is below the bleed floor
        ratios = {c.ratio for c in update.contributions}
        assert ratios == {0.5, 2.0}
        assert all(c.source_zone == "sacral" for c in update.contributions)

    def test_weak_peaks_do_not_bleed(self):
        mapper = RegionMapper()
        update = mapper.update([peak(150.0, 0.3)], gate_open=True, dt_ms=16.0, now_ms=16.0)
        assert update.contributions == []

    def test_attack_and_decay_are_time_based(self):
        mapper = RegionMapper()
        mapper.update([peak(385.0, 0.8)], gate_open=True, dt_ms=100.0, now_ms=100.0)
        assert mapper.intensities["heart"] == pytest.approx(0.8 * (1.0 - math.exp(-1.0)))

        # Same elapsed time in smaller steps lands in the same place
        other = RegionMapper()
        for i in range(10):
            other.update([peak(385.0, 0.8)], gate_open=True, dt_ms=10.0, now_ms=10.0 * (i + 1))
        assert other.intensities["heart"] == pytest.approx(mapper.intensities["heart"])

        level = mapper.intensities["heart"]
        mapper.update([], gate_open=True, dt_ms=300.0, now_ms=400.0)
        assert mapper.intensities["heart"] == pytest.approx(level * math.exp(-1.0))

    def test_intensity_clamped_to_max(self):
        mapper = RegionMapper(RegionConfig(intensity_multiplier=3.0))
        for i in range(100):
            mapper.update([peak(385.0, 1.0)], gate_open=True, dt_ms=50.0, now_ms=50.0 * (i + 1))
        assert mapper.intensities["heart"] == pytest.approx(0.95)

    def test_zero_dt_keeps_intensity(self):
        mapper = RegionMapper()
        mapper.update([peak(385.0)], gate_open=True, dt_ms=0.0, now_ms=0.0)
        assert mapper.intensities["heart"] == 0.0

    def test_queries(self):
        mapper = RegionMapper()
        mapper.intensities.update({"root": 0.5, "heart": 0.2, "crown": 0.05})
        active = mapper.active_zones()
        assert [z.name for z in active] == ["root", "heart"]
        assert mapper.is_any_active()
        assert not mapper.is_any_active(0.6)
        assert mapper.total_energy() == pytest.approx(0.75)

    def test_reset(self):
        mapper = RegionMapper()
        mapper.update([peak(385.0)], gate_open=True, dt_ms=500.0, now_ms=500.0)
        mapper.reset()
        assert set(mapper.intensities) == set(ZONE_NAMES)
        assert all(v == 0.0 for v in mapper.intensities.values())
        assert mapper.dominant_name is None


class TestDominantZone:
    def set_levels(self, mapper, **levels):
        for name in mapper.intensities:
            mapper.intensities[name] = levels.get(name, 0.0)

    def test_below_threshold_reports_none(self):
        mapper = RegionMapper()
        self.set_levels(mapper, root=0.2)
        assert mapper.select_dominant(0.0) is None

    def test_small_margin_keeps_incumbent(self):
        mapper = RegionMapper()
        self.set_levels(mapper, root=0.50)
        assert mapper.select_dominant(0.0).name == "root"

        self.set_levels(mapper, root=0.50, sacral=0.55)
        assert mapper.select_dominant(200.0).name == "root"
        # Margin is still only 10%, so even after the hold time root stays
        assert mapper.select_dominant(1000.0).name == "root"

    def test_large_margin_within_hold_keeps_incumbent(self):
        mapper = RegionMapper()
        self.set_levels(mapper, root=0.50)
        mapper.select_dominant(0.0)
        self.set_levels(mapper, root=0.50, sacral=0.80)
        assert mapper.select_dominant(449.0).name == "root"
        assert mapper.select_dominant(450.0).name == "sacral"

    def test_incumbent_remembered_through_silence(self):
        mapper = RegionMapper()
        self.set_levels(mapper, heart=0.6)
        mapper.select_dominant(0.0)
        self.set_levels(mapper, heart=0.1)
        assert mapper.select_dominant(100.0) is None
        assert mapper.dominant_name == "heart"
        self.set_levels(mapper, heart=0.4, throat=0.45)
        assert mapper.select_dominant(200.0).name == "heart"

    def test_switch_resets_hold(self):
        mapper = RegionMapper()
        self.set_levels(mapper, root=0.5)
        mapper.select_dominant(0.0)
        self.set_levels(mapper, root=0.3, sacral=0.8)
        assert mapper.select_dominant(500.0).name == "sacral"
        self.set_levels(mapper, sacral=0.3, solar=0.9)
        assert mapper.select_dominant(800.0).name == "sacral"
        assert mapper.select_dominant(950.0).name == "solar"
