import numpy as np
import pytest

from resonance.pipeline.config import FundamentalConfig, SpectrumConfig
from resonance.pipeline.detectors import (
    AutocorrelationEstimator,
    HarmonicPeakEstimator,
    HPSEstimator,
    _autocorr_pitch_single,
    nearest_harmonic,
)
from resonance.pipeline.fundamental import FundamentalEstimator, combine_candidates, harmonic_profile
from resonance.pipeline.models import F0Candidate, FrontEndOutput, Peak
from resonance.pipeline.spectral import SpectralFrontEnd
from resonance.tests.audio_utils import SR, generate_noise, generate_sine_wave, silent_snapshot, tone_snapshot


def run_ticks(estimator, front_end, snapshot, n=10):
    est = None
    for _ in range(n):
        est = estimator.update(front_end.process(snapshot), snapshot)
    return est


class TestEstimators:
    @pytest.fixture
    def front_end(self):
        return SpectralFrontEnd(SpectrumConfig())

    def test_hps_finds_fundamental_of_harmonic_tone(self, front_end):
        snap = tone_snapshot(300.0, harmonics=(1, 2, 3, 4, 5))
        cand = HPSEstimator().estimate(front_end.process(snap), snap)
        assert cand.voiced
        assert abs(cand.frequency - 300.0) / 300.0 < 0.01

    def test_hps_silent_on_single_peak(self, front_end):
        snap = tone_snapshot(440.0)
        cand = HPSEstimator().estimate(front_end.process(snap), snap)
        assert not cand.voiced

    def test_harmonic_peaks_missing_fundamental(self, front_end):
        # 2nd..5th harmonics of 150 Hz with no energy at 150 Hz
        snap = tone_snapshot(150.0, harmonics=(2, 3, 4, 5), rolloff_db=2.0)
        cand = HarmonicPeakEstimator().estimate(front_end.process(snap), snap)
        assert abs(cand.frequency - 150.0) / 150.0 < 0.01

    def test_harmonic_peaks_confidence_bounded(self, front_end):
        snap = tone_snapshot(440.0, harmonics=(1, 2, 3))
        cand = HarmonicPeakEstimator().estimate(front_end.process(snap), snap)
        assert 0.0 < cand.confidence <= 1.0

    def test_autocorrelation_low_register(self, front_end):
        snap = tone_snapshot(82.4, amplitude=0.5)
        est = AutocorrelationEstimator()
        front = front_end.process(snap)
        assert est.applies(front, snap)
        cand = est.estimate(front, snap)
        assert abs(cand.frequency - 82.4) / 82.4 < 0.02
        assert 0.3 < cand.confidence <= 1.0

    def test_autocorrelation_skipped_for_high_content(self, front_end):
        snap = tone_snapshot(440.0)
        est = AutocorrelationEstimator()
        assert not est.applies(front_end.process(snap), snap)
        assert not est.estimate(front_end.process(snap), snap).voiced

    def test_autocorr_degenerate_inputs(self):
        assert _autocorr_pitch_single(np.zeros(4096), SR, 25.0, 500.0) == (0.0, 0.0)
        assert _autocorr_pitch_single(np.zeros(4), SR, 25.0, 500.0) == (0.0, 0.0)
        f0, conf = _autocorr_pitch_single(generate_noise(0.2, seed=3), SR, 25.0, 500.0, threshold=0.9)
        assert (f0, conf) == (0.0, 0.0)

    def test_autocorr_sine(self):
        f0, conf = _autocorr_pitch_single(generate_sine_wave(110.0, 0.2), SR, 25.0, 500.0)
        assert abs(f0 - 110.0) < 1.5
        assert conf > 0.5

    def test_nearest_harmonic(self):
        assert nearest_harmonic(2.02) == (2, pytest.approx(0.01))
        k, err = nearest_harmonic(0.2)
        assert k == 0 and err == float("inf")


class TestCombination:
    cfg = FundamentalConfig()

    def test_agreeing_candidates_prefer_lower(self):
        best = combine_candidates([
            F0Candidate(440.0, 0.8, "hps"),
            F0Candidate(220.0, 0.7, "harmonic_peaks"),
        ], self.cfg)
        assert best.frequency == 220.0
        assert best.confidence == pytest.approx(0.88)

    def test_agreeing_but_much_weaker_lower_keeps_top(self):
        best = combine_candidates([
            F0Candidate(440.0, 0.9, "hps"),
            F0Candidate(220.0, 0.3, "harmonic_peaks"),
        ], self.cfg)
        assert best.frequency == 440.0
        assert best.confidence == pytest.approx(0.99)

    def test_disagreeing_candidates_take_top(self):
        best = combine_candidates([
            F0Candidate(300.0, 0.6, "hps"),
            F0Candidate(440.0, 0.9, "harmonic_peaks"),
        ], self.cfg)
        assert best.frequency == 440.0
        assert best.confidence == 0.9

    def test_floor_filters_candidates(self):
        assert combine_candidates([F0Candidate(440.0, 0.04, "hps")], self.cfg) is None
        assert combine_candidates([], self.cfg) is None


class TestFundamentalEstimator:
    @pytest.fixture
    def front_end(self):
        return SpectralFrontEnd(SpectrumConfig())

    @pytest.mark.parametrize("freq", [30.0, 55.0, 100.0, 196.0, 261.63, 440.0, 880.0, 1500.0, 2000.0])
    def test_pure_tone_converges(self, front_end, freq):
        snap = tone_snapshot(freq, amplitude=0.5)
        est = run_ticks(FundamentalEstimator(), front_end, snap, n=10)
        assert abs(est.frequency - freq) / freq < 0.03
        assert est.confidence > 0.1

    def test_no_phantom_subharmonic(self, front_end):
        # A 300 Hz tone (2f for f = 150 Hz) with its own harmonics; nothing at 150 Hz
        snap = tone_snapshot(300.0, harmonics=(1, 2, 3, 4, 5))
        est = run_ticks(FundamentalEstimator(), front_end, snap, n=10)
        assert abs(est.frequency - 300.0) / 300.0 < 0.03

    def test_no_phantom_subharmonic_single_peak(self, front_end):
        snap = tone_snapshot(600.0)
        est = run_ticks(FundamentalEstimator(), front_end, snap, n=10)
        assert abs(est.frequency - 600.0) / 600.0 < 0.03

    def test_silence_is_neutral(self, front_end):
        est = run_ticks(FundamentalEstimator(), front_end, silent_snapshot(), n=3)
        assert est.frequency == 0.0
        assert est.confidence == 0.0
        assert est.note is None
        assert len(est.harmonic_profile) == 12
        assert not any(h.present for h in est.harmonic_profile)

    def test_track_decays_to_zero_after_signal_stops(self, front_end):
        fe = FundamentalEstimator()
        run_ticks(fe, front_end, tone_snapshot(440.0), n=10)
        est = run_ticks(fe, front_end, silent_snapshot(), n=20)
        assert est.frequency == 0.0

    def test_octave_jump_rejected(self):
        fe = FundamentalEstimator()
        fe.tracked_frequency = 200.0
        fe.confidence = 0.9
        fe.track(F0Candidate(400.0, 1.0, "harmonic_peaks"))
        assert fe.tracked_frequency == 200.0
        assert fe.confidence == pytest.approx(0.63)

    def test_confident_octave_jump_accepted(self):
        fe = FundamentalEstimator()
        fe.tracked_frequency = 200.0
        fe.confidence = 0.5
        fe.track(F0Candidate(400.0, 0.9, "harmonic_peaks"))
        alpha = 0.3 + 0.4 * 0.9
        assert fe.tracked_frequency == pytest.approx(200.0 * (1 - alpha) + 400.0 * alpha)
        assert fe.confidence == pytest.approx(0.7 * 0.5 + 0.3 * 0.9)

    def test_blend_toward_new_estimate(self):
        fe = FundamentalEstimator()
        fe.tracked_frequency = 440.0
        fe.confidence = 0.8
        fe.track(F0Candidate(450.0, 0.5, "hps"))
        assert fe.tracked_frequency == pytest.approx(440.0 * 0.5 + 450.0 * 0.5)

    def test_onset_snaps_to_new_pitch(self, front_end):
        fe = FundamentalEstimator()
        quiet = tone_snapshot(220.0, level_db=-40.0, amplitude=0.02)
        run_ticks(fe, front_end, quiet, n=10)
        assert abs(fe.tracked_frequency - 220.0) < 5.0

        loud = tone_snapshot(330.0, level_db=-15.0, amplitude=0.5)
        est = fe.update(front_end.process(loud), loud)
        assert est.onset
        assert abs(est.frequency - 330.0) / 330.0 < 0.03

    def test_onset_detection_ratio(self):
        fe = FundamentalEstimator()
        assert not fe.detect_onset(0.0)
        assert fe.detect_onset(0.1)           # out of silence
        fe.previous_rms = 0.1
        assert not fe.detect_onset(0.25)
        assert fe.detect_onset(0.31)

    def test_harmonic_profile(self):
        peaks = [
            Peak(frequency=220.0, amplitude=0.9, raw_level=-15.0, bin_index=41),
            Peak(frequency=441.0, amplitude=0.5, raw_level=-30.0, bin_index=82),
            Peak(frequency=880.0 * 1.1, amplitude=0.4, raw_level=-33.0, bin_index=180),
        ]
        profile = harmonic_profile(220.0, peaks)
        assert [h.harmonic_number for h in profile] == list(range(1, 13))
        assert profile[0].present and profile[0].amplitude == 0.9
        assert profile[1].present and profile[1].amplitude == 0.5
        assert not profile[3].present
        assert profile[2].frequency == pytest.approx(660.0)

    def test_note_name(self, front_end):
        est = run_ticks(FundamentalEstimator(), front_end, tone_snapshot(440.0), n=5)
        assert est.note is not None
        assert est.note.name == "A4"
        assert abs(est.note.cents) < 5.0

    def test_reset_clears_track(self, front_end):
        fe = FundamentalEstimator()
        run_ticks(fe, front_end, tone_snapshot(440.0), n=5)
        fe.reset()
        assert fe.tracked_frequency == 0.0
        assert fe.confidence == 0.0
        assert fe.previous_rms == 0.0

    def test_estimates_are_total_over_empty_front_end(self):
        est = FundamentalEstimator().update(FrontEndOutput(), None)
        assert est.frequency == 0.0
        assert not est.onset
