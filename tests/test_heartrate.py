"""
Unit tests for the signal path: conditioning, peak/interval estimation,
BPM stabilisation and the real-time beat detector.
Run with:  pytest tests/
"""

from __future__ import annotations

import numpy as np
import pytest

from heartrate_monitor.bpm_stabilizer import (
    BpmStabilizer,
    Confidence,
    classify_confidence,
    interval_consistency,
    quality_indicator,
    signal_quality,
)
from heartrate_monitor.config import ConfidenceConfig, StabilizerConfig
from heartrate_monitor.peak_estimator import PeakIntervalEstimator
from heartrate_monitor.realtime_beat import BeatChannel, BeatEvent, RealtimeBeatDetector
from heartrate_monitor.samples import ColorSample, Sample, SampleRateMeter, SignalWindow
from heartrate_monitor.signal_conditioner import SignalConditioner


def _ppg(n: int, fps: float, hz: float, amplitude: float = 2.0,
         offset: float = 200.0, drift: float = 0.0) -> np.ndarray:
    """Sinusoidal pulse wave with optional linear drift (per sample)."""
    i = np.arange(n)
    return offset + amplitude * np.sin(2 * np.pi * hz * i / fps) + drift * i


# ---------------------------------------------------------------------------
# Samples
# ---------------------------------------------------------------------------

class TestSamples:

    def test_color_sample_carries_red_as_ppg_value(self):
        s = ColorSample(red=200.0, green=100.0, brightness=150.0, timestamp=2.0)
        assert s.red_ratio == pytest.approx(2.0)
        assert s.to_sample() == Sample(200.0, 2.0)
        assert ColorSample(red=200.0, green=0.0, brightness=150.0).red_ratio == 0.0

    def test_window_evicts_oldest(self):
        w = SignalWindow(3)
        for v in range(5):
            w.append(v)
        assert list(w) == [2.0, 3.0, 4.0]
        assert w.is_full

    def test_unbounded_window_grows(self):
        w = SignalWindow()
        for v in range(500):
            w.append(v)
        assert len(w) == 500
        assert not w.is_full
        assert list(w.tail(2)) == [498.0, 499.0]

    def test_rate_meter_uses_nominal_during_warmup(self):
        meter = SampleRateMeter(nominal=30.0, warmup=30)
        for k in range(10):
            rate = meter.update(k / 25.0)
        assert rate == 30.0

    def test_rate_meter_measures_timestamps(self):
        meter = SampleRateMeter(nominal=30.0, warmup=30)
        for k in range(60):
            rate = meter.update(k / 25.0)
        assert rate == pytest.approx(25.0)

    def test_rate_meter_clamps(self):
        meter = SampleRateMeter(nominal=30.0, min_rate=15.0, max_rate=60.0, warmup=5)
        for k in range(20):
            rate = meter.update(k / 120.0)
        assert rate == 60.0


# ---------------------------------------------------------------------------
# SignalConditioner
# ---------------------------------------------------------------------------

class TestSignalConditioner:

    def test_short_input_returned_unmodified(self):
        sc = SignalConditioner()
        out = sc.condition([1.0, 5.0, 2.0], sample_rate=30.0)
        assert list(out) == [1.0, 5.0, 2.0]

    def test_output_has_same_length(self):
        sc = SignalConditioner()
        raw = _ppg(137, 30.0, 1.2)
        assert len(sc.condition(raw, 30.0)) == 137

    def test_flat_input_is_stable(self):
        sc = SignalConditioner()
        first = sc.condition(np.full(120, 180.0), 30.0)
        second = sc.condition(first, 30.0)
        assert np.allclose(first, 0.0, atol=1e-9)
        assert np.allclose(second, first, atol=1e-9)

    def test_zero_input_unchanged(self):
        sc = SignalConditioner()
        assert np.allclose(sc.condition(np.zeros(64), 30.0), 0.0)

    def test_linear_drift_removed_in_interior(self):
        sc = SignalConditioner()
        ramp = 50.0 + 0.5 * np.arange(200)
        out = sc.condition(ramp, 30.0)
        assert np.allclose(out[40:160], 0.0, atol=1e-9)

    def test_detrend_window_tracks_rate(self):
        sc = SignalConditioner()
        assert sc.detrend_window(30.0) == 60
        assert sc.detrend_window(10.0) == 30   # minimum window


# ---------------------------------------------------------------------------
# PeakIntervalEstimator
# ---------------------------------------------------------------------------

class TestPeakIntervalEstimator:

    def test_clean_72_bpm(self):
        fps = 30.0
        signal = SignalConditioner().condition(_ppg(300, fps, 1.2), fps)
        pe = PeakIntervalEstimator()

        peaks = pe.find_peaks(signal, fps)
        assert len(peaks) >= 10
        assert np.all(np.diff(peaks) > 0)

        intervals = pe.intervals(peaks, fps)
        assert abs(np.median(intervals) - 25) <= 1

        est = pe.estimate(signal, fps)
        assert est is not None
        assert 70 <= est.bpm <= 74

    def test_candidate_too_close_is_dropped(self):
        signal = np.zeros(120)
        signal[[20, 50, 55, 90]] = 5.0
        peaks = PeakIntervalEstimator().find_peaks(signal, 30.0)
        assert list(peaks) == [20, 50, 90]

    def test_long_gap_peak_is_kept(self):
        signal = np.zeros(150)
        signal[[10, 100]] = 5.0
        pe = PeakIntervalEstimator()
        peaks = pe.find_peaks(signal, 30.0)
        assert list(peaks) == [10, 100]
        # ...but the 3 s gap is not a usable interval
        assert len(pe.intervals(peaks, 30.0)) == 0

    def test_spacing_follows_measured_rate(self):
        pe = PeakIntervalEstimator()
        assert pe.spacing_bounds(30.0) == (9, 45.0)
        assert pe.spacing_bounds(60.0) == (18, 90.0)

    def test_flat_signal_has_no_peaks(self):
        pe = PeakIntervalEstimator()
        assert len(pe.find_peaks(np.zeros(100), 30.0)) == 0
        assert pe.estimate(np.zeros(100), 30.0) is None

    def test_iqr_rejects_outlier(self):
        pe = PeakIntervalEstimator()
        kept = pe.reject_outliers(np.array([25, 25, 26, 24, 25, 60.0]), "iqr")
        assert 60.0 not in kept
        assert 24.0 in kept

    def test_median_rejects_outlier(self):
        pe = PeakIntervalEstimator()
        kept = pe.reject_outliers(np.array([25, 25, 26, 24, 40.0]), "median")
        assert list(kept) == [25.0, 25.0, 26.0, 24.0]

    def test_too_few_intervals_skip_rejection(self):
        pe = PeakIntervalEstimator()
        kept = pe.reject_outliers(np.array([25, 60, 25.0]))
        assert list(kept) == [25.0, 60.0, 25.0]

    def test_unknown_policy_rejected(self):
        pe = PeakIntervalEstimator()
        with pytest.raises(ValueError):
            pe.reject_outliers(np.arange(10.0), "mode")

    def test_bpm_from_median_interval(self):
        assert PeakIntervalEstimator.bpm_from_intervals(np.array([24, 25, 26, 25.0]), 30.0) == 72


# ---------------------------------------------------------------------------
# BpmStabilizer
# ---------------------------------------------------------------------------

class TestBpmStabilizer:

    def test_stabilises_within_three_updates(self):
        bs = BpmStabilizer()
        assert bs.update(70, 0.0) is None
        assert bs.update(71, 1.0) is None
        est = bs.update(69, 2.0)
        assert est is not None
        assert est.value == 70
        assert bs.reliable

    def test_single_outlier_is_ignored(self):
        bs = BpmStabilizer()
        for k, raw in enumerate([70, 71, 69]):
            bs.update(raw, float(k))
        # 60 BPM jump after 1 s is beyond twice the 15 BPM/s cap
        bs.update(130, 3.0)
        assert bs.stable_bpm == 70

    def test_late_outlier_does_not_move_value(self):
        bs = BpmStabilizer()
        for k, raw in enumerate([70, 71, 69]):
            bs.update(raw, float(k))
        # Passes the noise gate after 3 s, but the window spread is too wide
        est = bs.update(130, 5.0)
        assert bs.stable_bpm == 70
        assert est.value == 70

    def test_high_confidence_spread_is_configurable(self):
        readings = [70, 72, 74]
        default = BpmStabilizer()
        loose = BpmStabilizer(StabilizerConfig(high_confidence_spread=4))
        for k, raw in enumerate(readings):
            default.update(raw, float(k))
            loose.update(raw, float(k))
        assert default.estimate.confidence is Confidence.GOOD
        assert loose.estimate.confidence is Confidence.HIGH

    def test_inconsistent_warmup_not_accepted(self):
        bs = BpmStabilizer()
        for k, raw in enumerate([60, 85, 70]):
            assert bs.update(raw, float(k)) is None
        assert bs.stable_bpm == 0

    def test_out_of_band_readings_do_not_count(self):
        bs = BpmStabilizer()
        for k, raw in enumerate([200, 70, 71]):
            bs.update(raw, float(k))
        assert bs.stable_bpm == 0

    def test_genuine_change_is_rate_limited(self):
        bs = BpmStabilizer()
        for k, raw in enumerate([70, 71, 69]):
            bs.update(raw, float(k))
        now = 2.0
        for _ in range(8):
            before = bs.stable_bpm
            now += 0.1
            bs.update(80, now)
            assert 0 <= bs.stable_bpm - before <= 5
        assert bs.stable_bpm == 80

    def test_sine_with_drift_converges(self):
        fps, hz = 30.0, 1.25              # 75 BPM
        raw = _ppg(600, fps, hz, drift=0.05)
        sc, pe, bs = SignalConditioner(), PeakIntervalEstimator(), BpmStabilizer()
        for k, end in enumerate(range(120, 601, 30)):
            est = pe.estimate(sc.condition(raw[:end], fps), fps, min_peaks=4,
                              min_intervals=3, outlier_policy="median")
            if est is not None:
                bs.update(est.bpm, float(k))
        assert bs.reliable
        assert abs(bs.stable_bpm - 75) <= 2

    def test_reset(self):
        bs = BpmStabilizer()
        for k, raw in enumerate([70, 71, 69]):
            bs.update(raw, float(k))
        bs.reset()
        assert bs.stable_bpm == 0
        assert bs.estimate is None
        assert not bs.reliable


class TestConfidence:

    def test_signal_quality_bands(self):
        assert signal_quality(np.full(60, 100.0)) == 0.1                 # flat
        assert signal_quality(_ppg(60, 30.0, 1.2)) == 1.0                # ~0.7 %
        noisy = 100.0 + 10.0 * np.where(np.arange(60) % 2, 1.0, -1.0)
        assert signal_quality(noisy) == 0.3                              # 10 %
        assert signal_quality(np.full(30, 100.0)) == 0.0                 # too short

    def test_interval_consistency(self):
        assert interval_consistency(np.array([25, 25, 25.0])) == 1.0
        assert interval_consistency(np.array([20, 30, 20, 30.0])) == 0.7
        assert interval_consistency(np.array([10, 40, 10, 40.0])) == 0.4

    def test_classify(self):
        assert classify_confidence(1.0, 1.0) is Confidence.HIGH
        assert classify_confidence(0.7, 0.4) is Confidence.GOOD
        assert classify_confidence(0.1, 0.4) is Confidence.LOW
        assert Confidence.HIGH.label == "High confidence"

    def test_quality_indicator(self):
        assert quality_indicator(1.0) == "●●●"
        assert quality_indicator(0.1) == "○○○"

    def test_quality_indicator_tiers_are_configurable(self):
        strict = ConfidenceConfig(indicator_tiers=(0.95, 0.7, 0.4))
        assert quality_indicator(0.9) == "●●●"
        assert quality_indicator(0.9, strict) == "●●○"
        assert quality_indicator(0.35, strict) == "○○○"


# ---------------------------------------------------------------------------
# RealtimeBeatDetector
# ---------------------------------------------------------------------------

def _bumps(n: int, centres: list[int]) -> np.ndarray:
    signal = np.zeros(n)
    for c in centres:
        signal[c - 2:c + 3] += [3.0, 6.0, 10.0, 6.0, 3.0]
    return signal


def _fire_times(detector: RealtimeBeatDetector, signal: np.ndarray, fps: float) -> list[float]:
    return [k / fps for k, v in enumerate(signal) if detector.on_sample(v, k / fps)]


class TestRealtimeBeatDetector:

    def test_peaks_200ms_apart_fire_once(self):
        fires = _fire_times(RealtimeBeatDetector(), _bumps(300, [100, 120]), 100.0)
        assert len(fires) == 1

    def test_peaks_600ms_apart_fire_twice(self):
        fires = _fire_times(RealtimeBeatDetector(), _bumps(300, [100, 160]), 100.0)
        assert len(fires) == 2
        # Half-window latency: the middle of a 15-sample buffer
        assert fires[0] == pytest.approx(1.07)

    def test_flat_signal_never_fires(self):
        assert _fire_times(RealtimeBeatDetector(), np.full(200, 50.0), 30.0) == []

    def test_low_peak_below_envelope_ignored(self):
        signal = _bumps(300, [100])
        signal[158:163] += [1.0, 2.0, 3.0, 2.0, 1.0]
        fires = _fire_times(RealtimeBeatDetector(), signal, 100.0)
        assert len(fires) == 1

    def test_pulse_wave_fires_every_cycle(self):
        fps = 30.0
        fires = _fire_times(RealtimeBeatDetector(), _ppg(300, fps, 1.2), fps)
        assert 10 <= len(fires) <= 12
        assert np.all(np.diff(fires) >= 0.45)

    def test_beat_consumed_once(self):
        det = RealtimeBeatDetector()
        _fire_times(det, _bumps(300, [100]), 100.0)
        event = det.consume_beat()
        assert isinstance(event, BeatEvent)
        assert det.consume_beat() is None

    def test_reset_clears_pending_beat(self):
        det = RealtimeBeatDetector()
        _fire_times(det, _bumps(300, [100]), 100.0)
        det.reset()
        assert det.consume_beat() is None
        assert det.envelope == (0.0, 0.0)

    def test_channel_keeps_latest(self):
        ch = BeatChannel()
        ch.post(BeatEvent(1.0))
        ch.post(BeatEvent(2.0))
        assert ch.consume() == BeatEvent(2.0)
        assert ch.consume() is None
