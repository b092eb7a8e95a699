"""
Tunable parameters for the detection pipeline.

Every component takes its own config dataclass; :class:`MonitorConfig`
bundles them for the measurement session.  The defaults are the values the
pipeline was tuned with on phone cameras at roughly 30 fps and are meant to
be overridden, not treated as constants.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class FingerDetectorConfig:
    # Calibration (no finger on the lens, light on)
    calibration_samples: int = 30
    calibration_max_std: float = 10.0
    calibration_min_brightness: float = 60.0

    # Strict finger-like predicate
    min_red: float = 180.0
    min_red_ratio: float = 1.3
    min_brightness: float = 50.0
    max_brightness: float = 250.0
    min_baseline_delta: float = 20.0

    # Relaxed predicate used once contact is established
    relaxed_intensity_factor: float = 0.8
    relaxed_ratio_factor: float = 0.9
    relaxed_baseline_delta: float = 10.0

    # Consecutive-frame counters
    contact_frames: int = 15
    sustained_frames: int = 30
    release_frames: int = 5

    # Living-tissue micro-variation band (percent of mean)
    min_tissue_variation: float = 0.05
    max_tissue_variation: float = 3.0

    # Pulse verification
    pulse_frames: int = 45
    min_pulse_variation: float = 0.3
    max_pulse_variation: float = 5.0
    min_crossings: int = 3
    max_crossings: int = 20
    max_pulse_attempts: int = 3
    fail_open: bool = True


@dataclass
class ConditionerConfig:
    min_length: int = 10
    detrend_seconds: float = 2.0
    min_detrend_window: int = 30
    lowpass_taps: int = 5
    smoothing_window: int = 5


@dataclass
class PeakDetectionConfig:
    threshold_k: float = 0.5
    neighbourhood: int = 3
    min_spacing_s: float = 0.3
    max_spacing_s: float = 1.5
    min_spacing_samples: int = 3
    outlier_policy: str = "iqr"          # "iqr" or "median"
    iqr_factor: float = 1.5
    median_tolerance: float = 0.25
    min_outlier_samples: int = 4


@dataclass
class StabilizerConfig:
    min_bpm: int = 45
    max_bpm: int = 180
    warmup_readings: int = 3
    warmup_max_deviation: int = 10
    max_change_per_second: float = 15.0
    min_allowed_change: int = 5
    window: int = 5
    window_max_deviation: int = 8
    high_confidence_spread: int = 3


@dataclass
class ConfidenceConfig:
    quality_seconds: float = 2.0
    flat_variation: float = 0.1
    noisy_variation: float = 5.0
    optimal_low: float = 0.5
    optimal_high: float = 2.0
    consistent_variance: float = 25.0
    loose_variance: float = 100.0
    high_threshold: float = 0.8
    good_threshold: float = 0.5
    indicator_tiers: tuple = (0.8, 0.5, 0.3)


@dataclass
class BeatDetectorConfig:
    window: int = 15
    upper_fraction: float = 0.6
    min_amplitude: float = 0.5
    min_interval_s: float = 0.45
    decay: float = 0.001


@dataclass
class SessionConfig:
    duration_s: float = 10.0
    nominal_rate: float = 30.0
    min_rate: float = 15.0
    max_rate: float = 60.0
    rate_warmup_samples: int = 30

    # Live estimate cadence
    live_min_samples: int = 90
    live_every: int = 30
    live_min_peaks: int = 4
    live_min_intervals: int = 3
    live_outlier_policy: str = "median"

    # Final evaluation
    full_min_samples: int = 90
    full_min_peaks: int = 3
    partial_min_samples: int = 30
    partial_min_peaks: int = 2
    valid_bpm: tuple = (40, 200)
    sane_bpm: tuple = (30, 220)

    @property
    def required_samples(self) -> int:
        """Samples collected before a measurement completes on its own."""
        return int(self.duration_s * self.nominal_rate)


@dataclass
class MonitorConfig:
    finger: FingerDetectorConfig = field(default_factory=FingerDetectorConfig)
    conditioner: ConditionerConfig = field(default_factory=ConditionerConfig)
    peaks: PeakDetectionConfig = field(default_factory=PeakDetectionConfig)
    stabilizer: StabilizerConfig = field(default_factory=StabilizerConfig)
    confidence: ConfidenceConfig = field(default_factory=ConfidenceConfig)
    beats: BeatDetectorConfig = field(default_factory=BeatDetectorConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
