"""
BPM stabilisation and confidence scoring.

Raw per-window BPM estimates jump around with every missed or extra peak.
:class:`BpmStabilizer` turns them into a display value that

* only appears after a few mutually consistent readings,
* ignores readings that change faster than a heart plausibly can,
* approaches genuine changes at a bounded rate instead of snapping.

The end-of-session confidence label is computed separately from the raw
signal quality and the interval consistency (see :func:`classify_confidence`).
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Optional

import numpy as np

from heartrate_monitor.config import ConfidenceConfig, StabilizerConfig

logger = logging.getLogger(__name__)


class Confidence(Enum):
    HIGH = "High confidence"
    GOOD = "Good"
    LOW = "Low confidence"

    @property
    def label(self) -> str:
        return self.value


@dataclass(frozen=True)
class BpmEstimate:
    value: int
    confidence: Confidence
    is_partial: bool = False


class BpmStabilizer:
    """
    Rate-limited, outlier-resistant BPM tracker.

    Parameters
    ----------
    config:
        Physiological band, rate limit and window sizes; see
        :class:`~heartrate_monitor.config.StabilizerConfig`.
    """

    def __init__(self, config: Optional[StabilizerConfig] = None) -> None:
        self.config = config or StabilizerConfig()
        self.reset()

    def reset(self) -> None:
        self._stable = 0
        self._last_update: Optional[float] = None
        self._readings: Deque[int] = deque(maxlen=self.config.window)
        self._warmup: Deque[int] = deque(maxlen=self.config.warmup_readings)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def update(self, raw_bpm: int, now: float) -> Optional[BpmEstimate]:
        """
        Feed one raw estimate taken at monotonic time *now* (seconds).

        Returns the current estimate, or *None* while no stable value has
        been established yet.
        """
        if self._stable == 0:
            self._warm_up(int(raw_bpm), now)
        else:
            self._track(int(raw_bpm), now)
        return self.estimate

    @property
    def stable_bpm(self) -> int:
        """Current stable value (0 until established)."""
        return self._stable

    @property
    def reliable(self) -> bool:
        cfg = self.config
        return (
            len(self._readings) >= cfg.warmup_readings
            and cfg.min_bpm <= self._stable <= cfg.max_bpm
        )

    @property
    def estimate(self) -> Optional[BpmEstimate]:
        if self._stable <= 0:
            return None
        return BpmEstimate(value=self._stable, confidence=self._live_confidence())

    def allowed_change(self, now: float) -> int:
        """Largest step permitted since the last accepted update."""
        elapsed = 0.0 if self._last_update is None else max(0.0, now - self._last_update)
        return max(int(self.config.max_change_per_second * elapsed), self.config.min_allowed_change)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _warm_up(self, raw_bpm: int, now: float) -> None:
        cfg = self.config
        if not cfg.min_bpm <= raw_bpm <= cfg.max_bpm:
            self._warmup.clear()
            return

        self._warmup.append(raw_bpm)
        if len(self._warmup) < cfg.warmup_readings:
            return

        avg = int(round(float(np.mean(self._warmup))))
        if max(abs(r - avg) for r in self._warmup) <= cfg.warmup_max_deviation:
            self._stable = avg
            self._last_update = now
            self._readings.extend(self._warmup)
            self._warmup.clear()
            logger.info("Stable BPM established at %d", avg)

    def _track(self, raw_bpm: int, now: float) -> None:
        cfg = self.config
        max_change = self.allowed_change(now)
        if abs(raw_bpm - self._stable) > 2 * max_change:
            logger.debug("Ignoring BPM %d (stable %d, allowed %d)", raw_bpm, self._stable, max_change)
            return

        self._readings.append(raw_bpm)
        if len(self._readings) < cfg.warmup_readings:
            return

        avg = int(round(float(np.mean(self._readings))))
        if max(abs(r - avg) for r in self._readings) > cfg.window_max_deviation:
            return

        if avg > self._stable:
            self._stable = min(self._stable + max_change, avg)
        elif avg < self._stable:
            self._stable = max(self._stable - max_change, avg)
        self._last_update = now

    def _live_confidence(self) -> Confidence:
        if not self.reliable:
            return Confidence.LOW
        spread = max(self._readings) - min(self._readings)
        return Confidence.HIGH if spread <= self.config.high_confidence_spread else Confidence.GOOD


# ---------------------------------------------------------------------------
# End-of-session confidence
# ---------------------------------------------------------------------------

def signal_quality(
    values: np.ndarray,
    sample_rate: float = 30.0,
    config: Optional[ConfidenceConfig] = None,
) -> float:
    """
    Quality score (0 – 1) from the last ``quality_seconds`` of raw values.

    A good PPG trace moves a little: too flat means poor contact, too much
    movement means motion.
    """
    cfg = config or ConfidenceConfig()
    window = int(sample_rate * cfg.quality_seconds)
    values = np.asarray(values, dtype=np.float64)
    if window <= 0 or len(values) < window:
        return 0.0

    recent = values[-window:]
    mean = float(recent.mean())
    if mean <= 0:
        return 0.0
    variation = float(recent.std()) / mean * 100.0

    if variation < cfg.flat_variation:
        return 0.1
    if variation > cfg.noisy_variation:
        return 0.3
    if cfg.optimal_low <= variation <= cfg.optimal_high:
        return 1.0
    return 0.7


def interval_consistency(intervals: np.ndarray, config: Optional[ConfidenceConfig] = None) -> float:
    """Consistency score (0.4 – 1) from the variance of the beat intervals."""
    cfg = config or ConfidenceConfig()
    intervals = np.asarray(intervals, dtype=np.float64)
    variance = float(intervals.var()) if len(intervals) > 1 else 0.0
    if variance < cfg.consistent_variance:
        return 1.0
    if variance < cfg.loose_variance:
        return 0.7
    return 0.4


def classify_confidence(
    quality: float,
    consistency: float,
    config: Optional[ConfidenceConfig] = None,
) -> Confidence:
    cfg = config or ConfidenceConfig()
    score = (quality + consistency) / 2.0
    if score >= cfg.high_threshold:
        return Confidence.HIGH
    if score >= cfg.good_threshold:
        return Confidence.GOOD
    return Confidence.LOW


def quality_indicator(quality: float, config: Optional[ConfidenceConfig] = None) -> str:
    """Three-dot signal quality gauge for status lines."""
    full, two, one = (config or ConfidenceConfig()).indicator_tiers
    if quality >= full:
        return "●●●"
    if quality >= two:
        return "●●○"
    if quality >= one:
        return "●○○"
    return "○○○"
