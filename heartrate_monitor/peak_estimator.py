"""
Beat-to-beat interval estimation from a conditioned PPG signal.

Algorithm
---------
1. Zero-mean the signal and compute its standard deviation.
2. Accept sample *i* as a peak when it exceeds ``k · std`` and is strictly
   greater than every neighbour within ``± neighbourhood`` samples.
3. Enforce spacing derived from the *measured* sample rate: a candidate
   closer than the minimum spacing is dropped as noise; one further than
   the maximum spacing is kept (a beat was probably missed).
4. Intervals are consecutive peak distances, filtered to the spacing bounds.
5. Outliers are rejected by IQR or by relative deviation from the median,
   but only when enough intervals exist.
6. ``bpm = round(60 · rate / median(intervals))``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from heartrate_monitor.config import PeakDetectionConfig

logger = logging.getLogger(__name__)

OUTLIER_POLICIES = ("iqr", "median")


@dataclass(frozen=True)
class IntervalEstimate:
    peaks: np.ndarray         # PeakSet: strictly increasing sample indices
    intervals: np.ndarray     # IntervalSet: spacing-filtered index deltas
    filtered: np.ndarray      # intervals after outlier rejection
    median_interval: float
    bpm: int


class PeakIntervalEstimator:
    """
    Adaptive peak detector and interval statistics.

    Parameters
    ----------
    config:
        Threshold, window and spacing parameters; see
        :class:`~heartrate_monitor.config.PeakDetectionConfig`.
    """

    def __init__(self, config: Optional[PeakDetectionConfig] = None) -> None:
        self.config = config or PeakDetectionConfig()
        if self.config.outlier_policy not in OUTLIER_POLICIES:
            raise ValueError(f"Unknown outlier policy: {self.config.outlier_policy!r}")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def spacing_bounds(self, sample_rate: float) -> tuple[int, float]:
        """``(min, max)`` peak spacing in samples for *sample_rate*."""
        cfg = self.config
        min_spacing = max(int(sample_rate * cfg.min_spacing_s), cfg.min_spacing_samples)
        return min_spacing, sample_rate * cfg.max_spacing_s

    def find_peaks(self, signal: np.ndarray, sample_rate: float) -> np.ndarray:
        """
        Return the PeakSet of *signal* as an int array of sample indices.

        Parameters
        ----------
        signal:
            Conditioned (detrended, smoothed) signal.
        sample_rate:
            Measured sample rate in Hz.
        """
        values = np.asarray(signal, dtype=np.float64)
        w = self.config.neighbourhood
        if len(values) < 2 * w + 1:
            return np.array([], dtype=int)

        centred = values - values.mean()
        threshold = self.config.threshold_k * float(centred.std())

        # Strict local maxima over the whole ±w neighbourhood
        candidates = centred[w:len(centred) - w]
        is_max = candidates > threshold
        for offset in range(1, w + 1):
            is_max &= candidates > centred[w - offset:len(centred) - w - offset]
            is_max &= candidates > centred[w + offset:len(centred) - w + offset]

        min_spacing, _ = self.spacing_bounds(sample_rate)
        peaks: list[int] = []
        for i in np.flatnonzero(is_max) + w:
            # Too close: noise.  Too far: probably a missed beat, still keep it.
            if peaks and i - peaks[-1] < min_spacing:
                continue
            peaks.append(int(i))
        return np.array(peaks, dtype=int)

    def intervals(self, peaks: np.ndarray, sample_rate: float) -> np.ndarray:
        """Consecutive peak distances within the spacing bounds."""
        if len(peaks) < 2:
            return np.array([], dtype=np.float64)
        deltas = np.diff(np.asarray(peaks)).astype(np.float64)
        min_spacing, max_spacing = self.spacing_bounds(sample_rate)
        return deltas[(deltas >= min_spacing) & (deltas <= max_spacing)]

    def reject_outliers(self, intervals: np.ndarray, policy: Optional[str] = None) -> np.ndarray:
        """
        Drop outlying intervals.

        ``"iqr"`` keeps values within ``Q1 - f·IQR .. Q3 + f·IQR``;
        ``"median"`` keeps values within ``tolerance`` of the median.  With
        fewer than ``min_outlier_samples`` intervals nothing is dropped.
        """
        cfg = self.config
        policy = policy or cfg.outlier_policy
        values = np.asarray(intervals, dtype=np.float64)
        if len(values) < cfg.min_outlier_samples:
            return values

        if policy == "iqr":
            q1, q3 = np.percentile(values, [25, 75])
            iqr = q3 - q1
            keep = (values >= q1 - cfg.iqr_factor * iqr) & (values <= q3 + cfg.iqr_factor * iqr)
        elif policy == "median":
            med = float(np.median(values))
            keep = np.abs(values - med) <= cfg.median_tolerance * med
        else:
            raise ValueError(f"Unknown outlier policy: {policy!r}")
        return values[keep]

    @staticmethod
    def bpm_from_intervals(intervals: np.ndarray, sample_rate: float) -> int:
        return int(round(60.0 * sample_rate / float(np.median(intervals))))

    def estimate(
        self,
        signal: np.ndarray,
        sample_rate: float,
        min_peaks: int = 3,
        min_intervals: int = 1,
        outlier_policy: Optional[str] = None,
    ) -> Optional[IntervalEstimate]:
        """
        Peaks → intervals → outlier rejection → BPM in one pass.

        Returns *None* when fewer than *min_peaks* peaks or *min_intervals*
        valid intervals are found, or when every interval was rejected; the
        caller decides how to fall back.
        """
        peaks = self.find_peaks(signal, sample_rate)
        if len(peaks) < min_peaks:
            logger.debug("Only %d peaks (need %d)", len(peaks), min_peaks)
            return None

        intervals = self.intervals(peaks, sample_rate)
        if len(intervals) < max(min_intervals, 1):
            logger.debug("Only %d valid intervals (need %d)", len(intervals), min_intervals)
            return None

        filtered = self.reject_outliers(intervals, outlier_policy)
        if len(filtered) == 0:
            return None

        median_interval = float(np.median(filtered))
        return IntervalEstimate(
            peaks=peaks,
            intervals=intervals,
            filtered=filtered,
            median_interval=median_interval,
            bpm=self.bpm_from_intervals(filtered, sample_rate),
        )
