"""
PPG signal conditioning.

Algorithm
---------
1. Detrend: subtract a wide centred moving average (≈ 2 s of the measured
   sample rate, at least 30 samples).  Removes breathing and motion drift.
2. Low-pass: convolve with a small symmetric Gaussian kernel.  At the edges
   only the taps falling inside the sequence are used, renormalised.
3. Smooth: a short centred moving average for cleaner local maxima.

The output always has the same length as the input.  Inputs shorter than
``min_length`` are returned unmodified.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np
from scipy.ndimage import convolve1d

from heartrate_monitor.config import ConditionerConfig

logger = logging.getLogger(__name__)


def gaussian_weights(taps: int) -> np.ndarray:
    """Symmetric Gaussian kernel with ``sigma = taps / 2`` (odd length)."""
    half = taps // 2
    sigma = taps / 2.0
    x = np.arange(-half, half + 1, dtype=np.float64)
    return np.exp(-(x * x) / (2.0 * sigma * sigma))


def weighted_average(signal: np.ndarray, weights: np.ndarray) -> np.ndarray:
    """
    Centred weighted average of *signal*.

    Samples outside the sequence contribute nothing; each output is
    divided by the sum of the weights that actually overlapped.
    """
    sums = convolve1d(signal, weights, mode="constant", cval=0.0)
    support = convolve1d(np.ones_like(signal), weights, mode="constant", cval=0.0)
    return sums / support


def moving_average(signal: np.ndarray, window: int) -> np.ndarray:
    """Centred moving average over ``2 * (window // 2) + 1`` samples."""
    half = window // 2
    return weighted_average(signal, np.ones(2 * half + 1, dtype=np.float64))


class SignalConditioner:
    """
    Detrend + low-pass + smooth, as a pure function of its input.

    Parameters
    ----------
    config:
        Window sizes; see :class:`~heartrate_monitor.config.ConditionerConfig`.
    """

    def __init__(self, config: Optional[ConditionerConfig] = None) -> None:
        self.config = config or ConditionerConfig()
        self._lowpass = gaussian_weights(self.config.lowpass_taps)

    def condition(self, samples: Sequence[float], sample_rate: float = 30.0) -> np.ndarray:
        """
        Return the conditioned signal (same length as *samples*).

        Parameters
        ----------
        samples:
            Raw intensity values in acquisition order.
        sample_rate:
            Measured sample rate in Hz; sizes the detrending window.
        """
        signal = np.asarray(samples, dtype=np.float64)
        if len(signal) < self.config.min_length:
            return signal.copy()

        detrended = signal - moving_average(signal, self.detrend_window(sample_rate))
        low_passed = weighted_average(detrended, self._lowpass)
        return moving_average(low_passed, self.config.smoothing_window)

    def detrend_window(self, sample_rate: float) -> int:
        return max(int(sample_rate * self.config.detrend_seconds), self.config.min_detrend_window)
