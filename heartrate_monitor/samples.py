"""
Sample types and rolling buffers shared by the detection components.

Timestamps are monotonic seconds (``time.monotonic()``).  The camera frame
rate is nominal only, so the effective sample rate is always measured from
the timestamps with :class:`SampleRateMeter`.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Iterator, Optional

import numpy as np

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Sample:
    value: float
    timestamp: float


@dataclass(frozen=True)
class ColorSample:
    """
    Per-frame averages produced by the acquisition layer.

    Attributes
    ----------
    red, green:
        Mean channel intensity over the region of interest (0 – 255).
    brightness:
        Mean luma of the frame (0 – 255).
    timestamp:
        Monotonic capture time in seconds.
    """

    red: float
    green: float
    brightness: float
    timestamp: float = 0.0

    @property
    def value(self) -> float:
        """The PPG signal value: blood volume modulates the red channel most."""
        return self.red

    @property
    def red_ratio(self) -> float:
        return self.red / self.green if self.green > 0 else 0.0

    def to_sample(self) -> Sample:
        return Sample(self.value, self.timestamp)


class SignalWindow:
    """
    Append-only sequence of recent values with ring-buffer eviction.

    Parameters
    ----------
    capacity:
        Maximum number of values kept.  ``None`` keeps everything (the
        session buffer grows for the whole measurement).
    """

    def __init__(self, capacity: Optional[int] = None) -> None:
        self.capacity = capacity
        self._values: Deque[float] = deque(maxlen=capacity)

    def append(self, value: float) -> None:
        self._values.append(float(value))

    def clear(self) -> None:
        self._values.clear()

    @property
    def is_full(self) -> bool:
        return self.capacity is not None and len(self._values) == self.capacity

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[float]:
        return iter(self._values)

    def __getitem__(self, index: int) -> float:
        return self._values[index]

    def to_array(self) -> np.ndarray:
        return np.array(self._values, dtype=np.float64)

    def tail(self, n: int) -> np.ndarray:
        """The last *n* values (fewer if the window holds fewer)."""
        values = self.to_array()
        return values[-n:] if n > 0 else values[:0]


class SampleRateMeter:
    """
    Measures the effective sample rate from timestamps.

    Until ``warmup`` samples have been seen the nominal rate is reported;
    afterwards ``(count - 1) / elapsed`` clamped to ``[min_rate, max_rate]``.
    """

    def __init__(
        self,
        nominal: float = 30.0,
        min_rate: float = 15.0,
        max_rate: float = 60.0,
        warmup: int = 30,
    ) -> None:
        self.nominal = nominal
        self.min_rate = min_rate
        self.max_rate = max_rate
        self.warmup = warmup
        self.reset()

    def reset(self) -> None:
        self._count = 0
        self._first: Optional[float] = None
        self._last: Optional[float] = None
        self._rate = self._clamp(self.nominal)

    def update(self, timestamp: float) -> float:
        """Register a sample timestamp and return the current rate estimate."""
        self._count += 1
        if self._first is None:
            self._first = timestamp
        self._last = timestamp

        if self._count > self.warmup:
            elapsed = self._last - self._first
            if elapsed > 0:
                self._rate = self._clamp((self._count - 1) / elapsed)
        return self._rate

    @property
    def rate(self) -> float:
        return self._rate

    @property
    def count(self) -> int:
        return self._count

    def _clamp(self, rate: float) -> float:
        return max(self.min_rate, min(self.max_rate, rate))
