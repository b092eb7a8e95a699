"""
Low-latency per-beat detector.

Drives immediate feedback (sound, animation, waveform spike); the reported
BPM comes from the windowed estimator instead.

A beat fires when the *middle* sample of a small ring buffer is strictly
the maximum of the whole buffer.  This delays each event by half a window
(≈ 0.25 s at 30 fps) but rejects the shallow wobbles a rising-edge trigger
would fire on.  The peak must also sit in the upper part of a slowly
decaying min/max envelope, and a minimum inter-beat time debounces the
output.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from heartrate_monitor.config import BeatDetectorConfig
from heartrate_monitor.samples import SignalWindow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BeatEvent:
    timestamp: float


class BeatChannel:
    """
    Single-slot, consume-once hand-off between the producer thread and the
    presentation thread.

    :meth:`post` overwrites any unconsumed beat; :meth:`consume` returns it
    exactly once.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._slot: Optional[BeatEvent] = None

    def post(self, event: BeatEvent) -> None:
        with self._lock:
            self._slot = event

    def consume(self) -> Optional[BeatEvent]:
        with self._lock:
            event, self._slot = self._slot, None
        return event

    def clear(self) -> None:
        with self._lock:
            self._slot = None


class RealtimeBeatDetector:
    """
    Per-sample beat trigger.

    Parameters
    ----------
    config:
        Window size, envelope fraction, amplitude floor, debounce and decay;
        see :class:`~heartrate_monitor.config.BeatDetectorConfig`.
    """

    def __init__(self, config: Optional[BeatDetectorConfig] = None) -> None:
        self.config = config or BeatDetectorConfig()
        self.channel = BeatChannel()
        self._window = SignalWindow(self.config.window)
        self.reset()

    def reset(self) -> None:
        self._window.clear()
        self._high: Optional[float] = None
        self._low: Optional[float] = None
        self._last_beat: Optional[float] = None
        self.channel.clear()

    def on_sample(self, value: float, timestamp: float) -> bool:
        """
        Feed one sample; return *True* if a beat fires now.

        A fired beat is also posted to :attr:`channel`.
        """
        self._window.append(value)
        self._track_envelope(float(value))

        if not self._window.is_full:
            return False

        cfg = self.config
        middle = len(self._window) // 2
        candidate = self._window[middle]
        if any(v >= candidate for i, v in enumerate(self._window) if i != middle):
            return False

        span = self._high - self._low
        if span < cfg.min_amplitude:
            return False
        if candidate < self._low + cfg.upper_fraction * span:
            return False
        if self._last_beat is not None and timestamp - self._last_beat < cfg.min_interval_s:
            return False

        self._last_beat = timestamp
        self.channel.post(BeatEvent(timestamp))
        logger.debug("Beat at %.3f s", timestamp)
        return True

    def consume_beat(self) -> Optional[BeatEvent]:
        """Read-and-clear the pending beat, if any (presentation side)."""
        return self.channel.consume()

    @property
    def envelope(self) -> tuple[float, float]:
        """``(low, high)`` of the running range (zeros before the first sample)."""
        if self._low is None:
            return 0.0, 0.0
        return self._low, self._high

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _track_envelope(self, value: float) -> None:
        if self._high is None:
            self._high = self._low = value
            return
        # Extremes relax toward the signal so slow amplitude drift is followed
        step = (self._high - self._low) * self.config.decay
        self._high = max(value, self._high - step)
        self._low = min(value, self._low + step)
