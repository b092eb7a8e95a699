"""
Measurement session orchestration.

:class:`MeasurementSession` owns the five pipeline components and
sequences them:

    ColorSample ─► FingerPresenceDetector ──(CONFIRMED)──► measurement
                                                             │
            ┌────────────────────────────────────────────────┤
            ▼                                                ▼
    RealtimeBeatDetector ─► BeatChannel        buffer ─► SignalConditioner
                                                   ─► PeakIntervalEstimator
                                                   ─► BpmStabilizer

Samples are pushed from the producer context (camera callback) with
:meth:`MeasurementSession.process`.  Nothing calls back into the caller:
state changes, live BPM updates and the final result are put on the
:attr:`~MeasurementSession.events` queue, and beats are read with
:meth:`~MeasurementSession.consume_beat`.

A measurement ends when the required number of samples is collected, when
the wall-clock timeout fires on its own timer thread, or when the finger is
lifted.  The first two race each other, so finalisation goes through a
set-once :class:`CompletionLatch`.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Callable, List, Optional

import numpy as np

from heartrate_monitor.bpm_stabilizer import (
    BpmEstimate,
    BpmStabilizer,
    Confidence,
    classify_confidence,
    interval_consistency,
    quality_indicator,
    signal_quality,
)
from heartrate_monitor.config import MonitorConfig
from heartrate_monitor.finger_detector import DetectionState, FingerPresenceDetector
from heartrate_monitor.peak_estimator import PeakIntervalEstimator
from heartrate_monitor.realtime_beat import BeatEvent, RealtimeBeatDetector
from heartrate_monitor.samples import ColorSample, SampleRateMeter, SignalWindow
from heartrate_monitor.signal_conditioner import SignalConditioner

logger = logging.getLogger(__name__)


class EndReason(Enum):
    COMPLETED = "completed"
    TIMEOUT = "timeout"
    FINGER_REMOVED = "finger_removed"
    CANCELLED = "cancelled"


class ResultStatus(Enum):
    OK = "ok"
    INSUFFICIENT_DATA = "insufficient_data"
    NOISY_SIGNAL = "noisy_signal"
    IMPLAUSIBLE_READING = "implausible_reading"
    CONTACT_LOST = "contact_lost"


@dataclass(frozen=True)
class SessionResult:
    bpm: Optional[int]
    confidence: Confidence
    is_partial: bool
    end_reason: EndReason
    status: ResultStatus
    message: str
    sample_count: int = 0
    sample_rate: float = 0.0


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StateChanged:
    state: DetectionState
    message: str


@dataclass(frozen=True)
class BpmUpdate:
    estimate: BpmEstimate


@dataclass(frozen=True)
class SessionFinished:
    result: SessionResult


class CompletionLatch:
    """Set-once guard: only the first :meth:`try_set` caller wins."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._set = False

    def try_set(self) -> bool:
        with self._lock:
            if self._set:
                return False
            self._set = True
            return True

    @property
    def is_set(self) -> bool:
        with self._lock:
            return self._set


# ---------------------------------------------------------------------------
# Final evaluation
# ---------------------------------------------------------------------------

def evaluate_measurement(
    values: np.ndarray,
    sample_rate: float,
    config: Optional[MonitorConfig] = None,
    end_reason: EndReason = EndReason.COMPLETED,
) -> SessionResult:
    """
    Turn the raw samples of one measurement into a :class:`SessionResult`.

    Falls back progressively (fewer peaks, no outlier rejection) before
    giving up, and never raises.

    Parameters
    ----------
    values:
        Raw red-channel values collected during the measurement.
    sample_rate:
        Measured sample rate in Hz.
    end_reason:
        Why the measurement stopped.  ``FINGER_REMOVED`` always takes the
        partial path.
    """
    cfg = config or MonitorConfig()
    values = np.asarray(values, dtype=np.float64)
    try:
        return _evaluate(values, sample_rate, cfg, end_reason)
    except Exception as e:
        logger.warning("Heart-rate evaluation failed: %s", e)
        return _result(None, Confidence.LOW, True, end_reason, ResultStatus.INSUFFICIENT_DATA,
                       "Not enough data. Place finger again.", values, sample_rate)


def _evaluate(
    values: np.ndarray,
    sample_rate: float,
    cfg: MonitorConfig,
    end_reason: EndReason,
) -> SessionResult:
    scfg = cfg.session
    conditioner = SignalConditioner(cfg.conditioner)
    estimator = PeakIntervalEstimator(cfg.peaks)
    quality = signal_quality(values, sample_rate, cfg.confidence)

    def fallback(status: ResultStatus, found: str, missing: str) -> SessionResult:
        bpm = _partial_bpm(values, sample_rate, cfg, conditioner, estimator)
        if bpm is None:
            return _result(None, Confidence.LOW, True, end_reason, status, missing,
                           values, sample_rate)
        return _result(bpm, Confidence.LOW, True, end_reason, status,
                       f"Heart rate: {bpm} BPM ({found})", values, sample_rate)

    if end_reason is EndReason.FINGER_REMOVED:
        return fallback(ResultStatus.CONTACT_LOST, "partial, finger removed",
                        "Finger removed. Place finger again.")

    if len(values) < scfg.full_min_samples:
        found = "weak signal" if quality < 0.5 else "short measurement"
        return fallback(ResultStatus.INSUFFICIENT_DATA, found,
                        "Not enough data. Place finger again.")

    signal = conditioner.condition(values, sample_rate)
    peaks = estimator.find_peaks(signal, sample_rate)
    if len(peaks) < scfg.full_min_peaks:
        return fallback(ResultStatus.NOISY_SIGNAL, "low confidence",
                        "Could not detect heartbeat. Try again.")

    intervals = estimator.intervals(peaks, sample_rate)
    if len(intervals) == 0:
        return fallback(ResultStatus.NOISY_SIGNAL, "low confidence",
                        "Could not detect consistent heartbeat.")

    filtered = estimator.reject_outliers(intervals)
    if len(filtered) == 0:
        return _result(None, Confidence.LOW, False, end_reason, ResultStatus.NOISY_SIGNAL,
                       "Inconsistent heartbeat detected. Try again.", values, sample_rate)

    bpm = estimator.bpm_from_intervals(filtered, sample_rate)
    confidence = classify_confidence(
        quality, interval_consistency(filtered, cfg.confidence), cfg.confidence
    )
    valid_low, valid_high = scfg.valid_bpm
    sane_low, sane_high = scfg.sane_bpm

    if valid_low <= bpm <= valid_high:
        return _result(bpm, confidence, False, end_reason, ResultStatus.OK,
                       f"{bpm} BPM ({confidence.label})", values, sample_rate)
    if sane_low <= bpm <= sane_high:
        return _result(bpm, Confidence.LOW, False, end_reason, ResultStatus.IMPLAUSIBLE_READING,
                       f"{bpm} BPM (unusual range, please retry)", values, sample_rate)
    return _result(None, Confidence.LOW, False, end_reason, ResultStatus.IMPLAUSIBLE_READING,
                   "Invalid reading. Please try again.", values, sample_rate)


def _partial_bpm(
    values: np.ndarray,
    sample_rate: float,
    cfg: MonitorConfig,
    conditioner: SignalConditioner,
    estimator: PeakIntervalEstimator,
) -> Optional[int]:
    scfg = cfg.session
    if len(values) < scfg.partial_min_samples:
        return None
    signal = conditioner.condition(values, sample_rate)
    estimate = estimator.estimate(signal, sample_rate, min_peaks=scfg.partial_min_peaks)
    if estimate is None:
        return None
    low, high = scfg.valid_bpm
    return estimate.bpm if low <= estimate.bpm <= high else None


def _result(bpm, confidence, is_partial, end_reason, status, message, values, sample_rate):
    return SessionResult(
        bpm=bpm,
        confidence=confidence,
        is_partial=is_partial,
        end_reason=end_reason,
        status=status,
        message=message,
        sample_count=len(values),
        sample_rate=float(sample_rate),
    )


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class MeasurementSession:
    """
    Orchestrates finger detection, measurement and finalisation.

    Each component is mutated from the producer context only; the timeout
    thread just evaluates a snapshot of the buffer and defers component
    resets to the next :meth:`process` call.

    Parameters
    ----------
    config:
        Full pipeline configuration.
    timer_factory:
        ``(seconds, callback) -> timer`` with ``start()``/``cancel()``;
        :class:`threading.Timer` by default.
    """

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        timer_factory: Callable[[float, Callable[[], None]], Any] = threading.Timer,
    ) -> None:
        self.config = config or MonitorConfig()
        self._timer_factory = timer_factory

        self.finger = FingerPresenceDetector(self.config.finger)
        self.conditioner = SignalConditioner(self.config.conditioner)
        self.estimator = PeakIntervalEstimator(self.config.peaks)
        self.stabilizer = BpmStabilizer(self.config.stabilizer)
        self.beats = RealtimeBeatDetector(self.config.beats)

        scfg = self.config.session
        self._rate = SampleRateMeter(scfg.nominal_rate, scfg.min_rate, scfg.max_rate,
                                     scfg.rate_warmup_samples)
        self._buffer = SignalWindow()
        self._lock = threading.Lock()
        self._latch: Optional[CompletionLatch] = None
        self._timer: Any = None
        self._measuring = False
        self._rearm = False
        self._absent_run = 0
        self._state = self.finger.state

        self.events: "queue.Queue[object]" = queue.Queue()
        self.last_result: Optional[SessionResult] = None

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def process(self, sample: ColorSample) -> None:
        """Consume one frame's averages.  Never blocks on computation locks."""
        with self._lock:
            rearm, self._rearm = self._rearm, False
            measuring = self._measuring

        if rearm:
            self.finger.reset_for_next_measurement()
            self.beats.reset()
            self._emit_state(self.finger.state)

        if measuring:
            self._measure(sample)
            return

        state = self.finger.process(sample)
        self._emit_state(state)
        if state is DetectionState.CONFIRMED:
            self._start()

    def cancel(self) -> None:
        """Abort any measurement and reset the pipeline, keeping calibration."""
        with self._lock:
            if self._latch is not None:
                self._latch.try_set()
            self._measuring = False
            self._buffer.clear()
            self._rearm = False
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()

        self.finger.reset_for_next_measurement()
        self.stabilizer.reset()
        self.beats.reset()
        self._rate.reset()
        self._emit_state(self.finger.state)
        logger.info("Measurement cancelled")

    def reset(self) -> None:
        """Full reset, including the finger detector's calibration."""
        self.cancel()
        self.finger.reset()
        self._emit_state(self.finger.state)

    # ------------------------------------------------------------------
    # Presentation side
    # ------------------------------------------------------------------

    def consume_beat(self) -> Optional[BeatEvent]:
        """Pending beat, returned exactly once."""
        return self.beats.consume_beat()

    def drain_events(self) -> List[object]:
        drained = []
        while True:
            try:
                drained.append(self.events.get_nowait())
            except queue.Empty:
                return drained

    @property
    def is_measuring(self) -> bool:
        return self._measuring

    @property
    def sample_rate(self) -> float:
        return self._rate.rate

    @property
    def progress(self) -> float:
        """Fraction (0 – 1) of the required samples collected."""
        return min(1.0, len(self._buffer) / max(1, self.config.session.required_samples))

    @property
    def status_message(self) -> str:
        if not self._measuring:
            return self.finger.status_message
        values = self._snapshot()
        if len(values) >= int(self._rate.rate * self.config.confidence.quality_seconds):
            ccfg = self.config.confidence
            indicator = quality_indicator(signal_quality(values, self._rate.rate, ccfg), ccfg)
        else:
            indicator = "..."
        return f"Measuring {int(self.progress * 100)}% | Signal: {indicator}"

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _start(self) -> None:
        scfg = self.config.session
        latch = CompletionLatch()
        with self._lock:
            self._buffer.clear()
            self._latch = latch
            self._measuring = True
        self._absent_run = 0
        self._rate.reset()
        self.stabilizer.reset()
        self.beats.reset()

        if scfg.duration_s:
            timer = self._timer_factory(scfg.duration_s, partial(self._finish, EndReason.TIMEOUT, latch))
            if hasattr(timer, "daemon"):
                timer.daemon = True
            self._timer = timer
            timer.start()
        logger.info("Measurement started (%d samples or %.0f s)", scfg.required_samples, scfg.duration_s or 0)

    def _measure(self, sample: ColorSample) -> None:
        scfg = self.config.session
        ppg = sample.to_sample()
        with self._lock:
            if not self._measuring:
                return
            self._buffer.append(ppg.value)
            count = len(self._buffer)

        self._rate.update(ppg.timestamp)
        self.beats.on_sample(ppg.value, ppg.timestamp)

        self._absent_run = 0 if self.finger.is_present(sample) else self._absent_run + 1
        state = self.finger.process(sample)
        if state is not DetectionState.CONFIRMED:
            self._emit_state(state)
            self._finish(EndReason.FINGER_REMOVED)
            return

        if count >= scfg.live_min_samples and count % scfg.live_every == 0:
            self._live_update(sample.timestamp)

        if count >= scfg.required_samples:
            self._finish(EndReason.COMPLETED)

    def _live_update(self, now: float) -> None:
        scfg = self.config.session
        try:
            rate = self._rate.rate
            signal = self.conditioner.condition(self._snapshot(), rate)
            estimate = self.estimator.estimate(
                signal, rate,
                min_peaks=scfg.live_min_peaks,
                min_intervals=scfg.live_min_intervals,
                outlier_policy=scfg.live_outlier_policy,
            )
            if estimate is None:
                return
            current = self.stabilizer.update(estimate.bpm, now)
            if current is not None and self.stabilizer.reliable:
                self.events.put(BpmUpdate(current))
        except Exception as e:
            logger.warning("Live BPM update failed: %s", e)

    def _finish(self, reason: EndReason, latch: Optional[CompletionLatch] = None) -> Optional[SessionResult]:
        latch = latch or self._latch
        if latch is None or not latch.try_set():
            return None

        with self._lock:
            values = self._buffer.to_array()
            self._measuring = False
            # Re-arm before evaluating so a frame arriving meanwhile cannot
            # restart on the stale CONFIRMED state
            self._rearm = True
            timer, self._timer = self._timer, None
        if timer is not None and reason is not EndReason.TIMEOUT:
            timer.cancel()
        if reason is EndReason.FINGER_REMOVED and self._absent_run:
            # Frames after the finger lifted are not PPG
            values = values[:-self._absent_run]

        result = evaluate_measurement(values, self._rate.rate, self.config, reason)
        self.last_result = result
        logger.info("Measurement finished (%s): %s", reason.value, result.message)
        self.events.put(SessionFinished(result))
        return result

    def _snapshot(self) -> np.ndarray:
        with self._lock:
            return self._buffer.to_array()

    def _emit_state(self, state: DetectionState) -> None:
        if state is not self._state:
            self._state = state
            self.events.put(StateChanged(state, self.finger.status_message))
