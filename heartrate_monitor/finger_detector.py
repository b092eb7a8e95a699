"""
Finger-on-lens detector.

With the torch on and a fingertip pressed on the lens, the frame becomes:
  - Dominated by red (light transmitted through blood-filled tissue).
  - Clearly brighter or darker than the empty, lit scene.
  - Slightly modulated over time by the pulse.

A red wall or a piece of red plastic passes the colour tests but shows no
micro-variation, so contact is verified in stages before a measurement may
start:

    CALIBRATING → AWAITING_CONTACT → VERIFYING_CONTACT → VERIFYING_PULSE → CONFIRMED

Every transition is driven by consecutive-frame counters, never by a
single sample.
"""

from __future__ import annotations

import logging
from collections import deque
from enum import Enum
from typing import Deque, Optional

import numpy as np

from heartrate_monitor.config import FingerDetectorConfig
from heartrate_monitor.samples import ColorSample

logger = logging.getLogger(__name__)


class DetectionState(Enum):
    CALIBRATING = "calibrating"              # building the no-finger baseline
    AWAITING_CONTACT = "awaiting_contact"    # calibrated, waiting for a finger
    VERIFYING_CONTACT = "verifying_contact"  # finger-like object, checking for tissue
    VERIFYING_PULSE = "verifying_pulse"      # tissue confirmed, checking for rhythm
    CONFIRMED = "confirmed"                  # real finger with a pulse


_STATUS_MESSAGES = {
    DetectionState.AWAITING_CONTACT: "Ready! Place finger on camera",
    DetectionState.VERIFYING_CONTACT: "Detecting finger...",
    DetectionState.VERIFYING_PULSE: "Verifying pulse...",
    DetectionState.CONFIRMED: "Finger detected! Starting measurement...",
}


def variation_percent(values: np.ndarray) -> float:
    """Standard deviation as a percentage of the mean (0 for an empty/dark window)."""
    if len(values) == 0:
        return 0.0
    mean = float(np.mean(values))
    if mean <= 0:
        return 0.0
    return float(np.std(values)) / mean * 100.0


def mean_crossings(values: np.ndarray) -> int:
    """Number of times *values* cross their own mean."""
    if len(values) < 2:
        return 0
    above = values > np.mean(values)
    return int(np.count_nonzero(above[1:] != above[:-1]))


class FingerPresenceDetector:
    """
    Staged state machine deciding whether a pulsing finger covers the lens.

    Call :meth:`process` once per frame.  It never raises: a contact that
    cannot be confirmed simply stays in ``AWAITING_CONTACT`` or
    ``VERIFYING_CONTACT``, and an unusable calibration restarts silently.

    Parameters
    ----------
    config:
        Thresholds and frame counts; see
        :class:`~heartrate_monitor.config.FingerDetectorConfig`.  Set
        ``fail_open=False`` to require a positive pulse check instead of
        accepting contact after ``max_pulse_attempts`` failed checks.
    """

    def __init__(self, config: Optional[FingerDetectorConfig] = None) -> None:
        self.config = config or FingerDetectorConfig()
        self._calibration: list[tuple[float, float]] = []   # (red, brightness)
        self._baseline_brightness = 0.0
        self._baseline_red = 0.0
        self._calibrated = False
        self._clear_contact()
        self.state = DetectionState.CALIBRATING

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def process(self, sample: ColorSample) -> DetectionState:
        """Advance the state machine by one frame and return the new state."""
        previous = self.state

        if self.state is DetectionState.CALIBRATING:
            self._calibrate(sample)
        elif self.state is DetectionState.AWAITING_CONTACT:
            self._await_contact(sample)
        elif self.state is DetectionState.VERIFYING_CONTACT:
            self._verify_contact(sample)
        elif self.state is DetectionState.VERIFYING_PULSE:
            self._verify_pulse(sample)
        else:
            self._track_presence(sample)

        if self.state is not previous:
            logger.debug("Finger detector: %s -> %s", previous.name, self.state.name)
        return self.state

    def reset(self) -> None:
        """Full reset, including the calibration baseline."""
        self._calibration.clear()
        self._baseline_brightness = 0.0
        self._baseline_red = 0.0
        self._calibrated = False
        self._clear_contact()
        self.state = DetectionState.CALIBRATING

    def reset_for_next_measurement(self) -> None:
        """
        Reset contact tracking but keep the baseline.

        The finger must be lifted and placed again; no recalibration is
        needed unless calibration never completed.
        """
        self._clear_contact()
        self.state = (
            DetectionState.AWAITING_CONTACT if self._calibrated else DetectionState.CALIBRATING
        )

    def force_ready(self) -> None:
        """Skip straight to waiting for contact (only once calibrated)."""
        if self._calibrated:
            self._clear_contact()
            self.state = DetectionState.AWAITING_CONTACT

    def is_finger_like(self, sample: ColorSample) -> bool:
        """Strict predicate used for initial detection."""
        cfg = self.config
        if sample.red < cfg.min_red:
            return False
        if sample.red_ratio < cfg.min_red_ratio:
            return False
        if not cfg.min_brightness <= sample.brightness <= cfg.max_brightness:
            return False
        return abs(sample.brightness - self._baseline_brightness) >= cfg.min_baseline_delta

    def is_present(self, sample: ColorSample) -> bool:
        """Relaxed predicate used once contact is established (hysteresis)."""
        cfg = self.config
        if sample.red < cfg.min_red * cfg.relaxed_intensity_factor:
            return False
        if sample.red_ratio < cfg.min_red_ratio * cfg.relaxed_ratio_factor:
            return False
        if sample.brightness < cfg.min_brightness * cfg.relaxed_intensity_factor:
            return False
        return abs(sample.brightness - self._baseline_brightness) >= cfg.relaxed_baseline_delta

    @property
    def is_ready(self) -> bool:
        return self.state is DetectionState.CONFIRMED

    @property
    def is_calibrated(self) -> bool:
        return self._calibrated

    @property
    def baseline(self) -> tuple[float, float]:
        """``(brightness, red)`` of the empty, lit scene."""
        return self._baseline_brightness, self._baseline_red

    @property
    def calibration_progress(self) -> float:
        if self._calibrated:
            return 1.0
        return min(1.0, len(self._calibration) / self.config.calibration_samples)

    @property
    def status_message(self) -> str:
        if self.state is DetectionState.CALIBRATING:
            return f"Calibrating... {int(self.calibration_progress * 100)}% (Keep finger OFF)"
        return _STATUS_MESSAGES[self.state]

    # ------------------------------------------------------------------
    # State handlers
    # ------------------------------------------------------------------

    def _calibrate(self, sample: ColorSample) -> None:
        cfg = self.config
        self._calibration.append((sample.red, sample.brightness))
        if len(self._calibration) < cfg.calibration_samples:
            return

        readings = np.array(self._calibration, dtype=np.float64)
        brightness = readings[:, 1]
        mean, std = float(brightness.mean()), float(brightness.std())

        if std < cfg.calibration_max_std and mean > cfg.calibration_min_brightness:
            self._baseline_brightness = mean
            self._baseline_red = float(readings[:, 0].mean())
            self._calibrated = True
            self._calibration.clear()
            self.state = DetectionState.AWAITING_CONTACT
            logger.info("Calibrated: baseline brightness=%.1f red=%.1f",
                        self._baseline_brightness, self._baseline_red)
        else:
            # Moving finger or a dark scene; start over
            logger.debug("Calibration rejected (mean=%.1f std=%.1f)", mean, std)
            self._calibration.clear()

    def _await_contact(self, sample: ColorSample) -> None:
        if not self.is_finger_like(sample):
            self._run = 0
            return
        self._run += 1
        if self._run >= self.config.contact_frames:
            self._run = 0
            self._history.clear()
            self.state = DetectionState.VERIFYING_CONTACT

    def _verify_contact(self, sample: ColorSample) -> None:
        if not self.is_finger_like(sample):
            self._run = 0
            self._history.clear()
            self.state = DetectionState.AWAITING_CONTACT
            return

        self._run += 1
        self._history.append(sample.red)
        if self._run < self.config.sustained_frames:
            return

        # A static red object shows no variation, noise shows too much
        recent = np.array(self._history, dtype=np.float64)[-self.config.sustained_frames:]
        variation = variation_percent(recent)
        if self.config.min_tissue_variation < variation < self.config.max_tissue_variation:
            self._history.clear()
            self._pulse_frames = 0
            self.state = DetectionState.VERIFYING_PULSE

    def _verify_pulse(self, sample: ColorSample) -> None:
        if not self._still_present(sample):
            return

        self._history.append(sample.red)
        self._pulse_frames += 1
        if self._pulse_frames < self.config.pulse_frames:
            return

        if self._has_pulse():
            self._confirm()
            return

        self._attempts += 1
        logger.debug("Pulse check failed (attempt %d/%d)", self._attempts,
                     self.config.max_pulse_attempts)
        if self.config.fail_open and self._attempts >= self.config.max_pulse_attempts:
            logger.info("No clear pulse after %d attempts; accepting contact", self._attempts)
            self._confirm()
        else:
            self._pulse_frames = 0
            self._history.clear()

    def _track_presence(self, sample: ColorSample) -> None:
        self._still_present(sample)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _still_present(self, sample: ColorSample) -> bool:
        """Relaxed check with a release counter; drops back to AWAITING_CONTACT on loss."""
        if self.is_present(sample):
            self._misses = 0
            return True
        self._misses += 1
        if self._misses >= self.config.release_frames:
            logger.info("Finger removed")
            self._clear_contact()
            self.state = DetectionState.AWAITING_CONTACT
        return False

    def _has_pulse(self) -> bool:
        cfg = self.config
        values = np.array(self._history, dtype=np.float64)[-cfg.pulse_frames:]
        if len(values) < cfg.pulse_frames:
            return False

        variation = variation_percent(values)
        if not cfg.min_pulse_variation <= variation <= cfg.max_pulse_variation:
            return False

        # Each beat crosses the mean twice
        return cfg.min_crossings <= mean_crossings(values) <= cfg.max_crossings

    def _confirm(self) -> None:
        self._attempts = 0
        self._misses = 0
        self._history.clear()
        self.state = DetectionState.CONFIRMED

    def _clear_contact(self) -> None:
        self._run = 0
        self._misses = 0
        self._pulse_frames = 0
        self._attempts = 0
        self._history: Deque[float] = deque(
            maxlen=max(self.config.sustained_frames, self.config.pulse_frames)
        )
