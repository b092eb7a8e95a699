"""
Camera acquisition adapter.

Wraps OpenCV ``VideoCapture`` to provide an iterator of BGR frames and
reduces each frame to the per-frame averages the detection pipeline
consumes (:class:`~heartrate_monitor.samples.ColorSample`).  The lens
should be lit from the same side as the finger (phone torch, LED ring);
OpenCV has no portable torch control, so that is left to the user.
"""

from __future__ import annotations

import logging
import time
from typing import Generator, Tuple

import cv2
import numpy as np

from heartrate_monitor.samples import ColorSample

logger = logging.getLogger(__name__)


def frame_to_sample(frame: np.ndarray, timestamp: float, roi_fraction: float = 0.5) -> ColorSample:
    """
    Average a BGR frame into a :class:`ColorSample`.

    Red and green are averaged over a centred region covering
    *roi_fraction* of each dimension (the fingertip pad); brightness is the
    mean luma of the whole frame.

    Parameters
    ----------
    frame:
        BGR image array (H × W × 3, uint8).
    timestamp:
        Monotonic capture time in seconds.
    """
    h, w = frame.shape[:2]
    margin_y = int(h * (1.0 - roi_fraction) / 2)
    margin_x = int(w * (1.0 - roi_fraction) / 2)
    roi = frame[margin_y:h - margin_y, margin_x:w - margin_x]

    red = float(roi[:, :, 2].mean())      # channel 2 = Red in BGR
    green = float(roi[:, :, 1].mean())    # channel 1 = Green in BGR
    brightness = float(cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY).mean())
    return ColorSample(red=red, green=green, brightness=brightness, timestamp=timestamp)


class Camera:
    """
    Thin wrapper around an OpenCV capture device.

    Parameters
    ----------
    resolution:
        (width, height) of captured frames.
    fps:
        Requested frame rate.  The device may deliver a different, jittery
        rate; the session measures the real one from timestamps.
    camera_index:
        OpenCV camera index.
    roi_fraction:
        Fraction of each frame dimension averaged for the colour channels.
    max_failed_reads:
        Consecutive failed reads after which :meth:`frames` gives up.
    """

    def __init__(
        self,
        resolution: Tuple[int, int] = (640, 480),
        fps: int = 30,
        camera_index: int = 0,
        roi_fraction: float = 0.5,
        max_failed_reads: int = 10,
    ) -> None:
        self.resolution = resolution
        self.fps = fps
        self.camera_index = camera_index
        self.roi_fraction = roi_fraction
        self.max_failed_reads = max_failed_reads
        self._cap: "cv2.VideoCapture | None" = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Initialise and start the capture device."""
        cap = cv2.VideoCapture(self.camera_index)
        if not cap.isOpened():
            raise RuntimeError(
                f"Cannot open video capture device index={self.camera_index}"
            )
        w, h = self.resolution
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, w)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, h)
        cap.set(cv2.CAP_PROP_FPS, self.fps)
        self._cap = cap
        logger.info("Camera opened – index=%d resolution=%s fps=%d",
                    self.camera_index, self.resolution, self.fps)

    def close(self) -> None:
        """Release the capture device."""
        if self._cap is None:
            return
        self._cap.release()
        self._cap = None
        logger.info("Camera closed.")

    def __enter__(self) -> "Camera":
        self.open()
        return self

    def __exit__(self, *_) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Frame acquisition
    # ------------------------------------------------------------------

    def read_frame(self) -> np.ndarray | None:
        """Capture a single BGR frame, or *None* on failure."""
        if self._cap is None:
            raise RuntimeError("Camera is not open.  Call open() first.")
        ok, frame = self._cap.read()
        if not ok:
            logger.warning("VideoCapture.read() returned False.")
            return None
        return frame

    def frames(self) -> Generator[np.ndarray, None, None]:
        """Yield frames until the camera is closed or keeps failing."""
        failed = 0
        while self._cap is not None:
            frame = self.read_frame()
            if frame is not None:
                failed = 0
                yield frame
                continue
            failed += 1
            if failed >= self.max_failed_reads:
                logger.error("No frame in %d reads, stopping capture", failed)
                return

    def samples(self) -> Generator[ColorSample, None, None]:
        """Yield one :class:`ColorSample` per captured frame."""
        for frame in self.frames():
            yield frame_to_sample(frame, time.monotonic(), self.roi_fraction)
