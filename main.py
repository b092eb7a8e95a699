#!/usr/bin/env python3
"""
Heart-rate monitor – main entry point.

Usage
-----
    python main.py [OPTIONS]

Options
-------
    --resolution WxH     Camera resolution (default: 640x480)
    --fps INT            Requested frame rate (default: 30)
    --camera-index INT   OpenCV camera index (default: 0)
    --max-failed-reads N Consecutive failed reads before capture stops (default: 10)
    --duration FLOAT     Measurement duration in seconds (default: 10)
    --min-bpm INT        Lowest BPM the stabiliser accepts (default: 45)
    --max-bpm INT        Highest BPM the stabiliser accepts (default: 180)
    --no-fail-open       Require a positive pulse check before measuring
    --once               Exit after the first finished measurement
    --verbose            Debug logging (state transitions, rejected readings)

Keep the finger OFF the lens while calibrating, then cover it gently.
Press Ctrl+C to quit.
"""

from __future__ import annotations

import argparse
import logging
import sys
import time

from heartrate_monitor.camera import Camera
from heartrate_monitor.config import MonitorConfig
from heartrate_monitor.session import (
    BpmUpdate,
    MeasurementSession,
    SessionFinished,
    StateChanged,
)

logger = logging.getLogger("heartrate_monitor")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Fingertip heart-rate monitor (camera PPG)",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--resolution", default="640x480",
                        help="Camera resolution, e.g. 640x480")
    parser.add_argument("--fps", type=int, default=30,
                        help="Requested capture frame rate")
    parser.add_argument("--camera-index", type=int, default=0,
                        help="OpenCV VideoCapture index")
    parser.add_argument("--max-failed-reads", type=int, default=10,
                        help="Consecutive failed reads before capture stops")
    parser.add_argument("--duration", type=float, default=10.0,
                        help="Measurement duration in seconds")
    parser.add_argument("--min-bpm", type=int, default=45,
                        help="Lowest BPM accepted by the stabiliser")
    parser.add_argument("--max-bpm", type=int, default=180,
                        help="Highest BPM accepted by the stabiliser")
    parser.add_argument("--no-fail-open", action="store_true",
                        help="Never accept contact without a detected pulse")
    parser.add_argument("--once", action="store_true",
                        help="Exit after the first finished measurement")
    parser.add_argument("--verbose", action="store_true",
                        help="Enable debug logging")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> MonitorConfig:
    config = MonitorConfig()
    config.session.duration_s = args.duration
    config.session.nominal_rate = float(args.fps)
    config.stabilizer.min_bpm = args.min_bpm
    config.stabilizer.max_bpm = args.max_bpm
    config.finger.fail_open = not args.no_fail_open
    return config


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------

def run(args: argparse.Namespace) -> int:
    try:
        res_w, res_h = (int(v) for v in args.resolution.lower().split("x"))
    except ValueError:
        logger.error("Invalid --resolution format.  Use WxH, e.g. 640x480.")
        return 1

    camera = Camera(resolution=(res_w, res_h), fps=args.fps, camera_index=args.camera_index,
                    max_failed_reads=args.max_failed_reads)
    session = MeasurementSession(build_config(args))

    logger.info("Starting heart-rate monitor.  Keep your finger off the lens to calibrate.")
    try:
        with camera:
            for sample in camera.samples():
                session.process(sample)

                if session.consume_beat() is not None:
                    print("♥", end="", flush=True)

                for event in session.drain_events():
                    ts = time.strftime("%H:%M:%S")
                    if isinstance(event, StateChanged):
                        print(f"\n[{ts}] {event.message}")
                    elif isinstance(event, BpmUpdate):
                        est = event.estimate
                        print(f"\n[{ts}] BPM={est.value}  ({est.confidence.label})  "
                              f"{session.status_message}")
                    elif isinstance(event, SessionFinished):
                        result = event.result
                        print(f"\n[{ts}] {result.message}  "
                              f"[{result.end_reason.value}, {result.sample_count} samples "
                              f"@ {result.sample_rate:.1f} Hz]")
                        if args.once:
                            return 0 if result.bpm is not None else 2
    except KeyboardInterrupt:
        logger.info("Interrupted.")
    except RuntimeError as e:
        logger.error("%s", e)
        return 1
    finally:
        session.cancel()

    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s – %(message)s",
        datefmt="%H:%M:%S",
    )
    return run(args)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    sys.exit(main())
