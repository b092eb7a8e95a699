"""
Heart-rate monitor — fingertip PPG pulse detection.
Place your finger on the camera lens with the light on; the system verifies
finger contact, extracts the photoplethysmography (PPG) signal from the red
channel and computes a stabilised BPM value with a confidence label.
"""

__version__ = "0.2.0"
__author__ = "heartrate_monitor"
