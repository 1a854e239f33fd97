"""RSSI fingerprint positioning.

This package estimates the position of a device from a received signal
strength (RSSI) fingerprint by matching it against fingerprints captured at
known locations, optionally refining the positions of the radio sources:
- estimators: Least squares solvers (linear LS, Levenberg-Marquardt)
- rf: Log-distance path-loss model, Taylor linearizations, variance propagation
- fingerprinting: Data containers, nearest search and the position estimators
- utils: Numerical helpers
"""

__version__ = "0.1.0"
