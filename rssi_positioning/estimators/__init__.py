"""
Least squares solvers used by the fingerprint position estimators.

Available estimators:
    - Linear least squares (direct solve of the normal equations)
    - Weighted nonlinear least squares (Levenberg-Marquardt)
"""

from rssi_positioning.estimators.least_squares import linear_least_squares
from rssi_positioning.estimators.nonlinear_least_squares import (
    FitResult,
    FittingError,
    fit_multi_dimension,
    levenberg_marquardt,
)

__all__ = [
    # Linear LS
    "linear_least_squares",
    # Nonlinear LS
    "levenberg_marquardt",
    "fit_multi_dimension",
    "FitResult",
    "FittingError",
]
