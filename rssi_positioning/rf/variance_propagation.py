"""
First-order (delta method) variance propagation through the path-loss model.

Given uncertain inputs θ with covariance Σ_θ and a scalar model f(θ), the
variance of f is approximated by:

    σ_f² ≈ J Σ_θ J',   J = ∂f/∂θ

Inputs that are not known to be uncertain are absent (None). They do not
contribute to Σ_θ, and when every input is absent the result is None rather
than zero, so callers can tell "no information" apart from "exact".

Author: Navigation Engineer
Date: 2024
"""

from typing import List, Optional, Tuple

import numpy as np

from rssi_positioning.rf.pathloss import MIN_SQR_DISTANCE, PathLossEvaluator
from rssi_positioning.utils.numerical import numerical_jacobian

_LN10 = np.log(10.0)


def _as_covariance(name: str, covariance, dims: int) -> Optional[np.ndarray]:
    if covariance is None:
        return None
    covariance = np.asarray(covariance, dtype=float)
    if covariance.shape != (dims, dims):
        raise ValueError(f"{name} must have shape ({dims}, {dims}), got {covariance.shape}")
    return covariance


def _as_variance(name: str, variance) -> Optional[np.ndarray]:
    if variance is None:
        return None
    variance = float(variance)
    if variance < 0 or not np.isfinite(variance):
        raise ValueError(f"{name} must be a non-negative finite number, got {variance}")
    return np.array([[variance]])


def _quadratic_form(
    jacobian: np.ndarray, blocks: List[Tuple[slice, Optional[np.ndarray]]]
) -> Optional[float]:
    variance = None
    for block, covariance in blocks:
        if covariance is None:
            continue
        j = jacobian[block]
        contribution = float(j @ covariance @ j)
        variance = contribution if variance is None else variance + contribution
    if variance is None:
        return None
    return max(variance, 0.0)


def propagate_rssi_variance(
    evaluator: PathLossEvaluator,
    reference_rssi: float,
    reference_position: np.ndarray,
    source_position: np.ndarray,
    path_loss_exponent: float,
    candidate_position: np.ndarray,
    reference_rssi_variance: Optional[float] = None,
    path_loss_exponent_variance: Optional[float] = None,
    fingerprint_position_covariance: Optional[np.ndarray] = None,
    source_position_covariance: Optional[np.ndarray] = None,
) -> Optional[float]:
    """
    Variance of the Taylor-linearized RSSI prediction.

    The prediction is propagated at the evaluator's own linearization order,
    so first, second and third order estimators weight their residuals
    consistently with the model they fit.

    Args:
        evaluator: Path-loss evaluator (fixes dims and order).
        reference_rssi: RSSI Pr(p1) at the located fingerprint (dBm).
        reference_position: Located fingerprint position p1.
        source_position: Radio source position p_a.
        path_loss_exponent: Path-loss exponent n.
        candidate_position: Point at which the prediction is evaluated.
        reference_rssi_variance: Variance of Pr(p1), or None.
        path_loss_exponent_variance: Variance of n, or None.
        fingerprint_position_covariance: Covariance of p1 (d × d), or None.
        source_position_covariance: Covariance of p_a (d × d), or None.

    Returns:
        Propagated variance in dBm², or None if every input is absent.
    """
    dims = evaluator.dims
    blocks = [
        (slice(0, 1), _as_variance("reference_rssi_variance", reference_rssi_variance)),
        (slice(1, 2), _as_variance("path_loss_exponent_variance", path_loss_exponent_variance)),
        (
            slice(2, 2 + dims),
            _as_covariance("fingerprint_position_covariance", fingerprint_position_covariance, dims),
        ),
        (
            slice(2 + dims, 2 + 2 * dims),
            _as_covariance("source_position_covariance", source_position_covariance, dims),
        ),
    ]
    if all(covariance is None for _, covariance in blocks):
        return None

    candidate_position = np.asarray(candidate_position, dtype=float)

    def predict(theta):
        value, _ = evaluator.evaluate(
            theta[0],
            theta[2 : 2 + dims],
            theta[2 + dims :],
            theta[1],
            candidate_position,
        )
        return value

    theta = np.concatenate(
        [
            [reference_rssi, path_loss_exponent],
            np.asarray(reference_position, dtype=float),
            np.asarray(source_position, dtype=float),
        ]
    )
    jacobian = numerical_jacobian(predict, theta)[0]
    return _quadratic_form(jacobian, blocks)


def propagate_rssi_difference_variance(
    path_loss_exponent: float,
    fingerprint_position: np.ndarray,
    position: np.ndarray,
    source_position: np.ndarray,
    path_loss_exponent_variance: Optional[float] = None,
    fingerprint_position_covariance: Optional[np.ndarray] = None,
    source_position_covariance: Optional[np.ndarray] = None,
) -> Optional[float]:
    """
    Variance of the RSSI difference 5·n·(log10(d_f²) - log10(d_p²)).

    Derivatives are analytic:
        ∂Δ/∂n   = 5·(log10(d_f²) - log10(d_p²))
        ∂Δ/∂p_f = 10·n·(p_f - p_a) / (ln10·d_f²)
        ∂Δ/∂p_a = -10·n·(p_f - p_a) / (ln10·d_f²) + 10·n·(p - p_a) / (ln10·d_p²)

    Args:
        path_loss_exponent: Path-loss exponent n.
        fingerprint_position: Located fingerprint position p_f.
        position: Position p at which the difference is evaluated.
        source_position: Radio source position p_a.
        path_loss_exponent_variance: Variance of n, or None.
        fingerprint_position_covariance: Covariance of p_f, or None.
        source_position_covariance: Covariance of p_a, or None.

    Returns:
        Propagated variance in dBm², or None if every input is absent.
    """
    pf = np.asarray(fingerprint_position, dtype=float)
    p = np.asarray(position, dtype=float)
    pa = np.asarray(source_position, dtype=float)
    dims = len(pf)

    blocks = [
        (slice(0, 1), _as_variance("path_loss_exponent_variance", path_loss_exponent_variance)),
        (
            slice(1, 1 + dims),
            _as_covariance("fingerprint_position_covariance", fingerprint_position_covariance, dims),
        ),
        (
            slice(1 + dims, 1 + 2 * dims),
            _as_covariance("source_position_covariance", source_position_covariance, dims),
        ),
    ]
    if all(covariance is None for _, covariance in blocks):
        return None

    diff_f = pf - pa
    diff_p = p - pa
    sqr_distance_f = max(float(diff_f @ diff_f), MIN_SQR_DISTANCE)
    sqr_distance_p = max(float(diff_p @ diff_p), MIN_SQR_DISTANCE)

    d_exponent = 5.0 * (np.log10(sqr_distance_f) - np.log10(sqr_distance_p))
    d_fingerprint = 10.0 * path_loss_exponent * diff_f / (_LN10 * sqr_distance_f)
    d_source = -d_fingerprint + 10.0 * path_loss_exponent * diff_p / (_LN10 * sqr_distance_p)

    jacobian = np.concatenate([[d_exponent], d_fingerprint, d_source])
    return _quadratic_form(jacobian, blocks)
