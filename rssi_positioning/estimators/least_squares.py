"""
Direct solution of linear systems in the least-squares sense.

Used by the linear fingerprint position estimator, whose first-order rows are
solved in one step without iterations or weights:

    x̂ = (AᵀA)⁻¹ Aᵀb
    P = σ̂² (AᵀA)⁻¹,   σ̂² = ‖b - Ax̂‖² / (m - n),  σ̂² = 1 for square systems

Every condition that leaves x̂ undefined raises FittingError, so callers that
retry with more rows can treat it like a failed iterative fit.
"""

from typing import Optional, Tuple

import numpy as np

from rssi_positioning.estimators.nonlinear_least_squares import FittingError


def linear_least_squares(
    A: np.ndarray, b: np.ndarray, return_covariance: bool = True
) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """
    Solve A·x ≈ b with the normal equations.

    Args:
        A: Design matrix, one row per residual (m × n), m ≥ n.
        b: Right-hand side (m,).
        return_covariance: Also return the residual-scaled covariance.

    Returns:
        Tuple of:
            - x_hat: Solution (n,).
            - P: Covariance of x_hat (n × n), None when not requested.

    Raises:
        ValueError: If A is not a matrix, b not a vector, or their sizes differ.
        FittingError: If there are fewer rows than unknowns, the inputs are
            not finite, or A does not have full column rank.

    Example:
        >>> A = np.array([[0.87, 0.0], [0.0, 0.87], [0.6, 0.6]])
        >>> x_hat, P = linear_least_squares(A, np.array([0.87, 1.74, 1.8]))
    """
    A = np.asarray(A, dtype=float)
    b = np.asarray(b, dtype=float)

    if A.ndim != 2 or b.ndim != 1:
        raise ValueError(f"Expected a matrix and a vector, got shapes {A.shape} and {b.shape}")

    n_rows, n_unknowns = A.shape
    if b.shape[0] != n_rows:
        raise ValueError(f"Dimension mismatch: {n_rows} rows but {b.shape[0]} observations")

    if n_rows < n_unknowns:
        raise FittingError(f"Underdetermined system: {n_rows} rows for {n_unknowns} unknowns")

    if not (np.isfinite(A).all() and np.isfinite(b).all()):
        raise FittingError("Linear system contains non-finite values")

    if np.linalg.matrix_rank(A) < n_unknowns:
        raise FittingError(f"Design matrix is rank deficient ({n_unknowns} unknowns)")

    normal = A.T @ A
    try:
        x_hat = np.linalg.solve(normal, A.T @ b)
    except np.linalg.LinAlgError as e:
        raise FittingError(f"Normal equations are singular: {e}")

    if not return_covariance:
        return x_hat, None

    dof = n_rows - n_unknowns
    residuals = b - A @ x_hat
    variance_factor = float(residuals @ residuals) / dof if dof > 0 else 1.0
    return x_hat, variance_factor * np.linalg.inv(normal)
