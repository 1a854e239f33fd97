"""
Weighted nonlinear least squares using Levenberg-Marquardt.

This module implements the iterative solver used by the fingerprint position
estimators. Models are supplied either as a pair of functions (h, jacobian) or
as a per-observation evaluator callback that returns the model value and its
partial derivatives for one row of a design matrix.

levenberg_marquardt() is the public entry point for vector models h(x) with
an analytic Jacobian; the fingerprint estimators use fit_multi_dimension().

Mathematical Formulation:
    Given observations y with standard deviations σ and a model f(x_i; θ),
    we seek:
        θ̂ = argmin ½‖r(θ)‖²_W,   r_i = y_i - f(x_i; θ),   W = diag(1/σ²)

    Levenberg-Marquardt update:
        (J'WJ + μI) Δθ = J'W r
    where μ is adapted from the gain ratio between actual and predicted
    cost reduction.

    At the solution the (unscaled) parameter covariance is (J'WJ)⁻¹ and the
    fit quality is reported as χ² = Σ ((y_i - f_i) / σ_i)².

References:
    K. Madsen, H. B. Nielsen, O. Tingleff, "Methods for Non-Linear Least
    Squares Problems", 2nd ed., IMM DTU, 2004 (Algorithm 3.16).
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)

# Evaluator callback: (row index, design row, params) -> (value, d value / d params)
RowEvaluator = Callable[[int, np.ndarray, np.ndarray], Tuple[float, np.ndarray]]

_MAX_DAMPING = 1e10
_ZERO_CHI_SQ = 1e-24


class FittingError(ArithmeticError):
    """Raised when a least squares problem has no unique, finite solution.

    Covers singular (rank deficient) systems, non-finite model evaluations
    and failure to converge within the iteration limit.
    """


@dataclass
class FitResult:
    """Result container for a weighted least squares fit.

    Attributes:
        params: Estimated parameter vector (n,).
        covariance: Parameter covariance (n × n), (J'WJ)⁻¹ at the solution.
        chi_sq: Weighted sum of squared residuals Σ (r_i / σ_i)².
        iterations: Number of outer iterations performed.
        residuals: Final residuals r = y - f(θ̂).
        converged: Whether the solver met a convergence criterion.
    """

    params: np.ndarray
    covariance: np.ndarray
    chi_sq: float
    iterations: int
    residuals: np.ndarray
    converged: bool

    @property
    def n_observations(self) -> int:
        return len(self.residuals)

    @property
    def n_params(self) -> int:
        return len(self.params)

    @property
    def degrees_of_freedom(self) -> int:
        return self.n_observations - self.n_params


def levenberg_marquardt(
    h: Callable[[np.ndarray], np.ndarray],
    jacobian: Callable[[np.ndarray], np.ndarray],
    y: np.ndarray,
    x0: np.ndarray,
    weights: Optional[np.ndarray] = None,
    max_iter: int = 100,
    tol: float = 1e-10,
    mu0: float = 1e-3,
) -> FitResult:
    """
    Levenberg-Marquardt solver for nonlinear least squares.

    Solves: x̂ = argmin ½‖y - h(x)‖²_W

    Args:
        h: Measurement model function h: R^n → R^m.
        jacobian: Function returning Jacobian matrix J = ∂h/∂x (m × n).
        y: Observation vector (m,).
        x0: Initial state estimate (n,).
        weights: Optional measurement weights (m,), typically 1/σ².
            If None, uses uniform weights.
        max_iter: Maximum number of iterations.
        tol: Relative convergence tolerance on ‖Δx‖.
        mu0: Initial damping parameter.

    Returns:
        FitResult with estimate, covariance (J'WJ)⁻¹ and χ².

    Raises:
        ValueError: If array shapes are inconsistent.
        FittingError: If the problem is underdetermined, singular at the
            solution, produces non-finite values or does not converge.

    Example:
        >>> import numpy as np
        >>> sources = np.array([[-5.0, -5.0], [15.0, -5.0], [5.0, 15.0]])
        >>> def h(x):
        ...     return -40.0 - 10.0 * np.log10(np.sum((x - sources) ** 2, axis=1))
        >>> def jac(x):
        ...     diff = x - sources
        ...     return -20.0 / np.log(10.0) * diff / np.sum(diff**2, axis=1, keepdims=True)
        >>> y = h(np.array([3.0, 4.0]))
        >>> result = levenberg_marquardt(h, jac, y, x0=np.array([5.0, 5.0]))
        >>> print(f"Estimate: {result.params}, chi2: {result.chi_sq:.1e}")
    """

    def model(x):
        return np.asarray(h(x), dtype=float), np.asarray(jacobian(x), dtype=float)

    return _solve_levenberg_marquardt(
        model=model,
        y=y,
        x0=x0,
        weights=weights,
        max_iter=max_iter,
        tol=tol,
        mu0=mu0,
    )


def fit_multi_dimension(
    x: np.ndarray,
    y: np.ndarray,
    sigma: np.ndarray,
    evaluator: RowEvaluator,
    initial_params: np.ndarray,
    max_iter: int = 100,
    tol: float = 1e-10,
    mu0: float = 1e-3,
) -> FitResult:
    """
    Fit a multidimensional-input model row by row with Levenberg-Marquardt.

    Each observation y[i] is predicted by evaluator(i, x[i], params), which
    must return the model value and its derivatives with respect to every
    parameter.

    Args:
        x: Design matrix (m × p). Row i holds the known inputs of observation i.
        y: Observations (m,).
        sigma: Standard deviation of each observation (m,). Must be positive.
        evaluator: Callback (i, x_i, params) -> (value, derivatives (n,)).
        initial_params: Initial parameter vector (n,).
        max_iter: Maximum number of iterations.
        tol: Relative convergence tolerance on the parameter step.
        mu0: Initial damping parameter.

    Returns:
        FitResult with best-fit parameters, covariance and χ².

    Raises:
        ValueError: If shapes are inconsistent or sigma is not positive.
        FittingError: See levenberg_marquardt().
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    sigma = np.asarray(sigma, dtype=float)
    initial_params = np.asarray(initial_params, dtype=float)

    if x.ndim != 2:
        raise ValueError(f"x must be a 2D design matrix, got shape {x.shape}")
    if y.ndim != 1 or len(y) != x.shape[0]:
        raise ValueError(
            f"y must be 1D with one element per row of x. Got y: {y.shape}, x: {x.shape}"
        )
    if sigma.shape != y.shape:
        raise ValueError(f"sigma shape {sigma.shape} does not match y shape {y.shape}")
    if np.any(sigma <= 0) or not np.all(np.isfinite(sigma)):
        raise ValueError("sigma values must be positive and finite")

    m = len(y)
    n = len(initial_params)

    def model(params):
        values = np.empty(m)
        J = np.empty((m, n))
        for i in range(m):
            value, derivatives = evaluator(i, x[i], params)
            values[i] = value
            J[i, :] = derivatives
        return values, J

    return _solve_levenberg_marquardt(
        model=model,
        y=y,
        x0=initial_params,
        weights=1.0 / sigma**2,
        max_iter=max_iter,
        tol=tol,
        mu0=mu0,
    )


def _evaluate(model, x: np.ndarray, m: int, n: int) -> Tuple[np.ndarray, np.ndarray]:
    hx, J = model(x)
    if hx.shape != (m,):
        raise ValueError(f"model returned {hx.shape} values, expected ({m},)")
    if J.shape != (m, n):
        raise ValueError(f"Jacobian shape {J.shape}, expected ({m}, {n})")
    if not (np.all(np.isfinite(hx)) and np.all(np.isfinite(J))):
        raise FittingError("model evaluation produced non-finite values")
    return hx, J


def _solve_levenberg_marquardt(
    model: Callable[[np.ndarray], Tuple[np.ndarray, np.ndarray]],
    y: np.ndarray,
    x0: np.ndarray,
    weights: Optional[np.ndarray],
    max_iter: int,
    tol: float,
    mu0: float,
) -> FitResult:
    """Internal Levenberg-Marquardt loop shared by both entry points."""
    y = np.asarray(y, dtype=float)
    x0 = np.asarray(x0, dtype=float)

    if y.ndim != 1:
        raise ValueError(f"y must be 1D array, got shape {y.shape}")
    if x0.ndim != 1:
        raise ValueError(f"x0 must be 1D array, got shape {x0.shape}")

    m = len(y)
    n = len(x0)
    if m < n:
        raise FittingError(f"Underdetermined system: m={m} < n={n}")

    if weights is None:
        w = np.ones(m)
    else:
        w = np.asarray(weights, dtype=float)
        if w.ndim != 1 or len(w) != m:
            raise ValueError(f"weights must be 1D array of length {m}")
        if np.any(w < 0):
            raise ValueError("weights must be non-negative")

    x = x0.copy()
    hx, J = _evaluate(model, x, m, n)
    r = y - hx
    cost = 0.5 * np.sum(w * r**2)

    mu = mu0
    nu = 2.0
    converged = False
    iteration = 0

    for iteration in range(max_iter):
        if 2.0 * cost <= _ZERO_CHI_SQ:
            converged = True
            break

        # Weighted normal equations: (J'WJ) Δx = J'Wr
        JtW = J.T * w
        JtWJ = JtW @ J
        JtWr = JtW @ r

        accepted = False
        while True:
            JtWJ_damped = JtWJ + mu * np.eye(n)
            try:
                delta_x = np.linalg.solve(JtWJ_damped, JtWr)
            except np.linalg.LinAlgError:
                delta_x = np.linalg.lstsq(JtWJ_damped, JtWr, rcond=None)[0]

            x_new = x + delta_x
            try:
                hx_new, J_new = _evaluate(model, x_new, m, n)
            except FittingError:
                # Treat a non-finite trial point as a rejected step
                hx_new = None

            if hx_new is not None:
                r_new = y - hx_new
                cost_new = 0.5 * np.sum(w * r_new**2)
                predicted_decrease = 0.5 * delta_x @ (mu * delta_x + JtWr)
                actual_decrease = cost - cost_new
                if predicted_decrease > 0:
                    gain_ratio = actual_decrease / predicted_decrease
                else:
                    gain_ratio = 0.0
            else:
                gain_ratio = 0.0

            if gain_ratio > 0:
                previous_cost = cost
                x, hx, J, r, cost = x_new, hx_new, J_new, r_new, cost_new
                mu = mu * max(1.0 / 3.0, 1.0 - (2.0 * gain_ratio - 1.0) ** 3)
                nu = 2.0
                accepted = True
                break

            mu = mu * nu
            nu = 2.0 * nu
            if mu > _MAX_DAMPING:
                break

        if not accepted:
            # No descent direction left: x is a stationary point
            converged = True
            break

        step_norm = np.linalg.norm(delta_x)
        if step_norm <= tol * (np.linalg.norm(x) + tol):
            converged = True
            break
        if previous_cost - cost <= 1e-15 * previous_cost:
            converged = True
            break

    if not converged:
        raise FittingError(f"Levenberg-Marquardt did not converge in {max_iter} iterations")

    # Rank of the whitened Jacobian decides whether the solution is unique
    sqrt_w = np.sqrt(w)
    rank = np.linalg.matrix_rank(J * sqrt_w[:, None])
    if rank < n:
        raise FittingError(f"Singular system at solution: rank={rank} < n={n}")

    JtWJ = (J.T * w) @ J
    try:
        covariance = np.linalg.inv(JtWJ)
        covariance = 0.5 * (covariance + covariance.T)
    except np.linalg.LinAlgError as e:
        raise FittingError(f"Failed to invert normal matrix: {e}")

    chi_sq = float(np.sum(w * r**2))
    logger.debug(
        "Levenberg-Marquardt finished after %d iterations (m=%d, n=%d, chi2=%.3e)",
        iteration + 1,
        m,
        n,
        chi_sq,
    )

    return FitResult(
        params=x,
        covariance=covariance,
        chi_sq=chi_sq,
        iterations=iteration + 1,
        residuals=r,
        converged=converged,
    )
