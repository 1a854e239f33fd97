"""
Numerical helpers shared by the propagation and estimation code.

Author: Navigation Engineer
Date: 2024
"""

from typing import Callable, Sequence

import numpy as np


def numerical_jacobian(
    f: Callable[[np.ndarray], np.ndarray],
    x: np.ndarray,
    epsilon: float = 1e-6,
) -> np.ndarray:
    """
    Compute a Jacobian numerically using central differences.

    The step is scaled with the magnitude of each coordinate so that inputs
    of very different size (dBm values, metres, exponents) are differentiated
    with comparable relative accuracy.

    Args:
        f: Function mapping x (n,) to y (m,). Scalars are treated as (1,).
        x: Point at which to compute the Jacobian.
        epsilon: Relative step size.

    Returns:
        Numerical Jacobian, shape (m, n).
    """
    x = np.asarray(x, dtype=float)
    y0 = np.atleast_1d(np.asarray(f(x), dtype=float))

    J = np.zeros((len(y0), len(x)))
    for i in range(len(x)):
        step = epsilon * max(1.0, abs(x[i]))

        x_plus = x.copy()
        x_minus = x.copy()
        x_plus[i] += step
        x_minus[i] -= step

        y_plus = np.atleast_1d(np.asarray(f(x_plus), dtype=float))
        y_minus = np.atleast_1d(np.asarray(f(x_minus), dtype=float))
        J[:, i] = (y_plus - y_minus) / (2.0 * step)

    return J


def centroid(positions: Sequence[np.ndarray]) -> np.ndarray:
    """Return the arithmetic mean of a non-empty sequence of positions."""
    if len(positions) == 0:
        raise ValueError("Cannot compute the centroid of an empty set of positions")
    return np.mean(np.asarray([np.asarray(p, dtype=float) for p in positions]), axis=0)
