"""
Log-distance path-loss model and its Taylor linearizations.

Received power at position p from a source at p_a is modelled as:

    Pr(p) = K - 5·n·log10(‖p - p_a‖²)

where K is the (unknown) power at unit distance and n is the path-loss
exponent. K cancels when Pr(p) is expressed relative to a reference reading
Pr(p1) taken at a known position p1, which is how the fingerprint estimators
use the model:

    Pr(p) ≈ Pr(p1) + g·δ + ½·δ'Hδ + ⅙·T[δ, δ, δ],   δ = p - p1

With u = p1 - p_a, s = ‖u‖² and c = -10·n / ln(10) the derivative tensors
of the model at p1 are:

    g_i   = c·u_i / s
    H_ij  = c·(δ_ij / s - 2·u_i·u_j / s²)
    T_ijk = c·(-2·(δ_ij·u_k + δ_ik·u_j + δ_jk·u_i) / s² + 8·u_i·u_j·u_k / s³)

(δ_ij is the Kronecker delta). These expressions hold for any
dimensionality, so a single evaluator serves both 2D and 3D.

When source positions are unknown, K is removed by differencing the reading
at the unknown position against a reading at a located fingerprint p_f:

    Pr(p) - Pr(p_f) = 5·n·(log10(‖p_f - p_a‖²) - log10(‖p - p_a‖²))

References:
    T. S. Rappaport, "Wireless Communications: Principles and Practice",
    2nd ed., Section 4.9 (log-distance path loss).
"""

from enum import IntEnum
from typing import Optional, Tuple, Union

import numpy as np

# Squared distances below this value are clamped before being inverted
MIN_SQR_DISTANCE = 1e-12

_LN10 = np.log(10.0)


class LinearizationOrder(IntEnum):
    """Order of the Taylor expansion of the path-loss model."""

    FIRST = 1
    SECOND = 2
    THIRD = 3

    @classmethod
    def parse(cls, value: Union["LinearizationOrder", int, str]) -> "LinearizationOrder":
        """Convert an enum member, an integer or a (case-insensitive) name.

        Example:
            >>> LinearizationOrder.parse("second")
            <LinearizationOrder.SECOND: 2>
            >>> LinearizationOrder.parse(3)
            <LinearizationOrder.THIRD: 3>
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            text = value.strip()
            if text.isdigit():
                return cls(int(text))
            try:
                return cls[text.upper()]
            except KeyError:
                raise ValueError(
                    f"Unknown linearization order '{value}'. "
                    f"Use one of {[m.name.lower() for m in cls]}"
                )
        if isinstance(value, (bool, np.bool_)):
            raise ValueError(f"Invalid linearization order: {value!r}")
        if isinstance(value, (int, np.integer)):
            return cls(int(value))
        raise ValueError(f"Invalid linearization order: {value!r}")


def received_power(
    reference_power_dbm: float,
    path_loss_exponent: float,
    position: np.ndarray,
    source_position: np.ndarray,
) -> float:
    """
    Exact received power of the log-distance model.

    Implements Pr(p) = K - 5·n·log10(‖p - p_a‖²), i.e. the usual
    K - 10·n·log10(d) written in squared distance.

    Args:
        reference_power_dbm: Power K at unit distance (dBm).
        path_loss_exponent: Path-loss exponent n.
        position: Receiver position (2D or 3D).
        source_position: Radio source position (same dimension).

    Returns:
        Received power in dBm.

    Example:
        >>> rss = received_power(-40.0, 2.0, np.array([10.0, 0.0]), np.zeros(2))
        >>> print(f"RSS: {rss:.1f} dBm")
        RSS: -60.0 dBm
    """
    position = np.asarray(position, dtype=float)
    source_position = np.asarray(source_position, dtype=float)
    sqr_distance = max(float(np.sum((position - source_position) ** 2)), MIN_SQR_DISTANCE)
    return float(reference_power_dbm - 5.0 * path_loss_exponent * np.log10(sqr_distance))


def rss_to_distance(
    rss_dbm: float,
    reference_power_dbm: float,
    path_loss_exponent: float = 2.0,
) -> float:
    """
    Invert the log-distance model: d = 10^((K - Pr) / (10·n)).

    Args:
        rss_dbm: Received signal strength in dBm.
        reference_power_dbm: Power K at unit distance (dBm).
        path_loss_exponent: Path-loss exponent n. Must be positive.

    Returns:
        Distance to the source in metres.
    """
    if path_loss_exponent <= 0:
        raise ValueError("Path-loss exponent must be positive")
    exponent = (reference_power_dbm - rss_dbm) / (10.0 * path_loss_exponent)
    return float(10.0**exponent)


def pathloss_derivatives(
    reference_position: np.ndarray,
    source_position: np.ndarray,
    path_loss_exponent: float,
    order: LinearizationOrder = LinearizationOrder.THIRD,
) -> Tuple[np.ndarray, Optional[np.ndarray], Optional[np.ndarray]]:
    """
    Derivative tensors of the path-loss model at the reference position.

    Args:
        reference_position: Expansion point p1 (d,).
        source_position: Radio source position p_a (d,).
        path_loss_exponent: Path-loss exponent n.
        order: Highest derivative order required.

    Returns:
        Tuple (g, H, T): gradient (d,), Hessian (d, d) or None for first
        order, third-derivative tensor (d, d, d) or None below third order.
    """
    u = np.asarray(reference_position, dtype=float) - np.asarray(source_position, dtype=float)
    s = max(float(u @ u), MIN_SQR_DISTANCE)
    c = -10.0 * path_loss_exponent / _LN10

    g = c * u / s
    if order < LinearizationOrder.SECOND:
        return g, None, None

    eye = np.eye(len(u))
    uu = np.outer(u, u)
    H = c * (eye / s - 2.0 * uu / s**2)
    if order < LinearizationOrder.THIRD:
        return g, H, None

    sym = (
        np.einsum("ij,k->ijk", eye, u)
        + np.einsum("ik,j->ijk", eye, u)
        + np.einsum("jk,i->ijk", eye, u)
    )
    T = c * (-2.0 * sym / s**2 + 8.0 * np.einsum("i,j,k->ijk", u, u, u) / s**3)
    return g, H, T


class PathLossEvaluator:
    """
    Taylor-linearized path-loss model evaluated around a located fingerprint.

    The evaluator predicts the RSSI at a candidate position p_i from a reading
    Pr(p1) at a located fingerprint position p1, the source position and the
    path-loss exponent, and returns the exact derivatives of that prediction
    with respect to every coordinate of p_i.

    Attributes:
        dims: Dimensionality of positions (2 or 3).
        order: Taylor expansion order (first, second or third).

    Example:
        >>> evaluator = PathLossEvaluator(dims=2, order=LinearizationOrder.SECOND)
        >>> value, gradient = evaluator.evaluate(
        ...     -50.0, np.array([0.0, 0.0]), np.array([10.0, 0.0]), 2.0,
        ...     np.array([1.0, 0.0]))
        >>> gradient.shape
        (2,)
    """

    def __init__(
        self,
        dims: int = 2,
        order: Union[LinearizationOrder, int, str] = LinearizationOrder.THIRD,
    ):
        if dims not in (2, 3):
            raise ValueError(f"dims must be 2 or 3, got {dims}")
        self.dims = dims
        self.order = LinearizationOrder.parse(order)

    def __repr__(self):
        return f"PathLossEvaluator(dims={self.dims}, order={self.order.name})"

    def _check(self, name: str, vector) -> np.ndarray:
        vector = np.asarray(vector, dtype=float)
        if vector.shape != (self.dims,):
            raise ValueError(f"{name} must have shape ({self.dims},), got {vector.shape}")
        return vector

    def evaluate(
        self,
        reference_rssi: float,
        reference_position: np.ndarray,
        source_position: np.ndarray,
        path_loss_exponent: float,
        candidate_position: np.ndarray,
    ) -> Tuple[float, np.ndarray]:
        """
        Predict the RSSI at a candidate position and its gradient.

        Args:
            reference_rssi: RSSI Pr(p1) measured at the located fingerprint (dBm).
            reference_position: Located fingerprint position p1.
            source_position: Radio source position p_a.
            path_loss_exponent: Path-loss exponent n.
            candidate_position: Unknown position p_i at which to evaluate.

        Returns:
            Tuple (value, gradient) where gradient has length dims.
        """
        p1 = self._check("reference_position", reference_position)
        pa = self._check("source_position", source_position)
        pi = self._check("candidate_position", candidate_position)

        g, H, T = pathloss_derivatives(p1, pa, path_loss_exponent, self.order)
        delta = pi - p1

        value = reference_rssi + g @ delta
        gradient = g.copy()
        if H is not None:
            H_delta = H @ delta
            value += 0.5 * delta @ H_delta
            gradient += H_delta
        if T is not None:
            T_delta_delta = np.einsum("ijk,j,k->i", T, delta, delta)
            value += delta @ T_delta_delta / 6.0
            gradient += 0.5 * T_delta_delta

        return float(value), gradient


def rssi_difference(
    path_loss_exponent: float,
    fingerprint_position: np.ndarray,
    position: np.ndarray,
    source_position: np.ndarray,
) -> Tuple[float, np.ndarray, np.ndarray]:
    """
    RSSI difference between an unknown position and a located fingerprint.

    Implements Δ = Pr(p) - Pr(p_f) = 5·n·(log10(d_f²) - log10(d_p²)), which
    does not depend on the transmitted power of the source.

    Args:
        path_loss_exponent: Path-loss exponent n.
        fingerprint_position: Located fingerprint position p_f.
        position: Unknown position p.
        source_position: Radio source position p_a (also unknown in joint
            estimation).

    Returns:
        Tuple (value, gradient w.r.t. p, gradient w.r.t. p_a).
    """
    pf = np.asarray(fingerprint_position, dtype=float)
    p = np.asarray(position, dtype=float)
    pa = np.asarray(source_position, dtype=float)

    diff_f = pf - pa
    diff_p = p - pa
    sqr_distance_f = max(float(diff_f @ diff_f), MIN_SQR_DISTANCE)
    sqr_distance_p = max(float(diff_p @ diff_p), MIN_SQR_DISTANCE)

    value = 5.0 * path_loss_exponent * (np.log10(sqr_distance_f) - np.log10(sqr_distance_p))

    gradient_position = -10.0 * path_loss_exponent * diff_p / (_LN10 * sqr_distance_p)
    gradient_source = (
        -10.0 * path_loss_exponent * diff_f / (_LN10 * sqr_distance_f) - gradient_position
    )
    return float(value), gradient_position, gradient_source
