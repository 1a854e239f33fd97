"""Per-residual statistical weighting for the fingerprint estimators.

Each residual of a fingerprint fit is weighted by one effective RSSI
standard deviation built from independent variance contributions:

    1. RSSI variances of the query and the located reading
    2. path-loss exponent variance, propagated through the model
    3. located fingerprint position covariance, propagated through the model
    4. radio source position covariance, propagated through the model

Every contribution can be switched off. Absent contributions (switched off
or simply unknown) are skipped, never counted as zero. The contributions that
remain are summed and the square root taken; when nothing remains, or the
result is numerically zero, the configured fallback standard deviation is
used instead.

Author: Navigation Engineer
Date: 2024
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np

from rssi_positioning.rf.pathloss import PathLossEvaluator
from rssi_positioning.rf.variance_propagation import (
    propagate_rssi_difference_variance,
    propagate_rssi_variance,
)

# Standard deviations below this value are replaced by the fallback
TINY_RSSI_STD = 1e-12


def sum_variances(*variances: Optional[float]) -> Optional[float]:
    """Sum independent variances, skipping absent ones (None if all absent)."""
    present = [float(v) for v in variances if v is not None]
    if not present:
        return None
    return sum(present)


def effective_rssi_std(variance: Optional[float], fallback_rssi_std: float) -> float:
    """Square root of a combined variance, or the fallback if it is absent or tiny."""
    if variance is None:
        return fallback_rssi_std
    std = float(np.sqrt(max(variance, 0.0)))
    if std < TINY_RSSI_STD:
        return fallback_rssi_std
    return std


@dataclass
class ResidualWeighting:
    """
    Combines the variance contributions of one residual into a standard deviation.

    Attributes:
        fallback_rssi_std: Standard deviation used when no contribution is
            available. Must be at least 1e-12.
        propagate_fingerprint_rssi_std: Use the RSSI standard deviations of
            the query and located readings.
        propagate_path_loss_exponent_std: Propagate the path-loss exponent
            uncertainty.
        propagate_fingerprint_position_covariance: Propagate the located
            fingerprint position covariance.
        propagate_radio_source_position_covariance: Propagate the radio
            source position covariance.

    Example:
        >>> weighting = ResidualWeighting(fallback_rssi_std=1.0)
        >>> weighting.rssi_std(evaluator, -50.0, p1, pa, 2.0, p1, query_rssi_variance=4.0)
        2.0
    """

    fallback_rssi_std: float = 1.0
    propagate_fingerprint_rssi_std: bool = True
    propagate_path_loss_exponent_std: bool = True
    propagate_fingerprint_position_covariance: bool = True
    propagate_radio_source_position_covariance: bool = True

    def __post_init__(self):
        if not self.fallback_rssi_std >= TINY_RSSI_STD:
            raise ValueError(
                f"fallback_rssi_std must be at least {TINY_RSSI_STD}, got {self.fallback_rssi_std}"
            )

    @property
    def propagates_anything(self) -> bool:
        return (
            self.propagate_fingerprint_rssi_std
            or self.propagate_path_loss_exponent_std
            or self.propagate_fingerprint_position_covariance
            or self.propagate_radio_source_position_covariance
        )

    def rssi_std(
        self,
        evaluator: PathLossEvaluator,
        located_rssi: float,
        fingerprint_position: np.ndarray,
        source_position: np.ndarray,
        path_loss_exponent: float,
        candidate_position: np.ndarray,
        query_rssi_variance: Optional[float] = None,
        located_rssi_variance: Optional[float] = None,
        path_loss_exponent_variance: Optional[float] = None,
        fingerprint_position_covariance: Optional[np.ndarray] = None,
        source_position_covariance: Optional[np.ndarray] = None,
    ) -> float:
        """
        Standard deviation of a position-only residual.

        The located reading variance and the model uncertainties are
        propagated through the evaluator at its linearization order; the
        query reading variance adds directly.

        Returns:
            Effective standard deviation in dB.
        """
        propagated = None
        if self.propagates_anything:
            propagated = propagate_rssi_variance(
                evaluator,
                located_rssi,
                fingerprint_position,
                source_position,
                path_loss_exponent,
                candidate_position,
                reference_rssi_variance=(
                    located_rssi_variance if self.propagate_fingerprint_rssi_std else None
                ),
                path_loss_exponent_variance=(
                    path_loss_exponent_variance if self.propagate_path_loss_exponent_std else None
                ),
                fingerprint_position_covariance=(
                    fingerprint_position_covariance
                    if self.propagate_fingerprint_position_covariance
                    else None
                ),
                source_position_covariance=(
                    source_position_covariance
                    if self.propagate_radio_source_position_covariance
                    else None
                ),
            )

        variance = sum_variances(
            propagated,
            query_rssi_variance if self.propagate_fingerprint_rssi_std else None,
        )
        return effective_rssi_std(variance, self.fallback_rssi_std)

    def rssi_difference_std(
        self,
        path_loss_exponent: float,
        fingerprint_position: np.ndarray,
        position: np.ndarray,
        source_position: np.ndarray,
        query_rssi_variance: Optional[float] = None,
        located_rssi_variance: Optional[float] = None,
        path_loss_exponent_variance: Optional[float] = None,
        fingerprint_position_covariance: Optional[np.ndarray] = None,
        source_position_covariance: Optional[np.ndarray] = None,
    ) -> float:
        """
        Standard deviation of a joint position-and-source residual.

        Both RSSI variances add directly to the difference; the remaining
        contributions are propagated through the RSSI difference model.

        Returns:
            Effective standard deviation in dB.
        """
        propagated = None
        if (
            self.propagate_path_loss_exponent_std
            or self.propagate_fingerprint_position_covariance
            or self.propagate_radio_source_position_covariance
        ):
            propagated = propagate_rssi_difference_variance(
                path_loss_exponent,
                fingerprint_position,
                position,
                source_position,
                path_loss_exponent_variance=(
                    path_loss_exponent_variance if self.propagate_path_loss_exponent_std else None
                ),
                fingerprint_position_covariance=(
                    fingerprint_position_covariance
                    if self.propagate_fingerprint_position_covariance
                    else None
                ),
                source_position_covariance=(
                    source_position_covariance
                    if self.propagate_radio_source_position_covariance
                    else None
                ),
            )

        if self.propagate_fingerprint_rssi_std:
            variance = sum_variances(propagated, query_rssi_variance, located_rssi_variance)
        else:
            variance = propagated
        return effective_rssi_std(variance, self.fallback_rssi_std)
