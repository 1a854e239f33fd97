"""Linear fingerprint position estimation with located radio sources.

The first-order expansion of the path-loss model around a neighbor p1 is
linear in the unknown position:

    Pr_query ≈ Pr_located - a·(p - p1),   a = 10·n·(p1 - p_a) / (ln(10)·‖p1 - p_a‖²)

so every (neighbor reading, query reading) pair of the same source gives one
row of the system

    a·p = (Pr_located - Pr_query) + a·p1

which is solved directly, without iterations or weights.

Author: Navigation Engineer
Date: 2024
"""

import logging
from typing import Any, List, Optional, Sequence

import numpy as np

from rssi_positioning.estimators.least_squares import linear_least_squares
from rssi_positioning.estimators.nonlinear_least_squares import FittingError
from rssi_positioning.rf.pathloss import MIN_SQR_DISTANCE

from .base import (
    EstimationResult,
    FingerprintPositionEstimator,
    LocatedSourcesMixin,
    _Attempt,
)
from .config import EstimatorConfig
from .types import LocatedFingerprint, RadioSource, RssiFingerprint

logger = logging.getLogger(__name__)


class LinearFingerprintPositionEstimator(LocatedSourcesMixin, FingerprintPositionEstimator):
    """
    Position-only fingerprint estimator solving the first-order model as a linear system.

    Cheaper than the nonlinear estimator and independent of any initial
    position, at the cost of the first-order approximation error. Useful on
    its own for dense radio maps or to seed the nonlinear estimator.

    Example:
        >>> estimator = LinearFingerprintPositionEstimator(
        ...     located_fingerprints=radio_map, fingerprint=query, sources=access_points)
        >>> position = estimator.estimate().position
    """

    DEFAULT_MIN_NEAREST_FINGERPRINTS = 1

    def __init__(
        self,
        located_fingerprints: Optional[Sequence[LocatedFingerprint]] = None,
        fingerprint: Optional[RssiFingerprint] = None,
        sources: Optional[Sequence[RadioSource]] = None,
        dims: int = 2,
        listener: Any = None,
        config: Optional[EstimatorConfig] = None,
    ):
        super().__init__(
            located_fingerprints=located_fingerprints,
            fingerprint=fingerprint,
            dims=dims,
            listener=listener,
        )
        self._init_sources(sources)

        if config is not None:
            self.apply_config(config)

    def _search(self) -> EstimationResult:
        self._warn_if_unmatched()
        return super()._search()

    def _build_attempt(self, k: int, nearest: List[LocatedFingerprint]) -> _Attempt:
        attempt = _Attempt(k=k, nearest_fingerprints=nearest)
        located_sources = self._sources_by_identity()

        for neighbor in nearest:
            neighbor_mean, query_mean = self._reading_means(neighbor)

            for reading in neighbor.readings:
                source = located_sources.get(reading.source)
                if source is None:
                    continue
                path_loss_exponent, _ = self._path_loss_for(source)

                diff = neighbor.position - source.position
                sqr_distance = max(float(diff @ diff), MIN_SQR_DISTANCE)
                a = 10.0 * path_loss_exponent * diff / (np.log(10.0) * sqr_distance)

                for query_reading in self._fingerprint.readings:
                    if not query_reading.has_same_source(reading):
                        continue
                    b = (reading.rssi - neighbor_mean) - (query_reading.rssi - query_mean)
                    attempt.add_residual(a, b + a @ neighbor.position, 1.0)

        logger.debug("k=%d: %d linear rows from %d neighbors", k, attempt.n_residuals, len(nearest))
        return attempt

    def _solve(self, attempt: _Attempt) -> EstimationResult:
        if attempt.n_residuals == 0:
            raise FittingError("no rows: neighbors share no located source with the query")

        A, b, stds = attempt.arrays()
        position, covariance = linear_least_squares(A, b)
        residuals = b - A @ position

        return EstimationResult(
            position=position,
            covariance=covariance,
            position_covariance=covariance,
            chi_sq=float(residuals @ residuals),
            nearest_fingerprints=attempt.nearest_fingerprints,
            k=attempt.k,
            residual_stds=stds,
            n_params=self.dims,
        )
