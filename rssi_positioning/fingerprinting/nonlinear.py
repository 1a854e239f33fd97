"""Nonlinear fingerprint position estimation with located radio sources.

For each of the k located fingerprints nearest to the query, every reading
of a radio source with known position is paired with the query readings of
the same source. Each pair gives one residual:

    y = Pr_query,   f(p) = Taylor expansion of Pr(p) around the neighbor,
                    Pr(p) = K - 5·n·log10(‖p - p_a‖²)

where the expansion is anchored at the neighbor's reading, so the unknown
transmitted power K never appears. The position p is then found with a
weighted Levenberg-Marquardt fit.

Author: Navigation Engineer
Date: 2024
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np

from rssi_positioning.estimators.nonlinear_least_squares import (
    FittingError,
    fit_multi_dimension,
)
from rssi_positioning.rf.pathloss import LinearizationOrder, PathLossEvaluator

from .base import (
    EstimationResult,
    FingerprintPositionEstimator,
    LocatedSourcesMixin,
    WeightedFingerprintEstimatorMixin,
    _Attempt,
)
from .config import EstimatorConfig
from .exceptions import ConfigurationError
from .types import LocatedFingerprint, RadioSource, RssiFingerprint

logger = logging.getLogger(__name__)


class NonlinearFingerprintPositionEstimator(
    LocatedSourcesMixin, WeightedFingerprintEstimatorMixin, FingerprintPositionEstimator
):
    """
    Position-only fingerprint estimator using a Taylor-linearized path-loss model.

    The estimator needs the radio map (located fingerprints), the query
    fingerprint and the radio sources whose positions are known. The
    linearization order trades accuracy far from the neighbors against
    robustness: first order is a plane through the neighbor reading, third
    order follows the logarithmic model closely over a wider area.

    Attributes:
        dims: Dimensionality of positions (2 or 3).
        order: Taylor expansion order of the path-loss model.

    Example:
        >>> estimator = NonlinearFingerprintPositionEstimator(
        ...     located_fingerprints=radio_map, fingerprint=query, sources=access_points,
        ...     dims=2, order="third")
        >>> result = estimator.estimate()
        >>> print(result.position, result.chi_sq)
    """

    DEFAULT_MIN_NEAREST_FINGERPRINTS = 1
    DEFAULT_FALLBACK_RSSI_STD = 1.0
    DEFAULT_ORDER = LinearizationOrder.THIRD

    CONFIG_FIELDS = (
        FingerprintPositionEstimator.CONFIG_FIELDS
        + ("order",)
        + WeightedFingerprintEstimatorMixin.WEIGHTING_FIELDS
    )

    def __init__(
        self,
        located_fingerprints: Optional[Sequence[LocatedFingerprint]] = None,
        fingerprint: Optional[RssiFingerprint] = None,
        sources: Optional[Sequence[RadioSource]] = None,
        dims: int = 2,
        order: Union[LinearizationOrder, int, str] = DEFAULT_ORDER,
        initial_position: Optional[np.ndarray] = None,
        listener: Any = None,
        config: Optional[EstimatorConfig] = None,
    ):
        super().__init__(
            located_fingerprints=located_fingerprints,
            fingerprint=fingerprint,
            dims=dims,
            initial_position=initial_position,
            listener=listener,
        )
        self._init_sources(sources)
        self._init_weighting()
        self._evaluator = PathLossEvaluator(self.dims, self._validate_order(order))

        if config is not None:
            self.apply_config(config)

    def _validate_order(self, value) -> LinearizationOrder:
        try:
            return LinearizationOrder.parse(value)
        except ValueError as e:
            raise ConfigurationError(str(e))

    @property
    def order(self) -> LinearizationOrder:
        return self._evaluator.order

    @order.setter
    def order(self, value):
        self._check_unlocked()
        self._assign(evaluator=PathLossEvaluator(self.dims, self._validate_order(value)))

    @property
    def evaluator(self) -> PathLossEvaluator:
        return self._evaluator

    def _validate_config_value(self, name: str, value):
        if name == "order":
            return self._validate_order(value)
        return super()._validate_config_value(name, value)

    def _convert_config_updates(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        if "order" in updates:
            updates["evaluator"] = PathLossEvaluator(self.dims, updates.pop("order"))
        return self._apply_weighting_updates(updates)

    def _search(self) -> EstimationResult:
        self._warn_if_unmatched()
        return super()._search()

    def _build_attempt(self, k: int, nearest: List[LocatedFingerprint]) -> _Attempt:
        attempt = _Attempt(k=k, nearest_fingerprints=nearest)
        located_sources = self._sources_by_identity()

        for neighbor in nearest:
            neighbor_mean, query_mean = self._reading_means(neighbor)
            candidate = (
                self._initial_position if self._initial_position is not None else neighbor.position
            )

            for reading in neighbor.readings:
                source = located_sources.get(reading.source)
                if source is None:
                    continue
                path_loss_exponent, path_loss_exponent_variance = self._path_loss_for(source)
                located_rssi = reading.rssi - neighbor_mean

                for query_reading in self._fingerprint.readings:
                    if not query_reading.has_same_source(reading):
                        continue

                    std = self._weighting.rssi_std(
                        self._evaluator,
                        located_rssi,
                        neighbor.position,
                        source.position,
                        path_loss_exponent,
                        candidate,
                        query_rssi_variance=query_reading.rssi_variance,
                        located_rssi_variance=reading.rssi_variance,
                        path_loss_exponent_variance=path_loss_exponent_variance,
                        fingerprint_position_covariance=neighbor.position_covariance,
                        source_position_covariance=source.position_covariance,
                    )
                    row = np.concatenate(
                        [[located_rssi], neighbor.position, source.position, [path_loss_exponent]]
                    )
                    attempt.add_residual(row, query_reading.rssi - query_mean, std)

        if self._initial_position is not None:
            attempt.initial_params = self._initial_position.copy()
        else:
            attempt.initial_params = self._neighbors_centroid(nearest)

        logger.debug("k=%d: %d residuals from %d neighbors", k, attempt.n_residuals, len(nearest))
        return attempt

    def _evaluate_row(self, i: int, row: np.ndarray, params: np.ndarray):
        d = self.dims
        return self._evaluator.evaluate(
            row[0], row[1 : 1 + d], row[1 + d : 1 + 2 * d], row[1 + 2 * d], params
        )

    def _solve(self, attempt: _Attempt) -> EstimationResult:
        if attempt.n_residuals == 0:
            raise FittingError("no residuals: neighbors share no located source with the query")

        x, y, sigma = attempt.arrays()
        fit = fit_multi_dimension(x, y, sigma, self._evaluate_row, attempt.initial_params)

        return EstimationResult(
            position=fit.params,
            covariance=fit.covariance,
            position_covariance=fit.covariance,
            chi_sq=fit.chi_sq,
            nearest_fingerprints=attempt.nearest_fingerprints,
            k=attempt.k,
            residual_stds=sigma,
            n_params=self.dims,
        )
