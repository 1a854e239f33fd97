"""Joint estimation of the query position and the radio source positions.

When the radio source positions are unknown (or only roughly known), the
transmitted power of each source is unknown too. It is removed by
differencing the query reading against the reading of the same source at a
located fingerprint p_f:

    y = Pr_query - Pr_located
    f(p, p_a) = 5·n·(log10(‖p_f - p_a‖²) - log10(‖p - p_a‖²))

The unknowns are the query position and the position of every source read
at least `dims` times among the k nearest fingerprints:

    θ = [p, p_a1, ..., p_aM],   len(θ) = dims·(1 + M)

Each residual depends on the query position and on the one source it
references only.

Author: Navigation Engineer
Date: 2024
"""

import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from rssi_positioning.estimators.nonlinear_least_squares import fit_multi_dimension
from rssi_positioning.rf.pathloss import rssi_difference
from rssi_positioning.utils.numerical import centroid

from .base import (
    EstimationResult,
    FingerprintPositionEstimator,
    WeightedFingerprintEstimatorMixin,
    _Attempt,
)
from .config import EstimatorConfig
from .exceptions import ConfigurationError
from .types import LocatedFingerprint, RadioSource, RssiFingerprint

logger = logging.getLogger(__name__)


class NonlinearFingerprintPositionAndSourceEstimator(
    WeightedFingerprintEstimatorMixin, FingerprintPositionEstimator
):
    """
    Estimates the query position together with the positions of the radio sources.

    Initial source positions come from `initial_sources` (matched by
    identity), or default to the centroid of every located fingerprint that
    reads the source. When `min_nearest_fingerprints` is None the smallest k
    tried is the number of unknowns dims·(1 + M); any k that yields fewer
    residuals than unknowns is skipped without attempting a fit.

    Attributes:
        dims: Dimensionality of positions (2 or 3).
        initial_sources: Optional sources providing initial positions,
            position covariances and path-loss exponents.

    Example:
        >>> estimator = NonlinearFingerprintPositionAndSourceEstimator(
        ...     located_fingerprints=radio_map, fingerprint=query, dims=2,
        ...     initial_sources=rough_access_points)
        >>> result = estimator.estimate()
        >>> for source in result.estimated_sources:
        ...     print(source.identifier, source.position)
    """

    DEFAULT_MIN_NEAREST_FINGERPRINTS = None
    DEFAULT_FALLBACK_RSSI_STD = 1e-3

    CONFIG_FIELDS = (
        FingerprintPositionEstimator.CONFIG_FIELDS
        + WeightedFingerprintEstimatorMixin.WEIGHTING_FIELDS
    )

    def __init__(
        self,
        located_fingerprints: Optional[Sequence[LocatedFingerprint]] = None,
        fingerprint: Optional[RssiFingerprint] = None,
        initial_sources: Optional[Sequence[RadioSource]] = None,
        dims: int = 2,
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
        self._initial_sources = self._validate_initial_sources(initial_sources)
        self._init_weighting()

        if config is not None:
            self.apply_config(config)

    def _validate_nearest_range(self, min_nearest, max_nearest):
        """Joint rule: each limit unset or ≥ 1, and min ≤ max when both are set."""
        for name, value in (("min", min_nearest), ("max", max_nearest)):
            if value is None:
                continue
            if not isinstance(value, (int, np.integer)) or isinstance(value, bool):
                raise ConfigurationError(
                    f"{name} nearest fingerprints must be an integer or None, got {value!r}"
                )
            if value < 1:
                raise ConfigurationError(f"{name} nearest fingerprints must be at least 1, got {value}")
        if min_nearest is not None and max_nearest is not None and min_nearest > max_nearest:
            raise ConfigurationError(
                f"min nearest fingerprints ({min_nearest}) exceeds max ({max_nearest})"
            )
        return min_nearest, max_nearest

    def _validate_initial_sources(self, sources):
        if sources is None:
            return None
        sources = list(sources)
        for source in sources:
            if not isinstance(source, RadioSource):
                raise ConfigurationError(
                    f"initial sources must be RadioSource objects, got {type(source).__name__}"
                )
            if source.is_located and source.dim != self.dims:
                raise ConfigurationError(
                    f"initial source {source.identifier!r} has {source.dim} coordinates, "
                    f"expected {self.dims}"
                )
        return sources

    @property
    def initial_sources(self) -> Optional[List[RadioSource]]:
        return self._initial_sources

    @initial_sources.setter
    def initial_sources(self, value):
        self._check_unlocked()
        self._assign(initial_sources=self._validate_initial_sources(value))

    def _convert_config_updates(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        return self._apply_weighting_updates(updates)

    @property
    def estimated_sources(self) -> Optional[List[RadioSource]]:
        """Sources with estimated positions and covariances, or None before a success."""
        return None if self._result is None else self._result.estimated_sources

    # ------------------------------------------------------------------
    # Estimation
    # ------------------------------------------------------------------

    def _sources_to_estimate(self, nearest: List[LocatedFingerprint]) -> List[RadioSource]:
        """Sources read at least dims times among the neighbors and also by the query."""
        counts: "OrderedDict[RadioSource, int]" = OrderedDict()
        for neighbor in nearest:
            for reading in neighbor.readings:
                counts[reading.source] = counts.get(reading.source, 0) + 1

        query_sources = set(self._fingerprint.sources)
        return [
            source
            for source, count in counts.items()
            if count >= self.dims and source in query_sources
        ]

    def _initial_source_state(self, source: RadioSource):
        """Entity, initial position, covariance, path-loss exponent and its variance."""
        initial = None
        if self._initial_sources is not None:
            for candidate in self._initial_sources:
                if candidate == source:
                    initial = candidate
                    break

        entity = initial if initial is not None else source
        if initial is not None and initial.is_located:
            position = initial.position
            covariance = initial.position_covariance
        else:
            position = centroid(
                [
                    f.position
                    for f in self._located_fingerprints
                    if any(reading.source == source for reading in f.readings)
                ]
            )
            covariance = None

        path_loss_exponent, path_loss_exponent_variance = self._source_path_loss(source, initial)
        return entity, position, covariance, path_loss_exponent, path_loss_exponent_variance

    def _source_path_loss(self, source: RadioSource, initial: Optional[RadioSource]):
        """The read source's exponent wins; the initial source fills in a missing variance."""
        path_loss_exponent, path_loss_exponent_variance = self._path_loss_for(source)
        if (
            self._use_sources_path_loss_exponent_when_available
            and path_loss_exponent_variance is None
            and initial is not None
            and initial.path_loss_exponent is not None
        ):
            return initial.path_loss_exponent, initial.path_loss_exponent_variance
        return path_loss_exponent, path_loss_exponent_variance

    def _build_attempt(self, k: int, nearest: List[LocatedFingerprint]) -> Optional[_Attempt]:
        d = self.dims
        sources = self._sources_to_estimate(nearest)
        n_params = d * (1 + len(sources))

        if self._min_nearest_fingerprints is None and k < n_params:
            logger.debug("k=%d below the %d unknowns of %d sources", k, n_params, len(sources))
            return None

        attempt = _Attempt(k=k, nearest_fingerprints=nearest)
        if self._initial_position is not None:
            position = self._initial_position.copy()
        else:
            position = self._neighbors_centroid(nearest)

        states = {}
        initial_params = [position]
        for j, source in enumerate(sources):
            entity, source_position, covariance, n, n_variance = self._initial_source_state(source)
            states[source] = (j, source_position, covariance, n, n_variance)
            attempt.sources.append(entity)
            initial_params.append(source_position)

        for neighbor in nearest:
            neighbor_mean, query_mean = self._reading_means(neighbor)

            for reading in neighbor.readings:
                state = states.get(reading.source)
                if state is None:
                    continue
                j, source_position, covariance, n, n_variance = state
                located_rssi = reading.rssi - neighbor_mean

                for query_reading in self._fingerprint.readings:
                    if not query_reading.has_same_source(reading):
                        continue

                    std = self._weighting.rssi_difference_std(
                        n,
                        neighbor.position,
                        position,
                        source_position,
                        query_rssi_variance=query_reading.rssi_variance,
                        located_rssi_variance=reading.rssi_variance,
                        path_loss_exponent_variance=n_variance,
                        fingerprint_position_covariance=neighbor.position_covariance,
                        source_position_covariance=covariance,
                    )
                    row = np.concatenate([[j, n], neighbor.position])
                    observation = (query_reading.rssi - query_mean) - located_rssi
                    attempt.add_residual(row, observation, std)

        if attempt.n_residuals < n_params:
            logger.debug(
                "k=%d gives %d residuals for %d unknowns", k, attempt.n_residuals, n_params
            )
            return None

        attempt.initial_params = np.concatenate(initial_params)
        return attempt

    def _evaluate_row(self, i: int, row: np.ndarray, params: np.ndarray):
        d = self.dims
        j = int(row[0])
        start = d * (1 + j)

        value, gradient_position, gradient_source = rssi_difference(
            row[1], row[2:], params[:d], params[start : start + d]
        )

        derivatives = np.zeros(len(params))
        derivatives[:d] = gradient_position
        derivatives[start : start + d] = gradient_source
        return value, derivatives

    def _solve(self, attempt: _Attempt) -> EstimationResult:
        d = self.dims
        x, y, sigma = attempt.arrays()
        fit = fit_multi_dimension(x, y, sigma, self._evaluate_row, attempt.initial_params)

        estimated_sources = []
        for j, source in enumerate(attempt.sources):
            start = d * (1 + j)
            estimated_sources.append(
                source.located(
                    fit.params[start : start + d].copy(),
                    fit.covariance[start : start + d, start : start + d].copy(),
                )
            )

        return EstimationResult(
            position=fit.params[:d].copy(),
            covariance=fit.covariance,
            position_covariance=fit.covariance[:d, :d].copy(),
            chi_sq=fit.chi_sq,
            nearest_fingerprints=attempt.nearest_fingerprints,
            k=attempt.k,
            residual_stds=sigma,
            n_params=len(fit.params),
            estimated_sources=estimated_sources,
        )
