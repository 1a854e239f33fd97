"""Shared machinery of the fingerprint position estimators.

Every estimator follows the same life cycle:

    Idle ──estimate()──▶ Running ──▶ Idle + result
                                └──▶ Idle + error

and the same search strategy: for k = k_min, k_min + 1, ... the k located
fingerprints nearest (in signal space) to the query are collected, residuals
are assembled into a per-call attempt record and a fit is tried. The first k
whose fit succeeds is accepted; numerical failures discard the attempt and the
search moves on to k + 1. Only when the whole range is exhausted does the
caller see an EstimationFailedError.

While an estimation runs the estimator is locked: a nested or concurrent
estimate() call, or any setter, raises LockedError.

Author: Navigation Engineer
Date: 2024
"""

import logging
import threading
import warnings
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from scipy import stats

from rssi_positioning.estimators.nonlinear_least_squares import FittingError
from rssi_positioning.utils.numerical import centroid

from .config import EstimatorConfig
from .exceptions import (
    ConfigurationError,
    EstimationFailedError,
    LockedError,
    NotReadyError,
)
from .nearest import find_k_nearest
from .types import LocatedFingerprint, RadioSource, RssiFingerprint
from .weighting import TINY_RSSI_STD, ResidualWeighting

logger = logging.getLogger(__name__)

DEFAULT_PATH_LOSS_EXPONENT = 2.0


class EstimatorState(Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class EstimationResult:
    """
    Outcome of a successful estimate() call.

    Attributes:
        position: Estimated position, shape (d,).
        covariance: Covariance of all estimated parameters. (d × d) for
            position-only estimators; for joint estimation it spans the
            position followed by every estimated source position.
        position_covariance: Position block of the covariance (d × d).
        chi_sq: Weighted sum of squared residuals of the accepted fit.
        nearest_fingerprints: Located fingerprints used by the accepted fit.
        k: Number of nearest fingerprints of the accepted fit.
        residual_stds: Standard deviation assigned to every residual.
        n_params: Number of estimated parameters.
        estimated_sources: Radio sources with estimated positions (joint
            estimation only).
        attempted_k: Every k for which a fit was attempted, in order.
    """

    position: np.ndarray
    covariance: Optional[np.ndarray]
    position_covariance: Optional[np.ndarray]
    chi_sq: float
    nearest_fingerprints: List[LocatedFingerprint]
    k: int
    residual_stds: np.ndarray
    n_params: int
    estimated_sources: List[RadioSource] = field(default_factory=list)
    attempted_k: List[int] = field(default_factory=list)

    @property
    def n_residuals(self) -> int:
        return len(self.residual_stds)

    @property
    def degrees_of_freedom(self) -> int:
        return self.n_residuals - self.n_params

    @property
    def p_value(self) -> Optional[float]:
        """Probability of a χ² at least this large under the fitted model."""
        if self.degrees_of_freedom <= 0:
            return None
        return float(stats.chi2.sf(self.chi_sq, self.degrees_of_freedom))


@dataclass
class _Attempt:
    """Residuals assembled for one neighbor count k. Discarded unless the fit succeeds."""

    k: int
    nearest_fingerprints: List[LocatedFingerprint]
    design: List[np.ndarray] = field(default_factory=list)
    observations: List[float] = field(default_factory=list)
    standard_deviations: List[float] = field(default_factory=list)
    sources: List[RadioSource] = field(default_factory=list)
    initial_params: Optional[np.ndarray] = None

    def add_residual(self, row: np.ndarray, observation: float, standard_deviation: float):
        self.design.append(np.asarray(row, dtype=float))
        self.observations.append(float(observation))
        self.standard_deviations.append(float(standard_deviation))

    @property
    def n_residuals(self) -> int:
        return len(self.observations)

    def arrays(self):
        return (
            np.vstack(self.design),
            np.asarray(self.observations),
            np.asarray(self.standard_deviations),
        )


def _as_bool(name: str, value) -> bool:
    if not isinstance(value, (bool, np.bool_)):
        raise ConfigurationError(f"{name} must be a boolean, got {value!r}")
    return bool(value)


class FingerprintPositionEstimator(ABC):
    """
    Base class of the fingerprint position estimators.

    Subclasses provide the readiness rule, the first neighbor count to try,
    residual assembly for a given neighbor set, and the solve step.

    Attributes:
        dims: Dimensionality of positions (2 or 3), fixed at construction.
        listener: Optional object with on_estimate_start(estimator) and/or
            on_estimate_end(estimator) methods.
    """

    DEFAULT_MIN_NEAREST_FINGERPRINTS: Optional[int] = 1
    DEFAULT_FALLBACK_RSSI_STD = 1.0

    # Settings that apply_config() may change on this estimator
    CONFIG_FIELDS = (
        "min_nearest_fingerprints",
        "max_nearest_fingerprints",
        "path_loss_exponent",
        "use_no_mean_nearest_fingerprint_finder",
        "remove_means_from_fingerprint_readings",
        "use_sources_path_loss_exponent_when_available",
    )

    def __init__(
        self,
        located_fingerprints: Optional[Sequence[LocatedFingerprint]] = None,
        fingerprint: Optional[RssiFingerprint] = None,
        dims: int = 2,
        initial_position: Optional[np.ndarray] = None,
        listener: Any = None,
        config: Optional[EstimatorConfig] = None,
    ):
        if dims not in (2, 3):
            raise ConfigurationError(f"dims must be 2 or 3, got {dims}")
        self.dims = dims

        self._lock = threading.Lock()
        self._state = EstimatorState.IDLE
        self._result: Optional[EstimationResult] = None

        self._located_fingerprints = self._validate_located_fingerprints(located_fingerprints)
        self._fingerprint = self._validate_fingerprint(fingerprint)
        self._initial_position = self._validate_initial_position(initial_position)
        self._listener = listener

        self._min_nearest_fingerprints = self.DEFAULT_MIN_NEAREST_FINGERPRINTS
        self._max_nearest_fingerprints: Optional[int] = None
        self._path_loss_exponent = DEFAULT_PATH_LOSS_EXPONENT
        self._use_no_mean_nearest_fingerprint_finder = True
        self._remove_means_from_fingerprint_readings = False
        self._use_sources_path_loss_exponent_when_available = True

        if config is not None:
            self.apply_config(config)

    # ------------------------------------------------------------------
    # State and locking
    # ------------------------------------------------------------------

    @property
    def state(self) -> EstimatorState:
        return self._state

    @property
    def is_locked(self) -> bool:
        return self._lock.locked()

    def _check_unlocked(self):
        if self.is_locked:
            raise LockedError(f"{type(self).__name__} is running an estimation")

    def _assign(self, **values):
        self._check_unlocked()
        for name, value in values.items():
            setattr(self, "_" + name, value)
        self._result = None

    @property
    def is_ready(self) -> bool:
        return self._located_fingerprints is not None and self._fingerprint is not None

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_located_fingerprints(self, located_fingerprints):
        if located_fingerprints is None:
            return None
        located_fingerprints = list(located_fingerprints)
        for fingerprint in located_fingerprints:
            if not isinstance(fingerprint, LocatedFingerprint):
                raise ConfigurationError(
                    f"located fingerprints must be LocatedFingerprint, got {type(fingerprint).__name__}"
                )
            if fingerprint.dim != self.dims:
                raise ConfigurationError(
                    f"located fingerprint position has {fingerprint.dim} coordinates, expected {self.dims}"
                )
        total_readings = sum(f.n_readings for f in located_fingerprints)
        if total_readings < self.dims:
            raise ConfigurationError(
                f"located fingerprints contain {total_readings} readings, at least {self.dims} required"
            )
        return located_fingerprints

    def _validate_fingerprint(self, fingerprint):
        if fingerprint is not None and not isinstance(fingerprint, RssiFingerprint):
            raise ConfigurationError(
                f"fingerprint must be an RssiFingerprint, got {type(fingerprint).__name__}"
            )
        return fingerprint

    def _validate_initial_position(self, position):
        if position is None:
            return None
        position = np.asarray(position, dtype=float)
        if position.shape != (self.dims,) or not np.all(np.isfinite(position)):
            raise ConfigurationError(
                f"initial position must be a finite vector of shape ({self.dims},), got {position.shape}"
            )
        return position

    def _validate_nearest_range(self, min_nearest, max_nearest):
        """Position-only rule: min ≥ 1, max unset or ≥ min."""
        if not isinstance(min_nearest, (int, np.integer)) or isinstance(min_nearest, bool):
            raise ConfigurationError(f"min nearest fingerprints must be an integer, got {min_nearest!r}")
        if min_nearest < 1:
            raise ConfigurationError(f"min nearest fingerprints must be at least 1, got {min_nearest}")
        if max_nearest is not None:
            if not isinstance(max_nearest, (int, np.integer)) or isinstance(max_nearest, bool):
                raise ConfigurationError(
                    f"max nearest fingerprints must be an integer or None, got {max_nearest!r}"
                )
            if min_nearest > max_nearest:
                raise ConfigurationError(
                    f"min nearest fingerprints ({min_nearest}) exceeds max ({max_nearest})"
                )
        return min_nearest, max_nearest

    def _validate_path_loss_exponent(self, value):
        try:
            value = float(value)
        except (TypeError, ValueError):
            raise ConfigurationError(f"path loss exponent must be a number, got {value!r}")
        if not np.isfinite(value):
            raise ConfigurationError("path loss exponent must be finite")
        return value

    def _validate_fallback_rssi_std(self, value):
        try:
            value = float(value)
        except (TypeError, ValueError):
            raise ConfigurationError(f"fallback RSSI std must be a number, got {value!r}")
        if not value >= TINY_RSSI_STD or not np.isfinite(value):
            raise ConfigurationError(
                f"fallback RSSI std must be at least {TINY_RSSI_STD}, got {value}"
            )
        return value

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def located_fingerprints(self) -> Optional[List[LocatedFingerprint]]:
        return self._located_fingerprints

    @located_fingerprints.setter
    def located_fingerprints(self, value):
        self._check_unlocked()
        self._assign(located_fingerprints=self._validate_located_fingerprints(value))

    @property
    def fingerprint(self) -> Optional[RssiFingerprint]:
        """Query fingerprint measured at the unknown position."""
        return self._fingerprint

    @fingerprint.setter
    def fingerprint(self, value):
        self._check_unlocked()
        self._assign(fingerprint=self._validate_fingerprint(value))

    @property
    def initial_position(self) -> Optional[np.ndarray]:
        return self._initial_position

    @initial_position.setter
    def initial_position(self, value):
        self._check_unlocked()
        self._assign(initial_position=self._validate_initial_position(value))

    @property
    def min_nearest_fingerprints(self) -> Optional[int]:
        return self._min_nearest_fingerprints

    @min_nearest_fingerprints.setter
    def min_nearest_fingerprints(self, value):
        self.set_nearest_fingerprints_range(value, self._max_nearest_fingerprints)

    @property
    def max_nearest_fingerprints(self) -> Optional[int]:
        """Largest k to try, or None to allow every located fingerprint."""
        return self._max_nearest_fingerprints

    @max_nearest_fingerprints.setter
    def max_nearest_fingerprints(self, value):
        self.set_nearest_fingerprints_range(self._min_nearest_fingerprints, value)

    def set_nearest_fingerprints_range(self, min_nearest, max_nearest):
        """Set both neighbor count limits at once."""
        self._check_unlocked()
        min_nearest, max_nearest = self._validate_nearest_range(min_nearest, max_nearest)
        self._assign(
            min_nearest_fingerprints=None if min_nearest is None else int(min_nearest),
            max_nearest_fingerprints=None if max_nearest is None else int(max_nearest),
        )

    @property
    def path_loss_exponent(self) -> float:
        """Path-loss exponent used when a source does not provide one."""
        return self._path_loss_exponent

    @path_loss_exponent.setter
    def path_loss_exponent(self, value):
        self._check_unlocked()
        self._assign(path_loss_exponent=self._validate_path_loss_exponent(value))

    @property
    def use_no_mean_nearest_fingerprint_finder(self) -> bool:
        return self._use_no_mean_nearest_fingerprint_finder

    @use_no_mean_nearest_fingerprint_finder.setter
    def use_no_mean_nearest_fingerprint_finder(self, value):
        self._check_unlocked()
        self._assign(
            use_no_mean_nearest_fingerprint_finder=_as_bool(
                "use_no_mean_nearest_fingerprint_finder", value
            )
        )

    @property
    def remove_means_from_fingerprint_readings(self) -> bool:
        return self._remove_means_from_fingerprint_readings

    @remove_means_from_fingerprint_readings.setter
    def remove_means_from_fingerprint_readings(self, value):
        self._check_unlocked()
        self._assign(
            remove_means_from_fingerprint_readings=_as_bool(
                "remove_means_from_fingerprint_readings", value
            )
        )

    @property
    def use_sources_path_loss_exponent_when_available(self) -> bool:
        """Prefer a source's own path-loss exponent over the default one."""
        return self._use_sources_path_loss_exponent_when_available

    @use_sources_path_loss_exponent_when_available.setter
    def use_sources_path_loss_exponent_when_available(self, value):
        self._check_unlocked()
        self._assign(
            use_sources_path_loss_exponent_when_available=_as_bool(
                "use_sources_path_loss_exponent_when_available", value
            )
        )

    @property
    def listener(self):
        return self._listener

    @listener.setter
    def listener(self, value):
        self._check_unlocked()
        self._listener = value

    def _validate_config_value(self, name: str, value):
        if name == "path_loss_exponent":
            return self._validate_path_loss_exponent(value)
        if name == "fallback_rssi_std":
            return self._validate_fallback_rssi_std(value)
        if name in ("min_nearest_fingerprints", "max_nearest_fingerprints"):
            return value
        return _as_bool(name, value)

    def apply_config(self, config: EstimatorConfig):
        """
        Apply every setting of a configuration that this estimator supports.

        All values are validated before any of them is applied, so an invalid
        configuration leaves the estimator unchanged.

        Raises:
            LockedError: If an estimation is running.
            ConfigurationError: If any value is invalid.
        """
        self._check_unlocked()
        updates: Dict[str, Any] = {}
        for name, value in config.items():
            if name not in self.CONFIG_FIELDS:
                logger.debug("%s ignores setting '%s'", type(self).__name__, name)
                continue
            updates[name] = self._validate_config_value(name, value)

        min_nearest = updates.pop("min_nearest_fingerprints", self._min_nearest_fingerprints)
        max_nearest = updates.pop("max_nearest_fingerprints", self._max_nearest_fingerprints)
        min_nearest, max_nearest = self._validate_nearest_range(min_nearest, max_nearest)
        updates["min_nearest_fingerprints"] = min_nearest
        updates["max_nearest_fingerprints"] = max_nearest

        self._assign(**self._convert_config_updates(updates))

    def _convert_config_updates(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Hook turning validated config values into attribute assignments."""
        return updates

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    @property
    def result(self) -> Optional[EstimationResult]:
        return self._result

    @property
    def estimated_position(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.position

    @property
    def covariance(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.covariance

    @property
    def estimated_position_covariance(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.position_covariance

    @property
    def chi_sq(self) -> Optional[float]:
        return None if self._result is None else self._result.chi_sq

    @property
    def nearest_fingerprints(self) -> Optional[List[LocatedFingerprint]]:
        return None if self._result is None else self._result.nearest_fingerprints

    # ------------------------------------------------------------------
    # Estimation
    # ------------------------------------------------------------------

    def estimate(self) -> EstimationResult:
        """
        Estimate the position of the query fingerprint.

        Returns:
            EstimationResult of the first neighbor count whose fit succeeded.
            The same object is available afterwards through `result`.

        Raises:
            LockedError: If an estimation is already running.
            NotReadyError: If a required input is missing.
            EstimationFailedError: If no neighbor count produced a fit.
        """
        if not self._lock.acquire(blocking=False):
            raise LockedError(f"{type(self).__name__} is running an estimation")
        try:
            self._state = EstimatorState.RUNNING
            if not self.is_ready:
                raise NotReadyError(f"{type(self).__name__} is missing required inputs")

            self._result = None
            self._notify("on_estimate_start")

            result = self._search()
            self._result = result

            self._notify("on_estimate_end")
            return result
        finally:
            self._state = EstimatorState.IDLE
            self._lock.release()

    def _notify(self, event: str):
        callback = getattr(self._listener, event, None)
        if callback is not None:
            callback(self)

    def _first_k(self) -> int:
        return max(1, self._min_nearest_fingerprints or 1)

    def _last_k(self) -> int:
        n_located = len(self._located_fingerprints)
        if self._max_nearest_fingerprints is None:
            return n_located
        return min(self._max_nearest_fingerprints, n_located)

    def _search(self) -> EstimationResult:
        attempted_k: List[int] = []
        first_k, last_k = self._first_k(), self._last_k()

        for k in range(first_k, last_k + 1):
            nearest, _ = find_k_nearest(
                self._located_fingerprints,
                self._fingerprint,
                k,
                remove_mean=self._use_no_mean_nearest_fingerprint_finder,
            )

            attempt = self._build_attempt(k, nearest)
            if attempt is None:
                logger.debug("k=%d skipped: not enough information to attempt a fit", k)
                continue

            attempted_k.append(k)
            try:
                result = self._solve(attempt)
            except FittingError as e:
                logger.debug("k=%d failed with %d residuals: %s", k, attempt.n_residuals, e)
                continue

            result.attempted_k = attempted_k
            logger.info(
                "%s accepted k=%d (%d residuals, chi2=%.4g)",
                type(self).__name__,
                k,
                result.n_residuals,
                result.chi_sq,
            )
            return result

        raise EstimationFailedError(
            f"No neighbor count in [{first_k}, {last_k}] produced a valid fit",
            attempted_k=attempted_k,
        )

    def _reading_means(self, neighbor: LocatedFingerprint):
        """Means subtracted from neighbor and query readings (0 when disabled)."""
        if not self._remove_means_from_fingerprint_readings:
            return 0.0, 0.0
        return neighbor.mean_rssi, self._fingerprint.mean_rssi

    def _path_loss_for(self, *sources: Optional[RadioSource]):
        """
        Path-loss exponent and its variance for a residual.

        The first of the given sources that carries its own exponent wins when
        use_sources_path_loss_exponent_when_available is set; otherwise the
        default exponent is used and its variance is unknown (None).
        """
        if self._use_sources_path_loss_exponent_when_available:
            for source in sources:
                if source is not None and source.path_loss_exponent is not None:
                    return source.path_loss_exponent, source.path_loss_exponent_variance
        return self._path_loss_exponent, None

    def _neighbors_centroid(self, nearest: Sequence[LocatedFingerprint]) -> np.ndarray:
        return centroid([f.position for f in nearest])

    @abstractmethod
    def _build_attempt(self, k: int, nearest: List[LocatedFingerprint]) -> Optional[_Attempt]:
        """Residuals for the k nearest neighbors, or None when k cannot be attempted."""

    @abstractmethod
    def _solve(self, attempt: _Attempt) -> EstimationResult:
        """Fit an attempt; raises FittingError when it has no unique solution."""


class WeightedFingerprintEstimatorMixin:
    """Residual weighting settings of the nonlinear estimators."""

    WEIGHTING_FIELDS = (
        "fallback_rssi_std",
        "propagate_fingerprint_rssi_std",
        "propagate_path_loss_exponent_std",
        "propagate_fingerprint_position_covariance",
        "propagate_radio_source_position_covariance",
    )

    def _init_weighting(self):
        self._weighting = ResidualWeighting(fallback_rssi_std=self.DEFAULT_FALLBACK_RSSI_STD)

    @property
    def weighting(self) -> ResidualWeighting:
        return self._weighting

    def _set_weighting(self, **values):
        self._check_unlocked()
        current = {name: getattr(self._weighting, name) for name in self.WEIGHTING_FIELDS}
        current.update(values)
        self._assign(weighting=ResidualWeighting(**current))

    @property
    def fallback_rssi_std(self) -> float:
        """Standard deviation used when a residual has no variance information."""
        return self._weighting.fallback_rssi_std

    @fallback_rssi_std.setter
    def fallback_rssi_std(self, value):
        self._check_unlocked()
        self._set_weighting(fallback_rssi_std=self._validate_fallback_rssi_std(value))

    @property
    def propagate_fingerprint_rssi_std(self) -> bool:
        return self._weighting.propagate_fingerprint_rssi_std

    @propagate_fingerprint_rssi_std.setter
    def propagate_fingerprint_rssi_std(self, value):
        self._set_weighting(
            propagate_fingerprint_rssi_std=_as_bool("propagate_fingerprint_rssi_std", value)
        )

    @property
    def propagate_path_loss_exponent_std(self) -> bool:
        return self._weighting.propagate_path_loss_exponent_std

    @propagate_path_loss_exponent_std.setter
    def propagate_path_loss_exponent_std(self, value):
        self._set_weighting(
            propagate_path_loss_exponent_std=_as_bool("propagate_path_loss_exponent_std", value)
        )

    @property
    def propagate_fingerprint_position_covariance(self) -> bool:
        return self._weighting.propagate_fingerprint_position_covariance

    @propagate_fingerprint_position_covariance.setter
    def propagate_fingerprint_position_covariance(self, value):
        self._set_weighting(
            propagate_fingerprint_position_covariance=_as_bool(
                "propagate_fingerprint_position_covariance", value
            )
        )

    @property
    def propagate_radio_source_position_covariance(self) -> bool:
        return self._weighting.propagate_radio_source_position_covariance

    @propagate_radio_source_position_covariance.setter
    def propagate_radio_source_position_covariance(self, value):
        self._set_weighting(
            propagate_radio_source_position_covariance=_as_bool(
                "propagate_radio_source_position_covariance", value
            )
        )

    def _apply_weighting_updates(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        weighting_values = {
            name: updates.pop(name) for name in self.WEIGHTING_FIELDS if name in updates
        }
        if weighting_values:
            current = {name: getattr(self._weighting, name) for name in self.WEIGHTING_FIELDS}
            current.update(weighting_values)
            updates["weighting"] = ResidualWeighting(**current)
        return updates


class LocatedSourcesMixin:
    """Known radio sources used by the position-only estimators."""

    def _init_sources(self, sources):
        self._sources = self._validate_sources(sources)

    def _validate_sources(self, sources):
        if sources is None:
            return None
        sources = list(sources)
        for source in sources:
            if not isinstance(source, RadioSource):
                raise ConfigurationError(
                    f"sources must be RadioSource objects, got {type(source).__name__}"
                )
            if not source.is_located:
                raise ConfigurationError(f"radio source {source.identifier!r} has no position")
            if source.dim != self.dims:
                raise ConfigurationError(
                    f"radio source {source.identifier!r} has {source.dim} coordinates, "
                    f"expected {self.dims}"
                )
        return sources

    @property
    def sources(self) -> Optional[List[RadioSource]]:
        """Radio sources with known positions."""
        return self._sources

    @sources.setter
    def sources(self, value):
        self._check_unlocked()
        self._assign(sources=self._validate_sources(value))

    @property
    def is_ready(self) -> bool:
        return super().is_ready and self._sources is not None

    def _sources_by_identity(self) -> Dict[RadioSource, RadioSource]:
        return {source: source for source in self._sources}

    def _warn_if_unmatched(self):
        located = self._sources_by_identity()
        if not any(reading.source in located for reading in self._fingerprint.readings):
            warnings.warn(
                "Query fingerprint has no reading of a located radio source",
                UserWarning,
            )

        n_unmatched = sum(
            1
            for fingerprint in self._located_fingerprints
            if not any(reading.source in located for reading in fingerprint.readings)
        )
        if n_unmatched:
            warnings.warn(
                f"{n_unmatched} located fingerprint(s) have no reading of a located radio source",
                UserWarning,
            )
