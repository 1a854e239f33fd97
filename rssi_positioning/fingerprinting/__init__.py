"""Fingerprint-based position estimation from RSSI readings.

The query fingerprint is matched against the k nearest located fingerprints of
a radio map, and the path-loss model linearized around each neighbor is fitted
to the query readings. The neighbor count k grows until a fit succeeds.

Main components:
    - RadioSource, RssiReading, RssiFingerprint, LocatedFingerprint: data model
    - find_k_nearest, NearestFingerprintFinder: signal-space neighbor search
    - ResidualWeighting: per-residual standard deviations
    - NonlinearFingerprintPositionEstimator: position with known sources
    - NonlinearFingerprintPositionAndSourceEstimator: position and sources
    - LinearFingerprintPositionEstimator: first-order direct solve
    - EstimatorConfig, load_estimator_config: YAML/JSON settings
    - RadioMap, load_radio_map, save_radio_map: radio map I/O

Example usage:
    >>> from rssi_positioning.fingerprinting import (
    ...     NonlinearFingerprintPositionEstimator,
    ...     load_radio_map,
    ... )
    >>> radio_map = load_radio_map('data/sim/rssi_radio_map.json')
    >>> estimator = NonlinearFingerprintPositionEstimator(
    ...     located_fingerprints=radio_map.located_fingerprints,
    ...     fingerprint=radio_map.queries[0],
    ...     sources=radio_map.located_sources,
    ... )
    >>> result = estimator.estimate()

Author: Navigation Engineer
Date: 2024
"""

from .base import (
    DEFAULT_PATH_LOSS_EXPONENT,
    EstimationResult,
    EstimatorState,
    FingerprintPositionEstimator,
)
from .config import EstimatorConfig, load_estimator_config, save_estimator_config
from .dataset import RadioMap, load_radio_map, save_radio_map
from .exceptions import (
    ConfigurationError,
    EstimationFailedError,
    FingerprintEstimationError,
    LockedError,
    NotReadyError,
)
from .joint import NonlinearFingerprintPositionAndSourceEstimator
from .linear import LinearFingerprintPositionEstimator
from .nearest import NearestFingerprintFinder, find_k_nearest, signal_sqr_distances
from .nonlinear import NonlinearFingerprintPositionEstimator
from .types import LocatedFingerprint, RadioSource, RssiFingerprint, RssiReading
from .weighting import ResidualWeighting

__all__ = [
    # Core types
    "RadioSource",
    "RssiReading",
    "RssiFingerprint",
    "LocatedFingerprint",
    # Nearest fingerprints
    "find_k_nearest",
    "signal_sqr_distances",
    "NearestFingerprintFinder",
    # Weighting
    "ResidualWeighting",
    # Estimators
    "DEFAULT_PATH_LOSS_EXPONENT",
    "EstimatorState",
    "EstimationResult",
    "FingerprintPositionEstimator",
    "NonlinearFingerprintPositionEstimator",
    "NonlinearFingerprintPositionAndSourceEstimator",
    "LinearFingerprintPositionEstimator",
    # Errors
    "FingerprintEstimationError",
    "ConfigurationError",
    "NotReadyError",
    "LockedError",
    "EstimationFailedError",
    # Configuration
    "EstimatorConfig",
    "load_estimator_config",
    "save_estimator_config",
    # Radio map I/O
    "RadioMap",
    "load_radio_map",
    "save_radio_map",
]
