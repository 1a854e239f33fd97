"""Exceptions raised by the fingerprint position estimators."""

from typing import Optional, Sequence


class FingerprintEstimationError(Exception):
    """Base class for estimator errors."""


class ConfigurationError(FingerprintEstimationError, ValueError):
    """Invalid constructor or setter argument. The estimator is left unchanged."""


class NotReadyError(FingerprintEstimationError):
    """estimate() was called before every required input was set."""


class LockedError(FingerprintEstimationError):
    """The estimator is running; estimate() and setters are rejected."""


class EstimationFailedError(FingerprintEstimationError):
    """No neighbor count in the configured range produced a valid fit.

    Attributes:
        attempted_k: Neighbor counts for which a fit was attempted, in order.
    """

    def __init__(self, message: str, attempted_k: Optional[Sequence[int]] = None):
        super().__init__(message)
        self.attempted_k = list(attempted_k or [])
