"""Type definitions and data structures for RSSI fingerprint positioning.

This module defines the radio sources, RSSI readings and fingerprints that
the position estimators consume. Readings are matched to each other and to
located sources by radio-source identity, never by position.

Author: Li-Ta Hsu
Date: 2024
"""

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, Hashable, List, Optional

import numpy as np


# Type alias for clarity and documentation
Position = np.ndarray  # Shape (d,), d=2 (x, y) or d=3 (x, y, z)


def _as_position(name: str, value) -> np.ndarray:
    position = np.asarray(value, dtype=float)
    if position.ndim != 1 or len(position) not in (2, 3):
        raise ValueError(f"{name} must be a 2D or 3D vector, got shape {position.shape}")
    if not np.all(np.isfinite(position)):
        raise ValueError(f"{name} must be finite")
    return position


def _as_covariance(name: str, value, dims: int) -> np.ndarray:
    covariance = np.asarray(value, dtype=float)
    if covariance.shape != (dims, dims):
        raise ValueError(f"{name} must have shape ({dims}, {dims}), got {covariance.shape}")
    if not np.allclose(covariance, covariance.T):
        raise ValueError(f"{name} must be symmetric")
    return covariance


@dataclass(frozen=True, eq=False)
class RadioSource:
    """
    A radio source (WiFi access point, BLE beacon, ...) identified by a stable id.

    Two sources are equal when their identifiers are equal, whatever their
    position or metadata. This lets an estimated source replace the entity it
    was estimated from without breaking lookups.

    Attributes:
        identifier: Stable identity (e.g. BSSID or beacon UUID).
        source_type: Free-form kind of source, e.g. 'wifi_access_point'.
        frequency: Carrier frequency in Hz, if known.
        position: Source position, shape (d,), or None when unknown.
        position_covariance: Covariance of the position (d × d), or None.
        path_loss_exponent: Known path-loss exponent of the source, or None.
        path_loss_exponent_std: Standard deviation of the path-loss exponent.
        meta: Additional static metadata.

    Examples:
        >>> ap = RadioSource("AP1", position=np.array([10.0, 0.0]))
        >>> ap.is_located, ap.dim
        (True, 2)
        >>> ap == RadioSource("AP1")
        True
    """

    identifier: Hashable
    source_type: str = "wifi_access_point"
    frequency: Optional[float] = None
    position: Optional[np.ndarray] = None
    position_covariance: Optional[np.ndarray] = None
    path_loss_exponent: Optional[float] = None
    path_loss_exponent_std: Optional[float] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.identifier is None:
            raise ValueError("identifier is required")

        if self.position is not None:
            object.__setattr__(self, "position", _as_position("position", self.position))
        if self.position_covariance is not None:
            if self.position is None:
                raise ValueError("position_covariance requires a position")
            object.__setattr__(
                self,
                "position_covariance",
                _as_covariance("position_covariance", self.position_covariance, len(self.position)),
            )

        if self.path_loss_exponent is not None:
            object.__setattr__(self, "path_loss_exponent", float(self.path_loss_exponent))
        if self.path_loss_exponent_std is not None:
            if self.path_loss_exponent is None:
                raise ValueError("path_loss_exponent_std requires a path_loss_exponent")
            if self.path_loss_exponent_std < 0:
                raise ValueError(
                    f"path_loss_exponent_std must be non-negative, got {self.path_loss_exponent_std}"
                )
            object.__setattr__(self, "path_loss_exponent_std", float(self.path_loss_exponent_std))

    def __eq__(self, other):
        if not isinstance(other, RadioSource):
            return NotImplemented
        return self.identifier == other.identifier

    def __hash__(self):
        return hash(self.identifier)

    @property
    def is_located(self) -> bool:
        """True if the source position is known."""
        return self.position is not None

    @property
    def dim(self) -> Optional[int]:
        """Dimensionality of the source position, or None when unknown."""
        return None if self.position is None else len(self.position)

    @property
    def path_loss_exponent_variance(self) -> Optional[float]:
        if self.path_loss_exponent_std is None:
            return None
        return self.path_loss_exponent_std**2

    def located(
        self,
        position: np.ndarray,
        position_covariance: Optional[np.ndarray] = None,
    ) -> "RadioSource":
        """Return a copy placed at a new position, keeping every static attribute."""
        return dataclasses.replace(
            self, position=position, position_covariance=position_covariance
        )


@dataclass(frozen=True)
class RssiReading:
    """
    A single RSSI measurement of one radio source.

    Attributes:
        source: The radio source that was measured.
        rssi: Received signal strength in dBm.
        rssi_std: Standard deviation of the RSSI in dB, or None when unknown.
            Must be positive when given.
    """

    source: RadioSource
    rssi: float
    rssi_std: Optional[float] = None

    def __post_init__(self):
        if not isinstance(self.source, RadioSource):
            raise TypeError(f"source must be a RadioSource, got {type(self.source).__name__}")
        object.__setattr__(self, "rssi", float(self.rssi))
        if self.rssi_std is not None:
            if not self.rssi_std > 0:
                raise ValueError(f"rssi_std must be positive, got {self.rssi_std}")
            object.__setattr__(self, "rssi_std", float(self.rssi_std))

    @property
    def rssi_variance(self) -> Optional[float]:
        return None if self.rssi_std is None else self.rssi_std**2

    def has_same_source(self, other: "RssiReading") -> bool:
        return self.source == other.source


@dataclass(eq=False)
class RssiFingerprint:
    """
    A set of RSSI readings captured at one location.

    Used as-is for the query fingerprint at the unknown location, and as the
    base of LocatedFingerprint for the radio map. Fingerprints compare by
    identity.

    Attributes:
        readings: RSSI readings, possibly several per source.

    Examples:
        >>> ap1, ap2 = RadioSource("AP1"), RadioSource("AP2")
        >>> fp = RssiFingerprint([RssiReading(ap1, -50.0), RssiReading(ap2, -70.0)])
        >>> fp.mean_rssi
        -60.0
    """

    readings: List[RssiReading]

    def __post_init__(self):
        self.readings = list(self.readings)
        for reading in self.readings:
            if not isinstance(reading, RssiReading):
                raise TypeError(
                    f"readings must contain RssiReading objects, got {type(reading).__name__}"
                )

    @property
    def n_readings(self) -> int:
        return len(self.readings)

    @property
    def sources(self) -> List[RadioSource]:
        """Distinct sources of the readings, in first-seen order."""
        seen = {}
        for reading in self.readings:
            seen.setdefault(reading.source, reading.source)
        return list(seen.values())

    @property
    def mean_rssi(self) -> float:
        """Average RSSI of all readings (NaN for an empty fingerprint)."""
        if not self.readings:
            return float("nan")
        return float(np.mean([reading.rssi for reading in self.readings]))

    def readings_for(self, source: RadioSource) -> List[RssiReading]:
        return [reading for reading in self.readings if reading.source == source]

    def _matched_pairs(self, other: "RssiFingerprint"):
        for reading in self.readings:
            for other_reading in other.readings:
                if reading.has_same_source(other_reading):
                    yield reading.rssi, other_reading.rssi

    def sqr_distance_to(self, other: "RssiFingerprint") -> float:
        """
        Squared RSSI distance over the readings of common sources.

        Returns:
            Σ (rssi_self - rssi_other)² over matched readings, or inf when the
            fingerprints share no source.
        """
        pairs = list(self._matched_pairs(other))
        if not pairs:
            return float("inf")
        diffs = np.array([a - b for a, b in pairs])
        return float(np.sum(diffs**2))

    def no_mean_sqr_distance_to(self, other: "RssiFingerprint") -> float:
        """
        Squared RSSI distance after removing each side's mean.

        The means are taken over the matched readings only, so a constant
        offset between the two devices (e.g. different antenna gain) does not
        change the distance.

        Returns:
            Σ ((a - ā) - (b - b̄))² over matched readings, or inf when the
            fingerprints share no source.
        """
        pairs = list(self._matched_pairs(other))
        if not pairs:
            return float("inf")
        values = np.array(pairs)
        centered = values - values.mean(axis=0)
        return float(np.sum((centered[:, 0] - centered[:, 1]) ** 2))


@dataclass(eq=False)
class LocatedFingerprint(RssiFingerprint):
    """
    A fingerprint captured at a known position (radio map entry).

    Attributes:
        readings: RSSI readings (at least one).
        position: Known position, shape (d,) with d = 2 or 3.
        position_covariance: Covariance of the position (d × d), or None.
        mean_rssi_bias: Mean RSSI to use instead of the average of the
            readings, or None.

    Examples:
        >>> ap = RadioSource("AP1", position=np.array([10.0, 0.0]))
        >>> fp = LocatedFingerprint([RssiReading(ap, -50.0)], position=np.zeros(2))
        >>> fp.dim
        2
    """

    position: Position = None
    position_covariance: Optional[np.ndarray] = None
    mean_rssi_bias: Optional[float] = None

    def __post_init__(self):
        super().__post_init__()
        if not self.readings:
            raise ValueError("A located fingerprint needs at least one reading")
        if self.position is None:
            raise ValueError("position is required")
        self.position = _as_position("position", self.position)
        if self.position_covariance is not None:
            self.position_covariance = _as_covariance(
                "position_covariance", self.position_covariance, len(self.position)
            )
        if self.mean_rssi_bias is not None:
            self.mean_rssi_bias = float(self.mean_rssi_bias)

    @property
    def dim(self) -> int:
        return len(self.position)

    @property
    def mean_rssi(self) -> float:
        if self.mean_rssi_bias is not None:
            return self.mean_rssi_bias
        return super().mean_rssi
