"""Nearest located-fingerprint search in signal space.

Located fingerprints are ranked by their squared RSSI distance to a query
fingerprint, computed over the readings of the radio sources both have in
common. The mean-removed variant subtracts each side's average RSSI first,
which cancels a constant gain offset between the surveying device and the
device being located.

Key rules:
    - Readings are matched by radio-source identity.
    - Fingerprints without a common source are at infinite distance; they are
      still returned (last) when k exceeds the number of closer ones.
    - Ties keep the order of the located fingerprints.

Author: Li-Ta Hsu
Date: 2024
"""

from typing import List, Sequence, Tuple

import numpy as np

from .types import LocatedFingerprint, RssiFingerprint


def signal_sqr_distances(
    located_fingerprints: Sequence[LocatedFingerprint],
    fingerprint: RssiFingerprint,
    remove_mean: bool = False,
) -> np.ndarray:
    """
    Squared signal distance from the query to every located fingerprint.

    Args:
        located_fingerprints: Radio map entries, length M.
        fingerprint: Query fingerprint.
        remove_mean: If True, use the mean-removed distance.

    Returns:
        Array of shape (M,) with squared distances (inf where nothing is shared).
    """
    if remove_mean:
        return np.array([f.no_mean_sqr_distance_to(fingerprint) for f in located_fingerprints])
    return np.array([f.sqr_distance_to(fingerprint) for f in located_fingerprints])


def find_k_nearest(
    located_fingerprints: Sequence[LocatedFingerprint],
    fingerprint: RssiFingerprint,
    k: int,
    remove_mean: bool = False,
) -> Tuple[List[LocatedFingerprint], np.ndarray]:
    """
    Find the k located fingerprints closest to the query in signal space.

    Args:
        located_fingerprints: Radio map entries.
        fingerprint: Query fingerprint.
        k: Number of neighbors (≥ 1). If k exceeds the number of located
            fingerprints, all of them are returned.
        remove_mean: If True, rank by mean-removed distance.

    Returns:
        Tuple of:
            - neighbors: Located fingerprints in ascending distance order.
            - sqr_distances: Corresponding squared signal distances.

    Raises:
        ValueError: If k < 1.

    Examples:
        >>> neighbors, d2 = find_k_nearest(radio_map, query, k=3)
        >>> print([n.position for n in neighbors])
    """
    if k < 1:
        raise ValueError(f"k must be at least 1, got {k}")

    sqr_distances = signal_sqr_distances(located_fingerprints, fingerprint, remove_mean)
    order = np.argsort(sqr_distances, kind="stable")[:k]
    return [located_fingerprints[i] for i in order], sqr_distances[order]


class NearestFingerprintFinder:
    """
    K-nearest search over a fixed list of located fingerprints.

    Attributes:
        located_fingerprints: Radio map entries to search.
        remove_mean: Whether distances are computed after mean removal.

    Example:
        >>> finder = NearestFingerprintFinder(radio_map, remove_mean=True)
        >>> best = finder.find_nearest(query)
    """

    def __init__(self, located_fingerprints: Sequence[LocatedFingerprint], remove_mean: bool = False):
        if located_fingerprints is None:
            raise ValueError("located_fingerprints is required")
        self.located_fingerprints = list(located_fingerprints)
        self.remove_mean = remove_mean

    def find_k_nearest(self, fingerprint: RssiFingerprint, k: int) -> List[LocatedFingerprint]:
        neighbors, _ = find_k_nearest(
            self.located_fingerprints, fingerprint, k, remove_mean=self.remove_mean
        )
        return neighbors

    def find_nearest(self, fingerprint: RssiFingerprint) -> LocatedFingerprint:
        """Return the single closest located fingerprint."""
        if not self.located_fingerprints:
            raise ValueError("No located fingerprints to search")
        return self.find_k_nearest(fingerprint, 1)[0]
