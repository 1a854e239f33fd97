"""Unit tests for the nearest located-fingerprint search.

Author: Navigation Engineer
Date: 2024
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose

from rssi_positioning.fingerprinting import (
    LocatedFingerprint,
    NearestFingerprintFinder,
    RadioSource,
    RssiFingerprint,
    RssiReading,
    find_k_nearest,
    signal_sqr_distances,
)

AP1, AP2, AP3 = RadioSource("AP1"), RadioSource("AP2"), RadioSource("AP3")


def located(x, rssi1, rssi2):
    return LocatedFingerprint(
        [RssiReading(AP1, rssi1), RssiReading(AP2, rssi2)], position=np.array([x, 0.0])
    )


@pytest.fixture
def radio_map():
    return [
        located(0.0, -40.0, -70.0),
        located(1.0, -50.0, -60.0),
        located(2.0, -60.0, -50.0),
        located(3.0, -70.0, -40.0),
    ]


class TestFindKNearest:
    def test_ascending_distance_order(self, radio_map):
        query = RssiFingerprint([RssiReading(AP1, -58.0), RssiReading(AP2, -52.0)])

        neighbors, sqr_distances = find_k_nearest(radio_map, query, k=3)

        assert [n.position[0] for n in neighbors] == [2.0, 1.0, 3.0]
        assert np.all(np.diff(sqr_distances) >= 0)
        assert sqr_distances[0] == pytest.approx(8.0)

    def test_ties_keep_radio_map_order(self):
        first = located(0.0, -50.0, -60.0)
        second = located(5.0, -50.0, -60.0)
        query = RssiFingerprint([RssiReading(AP1, -50.0), RssiReading(AP2, -60.0)])

        neighbors, _ = find_k_nearest([first, second], query, k=2)

        assert neighbors[0] is first
        assert neighbors[1] is second

    def test_k_larger_than_map_returns_everything(self, radio_map):
        query = RssiFingerprint([RssiReading(AP1, -50.0)])

        neighbors, _ = find_k_nearest(radio_map, query, k=10)

        assert len(neighbors) == len(radio_map)

    def test_fingerprints_without_common_source_come_last(self, radio_map):
        stranger = LocatedFingerprint([RssiReading(AP3, -45.0)], position=np.array([9.0, 9.0]))
        query = RssiFingerprint([RssiReading(AP1, -80.0), RssiReading(AP2, -80.0)])

        neighbors, sqr_distances = find_k_nearest([stranger] + radio_map, query, k=5)

        assert neighbors[-1] is stranger
        assert sqr_distances[-1] == np.inf

    def test_remove_mean_cancels_device_offset(self, radio_map):
        # Readings of the fingerprint at x=1 shifted by a constant -8 dB
        query = RssiFingerprint([RssiReading(AP1, -58.0), RssiReading(AP2, -68.0)])
        radio_map.append(located(4.0, -60.0, -66.0))

        raw, _ = find_k_nearest(radio_map, query, k=1)
        no_mean, _ = find_k_nearest(radio_map, query, k=1, remove_mean=True)

        assert raw[0].position[0] == 4.0
        assert no_mean[0].position[0] == 1.0

    def test_invalid_k(self, radio_map):
        query = RssiFingerprint([RssiReading(AP1, -50.0)])

        with pytest.raises(ValueError, match="at least 1"):
            find_k_nearest(radio_map, query, k=0)

    def test_signal_sqr_distances(self, radio_map):
        query = RssiFingerprint([RssiReading(AP1, -50.0), RssiReading(AP2, -60.0)])

        assert_allclose(signal_sqr_distances(radio_map, query), [200.0, 0.0, 200.0, 800.0])


class TestNearestFingerprintFinder:
    def test_find_nearest(self, radio_map):
        finder = NearestFingerprintFinder(radio_map)
        query = RssiFingerprint([RssiReading(AP1, -69.0), RssiReading(AP2, -41.0)])

        assert finder.find_nearest(query) is radio_map[3]

    def test_find_k_nearest_with_mean_removal(self, radio_map):
        finder = NearestFingerprintFinder(radio_map, remove_mean=True)
        query = RssiFingerprint([RssiReading(AP1, -48.0), RssiReading(AP2, -58.0)])

        assert finder.find_k_nearest(query, 2)[0] is radio_map[1]

    def test_empty_map(self):
        finder = NearestFingerprintFinder([])

        with pytest.raises(ValueError):
            finder.find_nearest(RssiFingerprint([RssiReading(AP1, -50.0)]))
