"""Unit tests for the linear fingerprint position estimator.

Author: Navigation Engineer
Date: 2024
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose

from rssi_positioning.fingerprinting import (
    EstimationFailedError,
    EstimatorConfig,
    LinearFingerprintPositionEstimator,
    LocatedFingerprint,
    NotReadyError,
    RadioSource,
    RssiFingerprint,
    RssiReading,
)
from rssi_positioning.rf import received_power

TX_POWER = -40.0


def readings_at(position, sources, n=2.0):
    return [RssiReading(s, received_power(TX_POWER, n, position, s.position)) for s in sources]


@pytest.fixture
def sources():
    corners = [(-5.0, -5.0), (13.0, -5.0), (-5.0, 13.0), (13.0, 13.0)]
    return [RadioSource(f"AP{i}", position=np.array(c)) for i, c in enumerate(corners)]


@pytest.fixture
def radio_map(sources):
    return [
        LocatedFingerprint(readings_at(np.array([x, y]), sources), position=np.array([x, y]))
        for x in np.arange(0.0, 9.0, 2.0)
        for y in np.arange(0.0, 9.0, 2.0)
    ]


class TestLinearEstimator:
    def test_query_at_located_fingerprint(self):
        ap1 = RadioSource("AP1", position=np.array([10.0, 0.0]))
        ap2 = RadioSource("AP2", position=np.array([0.0, 10.0]))
        located = LocatedFingerprint(
            [RssiReading(ap1, -50.0), RssiReading(ap2, -50.0)], position=np.zeros(2)
        )
        query = RssiFingerprint([RssiReading(ap1, -50.0), RssiReading(ap2, -50.0)])

        estimator = LinearFingerprintPositionEstimator(
            located_fingerprints=[located], fingerprint=query, sources=[ap1, ap2]
        )
        result = estimator.estimate()

        assert_allclose(result.position, [0.0, 0.0], atol=1e-12)
        assert result.chi_sq == pytest.approx(0.0, abs=1e-20)
        assert_allclose(result.residual_stds, 1.0)
        assert result.degrees_of_freedom == 0
        assert result.p_value is None

    def test_query_at_located_fingerprint_3d(self):
        sources = [
            RadioSource(f"AP{i}", position=np.array(p))
            for i, p in enumerate(
                ([12.0, 0.0, 2.5], [0.0, 12.0, 2.5], [12.0, 12.0, 0.0], [0.0, 0.0, 6.0])
            )
        ]
        located = [
            LocatedFingerprint(readings_at(np.array(p), sources), position=np.array(p))
            for p in ([2.0, 2.0, 1.0], [6.0, 2.0, 1.5], [2.0, 6.0, 0.5], [6.0, 6.0, 1.0])
        ]
        truth = np.array([6.0, 2.0, 1.5])

        estimator = LinearFingerprintPositionEstimator(
            located_fingerprints=located,
            fingerprint=RssiFingerprint(readings_at(truth, sources)),
            sources=sources,
            dims=3,
        )
        result = estimator.estimate()

        assert result.k == 1
        assert result.n_residuals == 4
        assert result.covariance.shape == (3, 3)
        assert_allclose(result.position, truth, atol=1e-9)

    def test_off_grid_query(self, sources, radio_map):
        truth = np.array([3.3, 4.1])
        estimator = LinearFingerprintPositionEstimator(
            located_fingerprints=radio_map,
            fingerprint=RssiFingerprint(readings_at(truth, sources)),
            sources=sources,
        )

        result = estimator.estimate()

        assert np.linalg.norm(result.position - truth) < 0.5
        assert result.k == 1
        assert result.covariance.shape == (2, 2)
        assert result.n_residuals == 4

    def test_chi_square_is_residual_sum_of_squares(self, sources, radio_map):
        estimator = LinearFingerprintPositionEstimator(
            located_fingerprints=radio_map,
            fingerprint=RssiFingerprint(readings_at(np.array([5.5, 2.5]), sources)),
            sources=sources,
        )
        estimator.min_nearest_fingerprints = 2

        result = estimator.estimate()

        assert result.chi_sq > 0.0
        assert result.degrees_of_freedom == result.n_residuals - 2
        assert 0.0 <= result.p_value <= 1.0
        sigma2 = result.chi_sq / (result.n_residuals - 2)
        assert np.all(np.linalg.eigvalsh(result.covariance / sigma2) > 0)

    def test_underdetermined_k_is_skipped(self):
        ap1 = RadioSource("AP1", position=np.array([10.0, 0.0]))
        ap2 = RadioSource("AP2", position=np.array([0.0, 10.0]))
        a = LocatedFingerprint(readings_at(np.zeros(2), [ap1]), position=np.zeros(2))
        b = LocatedFingerprint(readings_at(np.ones(2), [ap2]), position=np.ones(2))
        truth = np.array([0.5, 0.5])

        estimator = LinearFingerprintPositionEstimator(
            located_fingerprints=[a, b],
            fingerprint=RssiFingerprint(readings_at(truth, [ap1, ap2])),
            sources=[ap1, ap2],
        )
        result = estimator.estimate()

        assert result.attempted_k == [1, 2]
        assert_allclose(result.position, truth, atol=0.05)

    def test_collinear_rows_fail(self):
        ap1 = RadioSource("AP1", position=np.array([10.0, 0.0]))
        located = LocatedFingerprint(
            [RssiReading(ap1, -50.0), RssiReading(ap1, -60.0)], position=np.zeros(2)
        )

        estimator = LinearFingerprintPositionEstimator(
            located_fingerprints=[located],
            fingerprint=RssiFingerprint([RssiReading(ap1, -55.0)]),
            sources=[ap1],
        )

        with pytest.raises(EstimationFailedError) as excinfo:
            estimator.estimate()
        assert excinfo.value.attempted_k == [1]

    def test_mean_removal_cancels_query_offset(self, sources, radio_map):
        truth = np.array([3.3, 4.1])
        positions = []
        for offset in (0.0, 4.0):
            readings = [
                RssiReading(r.source, r.rssi + offset) for r in readings_at(truth, sources)
            ]
            estimator = LinearFingerprintPositionEstimator(
                located_fingerprints=radio_map,
                fingerprint=RssiFingerprint(readings),
                sources=sources,
                config=EstimatorConfig(remove_means_from_fingerprint_readings=True),
            )
            positions.append(estimator.estimate().position)

        assert_allclose(positions[0], positions[1], atol=1e-9)

    def test_order_setting_is_ignored(self, sources, radio_map):
        estimator = LinearFingerprintPositionEstimator(
            located_fingerprints=radio_map,
            sources=sources,
            config=EstimatorConfig(order="second", max_nearest_fingerprints=3),
        )

        assert estimator.max_nearest_fingerprints == 3
        assert not hasattr(estimator, "order")

    def test_requires_sources(self, sources, radio_map):
        estimator = LinearFingerprintPositionEstimator(
            located_fingerprints=radio_map,
            fingerprint=RssiFingerprint(readings_at(np.ones(2), sources)),
        )

        with pytest.raises(NotReadyError):
            estimator.estimate()
