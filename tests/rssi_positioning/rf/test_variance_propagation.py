"""
Unit tests for delta-method variance propagation through the path-loss model.

Author: Navigation Engineer
Date: 2024
"""

import numpy as np
import pytest

from rssi_positioning.rf import (
    LinearizationOrder,
    PathLossEvaluator,
    pathloss_derivatives,
    propagate_rssi_difference_variance,
    propagate_rssi_variance,
    rssi_difference,
)
from rssi_positioning.utils import numerical_jacobian

P1 = np.array([0.0, 0.0])
PA = np.array([10.0, 0.0])
CANDIDATE = np.array([1.0, 2.0])


class TestPropagateRssiVariance:
    def test_all_inputs_absent_returns_none(self):
        evaluator = PathLossEvaluator(2)

        assert propagate_rssi_variance(evaluator, -50.0, P1, PA, 2.0, CANDIDATE) is None

    @pytest.mark.parametrize("order", list(LinearizationOrder))
    def test_reference_rssi_variance_passes_through(self, order):
        evaluator = PathLossEvaluator(2, order)

        variance = propagate_rssi_variance(
            evaluator, -50.0, P1, PA, 2.0, CANDIDATE, reference_rssi_variance=4.0
        )

        assert variance == pytest.approx(4.0, rel=1e-6)

    def test_path_loss_exponent_variance_first_order(self):
        """First order: Pr = Pr1 + g·δ with g ∝ n, so ∂Pr/∂n = g·δ / n."""
        evaluator = PathLossEvaluator(2, LinearizationOrder.FIRST)
        n = 2.0
        g = pathloss_derivatives(P1, PA, n, LinearizationOrder.FIRST)[0]

        variance = propagate_rssi_variance(
            evaluator, -50.0, P1, PA, n, CANDIDATE, path_loss_exponent_variance=0.09
        )

        expected = (g @ (CANDIDATE - P1) / n) ** 2 * 0.09
        assert variance == pytest.approx(expected, rel=1e-5)

    def test_exponent_variance_vanishes_at_reference_point(self):
        evaluator = PathLossEvaluator(2)

        variance = propagate_rssi_variance(
            evaluator, -50.0, P1, PA, 2.0, P1, path_loss_exponent_variance=0.5
        )

        assert variance == pytest.approx(0.0, abs=1e-12)

    def test_contributions_add(self):
        evaluator = PathLossEvaluator(2)
        covariance = np.diag([0.2, 0.3])

        kwargs = dict(
            reference_rssi_variance=1.0,
            path_loss_exponent_variance=0.04,
            fingerprint_position_covariance=covariance,
            source_position_covariance=2.0 * covariance,
        )
        total = propagate_rssi_variance(evaluator, -50.0, P1, PA, 2.0, CANDIDATE, **kwargs)
        parts = [
            propagate_rssi_variance(evaluator, -50.0, P1, PA, 2.0, CANDIDATE, **{k: v})
            for k, v in kwargs.items()
        ]

        assert total == pytest.approx(sum(parts), rel=1e-9)

    def test_negative_variance_raises(self):
        with pytest.raises(ValueError, match="non-negative"):
            propagate_rssi_variance(
                PathLossEvaluator(2), -50.0, P1, PA, 2.0, CANDIDATE, reference_rssi_variance=-1.0
            )

    def test_covariance_shape_checked(self):
        with pytest.raises(ValueError, match="shape"):
            propagate_rssi_variance(
                PathLossEvaluator(2),
                -50.0,
                P1,
                PA,
                2.0,
                CANDIDATE,
                source_position_covariance=np.eye(3),
            )


class TestPropagateRssiDifferenceVariance:
    PF = np.array([1.0, -1.0, 0.5])
    P = np.array([3.0, 2.0, 1.0])
    SOURCE = np.array([8.0, 6.0, 3.0])

    def test_all_inputs_absent_returns_none(self):
        assert propagate_rssi_difference_variance(2.0, self.PF, self.P, self.SOURCE) is None

    def test_matches_numerical_jacobian(self):
        n = 2.3
        n_variance = 0.01
        fingerprint_covariance = np.diag([0.1, 0.2, 0.05])
        source_covariance = np.array([[0.5, 0.1, 0.0], [0.1, 0.4, 0.0], [0.0, 0.0, 0.3]])

        def difference(theta):
            return rssi_difference(theta[0], theta[1:4], self.P, theta[4:7])[0]

        theta = np.concatenate([[n], self.PF, self.SOURCE])
        J = numerical_jacobian(difference, theta)[0]
        covariance = np.zeros((7, 7))
        covariance[0, 0] = n_variance
        covariance[1:4, 1:4] = fingerprint_covariance
        covariance[4:7, 4:7] = source_covariance

        variance = propagate_rssi_difference_variance(
            n,
            self.PF,
            self.P,
            self.SOURCE,
            path_loss_exponent_variance=n_variance,
            fingerprint_position_covariance=fingerprint_covariance,
            source_position_covariance=source_covariance,
        )

        assert variance == pytest.approx(J @ covariance @ J, rel=1e-5)

    def test_zero_covariance_is_zero_not_none(self):
        variance = propagate_rssi_difference_variance(
            2.0, self.PF, self.P, self.SOURCE, source_position_covariance=np.zeros((3, 3))
        )

        assert variance == 0.0
