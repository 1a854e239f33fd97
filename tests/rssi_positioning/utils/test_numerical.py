"""Unit tests for rssi_positioning.utils.numerical."""

import numpy as np
import pytest
from numpy.testing import assert_allclose

from rssi_positioning.utils import centroid, numerical_jacobian


class TestNumericalJacobian:
    def test_linear_map(self):
        A = np.array([[1.0, 2.0, 0.0], [0.0, -3.0, 4.0]])

        J = numerical_jacobian(lambda x: A @ x, np.array([0.5, -1.0, 2.0]))

        assert_allclose(J, A, atol=1e-8)

    def test_scalar_function_gives_row(self):
        J = numerical_jacobian(lambda x: x[0] ** 2 + 3.0 * x[1], np.array([2.0, 1.0]))

        assert J.shape == (1, 2)
        assert_allclose(J[0], [4.0, 3.0], atol=1e-6)

    def test_large_coordinates_use_relative_step(self):
        J = numerical_jacobian(lambda x: np.log10(-x), np.array([-60.0]))

        assert J[0, 0] == pytest.approx(1.0 / (-60.0 * np.log(10.0)), rel=1e-6)


class TestCentroid:
    def test_mean_of_positions(self):
        c = centroid([np.array([0.0, 0.0]), np.array([2.0, 0.0]), np.array([1.0, 3.0])])

        assert_allclose(c, [1.0, 1.0])

    def test_empty_raises(self):
        with pytest.raises(ValueError, match="empty"):
            centroid([])
