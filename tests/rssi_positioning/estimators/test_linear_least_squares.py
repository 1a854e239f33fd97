"""
Unit tests for linear least squares estimation.

Author: Navigation Engineer
Date: 2024
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose

from rssi_positioning.estimators import FittingError, linear_least_squares


class TestLinearLeastSquares:
    """Test suite for linear_least_squares()."""

    def test_exact_square_system(self):
        A = np.array([[2.0, 0.0], [1.0, 3.0]])
        x_true = np.array([1.5, -2.0])

        x_hat, P = linear_least_squares(A, A @ x_true)

        assert_allclose(x_hat, x_true)
        # m = n: unit variance factor
        assert_allclose(P, np.linalg.inv(A.T @ A))

    def test_overdetermined_covariance_scaled_by_residuals(self):
        A = np.array([[1, 0], [0, 1], [1, 1], [1, -1]], dtype=float)
        b = np.array([1.0, 2.0, 3.5, -0.5])

        x_hat, P = linear_least_squares(A, b)

        residuals = b - A @ x_hat
        sigma2 = residuals @ residuals / (4 - 2)
        assert_allclose(P, sigma2 * np.linalg.inv(A.T @ A))
        assert_allclose(x_hat, np.linalg.lstsq(A, b, rcond=None)[0])

    def test_without_covariance(self):
        A = np.eye(3)
        x_hat, P = linear_least_squares(A, np.array([1.0, 2.0, 3.0]), return_covariance=False)

        assert P is None
        assert_allclose(x_hat, [1.0, 2.0, 3.0])

    def test_underdetermined_raises(self):
        with pytest.raises(FittingError, match="Underdetermined"):
            linear_least_squares(np.array([[1.0, 2.0]]), np.array([1.0]))

    def test_rank_deficient_raises(self):
        A = np.array([[1.0, 2.0], [2.0, 4.0], [3.0, 6.0]])

        with pytest.raises(FittingError, match="rank deficient"):
            linear_least_squares(A, np.array([1.0, 2.0, 3.0]))

    def test_non_finite_raises(self):
        A = np.array([[1.0, 0.0], [0.0, np.inf]])

        with pytest.raises(FittingError):
            linear_least_squares(A, np.array([1.0, 2.0]))

    def test_dimension_mismatch_raises(self):
        with pytest.raises(ValueError, match="Dimension mismatch"):
            linear_least_squares(np.eye(2), np.ones(3))
