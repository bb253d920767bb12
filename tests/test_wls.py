"""Tests for weighted least squares."""

import numpy as np
import pytest

from src.calibration.exceptions import SingularMatrixError
from src.calibration.metrics import weighted_pearson, weighted_rmse
from src.calibration.wls import add_intercept, fit_wls


class TestFitWLS:
    """Normal-equation WLS behaviour."""

    def test_three_row_example(self):
        """Positive primary coefficient and RMSE below the zero predictor."""
        y = np.array([7.0, -3.0, 10.0])
        primary = np.array([5.0, -2.0, 6.0])
        hfa = np.array([2.0, 2.0, 2.0])
        X = add_intercept(np.column_stack([primary, hfa]))

        result = fit_wls(X, y, np.ones(3))

        zero_rmse = weighted_rmse(y, np.zeros(3))
        assert zero_rmse == pytest.approx(np.sqrt((49 + 9 + 100) / 3))
        assert result.coefficients[1] > 0
        assert result.stats.rmse <= zero_rmse

    def test_zero_variance_column_gets_exact_zero(self):
        """A constant feature is dropped rather than making the system singular."""
        y = np.array([7.0, -3.0, 10.0])
        X = add_intercept(np.column_stack([[5.0, -2.0, 6.0], [2.0, 2.0, 2.0]]))

        result = fit_wls(X, y)

        assert result.coefficients[2] == 0.0
        assert result.dropped_columns == (2,)

    def test_recovers_known_coefficients(self):
        rng = np.random.default_rng(7)
        X = add_intercept(rng.normal(size=(200, 3)))
        beta = np.array([1.5, 2.0, -1.0, 0.5])
        w = rng.uniform(0.5, 2.0, 200)
        result = fit_wls(X, X @ beta, w)
        np.testing.assert_allclose(result.coefficients, beta, atol=1e-8)

    def test_weights_match_row_duplication(self):
        """Integer weights are equivalent to repeating rows."""
        rng = np.random.default_rng(3)
        X = add_intercept(rng.normal(size=(30, 2)))
        y = rng.normal(size=30)
        w = rng.integers(1, 4, 30).astype(float)

        weighted = fit_wls(X, y, w)
        repeated = fit_wls(np.repeat(X, w.astype(int), axis=0), np.repeat(y, w.astype(int)))
        np.testing.assert_allclose(weighted.coefficients, repeated.coefficients, atol=1e-10)

    def test_slope_sign_matches_pearson(self):
        rng = np.random.default_rng(11)
        x = rng.normal(size=100)
        for sign in (1.0, -1.0):
            y = sign * 0.8 * x + rng.normal(scale=0.5, size=100)
            result = fit_wls(add_intercept(x[:, None]), y)
            assert np.sign(result.coefficients[1]) == np.sign(weighted_pearson(x, y))
            assert np.sign(result.coefficients[1]) == sign

    def test_collinear_columns_raise(self):
        rng = np.random.default_rng(5)
        x = rng.normal(size=50)
        X = add_intercept(np.column_stack([x, 2 * x]))
        with pytest.raises(SingularMatrixError):
            fit_wls(X, rng.normal(size=50))

    def test_requires_intercept_column(self):
        with pytest.raises(ValueError, match="intercept"):
            fit_wls(np.array([[2.0, 1.0], [2.0, 3.0]]), np.array([1.0, 2.0]))
