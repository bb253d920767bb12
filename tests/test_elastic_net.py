"""Tests for coordinate-descent elastic net."""

import numpy as np
import pytest
from sklearn.linear_model import Ridge

from src.calibration.elastic_net import fit_elastic_net, soft_threshold
from src.calibration.wls import add_intercept, fit_wls


@pytest.fixture
def regression_data():
    rng = np.random.default_rng(42)
    n, p = 300, 4
    X = rng.normal(size=(n, p))
    beta = np.array([3.0, -1.5, 0.0, 0.75])
    y = 2.0 + X @ beta + rng.normal(scale=1.0, size=n)
    w = rng.uniform(0.5, 1.5, n)
    return X, y, w


class TestSoftThreshold:
    def test_shrinks_toward_zero(self):
        assert soft_threshold(3.0, 1.0) == 2.0
        assert soft_threshold(-3.0, 1.0) == -2.0
        assert soft_threshold(0.5, 1.0) == 0.0
        assert soft_threshold(-1.0, 1.0) == 0.0


class TestFitElasticNet:
    """Penalized fits against closed-form references."""

    def test_zero_penalty_matches_wls(self, regression_data):
        X, y, w = regression_data
        result = fit_elastic_net(X, y, w, alpha=0.0, l1_ratio=0.0, max_iter=10000, tol=1e-12)
        reference = fit_wls(add_intercept(X), y, w)

        assert result.converged
        np.testing.assert_allclose(result.coefficients, reference.coefficients[1:], atol=1e-6)
        assert result.intercept == pytest.approx(reference.intercept, abs=1e-6)

    def test_pure_l2_matches_ridge(self, regression_data):
        """0.5 * alpha * |b|^2 on top of 0.5 * RSS is sklearn's Ridge(alpha)."""
        X, y, w = regression_data
        alpha = 25.0
        result = fit_elastic_net(X, y, w, alpha=alpha, l1_ratio=0.0, max_iter=10000, tol=1e-12)
        ridge = Ridge(alpha=alpha, fit_intercept=True).fit(X, y, sample_weight=w)

        np.testing.assert_allclose(result.coefficients, ridge.coef_, atol=1e-6)
        assert result.intercept == pytest.approx(ridge.intercept_, abs=1e-6)

    def test_large_l1_penalty_zeroes_everything(self, regression_data):
        X, y, w = regression_data
        result = fit_elastic_net(X, y, w, alpha=1e7, l1_ratio=1.0)

        assert np.all(result.coefficients == 0.0)
        assert result.intercept == pytest.approx(np.dot(w, y) / w.sum())

    def test_l1_zeroes_irrelevant_feature(self, regression_data):
        X, y, w = regression_data
        result = fit_elastic_net(X, y, w, alpha=80.0, l1_ratio=1.0, max_iter=5000, tol=1e-10)
        assert result.coefficients[2] == 0.0
        assert result.coefficients[0] > 0

    def test_penalty_shrinks_coefficients(self, regression_data):
        X, y, w = regression_data
        loose = fit_elastic_net(X, y, w, alpha=0.0, max_iter=5000, tol=1e-10)
        tight = fit_elastic_net(X, y, w, alpha=500.0, l1_ratio=0.25, max_iter=5000, tol=1e-10)
        assert np.abs(tight.coefficients).sum() < np.abs(loose.coefficients).sum()

    def test_non_convergence_is_reported_not_raised(self):
        rng = np.random.default_rng(0)
        base = rng.normal(size=200)
        X = np.column_stack([base, base + 0.01 * rng.normal(size=200)])
        y = base + rng.normal(scale=0.1, size=200)

        result = fit_elastic_net(X, y, alpha=0.0, max_iter=2, tol=1e-12)

        assert not result.converged
        assert result.n_iter == 2
        assert np.all(np.isfinite(result.coefficients))

    def test_deterministic(self, regression_data):
        X, y, w = regression_data
        a = fit_elastic_net(X, y, w, alpha=1.0, l1_ratio=0.25)
        b = fit_elastic_net(X, y, w, alpha=1.0, l1_ratio=0.25)
        assert np.array_equal(a.coefficients, b.coefficients)
        assert a.intercept == b.intercept

    def test_zero_variance_column_stays_zero(self, regression_data):
        X, y, w = regression_data
        X = np.column_stack([X, np.zeros(len(y))])
        result = fit_elastic_net(X, y, w, alpha=0.1)
        assert result.coefficients[-1] == 0.0

    @pytest.mark.parametrize("kwargs", [{"alpha": -1.0}, {"l1_ratio": 1.5}])
    def test_invalid_penalty(self, regression_data, kwargs):
        X, y, w = regression_data
        with pytest.raises(ValueError):
            fit_elastic_net(X, y, w, **kwargs)
