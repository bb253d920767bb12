"""Tests for baselines, the calibration head and the gate checker."""

import numpy as np
import pytest

from conftest import make_rows
from src.calibration.baselines import compute_baselines, fit_wls_core
from src.calibration.calibration_head import fit_calibration_head, head_allowed
from src.calibration.features import make_feature_set
from src.calibration.gates import GatePolicy, check_gates, residual_buckets
from src.calibration.model import fit_model

LENIENT = dict(
    rmse_ceiling=100.0,
    min_sign_agreement=0.0,
    min_correlation=-1.0,
    residual_bucket_bound=100.0,
    variance_ratio_min=0.0,
    variance_ratio_max=10.0,
)

# Every threshold disabled, so a single override trips a single check
OPEN = dict(
    slope_min=-np.inf,
    slope_max=np.inf,
    rmse_ceiling=np.inf,
    min_sign_agreement=0.0,
    min_correlation=-1.0,
    residual_bucket_bound=np.inf,
    variance_ratio_min=0.0,
    variance_ratio_max=np.inf,
)


def _biased(rng):
    y = rng.normal(0.0, 5.0, 200)
    return y, y - 3.0


def _sign_blind(rng):
    y = rng.normal(0.0, 5.0, 200)
    return y, np.abs(y)


def _monotone_curved(rng):
    y = rng.normal(0.0, 1.0, 200)
    return y, np.exp(3.0 * y)


def _leveraged(rng):
    """Five extreme shared points carry Pearson; ranks elsewhere are random."""
    y = rng.normal(0.0, 1.0, 200)
    pred = rng.normal(0.0, 1.0, 200)
    y[:5] = pred[:5] = np.arange(100.0, 150.0, 10.0)
    return y, pred


@pytest.fixture
def fitted(synthetic_rows):
    fs = make_feature_set("core")
    model, _ = fit_model(synthetic_rows, fs, alpha=0.01, l1_ratio=0.0)
    baselines = compute_baselines(synthetic_rows, fs)
    return synthetic_rows, model, baselines


class TestBaselines:
    def test_zero_and_wls_core(self, synthetic_rows):
        fs = make_feature_set("core")
        baselines = compute_baselines(synthetic_rows, fs, use_weights=False)

        y = synthetic_rows.loc[synthetic_rows["period"] > 1, "response"].to_numpy()
        assert baselines.zero.stats.rmse == pytest.approx(np.sqrt(np.mean(y ** 2)))
        assert baselines.zero.stats.n == len(y)
        assert baselines.wls_core.stats.rmse < baselines.zero.stats.rmse
        assert baselines.wls_core.stats.rmse < 2.0
        assert baselines.wls_core_coefficients["rating_diff"] == pytest.approx(1.0, abs=0.05)
        assert baselines.wls_core_coefficients["hfa_points"] == pytest.approx(1.0, abs=0.3)

    def test_eval_mask_restricts_rows(self, synthetic_rows):
        mask = (synthetic_rows["period"] >= 10).to_numpy()
        baselines = compute_baselines(synthetic_rows, make_feature_set("core"), mask)
        assert baselines.zero.stats.n == int(mask.sum())
        assert baselines.wls_core.stats.n == int(mask.sum())

    def test_wls_core_drops_hfa_on_singular_design(self, synthetic_rows):
        rows = synthetic_rows.copy()
        rows["hfa_points"] = rows["rating_diff"] * 0.5
        result = fit_wls_core(rows, make_feature_set("core"))
        assert result.coefficients[2] == 0.0
        assert result.coefficients[1] > 0


class TestCalibrationHead:
    def test_recovers_affine_map(self):
        raw = np.linspace(-10, 10, 50)
        head = fit_calibration_head(2.0 + 0.5 * raw, raw)
        assert head.intercept == pytest.approx(2.0)
        assert head.slope == pytest.approx(0.5)
        assert head.rmse == pytest.approx(0.0, abs=1e-10)
        np.testing.assert_allclose(head.apply(raw), 2.0 + 0.5 * raw)

    def test_constant_raw_falls_back_to_unit_slope(self):
        head = fit_calibration_head(np.array([1.0, 2.0, 3.0]), np.full(3, 5.0))
        assert head.slope == 1.0
        assert head.intercept == pytest.approx(-3.0)

    @pytest.mark.parametrize("ratio,track,allowed", [
        (0.8, "core", True),
        (0.5, "core", False),
        (1.3, "core", False),
        (0.5, "extended", True),
        (3.0, "extended", True),
        (0.3, "extended", False),
    ])
    def test_variance_window(self, ratio, track, allowed):
        assert head_allowed(ratio, track) == allowed


class TestResidualBuckets:
    def test_bucket_means(self):
        buckets = residual_buckets(np.zeros(4), np.array([-1.0, 8.0, -20.0, 30.0]))
        assert [b.label for b in buckets] == ["0-7", "7-14", "14-28", ">28"]
        assert [b.count for b in buckets] == [1, 1, 1, 1]
        assert [b.mean_residual for b in buckets] == [1.0, -8.0, 20.0, -30.0]

    def test_empty_bucket_is_zero(self):
        buckets = residual_buckets(np.zeros(2), np.array([0.5, -0.5]))
        assert buckets[3].count == 0
        assert buckets[3].mean_residual == 0.0

    def test_bucket_means_are_weighted(self):
        buckets = residual_buckets(np.array([1.0, -3.0]), np.zeros(2), np.array([9.0, 1.0]))
        assert buckets[0].count == 2
        assert buckets[0].mean_residual == pytest.approx(0.6)

    def test_check_gates_uses_row_weights_for_buckets(self, fitted):
        _, model, baselines = fitted
        y = np.array([1.0, -3.0, 2.0, -1.0])
        w = np.array([9.0, 1.0, 1.0, 1.0])
        policy = GatePolicy.for_track("core", mode="absolute", **OPEN)
        result = check_gates(y, np.zeros(4), w, model, baselines, policy)
        assert result.residual_buckets[0].mean_residual == pytest.approx(7.0 / 12.0)


class TestCheckGates:
    """All checks must pass for all_passed."""

    def test_good_predictions_pass(self, fitted):
        rows, model, baselines = fitted
        y = rows["response"].to_numpy()
        rng = np.random.default_rng(0)
        pred = y + rng.uniform(-0.5, 0.5, len(y))

        result = check_gates(y, pred, None, model, baselines, GatePolicy.for_track("core", mode="absolute"))

        assert result.all_passed, result.failed_checks
        assert result.slope == pytest.approx(1.0, abs=0.05)

    def test_slope_outside_window_fails(self, fitted):
        rows, model, baselines = fitted
        y = rows["response"].to_numpy()
        pred = y / 1.5  # slope of y on pred is exactly 1.5

        policy = GatePolicy.for_track("core", mode="absolute", **LENIENT)
        result = check_gates(y, pred, None, model, baselines, policy)

        assert result.slope == pytest.approx(1.5)
        assert not result.all_passed
        assert result.failed_checks == ["slope"]

    @pytest.mark.parametrize("check,make_predictions,override", [
        ("bucket_0-7", _biased, {"residual_bucket_bound": 2.0}),
        ("sign_agreement", _sign_blind, {"min_sign_agreement": 75.0}),
        ("pearson", _monotone_curved, {"min_correlation": 0.9}),
        ("spearman", _leveraged, {"min_correlation": 0.5}),
    ])
    def test_single_failing_check_rejects(self, fitted, check, make_predictions, override):
        _, model, baselines = fitted
        y, pred = make_predictions(np.random.default_rng(7))
        policy = GatePolicy.for_track("core", mode="absolute", **{**OPEN, **override})

        result = check_gates(y, pred, None, model, baselines, policy)

        assert result.failed_checks == [check]
        assert not result.all_passed

    def test_nan_rows_ignored(self, fitted):
        rows, model, baselines = fitted
        y = rows["response"].to_numpy()
        pred = y.copy()
        pred[:40] = np.nan
        result = check_gates(y, pred, None, model, baselines, GatePolicy.for_track("core", mode="absolute"))
        assert result.statistics.n == len(y) - 40

    def test_relative_ceiling_from_baselines(self, fitted):
        rows, model, baselines = fitted
        y = rows["response"].to_numpy()
        policy = GatePolicy.for_track("core")
        result = check_gates(y, y.copy(), None, model, baselines, policy)

        ceiling = min(baselines.zero.stats.rmse, baselines.wls_core.stats.rmse + policy.rmse_margin)
        assert result.checks["rmse"].threshold == f"<= {ceiling:.4f}"
        assert result.checks["rmse"].passed

    def test_variance_ratio_uses_raw_predictions(self, fitted):
        rows, model, baselines = fitted
        y = rows["response"].to_numpy()
        raw = y * 0.1
        policy = GatePolicy.for_track("core", mode="absolute")
        result = check_gates(y, y.copy(), None, model, baselines, policy, raw_predictions=raw)

        assert result.variance_ratio == pytest.approx(0.1)
        assert "variance_ratio" in result.failed_checks

    def test_negative_hfa_coefficient_fails(self):
        rows = make_rows(hfa_coef=-2.0)
        fs = make_feature_set("core")
        model, _ = fit_model(rows, fs, alpha=0.01, l1_ratio=0.0)
        baselines = compute_baselines(rows, fs)
        y = rows["response"].to_numpy()

        result = check_gates(y, y.copy(), None, model, baselines, GatePolicy.for_track("core", **LENIENT))
        assert result.checks["hfa_coef"].value < 0
        assert "hfa_coef" in result.failed_checks
        assert result.checks["primary_coef"].passed

    def test_policy_validation(self):
        with pytest.raises(ValueError):
            GatePolicy(mode="strict")
        with pytest.raises(ValueError):
            GatePolicy(track="playoffs")
