"""Tests for feature construction, residualization and standardization."""

import numpy as np
import pandas as pd
import pytest

from src.calibration.features import (
    FeatureBuilder,
    FeatureSpec,
    TransformKind,
    evaluate_spec,
    make_feature_set,
)


class TestEvaluateSpec:
    """Raw transforms."""

    def test_hinge_and_abs(self):
        frame = pd.DataFrame({"rating_diff": [-10.0, 3.0, 20.0]})
        hinge = FeatureSpec("hinge7", ("rating_diff",), TransformKind.HINGE, threshold=7.0)
        absolute = FeatureSpec("abs_rating_diff", ("rating_diff",), TransformKind.ABS)

        np.testing.assert_array_equal(evaluate_spec(hinge, frame), [3.0, 0.0, 13.0])
        np.testing.assert_array_equal(evaluate_spec(absolute, frame), [10.0, 3.0, 20.0])

    def test_blend(self):
        frame = pd.DataFrame({"rating_diff": [10.0], "mftr_rating_diff": [0.0]})
        spec = FeatureSpec(
            "rating_blend", ("rating_diff", "mftr_rating_diff"), TransformKind.BLEND, blend_weight=0.7
        )
        assert evaluate_spec(spec, frame)[0] == pytest.approx(7.0)

    def test_missing_and_null_covariates_impute_zero(self):
        frame = pd.DataFrame({"rating_diff": [1.0, None]})
        spec = FeatureSpec("havoc_db_diff", ("havoc_db_diff",))
        np.testing.assert_array_equal(evaluate_spec(spec, frame), [0.0, 0.0])
        np.testing.assert_array_equal(
            evaluate_spec(FeatureSpec("rating_diff", ("rating_diff",)), frame), [1.0, 0.0]
        )


class TestFeatureSets:
    def test_core_feature_names(self):
        fs = make_feature_set("core")
        assert fs.feature_names == [
            "rating_diff", "hfa_points", "neutral_site", "p5_vs_g5", "abs_rating_diff", "hinge7",
        ]
        assert fs.primary == "rating_diff"

    def test_hinge14_and_blend(self):
        fs = make_feature_set("core", include_hinge14=True, blend_weight=0.6)
        assert fs.primary == "rating_blend"
        assert "hinge14" in fs.feature_names

    def test_extended_extends_core(self):
        core = make_feature_set("core")
        extended = make_feature_set("extended")
        assert extended.feature_names[:len(core.feature_names)] == core.feature_names
        assert extended.spec("off_adj_sr_diff").residualize
        assert not extended.spec("havoc_front7_diff").residualize

    def test_unknown_fit_type(self):
        with pytest.raises(ValueError):
            make_feature_set("everything")


class TestFeatureTransform:
    """Fitted transforms use training rows only."""

    def test_residualized_feature_uncorrelated_on_training_rows(self, synthetic_rows):
        train = synthetic_rows[synthetic_rows["period"] <= 6]
        transform = FeatureBuilder(make_feature_set("extended")).fit(train)

        raw = transform.raw_matrix(train)
        names = transform.feature_names
        primary = raw[:, names.index("rating_diff")]
        residualized = raw[:, names.index("off_adj_sr_diff")]

        cov = np.mean((primary - primary.mean()) * (residualized - residualized.mean()))
        assert cov == pytest.approx(0.0, abs=1e-10)
        assert "havoc_front7_diff" not in transform.residual_lines

    def test_residual_line_depends_on_training_rows(self, synthetic_rows):
        fs = make_feature_set("extended")
        early = FeatureBuilder(fs).fit(synthetic_rows[synthetic_rows["period"] <= 3])
        full = FeatureBuilder(fs).fit(synthetic_rows)
        assert early.residual_lines["off_adj_sr_diff"] != full.residual_lines["off_adj_sr_diff"]

    def test_scalers_from_training_rows(self, synthetic_rows):
        train = synthetic_rows[synthetic_rows["period"] <= 4]
        transform = FeatureBuilder(make_feature_set("core")).fit(train)

        params = transform.scalers["rating_diff"]
        assert params.mean == pytest.approx(train["rating_diff"].mean())
        assert params.std == pytest.approx(train["rating_diff"].std(ddof=0))

        X = transform.transform(train)
        j = transform.feature_names.index("rating_diff")
        assert X[:, j].mean() == pytest.approx(0.0, abs=1e-12)
        assert X[:, j].std() == pytest.approx(1.0)

    def test_binary_indicators_not_standardized(self, synthetic_rows):
        transform = FeatureBuilder(make_feature_set("core")).fit(synthetic_rows)
        for name in ("neutral_site", "p5_vs_g5"):
            assert transform.scalers[name].mean == 0.0
            assert transform.scalers[name].std == 1.0
        X = transform.transform(synthetic_rows)
        j = transform.feature_names.index("neutral_site")
        np.testing.assert_array_equal(X[:, j], synthetic_rows["neutral_site"].to_numpy())

    def test_destandardize_round_trip(self, synthetic_rows):
        """Raw-space coefficients reproduce standardized-space predictions."""
        train = synthetic_rows[synthetic_rows["period"] <= 8]
        test = synthetic_rows[synthetic_rows["period"] > 8]
        transform = FeatureBuilder(make_feature_set("extended")).fit(train)

        rng = np.random.default_rng(0)
        coefs = rng.normal(size=len(transform.feature_names))
        intercept = 1.25
        raw_coefs, raw_intercept = transform.destandardize(coefs, intercept)

        for rows in (train, test):
            standardized = transform.transform(rows) @ coefs + intercept
            raw = transform.raw_matrix(rows) @ raw_coefs + raw_intercept
            np.testing.assert_allclose(raw, standardized, atol=1e-8)

    def test_zero_variance_feature_standardizes_to_zero(self, synthetic_rows):
        transform = FeatureBuilder(make_feature_set("extended")).fit(synthetic_rows)
        j = transform.feature_names.index("talent_247_diff")  # absent from the frame
        assert transform.scalers["talent_247_diff"].std == 0.0
        assert np.all(transform.transform(synthetic_rows)[:, j] == 0.0)
