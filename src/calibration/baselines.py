"""Reference predictors that every candidate model is gated against.

- Zero baseline: predicts 0 for every row (no information at all).
- WLS core baseline: unregularized WLS on [1, primary rating, hfa_points]
  in raw units, evaluated walk-forward on the same rows as the candidate.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd

from src.calibration.exceptions import SingularMatrixError
from src.calibration.features import HFA_COVARIATE, FeatureSet, evaluate_spec
from src.calibration.metrics import FitStatistics, compute_fit_statistics, regression_slope
from src.calibration.model import sample_weights
from src.calibration.walk_forward import Predictor, walk_forward
from src.calibration.wls import WLSResult, add_intercept, fit_wls

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BaselineMetrics:
    """Fit statistics for one baseline predictor on the evaluation rows."""
    name: str
    stats: FitStatistics
    slope: float  # slope of response on prediction

    def to_dict(self) -> dict:
        return {"name": self.name, "slope": self.slope, **self.stats.to_dict()}


@dataclass(frozen=True)
class Baselines:
    zero: BaselineMetrics
    wls_core: BaselineMetrics  # walk-forward
    wls_core_in_sample: FitStatistics
    wls_core_coefficients: dict[str, float]

    def to_dict(self) -> dict:
        return {
            "zero": self.zero.to_dict(),
            "wls_core": self.wls_core.to_dict(),
            "wls_core_in_sample": self.wls_core_in_sample.to_dict(),
            "wls_core_coefficients": self.wls_core_coefficients,
        }


def wls_core_design(frame: pd.DataFrame, feature_set: FeatureSet) -> np.ndarray:
    """[1, primary rating signal, hfa_points] in raw units."""
    primary = evaluate_spec(feature_set.spec(feature_set.primary), frame)
    hfa = evaluate_spec(feature_set.spec(HFA_COVARIATE), frame)
    return add_intercept(np.column_stack([primary, hfa]))


def fit_wls_core(frame: pd.DataFrame, feature_set: FeatureSet, use_weights: bool = True) -> WLSResult:
    """WLS core fit; retries without hfa_points if the design is singular."""
    X = wls_core_design(frame, feature_set)
    y = frame["response"].to_numpy(dtype=float)
    w = sample_weights(frame, use_weights)
    try:
        return fit_wls(X, y, w)
    except SingularMatrixError as e:
        logger.warning(f"WLS core singular ({e}); refitting without {HFA_COVARIATE}")
        reduced = fit_wls(X[:, :2], y, w)
        coefs = np.append(reduced.coefficients, 0.0)
        return WLSResult(
            coefficients=coefs,
            dropped_columns=reduced.dropped_columns + (2,),
            stats=reduced.stats,
            predictions=reduced.predictions,
        )


def _baseline_metrics(name: str, y: np.ndarray, pred: np.ndarray, w: np.ndarray) -> BaselineMetrics:
    return BaselineMetrics(
        name=name,
        stats=compute_fit_statistics(y, pred, w),
        slope=regression_slope(y, pred, w),
    )


def compute_baselines(
    frame: pd.DataFrame,
    feature_set: FeatureSet,
    eval_mask: Optional[np.ndarray] = None,
    use_weights: bool = True,
) -> Baselines:
    """Compute zero and WLS-core baselines on the evaluation rows.

    Args:
        frame: All observation rows of the track
        feature_set: Feature set of the candidate (supplies the primary signal)
        eval_mask: Rows the candidate was scored on (walk-forward predicted
            rows). None scores every row the baseline predicts.
        use_weights: Use row weights (must match the candidate variant)
    """
    y = frame["response"].to_numpy(dtype=float)
    w = sample_weights(frame, use_weights)

    def fit_fn(train: pd.DataFrame) -> Predictor:
        result = fit_wls_core(train, feature_set, use_weights)
        return lambda test: result.predict(wls_core_design(test, feature_set))

    wf = walk_forward(frame, fit_fn, w)
    mask = wf.predicted_mask
    if eval_mask is not None:
        mask = mask & eval_mask

    zero = _baseline_metrics("zero", y[mask], np.zeros(int(mask.sum())), w[mask])
    wls_core = _baseline_metrics("wls_core", y[mask], wf.predictions[mask], w[mask])

    in_sample = fit_wls_core(frame, feature_set, use_weights)
    coefficients = {
        "intercept": float(in_sample.coefficients[0]),
        feature_set.primary: float(in_sample.coefficients[1]),
        HFA_COVARIATE: float(in_sample.coefficients[2]),
    }

    logger.info(
        f"Baselines: zero RMSE={zero.stats.rmse:.4f}, "
        f"WLS core RMSE={wls_core.stats.rmse:.4f} "
        f"(sign={wls_core.stats.sign_agreement:.1f}%, pearson={wls_core.stats.pearson:.4f})"
    )

    return Baselines(
        zero=zero,
        wls_core=wls_core,
        wls_core_in_sample=in_sample.stats,
        wls_core_coefficients=coefficients,
    )
