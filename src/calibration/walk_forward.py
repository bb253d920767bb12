"""Walk-forward validation over time-ordered periods.

For each period k after the first: train on all periods strictly before k,
predict period k only. The first period never receives a prediction, and no
row's prediction is influenced by rows from its own or any later period.

Metrics are computed only over rows that received a prediction.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable

import numpy as np
import pandas as pd

from src.calibration.features import FeatureSet
from src.calibration.metrics import FitStatistics, compute_fit_statistics
from src.calibration.model import SolverSettings, fit_model, sample_weights

logger = logging.getLogger(__name__)

# train_frame -> (test_frame -> predictions)
Predictor = Callable[[pd.DataFrame], np.ndarray]
FitFunction = Callable[[pd.DataFrame], Predictor]


@dataclass
class WalkForwardResult:
    """Out-of-sample predictions and metrics from a walk-forward pass."""
    predictions: np.ndarray  # NaN where no prediction was made
    metrics: FitStatistics
    fold_summaries: list[dict] = field(default_factory=list)

    @property
    def predicted_mask(self) -> np.ndarray:
        return ~np.isnan(self.predictions)

    def to_dict(self) -> dict:
        return {
            "metrics": self.metrics.to_dict(),
            "n_predicted": int(self.predicted_mask.sum()),
            "fold_summaries": self.fold_summaries,
        }


def walk_forward(
    frame: pd.DataFrame,
    fit_fn: FitFunction,
    weights: np.ndarray,
    min_train_rows: int = 1,
) -> WalkForwardResult:
    """Generic walk-forward loop.

    Args:
        frame: Observation rows (any order; grouping uses the period column)
        fit_fn: Fits on a training frame and returns a predictor for new rows
        weights: Row weights used for the metrics
        min_train_rows: Skip a period if fewer training rows precede it.
            Periods whose training rows have zero total weight are skipped too.

    Returns:
        WalkForwardResult
    """
    periods = frame["period"].to_numpy()
    y = frame["response"].to_numpy(dtype=float)
    unique = np.unique(periods)
    predictions = np.full(len(frame), np.nan)
    fold_summaries = []

    for k in unique[1:]:
        train_idx = np.flatnonzero(periods < k)
        test_idx = np.flatnonzero(periods == k)
        if len(train_idx) < min_train_rows or len(test_idx) == 0:
            logger.debug(f"Walk-forward: skipping period {k} ({len(train_idx)} training rows)")
            continue
        if weights[train_idx].sum() <= 0:
            logger.debug(f"Walk-forward: skipping period {k} (training rows carry no weight)")
            continue

        predictor = fit_fn(frame.iloc[train_idx])
        predictions[test_idx] = predictor(frame.iloc[test_idx])

        fold_summaries.append({
            "period": int(k),
            "n_train": int(len(train_idx)),
            "n_test": int(len(test_idx)),
        })

    mask = ~np.isnan(predictions)
    if mask.any():
        metrics = compute_fit_statistics(y[mask], predictions[mask], weights[mask])
    else:
        logger.warning("Walk-forward produced no predictions (need at least two periods)")
        metrics = compute_fit_statistics(np.array([]), np.array([]), np.array([]))

    return WalkForwardResult(predictions=predictions, metrics=metrics, fold_summaries=fold_summaries)


def walk_forward_elastic_net(
    frame: pd.DataFrame,
    feature_set: FeatureSet,
    alpha: float,
    l1_ratio: float,
    use_weights: bool = True,
    solver: SolverSettings = SolverSettings(),
) -> WalkForwardResult:
    """Walk-forward validation of the elastic-net model at fixed hyperparameters."""
    convergence = []  # one entry per fit, in fold order

    def fit_fn(train: pd.DataFrame) -> Predictor:
        model, result = fit_model(train, feature_set, alpha, l1_ratio, use_weights, solver)
        convergence.append(result.converged)
        return model.predict

    result = walk_forward(frame, fit_fn, sample_weights(frame, use_weights))
    for summary, converged in zip(result.fold_summaries, convergence):
        summary["converged"] = converged
    n_capped = convergence.count(False)
    if n_capped:
        logger.warning(f"Walk-forward: {n_capped} folds hit the iteration cap")

    m = result.metrics
    logger.info(
        f"Walk-forward ({feature_set.name}): RMSE={m.rmse:.4f}, R2={m.r2:.4f}, "
        f"pearson={m.pearson:.4f}, spearman={m.spearman:.4f}, n={m.n}"
    )
    return result
