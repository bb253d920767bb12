"""Week-grouped cross-validation and (alpha, l1_ratio) grid search.

Folds are contiguous ranges of sorted periods; a period is never split
across folds, so every row lands in exactly one validation fold. The feature
transform (residualization + standardization) is re-fit on each fold's
training rows before the fold's model is fit.

Selection prefers stability over marginal fit: every cell within
`tie_tolerance` of the best mean CV RMSE is a candidate, and among candidates
the lowest l1_ratio wins, then the lowest alpha.
"""

import logging
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from src.calibration.features import FeatureSet
from src.calibration.metrics import weighted_rmse
from src.calibration.model import SolverSettings, fit_model, sample_weights

logger = logging.getLogger(__name__)

DEFAULT_TIE_TOLERANCE = 0.2

# Ridge-heavy grids. Alpha is on the unnormalized (sum of weights) scale.
GRIDS = {
    "coarse": {
        "alphas": [0.0001, 0.001, 0.01, 0.1],
        "l1_ratios": [0.0, 0.25],
    },
    "fine": {
        "alphas": [0.0001, 0.0002, 0.0005, 0.001, 0.002, 0.005, 0.01, 0.02, 0.05, 0.1, 0.25],
        "l1_ratios": [0.0, 0.05, 0.1, 0.25],
    },
}


@dataclass(frozen=True)
class Fold:
    """Row indices for one CV fold."""
    fold: int
    test_periods: tuple[int, ...]
    train_idx: np.ndarray
    test_idx: np.ndarray


@dataclass(frozen=True)
class GridCell:
    alpha: float
    l1_ratio: float
    cv_rmse: float
    fold_rmses: tuple[float, ...]


@dataclass
class GridSearchResult:
    """Selected cell plus every evaluated cell."""
    alpha: float
    l1_ratio: float
    cv_rmse: float
    best_cv_rmse: float  # lowest mean RMSE on the grid (before the tie-break)
    cells: list[GridCell] = field(default_factory=list)
    n_folds: int = 0

    def to_dict(self) -> dict:
        return {
            "alpha": self.alpha,
            "l1_ratio": self.l1_ratio,
            "cv_rmse": self.cv_rmse,
            "best_cv_rmse": self.best_cv_rmse,
            "n_folds": self.n_folds,
            "cells": [
                {"alpha": c.alpha, "l1_ratio": c.l1_ratio, "cv_rmse": c.cv_rmse} for c in self.cells
            ],
        }


def get_grid(name: str) -> tuple[list[float], list[float]]:
    if name not in GRIDS:
        raise ValueError(f"Unknown grid '{name}' (expected one of {sorted(GRIDS)})")
    grid = GRIDS[name]
    return list(grid["alphas"]), list(grid["l1_ratios"])


def period_folds(periods: np.ndarray, n_folds: int) -> list[Fold]:
    """Split rows into contiguous period-range folds.

    Fold f holds out sorted unique periods [floor(P*f/k), floor(P*(f+1)/k)).
    Folds that end up with no training or no test rows are skipped.
    """
    if n_folds < 2:
        raise ValueError(f"n_folds must be >= 2, got {n_folds}")

    periods = np.asarray(periods)
    unique = np.unique(periods)
    n_periods = len(unique)

    folds = []
    for f in range(n_folds):
        start = (n_periods * f) // n_folds
        end = (n_periods * (f + 1)) // n_folds
        test_periods = unique[start:end]
        if len(test_periods) == 0:
            continue
        test_mask = np.isin(periods, test_periods)
        train_idx = np.flatnonzero(~test_mask)
        test_idx = np.flatnonzero(test_mask)
        if len(train_idx) == 0 or len(test_idx) == 0:
            continue
        folds.append(Fold(
            fold=f,
            test_periods=tuple(int(p) for p in test_periods),
            train_idx=train_idx,
            test_idx=test_idx,
        ))
    return folds


def _fold_has_weight(fold: Fold, w: np.ndarray) -> bool:
    return w[fold.train_idx].sum() > 0 and w[fold.test_idx].sum() > 0


def cross_validate(
    frame: pd.DataFrame,
    feature_set: FeatureSet,
    alpha: float,
    l1_ratio: float,
    folds: list[Fold],
    use_weights: bool = True,
    solver: SolverSettings = SolverSettings(),
) -> list[float]:
    """Held-out weighted RMSE for each fold.

    Folds whose training or held-out rows carry no weight are skipped.
    """
    w_all = sample_weights(frame, use_weights)
    y_all = frame["response"].to_numpy(dtype=float)

    scores = []
    for fold in folds:
        if not _fold_has_weight(fold, w_all):
            continue
        train = frame.iloc[fold.train_idx]
        test = frame.iloc[fold.test_idx]
        model, _ = fit_model(train, feature_set, alpha, l1_ratio, use_weights, solver)
        pred = model.predict(test)
        scores.append(weighted_rmse(y_all[fold.test_idx], pred, w_all[fold.test_idx]))
    return scores


def select_cell(cells: list[GridCell], tie_tolerance: float = DEFAULT_TIE_TOLERANCE) -> GridCell:
    """Lowest CV RMSE, with near-ties resolved toward lower l1_ratio then lower alpha."""
    finite = [c for c in cells if np.isfinite(c.cv_rmse)]
    if not finite:
        raise ValueError("No grid cell produced a finite CV score")
    best = min(c.cv_rmse for c in finite)
    candidates = [c for c in finite if c.cv_rmse - best <= tie_tolerance]
    return min(candidates, key=lambda c: (c.l1_ratio, c.alpha, c.cv_rmse))


def grid_search(
    frame: pd.DataFrame,
    feature_set: FeatureSet,
    alphas: list[float],
    l1_ratios: list[float],
    n_folds: int = 5,
    use_weights: bool = True,
    solver: SolverSettings = SolverSettings(),
    tie_tolerance: float = DEFAULT_TIE_TOLERANCE,
) -> GridSearchResult:
    """Evaluate every (alpha, l1_ratio) cell with week-grouped CV."""
    folds = period_folds(frame["period"].to_numpy(), n_folds)
    w = sample_weights(frame, use_weights)
    usable = [fold for fold in folds if _fold_has_weight(fold, w)]
    if len(usable) < len(folds):
        logger.warning(f"Grid search: skipping {len(folds) - len(usable)} folds with zero total weight")
    folds = usable
    if not folds:
        raise ValueError(
            f"No usable CV folds: {frame['period'].nunique()} periods for {n_folds} folds"
        )

    logger.info(
        f"Grid search ({feature_set.name}): {len(alphas)} alphas x {len(l1_ratios)} "
        f"l1_ratios = {len(alphas) * len(l1_ratios)} cells, {len(folds)} folds"
    )

    cells = []
    for alpha in alphas:
        for l1_ratio in l1_ratios:
            scores = cross_validate(frame, feature_set, alpha, l1_ratio, folds, use_weights, solver)
            cv_rmse = float(np.mean(scores)) if scores else float("inf")
            cells.append(GridCell(alpha, l1_ratio, cv_rmse, tuple(scores)))
            logger.debug(f"  alpha={alpha:<8} l1_ratio={l1_ratio:<5} cv_rmse={cv_rmse:.4f}")

    chosen = select_cell(cells, tie_tolerance)
    best = min(c.cv_rmse for c in cells)
    logger.info(
        f"Selected alpha={chosen.alpha}, l1_ratio={chosen.l1_ratio} "
        f"(cv_rmse={chosen.cv_rmse:.4f}, best={best:.4f})"
    )

    return GridSearchResult(
        alpha=chosen.alpha,
        l1_ratio=chosen.l1_ratio,
        cv_rmse=chosen.cv_rmse,
        best_cv_rmse=best,
        cells=cells,
        n_folds=len(folds),
    )
