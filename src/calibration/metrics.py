"""Weighted fit statistics shared by the solvers, validators and gates.

All statistics take an optional weight vector; `None` means equal weights.
Degenerate inputs (constant predictions, empty arrays) return 0.0 for
correlations rather than NaN so the gate checker can compare them directly.
"""

from dataclasses import asdict, dataclass
from typing import Optional

import numpy as np
from scipy.stats import rankdata

VARIANCE_EPS = 1e-10


def _weights(n: int, w: Optional[np.ndarray]) -> np.ndarray:
    if w is None:
        return np.ones(n)
    return np.asarray(w, dtype=float)


def weighted_mean(x: np.ndarray, w: Optional[np.ndarray] = None) -> float:
    x = np.asarray(x, dtype=float)
    w = _weights(len(x), w)
    total = w.sum()
    if len(x) == 0 or total <= 0:
        return 0.0
    return float(np.dot(w, x) / total)


def weighted_rmse(y: np.ndarray, pred: np.ndarray, w: Optional[np.ndarray] = None) -> float:
    y = np.asarray(y, dtype=float)
    if len(y) == 0:
        return float("inf")
    err = y - np.asarray(pred, dtype=float)
    return float(np.sqrt(weighted_mean(err * err, w)))


def weighted_mae(y: np.ndarray, pred: np.ndarray, w: Optional[np.ndarray] = None) -> float:
    y = np.asarray(y, dtype=float)
    if len(y) == 0:
        return float("inf")
    return weighted_mean(np.abs(y - np.asarray(pred, dtype=float)), w)


def weighted_pearson(x: np.ndarray, y: np.ndarray, w: Optional[np.ndarray] = None) -> float:
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    if len(x) < 2:
        return 0.0
    w = _weights(len(x), w)
    dx = x - weighted_mean(x, w)
    dy = y - weighted_mean(y, w)
    var_x = np.dot(w, dx * dx)
    var_y = np.dot(w, dy * dy)
    if var_x < VARIANCE_EPS or var_y < VARIANCE_EPS:
        return 0.0
    return float(np.dot(w, dx * dy) / np.sqrt(var_x * var_y))


def weighted_spearman(x: np.ndarray, y: np.ndarray, w: Optional[np.ndarray] = None) -> float:
    """Rank correlation: weighted Pearson on average ranks."""
    if len(x) < 2:
        return 0.0
    return weighted_pearson(rankdata(x), rankdata(y), w)


def regression_slope(y: np.ndarray, pred: np.ndarray, w: Optional[np.ndarray] = None) -> float:
    """Slope of the weighted OLS regression of y on pred (0.0 if pred is constant)."""
    y = np.asarray(y, dtype=float)
    pred = np.asarray(pred, dtype=float)
    if len(y) < 2:
        return 0.0
    w = _weights(len(y), w)
    dp = pred - weighted_mean(pred, w)
    dy = y - weighted_mean(y, w)
    var_p = np.dot(w, dp * dp)
    if var_p < VARIANCE_EPS:
        return 0.0
    return float(np.dot(w, dp * dy) / var_p)


def r_squared(y: np.ndarray, pred: np.ndarray, w: Optional[np.ndarray] = None) -> float:
    y = np.asarray(y, dtype=float)
    if len(y) == 0:
        return 0.0
    w = _weights(len(y), w)
    err = y - np.asarray(pred, dtype=float)
    dev = y - weighted_mean(y, w)
    ss_tot = np.dot(w, dev * dev)
    if ss_tot < VARIANCE_EPS:
        return 0.0
    return float(1.0 - np.dot(w, err * err) / ss_tot)


def sign_agreement(y: np.ndarray, pred: np.ndarray) -> float:
    """Percent of rows where sign(pred) == sign(y).

    Rows with y exactly 0 are excluded from the denominator.
    """
    y = np.asarray(y, dtype=float)
    pred = np.asarray(pred, dtype=float)
    nonzero = y != 0
    n = int(nonzero.sum())
    if n == 0:
        return 0.0
    agree = np.sign(pred[nonzero]) == np.sign(y[nonzero])
    return float(100.0 * agree.sum() / n)


def std_ratio(pred: np.ndarray, y: np.ndarray) -> float:
    """std(pred) / std(y), population std. 0.0 if y is constant."""
    pred = np.asarray(pred, dtype=float)
    y = np.asarray(y, dtype=float)
    if len(y) == 0:
        return 0.0
    std_y = float(np.std(y))
    if std_y < VARIANCE_EPS:
        return 0.0
    return float(np.std(pred)) / std_y


@dataclass(frozen=True)
class FitStatistics:
    """Standard fit statistics for a set of predictions."""
    n: int
    rmse: float
    mae: float
    pearson: float
    spearman: float
    sign_agreement: float  # percent, 0-100
    r2: float

    def to_dict(self) -> dict:
        return asdict(self)


def compute_fit_statistics(
    y: np.ndarray,
    pred: np.ndarray,
    w: Optional[np.ndarray] = None,
) -> FitStatistics:
    """Compute the full set of fit statistics for predictions against y."""
    return FitStatistics(
        n=len(y),
        rmse=weighted_rmse(y, pred, w),
        mae=weighted_mae(y, pred, w),
        pearson=weighted_pearson(pred, y, w),
        spearman=weighted_spearman(pred, y, w),
        sign_agreement=sign_agreement(y, pred),
        r2=r_squared(y, pred, w),
    )
